"""Pluck: concurrent yt-dlp download and ffmpeg conversion pipeline."""

from ._version import __version__
