"""
Provides metadata-only tool calls: media duration via ffprobe and playlist shape via yt-dlp.
"""

import json
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .constants import (
    DURATION_PROBE_TIMEOUT, FALLBACK_VIDEO_URL, NOT_AVAILABLE, PLAYLIST_PRINT_TEMPLATE, PLAYLIST_PROBE_TIMEOUT
)
from .exceptions import ProbeError, ProcessError, ProcessLaunchError
from .process_runner import ProcessRunner


@dataclass(frozen=True)
class PlaylistEntry:
    url: str
    title: str
    index: int


@dataclass(frozen=True)
class PlaylistInfo:
    """Result of a flat playlist listing; `is_playlist` is False for single videos."""
    is_playlist: bool
    title: str
    entries: Tuple[PlaylistEntry, ...] = field(default_factory=tuple)


def _is_missing(value: str) -> bool:
    return not value or value == NOT_AVAILABLE


def parse_playlist_listing(output: str) -> PlaylistInfo:
    """
    Interprets the tab-separated `--flat-playlist --print` output.

    Each line carries playlist_title, id, title and url. A single line whose
    playlist title is 'NA' (or empty) describes a plain video.
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        return PlaylistInfo(is_playlist=False, title="Unknown")

    if len(lines) == 1:
        parts = lines[0].split('\t')
        playlist_title = parts[0] if parts else NOT_AVAILABLE
        if _is_missing(playlist_title):
            title = parts[2] if len(parts) > 2 else "Unknown"
            return PlaylistInfo(is_playlist=False, title=title)

    playlist_title = "Playlist"
    entries: List[PlaylistEntry] = []
    for i, line in enumerate(lines):
        parts = line.split('\t')
        if len(parts) < 3:
            continue
        if not _is_missing(parts[0]):
            playlist_title = parts[0]
        video_id, title = parts[1], parts[2]
        video_url = parts[3] if len(parts) > 3 and not _is_missing(parts[3]) else FALLBACK_VIDEO_URL.format(id=video_id)
        entries.append(PlaylistEntry(url=video_url, title=title, index=i))

    return PlaylistInfo(is_playlist=True, title=playlist_title, entries=tuple(entries))


def parse_yt_dlp_error(stderr: str) -> str:
    """
    Parses stderr from yt-dlp to find a concise error message.

    Returns:
        A concise error message, or the last line of stderr as a fallback.
    """
    if not stderr.strip():
        return "yt-dlp returned an error with no output."

    for line in stderr.strip().splitlines():
        if line.lower().startswith('error:'):
            error_msg = line[6:].strip()
            return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

    return stderr.strip().splitlines()[-1]


class MediaProber:
    """Runs ffprobe and yt-dlp in metadata-only mode."""

    def __init__(self, runner: ProcessRunner, yt_dlp_path: Optional[Path], ffprobe_path: Optional[Path]):
        """
        Initializes the MediaProber.

        Args:
            runner: The shared process runner (so probes are cancellable too).
            yt_dlp_path: The path to the yt-dlp executable, if available.
            ffprobe_path: The path to the ffprobe executable, if available.
        """
        self.runner = runner
        self.yt_dlp_path = yt_dlp_path
        self.ffprobe_path = ffprobe_path
        self.logger = logging.getLogger(__name__)

    async def _run_command(self, executable: Path, arguments: Sequence[str], timeout: float) -> str:
        """
        Runs a probe command and returns its stdout.

        Raises:
            ProbeError: On any failure (launch, timeout, non-zero exit code).
        """
        try:
            result = await asyncio.wait_for(
                self.runner.run(executable, arguments, capture_output=True),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            self.logger.error(f"Probe timed out: {executable.name} {' '.join(arguments)}")
            raise ProbeError(f"{executable.name} timed out after {timeout}s.")
        except ProcessLaunchError as e:
            self.logger.error(f"Probe could not start: {e}")
            raise ProbeError(str(e)) from e
        except ProcessError as e:
            self.logger.error(f"{executable.name} failed for '{arguments[-1]}'. Stderr: {e.stderr_tail.strip()}")
            raise ProbeError(parse_yt_dlp_error(e.stderr_tail)) from e
        return result.stdout

    async def probe_duration(self, media_path: Path) -> float:
        """
        Returns the duration of a media file in seconds.

        Raises:
            ProbeError: If ffprobe is missing, fails, or reports no usable duration.
        """
        if not self.ffprobe_path:
            raise ProbeError("ffprobe is not available.")
        arguments = ['-v', 'quiet', '-print_format', 'json', '-show_format', str(media_path)]
        stdout = await self._run_command(self.ffprobe_path, arguments, timeout=DURATION_PROBE_TIMEOUT)
        try:
            payload = json.loads(stdout or '{}')
            return float(payload['format']['duration'])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ProbeError(f"ffprobe returned no duration for {media_path.name}") from e

    async def probe_playlist(self, url: str) -> PlaylistInfo:
        """
        Lists a URL's entries without resolving full per-item metadata.

        Raises:
            ProbeError: If yt-dlp is missing or the listing fails.
        """
        if not self.yt_dlp_path:
            raise ProbeError("yt-dlp is not available.")
        arguments = [
            '--flat-playlist',
            '--print', PLAYLIST_PRINT_TEMPLATE,
            '--no-warnings',
            '--socket-timeout', '30',
            url,
        ]
        stdout = await self._run_command(self.yt_dlp_path, arguments, timeout=PLAYLIST_PROBE_TIMEOUT)
        return parse_playlist_listing(stdout)
