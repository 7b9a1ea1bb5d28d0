"""Runs yt-dlp for a single URL and resolves the file it produced."""
import os
import re
import logging
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional, Set

from .config import AudioFormat, DownloadMode
from .constants import (
    AUDIO_EXTENSIONS, OUTPUT_TEMPLATE, POSTPROCESSOR_STATUS, PROGRESS_TEMPLATE, VIDEO_EXTENSIONS, YT_DLP_NETWORK_ARGS
)
from .process_runner import ProcessRunner
from .progress import ProgressThrottle, parse_download_progress

ProgressCallback = Callable[[Optional[float], str], Awaitable[None]]
TitleCallback = Callable[[str], Awaitable[None]]

DESTINATION_RE = re.compile(r'Destination: (.*)')
TAG_RE = re.compile(r'^\[(\w+)\]')
PATH_TAGS = ('[Merger]', '[ExtractAudio]', '[download]')


def expected_extensions(mode: DownloadMode) -> frozenset:
    return AUDIO_EXTENSIONS if mode is DownloadMode.AUDIO_ONLY else VIDEO_EXTENSIONS


def extract_path(line: str) -> Optional[str]:
    """Pulls a file path out of a tagged yt-dlp line (quoted, or after 'Destination:')."""
    first_quote = line.find('"')
    if first_quote != -1:
        closing_quote = line.find('"', first_quote + 1)
        if closing_quote != -1:
            return line[first_quote + 1:closing_quote]
    if dest_match := DESTINATION_RE.search(line):
        return dest_match.group(1).strip()
    return None


def list_files(directory: Path) -> Set[str]:
    """Names of the files currently in `directory` (empty if it cannot be read)."""
    try:
        return {item.name for item in directory.iterdir() if item.is_file()}
    except OSError:
        return set()


def find_newest_file(directory: Path, extensions: Iterable[str],
                     preexisting: Optional[Set[str]] = None) -> Optional[Path]:
    """
    Returns the most recently modified file in `directory` with a matching extension.

    Files whose names are not in `preexisting` (i.e. that appeared during the
    job) are preferred; if there are none, the newest match of any age is returned.
    """
    wanted = {ext.lower() for ext in extensions}
    candidates = []
    try:
        for item in directory.iterdir():
            if item.is_file() and item.suffix.lstrip('.').lower() in wanted:
                candidates.append((item.stat().st_mtime, item))
    except OSError:
        return None
    if not candidates:
        return None
    if preexisting is not None:
        appeared = [c for c in candidates if c[1].name not in preexisting]
        if appeared:
            candidates = appeared
    return max(candidates, key=lambda c: c[0])[1]


def resolve_output_path(printed_path: Optional[str], output_dir: Path, mode: DownloadMode,
                        preexisting: Optional[Set[str]] = None) -> Path:
    """
    Resolves the downloaded file: the path yt-dlp printed, else the newest
    matching file in the directory, else the directory itself as a best guess.
    """
    if printed_path and Path(printed_path).is_file():
        return Path(printed_path)
    newest = find_newest_file(output_dir, expected_extensions(mode), preexisting=preexisting)
    if newest is not None:
        return newest
    return output_dir


class Downloader:
    """Acquires one URL with yt-dlp, reporting throttled progress."""

    def __init__(self, runner: ProcessRunner, yt_dlp_path: Path, ffmpeg_path: Optional[Path] = None):
        """
        Initializes the Downloader.

        Args:
            runner: The shared process runner.
            yt_dlp_path: The path to the yt-dlp executable.
            ffmpeg_path: The path to ffmpeg, passed to yt-dlp for merging and extraction.
        """
        self.runner = runner
        self.yt_dlp_path = yt_dlp_path
        self.ffmpeg_path = ffmpeg_path
        self.logger = logging.getLogger(__name__)

    def build_command(self, url: str, output_dir: Path, mode: DownloadMode,
                      audio_format: AudioFormat = AudioFormat.MP3) -> List[str]:
        """Builds the yt-dlp argument list (without the executable)."""
        if mode is DownloadMode.AUDIO_ONLY:
            command = [
                '-f', 'bestaudio[ext=m4a]/bestaudio/best',
                '-x',
                '--audio-format', audio_format.value,
                '--audio-quality', '0',
            ]
        else:
            command = [
                '-f', 'bestvideo[ext=mp4]+bestaudio[ext=m4a]/bestvideo+bestaudio/best',
                '--merge-output-format', 'mp4',
            ]
        command.extend([
            '-o', str(output_dir / OUTPUT_TEMPLATE),
            '--newline',
            '--no-warnings',
            '--no-playlist',
            '--print', 'after_move:filepath',
            '--progress',
            '--progress-template', PROGRESS_TEMPLATE,
            *YT_DLP_NETWORK_ARGS,
        ])
        if self.ffmpeg_path:
            command.extend(['--ffmpeg-location', str(self.ffmpeg_path.parent)])
        command.append(url)
        return command

    async def download(self, url: str, output_dir: Path, mode: DownloadMode,
                       audio_format: AudioFormat, progress: ProgressCallback,
                       on_title: Optional[TitleCallback] = None) -> Path:
        """
        Downloads `url` into `output_dir` and returns the resolved file path.

        Raises:
            ProcessLaunchError, ProcessError: Propagated from the runner unchanged.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        throttle = ProgressThrottle()
        last_path: Optional[str] = None
        preexisting = list_files(output_dir)

        async def handle_line(line: str, stream: str):
            nonlocal last_path
            clean_line = line.strip()
            if not clean_line:
                return
            self.logger.debug(f"[yt-dlp:{stream}] {clean_line}")

            update = parse_download_progress(clean_line)
            if update is not None:
                if throttle.should_emit():
                    await progress(update.fraction, update.message)
                return

            if clean_line.startswith(PATH_TAGS):
                if (path := extract_path(clean_line)) is not None:
                    last_path = path
                if on_title and clean_line.startswith('[download]') and (dest_match := DESTINATION_RE.search(clean_line)):
                    new_title = Path(dest_match.group(1).strip()).stem
                    if new_title:
                        await on_title(new_title)
            elif stream == 'stdout' and os.path.isabs(clean_line):
                last_path = clean_line

            if tag_match := TAG_RE.match(clean_line):
                if (status_key := tag_match.group(1).lower()) in POSTPROCESSOR_STATUS:
                    await progress(None, POSTPROCESSOR_STATUS[status_key])

        await self.runner.run(self.yt_dlp_path, self.build_command(url, output_dir, mode, audio_format), on_line=handle_line)

        throttle.should_emit(force=True)
        await progress(1.0, "Download complete")

        resolved = resolve_output_path(last_path, output_dir, mode, preexisting)
        if resolved == output_dir:
            self.logger.warning(f"Could not determine the downloaded file for {url}; using {output_dir}")
        return resolved
