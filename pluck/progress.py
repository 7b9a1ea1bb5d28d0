"""
Pure parsers for tool progress output and the throttle that rate-limits updates.

yt-dlp reports percentages (``download: 45.2% 5.2MiB/s 00:12``); ffmpeg's
``-progress pipe:1`` stream reports ``key=value`` lines whose timestamps are
compared against the probed duration.
"""

import re
import time
from typing import Callable, NamedTuple, Optional

from .constants import PROGRESS_THROTTLE_SECONDS

PERCENT_RE = re.compile(r'(\d+\.?\d*)%')
MICROSECOND_KEYS = ('out_time_us', 'out_time_ms')
TIMESTAMP_KEY = 'out_time'
END_MARKER = 'progress=end'


class ProgressUpdate(NamedTuple):
    fraction: Optional[float]
    message: str


def parse_percent(line: str) -> Optional[float]:
    """Returns the first number directly followed by '%', or None."""
    match = PERCENT_RE.search(line)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def parse_time_string(value: str) -> Optional[float]:
    """Parses ``HH:MM:SS[.fraction]`` into seconds."""
    parts = value.strip().split(':')
    if len(parts) != 3:
        return None
    try:
        hours, minutes, seconds = (float(part) for part in parts)
    except ValueError:
        return None
    return hours * 3600 + minutes * 60 + seconds


def format_time(seconds: float) -> str:
    """Formats seconds as ``H:MM:SS`` from one hour upwards, else ``M:SS``."""
    total = int(max(seconds, 0))
    h, remainder = divmod(total, 3600)
    m, s = divmod(remainder, 60)
    if h > 0:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def parse_elapsed_seconds(line: str) -> Optional[float]:
    """Extracts the elapsed position from an ffmpeg progress line, or None."""
    key, sep, value = line.strip().partition('=')
    if not sep:
        return None
    if key in MICROSECOND_KEYS:
        try:
            return int(value.strip()) / 1_000_000
        except ValueError:
            return None
    if key == TIMESTAMP_KEY:
        return parse_time_string(value)
    return None


def parse_conversion_progress(line: str, total_duration: float) -> Optional[ProgressUpdate]:
    """
    Interprets one ffmpeg ``-progress`` line against the probed total duration.

    Returns None for lines that carry no position. When the duration is unknown
    the fraction is None so callers keep their last known value.
    """
    if line.strip() == END_MARKER:
        return ProgressUpdate(1.0, "Conversion complete")

    elapsed = parse_elapsed_seconds(line)
    if elapsed is None:
        return None
    elapsed = max(elapsed, 0.0)

    if total_duration <= 0:
        return ProgressUpdate(None, f"Converting: {format_time(elapsed)}")

    fraction = min(elapsed / total_duration, 1.0)
    return ProgressUpdate(fraction, f"Converting: {format_time(elapsed)} / {format_time(total_duration)}")


def parse_download_progress(line: str) -> Optional[ProgressUpdate]:
    """Interprets one yt-dlp progress line (template or native ``[download]`` form)."""
    stripped = line.strip()
    if not (stripped.startswith('download:') or (stripped.startswith('[download]') and '%' in stripped)):
        return None
    percent = parse_percent(stripped)
    if percent is None:
        return None
    if stripped.startswith('download:'):
        detail = stripped[len('download:'):].strip()
    else:
        detail = f"{percent:.1f}%"
    return ProgressUpdate(min(percent / 100.0, 1.0), f"Downloading: {detail}")


class ProgressThrottle:
    """
    Lets at most one update through per interval.

    The first update always passes, and callers pass ``force=True`` for the
    final update so completion is never swallowed.
    """

    def __init__(self, interval: float = PROGRESS_THROTTLE_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self._last_emit: Optional[float] = None

    def should_emit(self, force: bool = False, now: Optional[float] = None) -> bool:
        if now is None:
            now = self.clock()
        if force or self._last_emit is None or now - self._last_emit >= self.interval:
            self._last_emit = now
            return True
        return False
