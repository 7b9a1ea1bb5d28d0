"""
Defines the data classes for queue entries and their status state machine.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, NamedTuple, Optional


class JobStatus(str, Enum):
    QUEUED = "Queued"
    DOWNLOADING = "Downloading"
    CONVERTING = "Converting"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class UrlKind(str, Enum):
    VIDEO = "video"
    PLAYLIST = "playlist"
    UNRECOGNIZED = "unrecognized"


class PlaylistGroup(NamedTuple):
    """Position of an entry inside the playlist it was expanded from."""
    title: str
    index: int
    total: int


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.DOWNLOADING, JobStatus.CONVERTING})

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.DOWNLOADING}),
    JobStatus.DOWNLOADING: frozenset({JobStatus.CONVERTING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.CONVERTING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.CANCELLED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when a status change does not follow the state machine."""


def classify_url(url: str) -> UrlKind:
    """Classifies a URL by its text alone; playlists are confirmed later by a probe."""
    if 'youtube.com/playlist' in url or 'list=' in url:
        return UrlKind.PLAYLIST
    if 'youtube.com' in url or 'youtu.be' in url or 'vimeo.com' in url:
        return UrlKind.VIDEO
    return UrlKind.UNRECOGNIZED


def parse_urls(text: str) -> list[str]:
    """Extracts one http(s) URL per non-empty line of pasted or dropped text."""
    urls = []
    for line in text.splitlines():
        candidate = line.strip()
        if candidate.startswith(('http://', 'https://')):
            urls.append(candidate)
    return urls


@dataclass
class JobEntry:
    """
    Represents a single unit of work in the queue.

    Attributes:
        source_url: The URL provided by the user (can be a playlist).
        job_id: A unique identifier for the entry.
        kind: The URL classification, resolved lazily for playlists.
        title: The display title, refined from yt-dlp output.
        status: The current position in the state machine.
        download_progress: Download fraction in [0, 1].
        conversion_progress: Conversion fraction in [0, 1].
        status_message: Human-readable description of the current action.
        output_path: Path of the finished artifact.
        error: Failure message, only set when the entry failed.
        playlist_group: (playlist title, 1-based index, total) for expanded entries.
    """
    source_url: str
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    kind: UrlKind = UrlKind.UNRECOGNIZED
    title: str = ""
    status: JobStatus = JobStatus.QUEUED
    download_progress: float = 0.0
    conversion_progress: float = 0.0
    status_message: str = "Queued"
    output_path: Optional[str] = None
    error: Optional[str] = None
    playlist_group: Optional[PlaylistGroup] = None

    @classmethod
    def from_url(cls, url: str, title: Optional[str] = None,
                 playlist_group: Optional[PlaylistGroup] = None) -> "JobEntry":
        return cls(source_url=url, kind=classify_url(url), title=title or url, playlist_group=playlist_group)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_playlist_placeholder(self) -> bool:
        return self.kind is UrlKind.PLAYLIST and self.playlist_group is None

    @property
    def overall_progress(self) -> float:
        if self.status is JobStatus.DOWNLOADING:
            return self.download_progress * 0.5
        if self.status is JobStatus.CONVERTING:
            return 0.5 + self.conversion_progress * 0.5
        if self.status is JobStatus.COMPLETED:
            return 1.0
        return 0.0

    def transition(self, new_status: JobStatus, message: Optional[str] = None) -> None:
        """Moves the entry along the state machine, rejecting illegal edges."""
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"{self.status.value} -> {new_status.value} is not allowed")
        self.status = new_status
        if message is not None:
            self.status_message = message

    def report_download(self, fraction: Optional[float], message: str) -> bool:
        """Applies a download tick; ignored once the entry has left Downloading."""
        if self.status is not JobStatus.DOWNLOADING:
            return False
        if fraction is not None:
            self.download_progress = max(self.download_progress, min(max(fraction, 0.0), 1.0))
        self.status_message = message
        return True

    def report_conversion(self, fraction: Optional[float], message: str) -> bool:
        """Applies a conversion tick; a None fraction keeps the last known value."""
        if self.status is not JobStatus.CONVERTING:
            return False
        if fraction is not None:
            self.conversion_progress = max(self.conversion_progress, min(max(fraction, 0.0), 1.0))
        self.status_message = message
        return True

    def start_conversion(self) -> bool:
        if self.status is not JobStatus.DOWNLOADING:
            return False
        self.download_progress = 1.0
        self.conversion_progress = 0.0
        self.transition(JobStatus.CONVERTING, "Starting conversion...")
        return True

    def complete(self, output_path: str) -> bool:
        if self.is_terminal:
            return False
        self.download_progress = 1.0
        self.conversion_progress = 1.0
        self.output_path = output_path
        self.transition(JobStatus.COMPLETED, "Complete")
        return True

    def fail(self, error: str, message: str = "Failed") -> bool:
        if not self.is_active:
            return False
        self.error = error
        self.transition(JobStatus.FAILED, message)
        return True

    def cancel(self) -> bool:
        if self.is_terminal or self.status is JobStatus.QUEUED:
            return False
        self.transition(JobStatus.CANCELLED, "Cancelled")
        return True

    def reset_for_retry(self) -> None:
        """Returns a failed entry to the queue with a clean attempt state."""
        self.transition(JobStatus.QUEUED, "Queued")
        self.error = None
        self.download_progress = 0.0
        self.conversion_progress = 0.0
        self.output_path = None
