from __future__ import annotations

import pytest

from pluck.jobs import InvalidTransitionError, JobEntry, JobStatus, PlaylistGroup, UrlKind, classify_url, parse_urls


def test_classify_url() -> None:
    assert classify_url("https://www.youtube.com/playlist?list=PL123") is UrlKind.PLAYLIST
    assert classify_url("https://www.youtube.com/watch?v=a&list=PL123") is UrlKind.PLAYLIST
    assert classify_url("https://www.youtube.com/watch?v=a") is UrlKind.VIDEO
    assert classify_url("https://youtu.be/a") is UrlKind.VIDEO
    assert classify_url("https://vimeo.com/123") is UrlKind.VIDEO
    assert classify_url("https://example.com/clip") is UrlKind.UNRECOGNIZED


def test_parse_urls_keeps_only_http_lines() -> None:
    text = "  https://youtu.be/a  \n\nftp://nope\nnot a url\nhttp://example.com/b\r\n"

    assert parse_urls(text) == ["https://youtu.be/a", "http://example.com/b"]


def test_new_entry_defaults() -> None:
    entry = JobEntry.from_url("https://youtu.be/a")
    other = JobEntry.from_url("https://youtu.be/a")

    assert entry.status is JobStatus.QUEUED
    assert entry.title == "https://youtu.be/a"
    assert entry.job_id != other.job_id
    assert entry.is_playlist_placeholder is False
    assert JobEntry.from_url("https://www.youtube.com/playlist?list=PL1").is_playlist_placeholder is True
    child = JobEntry.from_url("https://www.youtube.com/watch?v=a&list=PL1", "A", PlaylistGroup("Mix", 1, 3))
    assert child.is_playlist_placeholder is False


def test_happy_path_through_conversion() -> None:
    entry = JobEntry.from_url("https://youtu.be/a")
    entry.transition(JobStatus.DOWNLOADING)

    assert entry.report_download(0.4, "Downloading: 40%")
    assert entry.report_download(0.2, "Downloading: stale")
    assert entry.download_progress == 0.4
    assert entry.report_download(None, "Merging...")
    assert entry.download_progress == 0.4
    assert entry.status_message == "Merging..."
    assert entry.overall_progress == 0.2

    assert entry.start_conversion()
    assert entry.download_progress == 1.0
    assert entry.status is JobStatus.CONVERTING
    assert entry.report_download(0.9, "late download tick") is False
    assert entry.report_conversion(0.5, "Converting: 0:05 / 0:10")
    assert entry.overall_progress == 0.75

    assert entry.complete("/tmp/out.mov")
    assert entry.status is JobStatus.COMPLETED
    assert entry.conversion_progress == 1.0
    assert entry.output_path == "/tmp/out.mov"


def test_terminal_guard_ignores_late_writes() -> None:
    entry = JobEntry.from_url("https://youtu.be/a")
    entry.transition(JobStatus.DOWNLOADING)
    assert entry.cancel()

    assert entry.report_download(0.9, "late") is False
    assert entry.fail("process exited") is False
    assert entry.complete("/tmp/x") is False
    assert entry.status is JobStatus.CANCELLED
    assert entry.status_message == "Cancelled"
    assert entry.error is None


def test_illegal_transitions_are_rejected() -> None:
    entry = JobEntry.from_url("https://youtu.be/a")

    with pytest.raises(InvalidTransitionError):
        entry.transition(JobStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        entry.transition(JobStatus.CONVERTING)
    assert entry.start_conversion() is False
    assert entry.cancel() is False
    assert entry.fail("boom") is False
    assert entry.status is JobStatus.QUEUED


def test_retry_resets_failed_entry() -> None:
    entry = JobEntry.from_url("https://youtu.be/a")
    entry.transition(JobStatus.DOWNLOADING)
    entry.report_download(0.7, "Downloading: 70%")
    assert entry.fail("HTTP Error 403")
    assert entry.error == "HTTP Error 403"

    entry.reset_for_retry()

    assert entry.status is JobStatus.QUEUED
    assert entry.error is None
    assert entry.download_progress == 0.0
    assert entry.conversion_progress == 0.0
    assert entry.status_message == "Queued"


def test_completed_entries_cannot_be_retried() -> None:
    entry = JobEntry.from_url("https://youtu.be/a")
    entry.transition(JobStatus.DOWNLOADING)
    entry.complete("/tmp/a.mp4")

    with pytest.raises(InvalidTransitionError):
        entry.reset_for_retry()
