from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from pluck.exceptions import ProbeError
from pluck.process_runner import ProcessRunner
from pluck.prober import MediaProber, parse_playlist_listing, parse_yt_dlp_error


def test_empty_listing_is_a_single_video() -> None:
    info = parse_playlist_listing("")

    assert info.is_playlist is False
    assert info.entries == ()


def test_single_line_with_na_playlist_title_is_a_video() -> None:
    info = parse_playlist_listing("NA\tabc123\tMy Video\thttps://www.youtube.com/watch?v=abc123\n")

    assert info.is_playlist is False
    assert info.title == "My Video"


def test_playlist_listing_builds_entries_in_order() -> None:
    output = (
        "Road Trip\tid1\tFirst\thttps://example.com/1\n"
        "Road Trip\tid2\tSecond\tNA\n"
        "broken line\n"
        "Road Trip\tid3\tThird\t\n"
    )
    info = parse_playlist_listing(output)

    assert info.is_playlist is True
    assert info.title == "Road Trip"
    assert [entry.title for entry in info.entries] == ["First", "Second", "Third"]
    assert [entry.url for entry in info.entries] == [
        "https://example.com/1",
        "https://www.youtube.com/watch?v=id2",
        "https://www.youtube.com/watch?v=id3",
    ]


def test_playlist_title_defaults_when_every_title_is_na() -> None:
    info = parse_playlist_listing("NA\tid1\tOne\tNA\nNA\tid2\tTwo\tNA\n")

    assert info.is_playlist is True
    assert info.title == "Playlist"
    assert len(info.entries) == 2


def test_single_line_with_real_playlist_title_stays_a_playlist() -> None:
    info = parse_playlist_listing("Solo Mix\tid1\tOnly Track\tNA\n")

    assert info.is_playlist is True
    assert info.title == "Solo Mix"
    assert len(info.entries) == 1


def test_parse_yt_dlp_error_prefers_error_line() -> None:
    stderr = "WARNING: something\nERROR: [youtube] abc: Video unavailable\n"

    assert parse_yt_dlp_error(stderr) == "[youtube] abc: Video unavailable"
    assert parse_yt_dlp_error("just noise\nlast line") == "last line"
    assert parse_yt_dlp_error("   ") == "yt-dlp returned an error with no output."


def _script(tmp_path: Path, name: str, body: str) -> Path:
    script = tmp_path / name
    script.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    script.chmod(0o755)
    return script


@pytest.mark.skipif(sys.platform == "win32", reason="uses executable scripts")
def test_probe_duration_reads_format_duration(tmp_path: Path) -> None:
    ffprobe = _script(tmp_path, "ffprobe", "print('{\"format\": {\"duration\": \"12.5\"}}')\n")
    prober = MediaProber(ProcessRunner(), None, ffprobe)

    assert asyncio.run(prober.probe_duration(tmp_path / "clip.mp4")) == 12.5


@pytest.mark.skipif(sys.platform == "win32", reason="uses executable scripts")
def test_probe_duration_failure_raises_probe_error(tmp_path: Path) -> None:
    ffprobe = _script(tmp_path, "ffprobe", "print('{}')\n")
    prober = MediaProber(ProcessRunner(), None, ffprobe)

    with pytest.raises(ProbeError):
        asyncio.run(prober.probe_duration(tmp_path / "clip.mp4"))


@pytest.mark.skipif(sys.platform == "win32", reason="uses executable scripts")
def test_probe_playlist_passes_flat_listing_flags(tmp_path: Path) -> None:
    yt_dlp = _script(
        tmp_path,
        "yt-dlp",
        "import sys\n"
        "assert sys.argv[1:3] == ['--flat-playlist', '--print'], sys.argv\n"
        "assert sys.argv[-1] == 'https://example.com/list'\n"
        "print('Mix\\tid1\\tOne\\tNA')\n"
        "print('Mix\\tid2\\tTwo\\tNA')\n",
    )
    prober = MediaProber(ProcessRunner(), yt_dlp, None)

    info = asyncio.run(prober.probe_playlist("https://example.com/list"))

    assert info.is_playlist is True
    assert [entry.title for entry in info.entries] == ["One", "Two"]


@pytest.mark.skipif(sys.platform == "win32", reason="uses executable scripts")
def test_probe_playlist_error_uses_yt_dlp_message(tmp_path: Path) -> None:
    yt_dlp = _script(tmp_path, "yt-dlp", "import sys\nsys.stderr.write('ERROR: Private playlist\\n')\nsys.exit(1)\n")
    prober = MediaProber(ProcessRunner(), yt_dlp, None)

    with pytest.raises(ProbeError, match="Private playlist"):
        asyncio.run(prober.probe_playlist("https://example.com/list"))


def test_missing_tools_raise_probe_error() -> None:
    prober = MediaProber(ProcessRunner(), None, None)

    with pytest.raises(ProbeError):
        asyncio.run(prober.probe_playlist("https://example.com/list"))
    with pytest.raises(ProbeError):
        asyncio.run(prober.probe_duration(Path("clip.mp4")))
