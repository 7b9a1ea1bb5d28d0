from __future__ import annotations

from pluck.progress import (
    ProgressThrottle,
    format_time,
    parse_conversion_progress,
    parse_download_progress,
    parse_elapsed_seconds,
    parse_percent,
    parse_time_string,
)


def test_parse_percent_reads_first_percentage() -> None:
    assert parse_percent("download: 45.2% 5.2MiB/s 00:12") == 45.2
    assert parse_percent("[download] 100% of 3.00MiB") == 100.0
    assert parse_percent("no progress here") is None


def test_parse_download_progress_template_line() -> None:
    update = parse_download_progress("download: 45.2% 5.2MiB/s 00:12")

    assert update is not None
    assert abs(update.fraction - 0.452) < 1e-9
    assert update.message == "Downloading: 45.2% 5.2MiB/s 00:12"


def test_parse_download_progress_native_line() -> None:
    update = parse_download_progress("[download]  12.5% of ~10.00MiB at 1.00MiB/s ETA 00:09")

    assert update is not None
    assert update.fraction == 0.125
    assert update.message == "Downloading: 12.5%"


def test_parse_download_progress_ignores_other_lines() -> None:
    assert parse_download_progress("[download] Destination: /tmp/a.mp4") is None
    assert parse_download_progress("[Merger] Merging formats into \"/tmp/a.mp4\"") is None
    assert parse_download_progress("download: NA") is None


def test_time_helpers() -> None:
    assert parse_time_string("01:02:03.5") == 3723.5
    assert parse_time_string("N/A") is None
    assert format_time(59) == "0:59"
    assert format_time(125) == "2:05"
    assert format_time(3723) == "1:02:03"


def test_parse_elapsed_seconds_keys() -> None:
    assert parse_elapsed_seconds("out_time_us=2500000") == 2.5
    assert parse_elapsed_seconds("out_time_ms=2500000") == 2.5
    assert parse_elapsed_seconds("out_time=00:00:02.500000") == 2.5
    assert parse_elapsed_seconds("out_time_us=N/A") is None
    assert parse_elapsed_seconds("bitrate=128.0kbits/s") is None
    assert parse_elapsed_seconds("garbage") is None


def test_parse_conversion_progress_against_duration() -> None:
    update = parse_conversion_progress("out_time_us=30000000", 120.0)

    assert update is not None
    assert update.fraction == 0.25
    assert update.message == "Converting: 0:30 / 2:00"


def test_parse_conversion_progress_clamps_overrun() -> None:
    update = parse_conversion_progress("out_time=00:02:10.00", 120.0)

    assert update is not None
    assert update.fraction == 1.0


def test_parse_conversion_progress_end_marker() -> None:
    update = parse_conversion_progress("progress=end", 0.0)

    assert update is not None
    assert update.fraction == 1.0
    assert update.message == "Conversion complete"


def test_parse_conversion_progress_unknown_duration_keeps_fraction() -> None:
    update = parse_conversion_progress("out_time_us=65000000", 0.0)

    assert update is not None
    assert update.fraction is None
    assert update.message == "Converting: 1:05"


def test_parse_conversion_progress_ignores_unrelated_keys() -> None:
    assert parse_conversion_progress("frame=120", 60.0) is None
    assert parse_conversion_progress("progress=continue", 60.0) is None


def test_throttle_lets_first_and_forced_updates_through() -> None:
    throttle = ProgressThrottle(interval=0.15)

    delivered = [t for t in (0.0, 0.05, 0.10, 0.151, 0.3) if throttle.should_emit(now=t)]
    forced = throttle.should_emit(force=True, now=0.31)

    assert delivered == [0.0, 0.151]
    assert forced is True


def test_throttle_uses_injected_clock() -> None:
    ticks = iter([10.0, 10.1, 10.2])
    throttle = ProgressThrottle(interval=0.15, clock=lambda: next(ticks))

    assert throttle.should_emit() is True
    assert throttle.should_emit() is False
    assert throttle.should_emit() is True


def test_timestamp_at_full_duration_formats_hours() -> None:
    update = parse_conversion_progress("out_time=01:02:03.500000", 3723.5)

    assert update is not None
    assert update.fraction == 1.0
    assert update.message == "Converting: 1:02:03 / 1:02:03"
