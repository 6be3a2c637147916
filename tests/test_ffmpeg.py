"""Tests for FFmpeg output parsing and frame naming."""

import math

import numpy as np
import pytest

from slidedeck.ffmpeg import (
    FrameStats,
    build_average_hash,
    hash_distance_ratio,
    parse_showinfo_timestamp,
    parse_signalstats,
    probe_video_info,
    quality_from_stats,
)
from slidedeck.process import ProcessError
from slidedeck.slides import format_slide_filename, reconcile_timestamp


def test_parse_showinfo_timestamp():
    """Test pts_time extraction from showinfo lines."""
    line = (
        "[Parsed_showinfo_1 @ 0x55d5c] n:   0 pts: 730112 pts_time:8.12   "
        "duration:   512 duration_time:0.04 fmt:yuv420p"
    )
    assert parse_showinfo_timestamp(line) == pytest.approx(8.12)
    assert parse_showinfo_timestamp("frame=    1 fps=0.0 q=-0.0 size=N/A") is None
    assert parse_showinfo_timestamp("[Parsed_showinfo_1 @ 0x1] config in time_base") is None


def test_parse_signalstats_updates_stats():
    """Test luma statistics parsing from metadata=print lines."""
    stats = FrameStats()
    parse_signalstats("[Parsed_metadata_2 @ 0x55] lavfi.signalstats.YMIN=16", stats)
    parse_signalstats("[Parsed_metadata_2 @ 0x55] lavfi.signalstats.YMAX=235", stats)
    parse_signalstats("[Parsed_metadata_2 @ 0x55] lavfi.signalstats.YAVG=127.5", stats)
    parse_signalstats("[Parsed_metadata_2 @ 0x55] lavfi.signalstats.UAVG=128", stats)

    assert stats == FrameStats(ymin=16.0, ymax=235.0, yavg=127.5)


def test_quality_from_stats():
    assert quality_from_stats(FrameStats(ymin=16.0, ymax=None, yavg=100.0)) is None

    quality = quality_from_stats(FrameStats(ymin=16.0, ymax=235.0, yavg=127.5))
    assert quality is not None
    assert quality.brightness == pytest.approx(0.5)
    assert quality.contrast == pytest.approx(219 / 255)


def test_average_hash_and_distance():
    """Test hash bits and normalized Hamming distance."""
    first = build_average_hash(np.array([0, 0, 255, 255], dtype=np.uint8))
    second = build_average_hash(np.array([0, 255, 255, 255], dtype=np.uint8))

    assert first.tolist() == [0, 0, 1, 1]
    assert second.tolist() == [0, 1, 1, 1]
    assert hash_distance_ratio(first, second) == pytest.approx(0.25)
    assert hash_distance_ratio(first, first) == 0.0
    assert hash_distance_ratio(np.array([], dtype=np.uint8), first) == 0.0


def test_format_slide_filename():
    """Test slide filename formatting with and without timestamps."""
    assert format_slide_filename(1) == "slide_0001.png"
    assert format_slide_filename(42) == "slide_0042.png"
    assert format_slide_filename(3, 42.5) == "slide_0003_42.50s.png"
    assert format_slide_filename(12, 0.0) == "slide_0012_0.00s.png"


@pytest.mark.parametrize(
    "requested,reported,seek_base,expected",
    [
        (10.0, None, 2.0, 10.0),
        (10.0, -1.0, 2.0, 10.0),
        (10.0, 2.0, None, 12.0),
        (10.0, 9.8, 0.0, 9.8),
        (100.0, 8.1, 92.0, 100.1),
        (100.0, 99.9, 92.0, 99.9),
        (math.nan, 3.0, 1.0, 0.0),
    ],
)
def test_reconcile_timestamp(requested, reported, seek_base, expected):
    assert reconcile_timestamp(requested, reported, seek_base) == pytest.approx(expected)


def test_probe_video_info_without_ffprobe():
    info = probe_video_info("/videos/talk.mp4", None, 10.0)
    assert info.duration_seconds is None
    assert info.width is None


def test_probe_video_info_parses_streams(monkeypatch):
    """Test ffprobe JSON parsing with stream and format durations."""
    from slidedeck import ffmpeg
    from slidedeck.process import ProcessResult

    payload = (
        b'{"streams": [{"codec_type": "audio", "duration": "620.0"},'
        b' {"codec_type": "video", "width": 1280, "height": 720, "duration": "615.4"}],'
        b' "format": {"duration": "616.0"}}'
    )

    def fake_run_process(cmd, **kwargs):
        assert cmd[0] == "/opt/bin/ffprobe"
        return ProcessResult(returncode=0, stdout=payload, stderr_tail="")

    monkeypatch.setattr(ffmpeg, "run_process", fake_run_process)
    info = probe_video_info("/videos/talk.mp4", "/opt/bin/ffprobe", 10.0)

    assert info.duration_seconds == pytest.approx(615.4)
    assert info.width == 1280
    assert info.height == 720


def test_probe_video_info_failure_is_advisory(monkeypatch):
    from slidedeck import ffmpeg

    def failing_run_process(cmd, **kwargs):
        raise ProcessError("ffprobe exited with code 1", "ffprobe", returncode=1)

    monkeypatch.setattr(ffmpeg, "run_process", failing_run_process)
    info = probe_video_info("/videos/broken.mp4", "/opt/bin/ffprobe", 10.0)
    assert info.duration_seconds is None
