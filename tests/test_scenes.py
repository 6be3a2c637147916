"""Tests for threshold calibration and segmented scene detection."""

import pytest

from slidedeck import scenes
from slidedeck.models import AutoTune, VideoInfo
from slidedeck.scenes import (
    ScanSegment,
    build_calibration_sample_timestamps,
    build_segments,
    compute_diff_stats,
    detect_scenes,
    detect_slide_timestamps,
    round_threshold,
    threshold_from_diffs,
)


def test_round_threshold_half_up():
    assert round_threshold(0.125) == pytest.approx(0.13)
    assert round_threshold(0.15) == pytest.approx(0.15)
    assert round_threshold(0.044) == pytest.approx(0.04)


def test_build_calibration_sample_timestamps():
    assert build_calibration_sample_timestamps(None, 8) == [0.0]

    samples = build_calibration_sample_timestamps(100.0, 8)
    assert len(samples) == 8
    assert samples[0] == pytest.approx(5.0)
    assert samples[-1] == pytest.approx(95.0)

    assert build_calibration_sample_timestamps(100.0, 1) == pytest.approx([5.0, 50.0, 95.0])
    assert len(build_calibration_sample_timestamps(100.0, 50)) == 12


def test_compute_diff_stats_nearest_rank():
    stats = compute_diff_stats([0.10, 0.02, 0.40, 0.05, 0.08])
    assert stats.median == pytest.approx(0.08)
    assert stats.p75 == pytest.approx(0.10)
    assert stats.p90 == pytest.approx(0.40)
    assert stats.max == pytest.approx(0.40)


@pytest.mark.parametrize(
    "diffs,expected_threshold,expected_confidence",
    [
        ([], 0.05, 0.0),
        ([0.5, 0.5, 0.5], 0.05, 1.0),
        ([0.01, 0.02, 0.01], 0.05, 0.08),
        ([0.02, 0.05, 0.08, 0.10, 0.40], 0.10, 0.40),
        ([0.2], 0.05, 0.8),
    ],
)
def test_threshold_from_diffs(diffs, expected_threshold, expected_confidence):
    threshold, confidence = threshold_from_diffs(diffs)
    assert threshold == pytest.approx(expected_threshold)
    assert confidence == pytest.approx(expected_confidence)
    assert 0.05 <= threshold <= 0.3


def test_build_segments():
    """Segments tile the video and never exceed the worker count."""
    assert build_segments(None, 8) == [ScanSegment(0.0, 0.0)]
    assert build_segments(100.0, 1) == [ScanSegment(0.0, 100.0)]

    five = build_segments(300.0, 8)
    assert len(five) == 5
    assert [s.start for s in five] == pytest.approx([0, 60, 120, 180, 240])

    eight = build_segments(1000.0, 8)
    assert len(eight) == 8
    assert sum(s.duration for s in eight) == pytest.approx(1000.0)
    assert eight[-1].start + eight[-1].duration == pytest.approx(1000.0)


@pytest.fixture
def fake_media(monkeypatch):
    """Two-minute video whose frames cannot be hashed."""
    monkeypatch.setattr(
        scenes, "probe_video_info", lambda *args, **kwargs: VideoInfo(duration_seconds=120.0)
    )
    monkeypatch.setattr(scenes, "hash_frame_at_timestamp", lambda *args, **kwargs: None)


def test_detect_retries_at_lower_threshold(fake_media, monkeypatch):
    calls = []

    def fake_detect(ffmpeg_path, input_path, threshold, start, duration, timeout):
        calls.append((threshold, start))
        return [start + 10.0] if threshold < 0.2 else []

    monkeypatch.setattr(scenes, "detect_segment_scenes", fake_detect)
    progress = []

    detection = detect_slide_timestamps(
        "ffmpeg", "ffprobe", "/videos/talk.mp4",
        scene_threshold=0.3,
        auto_tune_threshold=False,
        workers=4,
        sample_count=8,
        timeout=30.0,
        on_progress=lambda done, total: progress.append((done, total)),
    )

    assert detection.timestamps == pytest.approx([10.0, 70.0])
    assert detection.threshold == pytest.approx(0.15)
    assert detection.auto_tune == AutoTune.disabled(0.3)
    assert detection.duration_seconds == 120.0
    assert detection.warnings == [
        "Scene detection retry used lower threshold 0.15 after zero detections"
    ]
    assert sorted(calls) == [(0.15, 0.0), (0.15, 60.0), (0.3, 0.0), (0.3, 60.0)]
    assert progress[-1] == (2, 2)


def test_detect_uses_calibrated_threshold(fake_media, monkeypatch):
    seen = []

    def fake_detect(ffmpeg_path, input_path, threshold, start, duration, timeout):
        seen.append(threshold)
        return [start + 12.0]

    monkeypatch.setattr(scenes, "detect_segment_scenes", fake_detect)
    logs = []

    detection = detect_slide_timestamps(
        "ffmpeg", None, "/videos/talk.mp4",
        scene_threshold=0.3,
        auto_tune_threshold=True,
        workers=1,
        sample_count=8,
        timeout=30.0,
        log=logs.append,
    )

    assert seen == [0.05]
    assert detection.timestamps == [12.0]
    assert detection.auto_tune == AutoTune(
        enabled=True, chosen_threshold=0.05, confidence=0.0, strategy="hash"
    )
    assert detection.warnings == ["Auto-tuned scene threshold from 0.3 to 0.05"]
    assert any(message.startswith("calibration samples=8") for message in logs)


@pytest.mark.parametrize("workers", [2, 3, 4, 8])
def test_segmented_detection_matches_unsplit(monkeypatch, workers):
    cuts = [3.2, 59.9, 60.0, 61.4, 118.75, 150.0, 179.99, 240.5, 301.0, 455.25, 599.5]

    def fake_detect(ffmpeg_path, input_path, threshold, start, duration, timeout):
        return [t for t in reversed(cuts) if start <= t < start + duration]

    monkeypatch.setattr(scenes, "detect_segment_scenes", fake_detect)

    unsplit = detect_scenes("ffmpeg", "/videos/talk.mp4", 0.3, [ScanSegment(0.0, 600.0)], 1, 30.0)
    segments = build_segments(600.0, workers)
    split = detect_scenes("ffmpeg", "/videos/talk.mp4", 0.3, segments, workers, 30.0)

    assert len(segments) == min(workers, 10)
    assert split == unsplit == cuts
