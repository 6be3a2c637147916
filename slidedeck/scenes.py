"""Self-calibrating scene detection over segmented ffmpeg scene scoring.

The scene threshold is tuned per video from perceptual-hash distances of a
few evenly spaced sample frames, then ffmpeg's ``scene`` score is evaluated
in parallel over contiguous time segments. When nothing is found, detection
is retried once at half the threshold.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from slidedeck.constants import (
    CALIBRATION_END_RATIO,
    CALIBRATION_START_RATIO,
    MAX_SCENE_THRESHOLD,
    MAX_SLIDES_SAMPLE_COUNT,
    MAX_SLIDES_WORKERS,
    MIN_SCENE_THRESHOLD,
    MIN_SLIDES_SAMPLE_COUNT,
    SCENE_SEGMENT_SECONDS,
    UNCALIBRATED_THRESHOLD,
)
from slidedeck.ffmpeg import (
    detect_segment_scenes,
    hash_distance_ratio,
    hash_frame_at_timestamp,
    probe_video_info,
)
from slidedeck.models import AutoTune
from slidedeck.pool import ProgressCallback, clamp_workers, run_with_concurrency

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]


@dataclass(frozen=True)
class DiffStats:
    """Nearest-rank percentiles of consecutive hash distances."""

    median: float
    p75: float
    p90: float
    max: float


@dataclass(frozen=True)
class ScanSegment:
    """A contiguous time range scanned by one ffmpeg process (0 = unbounded)."""

    start: float
    duration: float


@dataclass
class SceneDetection:
    """Scene boundaries plus how the threshold was chosen."""

    timestamps: list[float]
    auto_tune: AutoTune
    duration_seconds: Optional[float]
    threshold: float
    warnings: list[str] = field(default_factory=list)


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def round_threshold(value: float) -> float:
    """Round half up to two decimals, the precision thresholds are reported at."""
    return math.floor(value * 100 + 0.5) / 100


def build_calibration_sample_timestamps(
    duration_seconds: Optional[float],
    sample_count: int,
) -> list[float]:
    """Evenly spaced sample points across 5%-95% of the video.

    Unknown durations yield a single point at 0, which is too few to
    calibrate from.
    """
    if not duration_seconds or duration_seconds <= 0:
        return [0.0]
    count = max(MIN_SLIDES_SAMPLE_COUNT, min(MAX_SLIDES_SAMPLE_COUNT, round(sample_count)))
    upper = max(0.0, duration_seconds - 0.1)
    step = (CALIBRATION_END_RATIO - CALIBRATION_START_RATIO) / (count - 1)
    return [
        _clamp(duration_seconds * (CALIBRATION_START_RATIO + step * i), 0.0, upper)
        for i in range(count)
    ]


def compute_diff_stats(values: Sequence[float]) -> DiffStats:
    if not values:
        return DiffStats(median=0.0, p75=0.0, p90=0.0, max=0.0)
    ordered = sorted(values)
    last = len(ordered) - 1

    def at(rank: float) -> float:
        return ordered[min(last, max(0, math.floor(rank + 0.5)))]

    return DiffStats(
        median=at(last * 0.5),
        p75=at(last * 0.75),
        p90=at(last * 0.9),
        max=ordered[-1],
    )


def threshold_from_diffs(diffs: Sequence[float]) -> tuple[float, float]:
    """Derive a scene threshold and confidence from hash distance ratios.

    High-motion videos (p75 >= 0.12) get a low cap so real slide changes are
    not drowned out; near-static videos (p90 < 0.05) get the floor.

    Args:
        diffs: Hamming distance ratios between consecutive samples.

    Returns:
        ``(threshold, confidence)`` with threshold in [0.05, 0.3] and
        confidence in [0, 1].
    """
    stats = compute_diff_stats(diffs)
    threshold = round_threshold(max(stats.median * 0.15, stats.p75 * 0.2, stats.p90 * 0.25))
    if stats.p75 >= 0.12:
        threshold = min(threshold, MIN_SCENE_THRESHOLD)
    elif stats.p90 < 0.05:
        threshold = MIN_SCENE_THRESHOLD
    threshold = _clamp(threshold, MIN_SCENE_THRESHOLD, MAX_SCENE_THRESHOLD)

    if len(diffs) >= 2:
        confidence = _clamp(stats.p75 / 0.25, 0.0, 1.0)
    else:
        confidence = _clamp(stats.max / 0.25, 0.0, 1.0)
    return threshold, confidence


def calibrate_scene_threshold(
    ffmpeg_path: str,
    input_path: str,
    duration_seconds: Optional[float],
    sample_count: int,
    timeout: float,
    log: Optional[LogCallback] = None,
) -> tuple[float, float]:
    """Sample frames, hash them and derive a threshold for this video.

    Failed samples are skipped. Fewer than two sample points returns the
    uncalibrated default ``(0.2, 0.0)``.
    """
    timestamps = build_calibration_sample_timestamps(duration_seconds, sample_count)
    if len(timestamps) < 2:
        return UNCALIBRATED_THRESHOLD, 0.0

    hashes = []
    for timestamp in timestamps:
        frame_hash = hash_frame_at_timestamp(ffmpeg_path, input_path, timestamp, timeout)
        if frame_hash is not None:
            hashes.append(frame_hash)

    diffs = [hash_distance_ratio(prev, curr) for prev, curr in zip(hashes, hashes[1:])]
    threshold, confidence = threshold_from_diffs(diffs)

    stats = compute_diff_stats(diffs)
    message = (
        f"calibration samples={len(timestamps)} diffs={len(diffs)} "
        f"median={stats.median:.3f} p75={stats.p75:.3f} threshold={threshold}"
    )
    logger.debug(message)
    if log is not None:
        log(message)
    return threshold, confidence


def build_segments(duration_seconds: Optional[float], workers: int) -> list[ScanSegment]:
    """Split the video into at most ``workers`` segments of roughly 60s or more.

    The last segment absorbs the rounding remainder so segments tile
    ``[0, duration]`` exactly.
    """
    if not duration_seconds or duration_seconds <= 0 or workers <= 1:
        return [ScanSegment(start=0.0, duration=duration_seconds or 0.0)]

    count = min(
        clamp_workers(workers, MAX_SLIDES_WORKERS),
        math.ceil(duration_seconds / SCENE_SEGMENT_SECONDS),
    )
    length = duration_seconds / count
    segments = []
    for i in range(count):
        start = i * length
        segment_duration = duration_seconds - start if i == count - 1 else length
        segments.append(ScanSegment(start=start, duration=segment_duration))
    return segments


def detect_scenes(
    ffmpeg_path: str,
    input_path: str,
    threshold: float,
    segments: Sequence[ScanSegment],
    workers: int,
    timeout: float,
    on_progress: Optional[ProgressCallback] = None,
) -> list[float]:
    """Run scene scoring on every segment concurrently and merge the results."""
    used = list(segments) or [ScanSegment(start=0.0, duration=0.0)]
    tasks = [
        (lambda segment=segment: detect_segment_scenes(
            ffmpeg_path,
            input_path,
            threshold,
            segment.start,
            segment.duration,
            timeout,
        ))
        for segment in used
    ]
    results = run_with_concurrency(tasks, max(1, workers), on_progress)
    return sorted(ts for segment_timestamps in results for ts in segment_timestamps)


def detect_slide_timestamps(
    ffmpeg_path: str,
    ffprobe_path: Optional[str],
    input_path: str,
    scene_threshold: float,
    auto_tune_threshold: bool,
    workers: int,
    sample_count: int,
    timeout: float,
    on_progress: Optional[ProgressCallback] = None,
    log: Optional[LogCallback] = None,
) -> SceneDetection:
    """Probe, calibrate, detect and retry once at a lower threshold.

    Args:
        ffmpeg_path: Resolved ffmpeg executable.
        ffprobe_path: Resolved ffprobe executable, or None.
        input_path: Local file or stream URL.
        scene_threshold: Base threshold from settings.
        auto_tune_threshold: Use the calibrated threshold instead of the base.
        workers: Segment concurrency.
        sample_count: Calibration samples (3-12).
        timeout: Request timeout in seconds.
        on_progress: Segment completion callback.
        log: Diagnostic message sink.

    Returns:
        SceneDetection whose ``warnings`` the caller adds to the run.
    """
    warnings: list[str] = []

    def timing(label: str, started_at: float) -> None:
        message = f"{label} elapsedMs={int(round((time.monotonic() - started_at) * 1000))}"
        logger.debug(message)
        if log is not None:
            log(message)

    started_at = time.monotonic()
    info = probe_video_info(input_path, ffprobe_path, timeout)
    timing("ffprobe video info", started_at)

    calibrated, confidence = calibrate_scene_threshold(
        ffmpeg_path,
        input_path,
        info.duration_seconds,
        sample_count,
        timeout,
        log,
    )

    base = scene_threshold
    chosen = calibrated if auto_tune_threshold else base
    if auto_tune_threshold and chosen != base:
        warnings.append(f"Auto-tuned scene threshold from {base} to {chosen}")

    segments = build_segments(info.duration_seconds, workers)
    effective = chosen
    started_at = time.monotonic()
    timestamps = detect_scenes(
        ffmpeg_path, input_path, effective, segments, workers, timeout, on_progress
    )
    timing(f"scene detection base (threshold={effective}, segments={len(segments)})", started_at)

    if not timestamps:
        fallback = max(MIN_SCENE_THRESHOLD, round_threshold(effective * 0.5))
        if fallback != effective:
            started_at = time.monotonic()
            timestamps = detect_scenes(
                ffmpeg_path, input_path, fallback, segments, workers, timeout, on_progress
            )
            timing(
                f"scene detection retry (threshold={fallback}, segments={len(segments)})",
                started_at,
            )
            warnings.append(
                f"Scene detection retry used lower threshold {fallback} after zero detections"
            )
            if timestamps:
                effective = fallback

    if auto_tune_threshold:
        auto_tune = AutoTune(
            enabled=True,
            chosen_threshold=effective if timestamps else base,
            confidence=confidence,
            strategy="hash",
        )
    else:
        auto_tune = AutoTune.disabled(base)

    logger.info(f"Detected {len(timestamps)} scene changes (threshold={effective})")
    return SceneDetection(
        timestamps=timestamps,
        auto_tune=auto_tune,
        duration_seconds=info.duration_seconds,
        threshold=effective,
        warnings=warnings,
    )
