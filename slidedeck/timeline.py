"""Timestamp selection: interval grid, scene snapping, spacing and caps.

Everything here is pure except the two post-extraction filters, which delete
the image files of the slides they drop.
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from slidedeck.errors import NoSlidesDetectedError
from slidedeck.models import SceneSegment, SlideImage

logger = logging.getLogger(__name__)

GRID_SECONDS_PER_SLIDE = 180
GRID_MIN_TARGETS = 6
GRID_MAX_TARGETS = 20
SCENE_DEDUP_SECONDS = 0.05


@dataclass(frozen=True)
class IntervalGrid:
    """Evenly spaced target timestamps covering the video."""

    timestamps: list[float]
    interval_seconds: float


@dataclass(frozen=True)
class SelectedTimestamp:
    """A chosen slide timestamp with the scene segment it falls in."""

    index: int
    timestamp: float
    segment: Optional[SceneSegment]


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _finite_sorted(values: Sequence[float]) -> list[float]:
    return sorted(v for v in values if math.isfinite(v))


def build_interval_grid(
    duration_seconds: Optional[float],
    min_duration_seconds: float,
    max_slides: int,
) -> Optional[IntervalGrid]:
    """Build roughly one target every three minutes, 6-20 targets, capped by max_slides.

    Returns:
        The grid, or None when the duration is unknown.
    """
    if not duration_seconds or duration_seconds <= 0:
        return None
    max_count = max(1, math.floor(max_slides))
    target_count = min(
        max_count,
        int(_clamp(math.floor(duration_seconds / GRID_SECONDS_PER_SLIDE + 0.5),
                   GRID_MIN_TARGETS, GRID_MAX_TARGETS)),
    )
    interval = max(min_duration_seconds, duration_seconds / target_count)
    if not math.isfinite(interval) or interval <= 0:
        return None

    timestamps = []
    t = 0.0
    while t < duration_seconds:
        timestamps.append(t)
        t += interval
    return IntervalGrid(timestamps=timestamps, interval_seconds=interval)


def filter_by_min_duration(timestamps: Sequence[float], min_duration_seconds: float) -> list[float]:
    """Sort and keep timestamps at least ``min_duration_seconds`` after the last kept one."""
    if min_duration_seconds <= 0:
        return list(timestamps)
    kept: list[float] = []
    last = -math.inf
    for ts in _finite_sorted(timestamps):
        if ts - last >= min_duration_seconds:
            kept.append(ts)
            last = ts
    return kept


def merge_timestamps(
    scene_timestamps: Sequence[float],
    grid_timestamps: Sequence[float],
    min_duration_seconds: float,
) -> list[float]:
    """Union scenes and grid points, keeping the earliest of each tight cluster."""
    min_gap = max(0.1, min_duration_seconds * 0.5)
    merged: list[float] = []
    for ts in _finite_sorted([*scene_timestamps, *grid_timestamps]):
        if not merged or ts - merged[-1] >= min_gap:
            merged.append(ts)
    return merged


def snap_to_scenes(
    targets: Sequence[float],
    scene_timestamps: Sequence[float],
    min_duration_seconds: float,
    interval_seconds: float,
) -> list[float]:
    """Move each grid target to the nearest scene change within a window.

    The window is 35% of the interval, clamped to 2-10s. A snapped candidate
    that would land closer than ``min_duration_seconds`` to the previous pick
    falls back to the raw target.
    """
    target_list = _finite_sorted(targets)
    if not target_list:
        return []

    scenes = filter_by_min_duration(scene_timestamps, max(0.1, min_duration_seconds * 0.25))
    window = _clamp(interval_seconds * 0.35, 2, 10)

    picked: list[float] = []
    last_picked = -math.inf
    scene_index = 0
    for target in target_list:
        while scene_index < len(scenes) and scenes[scene_index] < target - window:
            scene_index += 1

        best: Optional[float] = None
        best_diff = math.inf
        for candidate in scenes[scene_index:]:
            if candidate > target + window:
                break
            diff = abs(candidate - target)
            if diff < best_diff:
                best = candidate
                best_diff = diff

        candidate = target if best is None else best
        chosen = candidate if candidate - last_picked >= min_duration_seconds else target
        picked.append(chosen)
        last_picked = chosen
    return picked


def build_scene_segments(
    scene_timestamps: Sequence[float],
    duration_seconds: Optional[float],
) -> list[SceneSegment]:
    """Turn scene cuts into ``[start, end)`` segments covering the whole video.

    Cuts closer than 50ms to the previous one are merged. The final segment
    is open-ended when the duration is unknown.
    """
    deduped: list[float] = []
    for ts in _finite_sorted([t for t in scene_timestamps if t >= 0]):
        if not deduped or ts - deduped[-1] > SCENE_DEDUP_SECONDS:
            deduped.append(ts)

    starts = [0.0, *deduped]
    ends: list[Optional[float]] = [*deduped, duration_seconds]
    segments = []
    for start, raw_end in zip(starts, ends):
        end = raw_end if raw_end is not None and math.isfinite(raw_end) and raw_end > start else None
        segments.append(SceneSegment(start=start, end=end))
    return segments


def find_segment(segments: Sequence[SceneSegment], timestamp: float) -> Optional[SceneSegment]:
    """Return the segment containing ``timestamp``, else the last segment."""
    if not segments:
        return None
    for segment in segments:
        if timestamp >= segment.start and (segment.end is None or timestamp < segment.end):
            return segment
    return segments[-1]


def segment_padding(segment: Optional[SceneSegment]) -> float:
    """Padding kept clear of segment edges: 8% of the length, within 0.2-1.5s."""
    if segment is None or segment.end is None:
        return 0.0
    length = max(0.0, segment.end - segment.start)
    if length <= 0:
        return 0.0
    return min(1.5, max(0.2, length * 0.08))


def adjust_within_segment(timestamp: float, segment: Optional[SceneSegment]) -> float:
    """Keep a timestamp away from scene transitions at both ends of its segment."""
    if segment is None:
        return timestamp
    start = max(0.0, segment.start)
    end = segment.end
    if end is None or not math.isfinite(end) or end <= start:
        return max(timestamp, start)
    length = end - start
    padding = min(1.5, max(0.2, length * 0.08))
    if length <= padding * 2:
        return start + length * 0.5
    return _clamp(timestamp, start + padding, end - padding)


def select_timestamps(
    scene_timestamps: Sequence[float],
    duration_seconds: Optional[float],
    min_duration_seconds: float,
    max_slides: int,
    warnings: list[str],
) -> list[SelectedTimestamp]:
    """Pick the final, spaced, capped slide timestamps.

    Raises:
        NoSlidesDetectedError: If neither scenes nor a grid produced a candidate.
    """
    grid = build_interval_grid(duration_seconds, min_duration_seconds, max_slides)
    merged = merge_timestamps(
        scene_timestamps, grid.timestamps if grid else [], min_duration_seconds
    )
    if not merged:
        raise NoSlidesDetectedError("No slides detected; try adjusting slide extraction settings.")

    segments = build_scene_segments(scene_timestamps, duration_seconds)
    if grid is not None and grid.timestamps:
        selected = snap_to_scenes(
            grid.timestamps, scene_timestamps, min_duration_seconds, grid.interval_seconds
        )
    else:
        selected = merged
    spaced = filter_by_min_duration(selected, min_duration_seconds)

    placeholders = []
    owning_segments = []
    for index, timestamp in enumerate(spaced, start=1):
        segment = find_segment(segments, timestamp)
        owning_segments.append(segment)
        placeholders.append(SlideImage(
            index=index,
            timestamp=adjust_within_segment(timestamp, segment),
            image_path="",
        ))

    capped = apply_max_slides_cap(placeholders, max_slides, warnings)
    return [
        SelectedTimestamp(index=slide.index, timestamp=slide.timestamp, segment=segment)
        for slide, segment in zip(capped, owning_segments)
    ]


def _remove_image(image_path: str) -> None:
    if not image_path:
        return
    try:
        Path(image_path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove {image_path}: {e}")


def apply_max_slides_cap(
    slides: Sequence[SlideImage],
    max_slides: int,
    warnings: list[str],
) -> list[SlideImage]:
    """Keep the first ``max_slides`` slides, delete the rest, re-index from 1."""
    if max_slides <= 0 or len(slides) <= max_slides:
        return list(slides)
    for slide in slides[max_slides:]:
        _remove_image(slide.image_path)
    _warn(warnings, f"Trimmed slides to max {max_slides}")
    return [
        slide.with_changes(index=index)
        for index, slide in enumerate(slides[:max_slides], start=1)
    ]


def apply_min_duration_filter(
    slides: Sequence[SlideImage],
    min_duration_seconds: float,
    warnings: list[str],
) -> list[SlideImage]:
    """Drop slides whose reconciled timestamps ended up too close together."""
    if min_duration_seconds <= 0:
        ordered = sorted(slides, key=lambda s: s.timestamp)
        return [slide.with_changes(index=index) for index, slide in enumerate(ordered, start=1)]
    kept: list[SlideImage] = []
    last = -math.inf
    for slide in sorted(slides, key=lambda s: s.timestamp):
        if slide.timestamp - last >= min_duration_seconds:
            kept.append(slide)
            last = slide.timestamp
        else:
            _remove_image(slide.image_path)
    if len(kept) < len(slides):
        _warn(warnings, f"Filtered {len(slides) - len(kept)} slides by min duration")
    return [slide.with_changes(index=index) for index, slide in enumerate(kept, start=1)]


def _warn(warnings: list[str], message: str) -> None:
    logger.warning(message)
    warnings.append(message)
