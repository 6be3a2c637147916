"""Slide frame extraction at selected timestamps.

Frames are extracted concurrently with a two-stage seek, the reported
presentation timestamp is reconciled with the requested one, and frames that
came out dark or flat are replaced by a nearby, better-lit candidate.
"""

import logging
import math
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

import cv2

from slidedeck.constants import (
    FIRST_SLIDE_MAX_TIMESTAMP,
    FIRST_SLIDE_MIN_BRIGHTNESS,
    FIRST_SLIDE_MIN_CONTRAST,
    FIRST_SLIDE_MIN_IMPROVE_DELTA,
    FRAME_ADJUST_RANGE_SECONDS,
    FRAME_ADJUST_STEP_SECONDS,
    FRAME_MIN_BRIGHTNESS,
    FRAME_MIN_CONTRAST,
    IMAGE_FORMAT,
    MAX_REFINE_WORKERS,
    MIN_IMPROVE_DELTA,
    REFINE_CANDIDATE_TIMEOUT,
    SLIDE_FILENAME_PREFIX,
)
from slidedeck.ffmpeg import (
    ExtractedFrame,
    FFmpegError,
    FrameQuality,
    extract_frame,
    quality_from_stats,
)
from slidedeck.models import SceneSegment, SlideImage
from slidedeck.pool import ProgressCallback, run_with_concurrency
from slidedeck.process import ProcessError
from slidedeck.timeline import segment_padding

logger = logging.getLogger(__name__)

THUMBNAIL_PROGRESS_START = 90
THUMBNAIL_PROGRESS_END = 96
_PTS_LOG_DELTA_SECONDS = 0.25

LogCallback = Callable[[str], None]


@dataclass
class _Frame:
    slide: SlideImage
    requested_timestamp: float
    quality: Optional[FrameQuality]
    segment: Optional[SceneSegment]


def format_slide_filename(index: int, timestamp: Optional[float] = None) -> str:
    """Format the slide image filename.

    Args:
        index: 1-based slide index.
        timestamp: If given, appended as ``_<seconds:.2f>s``.

    Returns:
        A name like ``slide_0003.png`` or ``slide_0003_42.50s.png``.
    """
    base = f"{SLIDE_FILENAME_PREFIX}{index:04d}"
    if timestamp is not None:
        base = f"{base}_{timestamp:.2f}s"
    return f"{base}.{IMAGE_FORMAT}"


def reconcile_timestamp(
    requested: float,
    reported: Optional[float],
    seek_base: Optional[float] = None,
) -> float:
    """Map the decoder's reported frame time back onto the source timeline.

    Depending on the input, ``pts_time`` is either relative to the input
    seek point or absolute. With no positive seek base, small values (<= 5s)
    are treated as offsets from the request. Otherwise whichever reading is
    closer to the request wins, ties going to the relative reading.
    """
    if not math.isfinite(requested):
        return 0.0
    if reported is None or not math.isfinite(reported) or reported < 0:
        return requested
    if seek_base is None or not math.isfinite(seek_base) or seek_base <= 0:
        if reported <= 5:
            return requested + reported
        return reported

    relative = seek_base + reported
    if abs(relative - requested) <= abs(reported - requested):
        return relative
    return reported


def is_first_slide_candidate(index: int, timestamp: float) -> bool:
    return index == 1 and timestamp < FIRST_SLIDE_MAX_TIMESTAMP


def needs_refinement(index: int, timestamp: float, quality: FrameQuality) -> bool:
    """True for dark or low-contrast frames; the opening slide has a stricter bar."""
    if quality.brightness < FRAME_MIN_BRIGHTNESS or quality.contrast < FRAME_MIN_CONTRAST:
        return True
    if is_first_slide_candidate(index, timestamp):
        return (
            quality.brightness < FIRST_SLIDE_MIN_BRIGHTNESS
            or quality.contrast < FIRST_SLIDE_MIN_CONTRAST
        )
    return False


def score_quality(quality: FrameQuality, delta_seconds: float) -> float:
    """Brightness-weighted score with a small penalty for drifting from the target."""
    penalty = min(1.0, abs(delta_seconds) / FRAME_ADJUST_RANGE_SECONDS) * 0.05
    return quality.brightness * 0.55 + quality.contrast * 0.45 - penalty


def refinement_offsets(max_range: float) -> list[float]:
    """Candidate offsets +2, -2, +4, -4, ... up to ``max_range`` seconds."""
    offsets: list[float] = []
    offset = FRAME_ADJUST_STEP_SECONDS
    while offset <= max_range:
        offsets.extend([offset, -offset])
        offset += FRAME_ADJUST_STEP_SECONDS
    return offsets


def measure_image_quality(image_path: Path) -> Optional[FrameQuality]:
    """Measure brightness and contrast of a written frame with OpenCV.

    Used when the decoder did not report ``signalstats``.
    """
    image = cv2.imread(str(image_path), cv2.IMREAD_GRAYSCALE)
    if image is None or image.size == 0:
        return None
    brightness = float(image.mean()) / 255
    contrast = (float(image.max()) - float(image.min())) / 255
    return FrameQuality(
        brightness=min(1.0, max(0.0, brightness)),
        contrast=min(1.0, max(0.0, contrast)),
    )


def _frame_quality(frame: ExtractedFrame) -> Optional[FrameQuality]:
    quality = quality_from_stats(frame.stats)
    if quality is None:
        quality = measure_image_quality(frame.output_path)
    return quality


def _move_over(source: Path, target: Path) -> None:
    try:
        source.rename(target)
    except FileExistsError:
        target.unlink(missing_ok=True)
        source.rename(target)


def rename_slides_with_timestamps(
    slides: Sequence[SlideImage],
    slides_dir: Path,
) -> list[SlideImage]:
    """Rename each image to ``slide_NNNN_<t>s.png`` using its final index and timestamp."""
    renamed = []
    for slide in slides:
        next_path = slides_dir / format_slide_filename(slide.index, slide.timestamp)
        current = Path(slide.image_path)
        if current != next_path:
            try:
                _move_over(current, next_path)
            except OSError:
                shutil.copyfile(current, next_path)
                current.unlink(missing_ok=True)
        renamed.append(slide.with_changes(image_path=str(next_path)))
    return renamed


def _now_version() -> int:
    return int(time.time() * 1000)


def extract_frames(
    ffmpeg_path: str,
    input_path: str,
    output_dir: Path,
    timestamps: Sequence[float],
    segments: Sequence[Optional[SceneSegment]],
    duration_seconds: Optional[float],
    timeout: float,
    workers: int,
    warnings: list[str],
    on_progress: Optional[ProgressCallback] = None,
    on_status: Optional[Callable[[str], None]] = None,
    on_slide: Optional[Callable[[SlideImage], None]] = None,
    log: Optional[LogCallback] = None,
) -> list[SlideImage]:
    """Extract one frame per timestamp and refine poorly lit ones.

    A frame that fails to extract is dropped with a warning; the remaining
    slides are re-indexed 1..N in timestamp order.

    Args:
        ffmpeg_path: Resolved ffmpeg executable.
        input_path: Local file or stream URL.
        output_dir: Slides directory; frames land as ``slide_NNNN.png``.
        timestamps: Target timestamps, index-aligned with ``segments``.
        segments: Scene segment owning each timestamp, or None.
        duration_seconds: Video duration, if known.
        timeout: Per-frame ffmpeg timeout in seconds.
        workers: Extraction concurrency (1-16).
        warnings: Run warnings, appended to for dropped frames.
        on_progress: Frame completion callback.
        on_status: Receives ``Slides: improving thumbnails P%`` lines.
        on_slide: Receives each slide as soon as its image exists or changes.
        log: Diagnostic message sink.

    Returns:
        Extracted slides ordered by index.
    """
    upper = (
        max(0.0, duration_seconds - 0.1)
        if duration_seconds and duration_seconds > 0
        else math.inf
    )

    def clamp_timestamp(value: float) -> float:
        return max(0.0, min(upper, value))

    def emit_log(message: str) -> None:
        logger.debug(message)
        if log is not None:
            log(message)

    def safe_target(timestamp: float, segment: Optional[SceneSegment]) -> float:
        clamped = clamp_timestamp(timestamp)
        if segment is None:
            return clamped
        start = max(0.0, segment.start)
        padding = segment_padding(segment)
        if segment.end is None:
            return max(start + padding, clamped)
        if segment.end - padding <= start + padding:
            return clamp_timestamp(start + (segment.end - start) * 0.5)
        return max(start + padding, min(segment.end - padding, clamped))

    def extract_task(position: int, timestamp: float) -> Optional[_Frame]:
        index = position + 1
        segment = segments[position] if position < len(segments) else None
        target = safe_target(timestamp, segment)
        output_path = output_dir / format_slide_filename(index)
        try:
            extracted = extract_frame(ffmpeg_path, input_path, target, output_path, timeout)
        except (ProcessError, FFmpegError) as e:
            message = f"Failed to extract slide {index} at {target:.2f}s: {e}"
            logger.warning(message)
            warnings.append(message)
            return None

        resolved = reconcile_timestamp(target, extracted.actual_timestamp, extracted.seek_base)
        delta = resolved - target
        if abs(delta) >= _PTS_LOG_DELTA_SECONDS:
            actual = (
                f"{extracted.actual_timestamp:.2f}"
                if extracted.actual_timestamp is not None
                else "n/a"
            )
            emit_log(
                f"frame pts slide={index} req={target:.2f}s actual={actual}s "
                f"base={extracted.seek_base:.2f}s -> {resolved:.2f}s delta={delta:.2f}s"
            )

        slide = SlideImage(
            index=index,
            timestamp=resolved,
            image_path=str(output_path),
            image_version=_now_version(),
        )
        if on_slide is not None:
            on_slide(slide.with_changes())
        return _Frame(
            slide=slide,
            requested_timestamp=target,
            quality=_frame_quality(extracted),
            segment=segment,
        )

    started_at = time.monotonic()
    tasks = [
        (lambda position=position, timestamp=timestamp: extract_task(position, timestamp))
        for position, timestamp in enumerate(timestamps)
    ]
    frames = [frame for frame in run_with_concurrency(tasks, workers, on_progress) if frame]
    frames.sort(key=lambda frame: frame.slide.index)

    def refine_task(frame: _Frame, quality: FrameQuality) -> None:
        slide = frame.slide
        first_slide = is_first_slide_candidate(slide.index, slide.timestamp)
        segment = frame.segment
        padding = segment_padding(segment)
        if segment is not None:
            min_ts = clamp_timestamp(segment.start + padding)
            max_ts = (
                clamp_timestamp(segment.end - padding)
                if segment.end is not None
                else clamp_timestamp(slide.timestamp + FRAME_ADJUST_RANGE_SECONDS)
            )
        else:
            min_ts = clamp_timestamp(slide.timestamp - FRAME_ADJUST_RANGE_SECONDS)
            max_ts = clamp_timestamp(slide.timestamp + FRAME_ADJUST_RANGE_SECONDS)
        if max_ts <= min_ts:
            return

        base_timestamp = max(min_ts, min(max_ts, slide.timestamp))
        max_range = min(FRAME_ADJUST_RANGE_SECONDS, max_ts - min_ts)
        if not math.isfinite(max_range) or max_range < FRAME_ADJUST_STEP_SECONDS:
            return

        best_quality = quality
        best_score = score_quality(quality, 0)
        selected_timestamp = base_timestamp
        replaced = False
        min_improve = FIRST_SLIDE_MIN_IMPROVE_DELTA if first_slide else MIN_IMPROVE_DELTA
        temp_path = output_dir / (
            f"{SLIDE_FILENAME_PREFIX}{slide.index:04d}_alt.{IMAGE_FORMAT}"
        )

        for offset in refinement_offsets(max_range):
            candidate_ts = max(min_ts, min(max_ts, base_timestamp + offset))
            if abs(candidate_ts - base_timestamp) < 0.01:
                continue
            try:
                candidate = extract_frame(
                    ffmpeg_path,
                    input_path,
                    candidate_ts,
                    temp_path,
                    min(timeout, REFINE_CANDIDATE_TIMEOUT),
                )
                candidate_quality = _frame_quality(candidate)
                if candidate_quality is None:
                    temp_path.unlink(missing_ok=True)
                    continue
                score = score_quality(candidate_quality, offset)
                if score > best_score + min_improve:
                    best_score = score
                    best_quality = candidate_quality
                    _move_over(temp_path, Path(slide.image_path))
                    replaced = True
                    selected_timestamp = reconcile_timestamp(
                        candidate_ts, candidate.actual_timestamp, candidate.seek_base
                    )
                else:
                    temp_path.unlink(missing_ok=True)
            except (ProcessError, FFmpegError, OSError) as e:
                logger.debug(f"Refinement candidate for slide {slide.index} failed: {e}")
                temp_path.unlink(missing_ok=True)

        if not replaced:
            return
        original_timestamp = slide.timestamp
        slide.timestamp = selected_timestamp
        slide.image_version = _now_version()
        if selected_timestamp != original_timestamp:
            emit_log(
                f"thumbnail adjust slide={slide.index} ts={original_timestamp:.2f}s -> "
                f"{selected_timestamp:.2f}s offset={selected_timestamp - original_timestamp:.2f}s "
                f"base={quality.brightness:.2f}/{quality.contrast:.2f} "
                f"best={best_quality.brightness:.2f}/{best_quality.contrast:.2f}"
            )
        if on_slide is not None:
            on_slide(slide.with_changes())

    refine_tasks = [
        (lambda frame=frame, quality=frame.quality: refine_task(frame, quality))
        for frame in frames
        if frame.quality is not None
        and needs_refinement(frame.slide.index, frame.slide.timestamp, frame.quality)
    ]
    if refine_tasks:
        refine_started_at = time.monotonic()
        if on_status is not None:
            on_status(f"Slides: improving thumbnails {THUMBNAIL_PROGRESS_START}%")
        emit_log(
            f"thumbnail adjust start count={len(refine_tasks)} "
            f"range=+/-{FRAME_ADJUST_RANGE_SECONDS:g}s step={FRAME_ADJUST_STEP_SECONDS:g}s"
        )

        def on_refine_progress(completed: int, total: int) -> None:
            ratio = completed / total if total else 0
            percent = round(
                THUMBNAIL_PROGRESS_START
                + ratio * (THUMBNAIL_PROGRESS_END - THUMBNAIL_PROGRESS_START)
            )
            if on_status is not None:
                on_status(f"Slides: improving thumbnails {percent}%")

        run_with_concurrency(
            refine_tasks, min(MAX_REFINE_WORKERS, workers), on_refine_progress
        )
        if on_status is not None:
            on_status(f"Slides: improving thumbnails {THUMBNAIL_PROGRESS_END}%")
        emit_log(
            f"thumbnail adjust done elapsedMs="
            f"{int(round((time.monotonic() - refine_started_at) * 1000))}"
        )

    emit_log(
        f"extract frame loop (count={len(timestamps)}, workers={workers}) elapsedMs="
        f"{int(round((time.monotonic() - started_at) * 1000))}"
    )
    # refinement may move a frame past its neighbour inside a shared segment
    frames.sort(key=lambda frame: (frame.slide.timestamp, frame.slide.index))
    logger.info(f"Extracted {len(frames)} slides to {output_dir}")
    return [
        frame.slide.with_changes(index=index)
        for index, frame in enumerate(frames, start=1)
    ]
