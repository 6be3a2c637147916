"""FFmpeg wrapper for probing, frame hashing, scene scoring and frame extraction."""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from slidedeck.constants import (
    FFMPEG_TIMEOUT_FALLBACK,
    FFPROBE_TIMEOUT,
    HASH_GRID_SIZE,
    SEEK_PAD_SECONDS,
)
from slidedeck.models import VideoInfo
from slidedeck.process import ProcessError, run_process

logger = logging.getLogger(__name__)

_PTS_TIME_PATTERN = re.compile(r"pts_time:(\d+\.?\d*)")
_SIGNALSTATS_PATTERN = re.compile(r"lavfi\.signalstats\.(YMIN|YMAX|YAVG)=(\d+(?:\.\d+)?)")
_HASH_PIXELS = HASH_GRID_SIZE * HASH_GRID_SIZE


class FFmpegError(Exception):
    """Raised when FFmpeg produced no usable output."""
    pass


@dataclass
class FrameStats:
    """Luma statistics reported by the ``signalstats`` filter (0-255)."""

    ymin: Optional[float] = None
    ymax: Optional[float] = None
    yavg: Optional[float] = None


@dataclass(frozen=True)
class FrameQuality:
    """Normalized brightness and contrast in [0, 1]."""

    brightness: float
    contrast: float


@dataclass
class ExtractedFrame:
    """Result of a single-frame extraction."""

    output_path: Path
    requested_timestamp: float
    seek_base: float
    actual_timestamp: Optional[float] = None
    stats: FrameStats = field(default_factory=FrameStats)


def parse_showinfo_timestamp(line: str) -> Optional[float]:
    """Return the ``pts_time`` of a ``showinfo`` stderr line, if any."""
    if "showinfo" not in line:
        return None
    match = _PTS_TIME_PATTERN.search(line)
    if not match:
        return None
    value = float(match.group(1))
    return value if math.isfinite(value) else None


def parse_signalstats(line: str, stats: FrameStats) -> None:
    """Update ``stats`` in place from a ``metadata=print`` stderr line."""
    if "lavfi.signalstats." not in line:
        return
    match = _SIGNALSTATS_PATTERN.search(line)
    if not match:
        return
    value = float(match.group(2))
    if not math.isfinite(value):
        return
    key = match.group(1)
    if key == "YMIN":
        stats.ymin = value
    elif key == "YMAX":
        stats.ymax = value
    else:
        stats.yavg = value


def quality_from_stats(stats: FrameStats) -> Optional[FrameQuality]:
    """Convert luma stats to quality, or None if any value is missing."""
    if stats.ymin is None or stats.ymax is None or stats.yavg is None:
        return None
    brightness = min(1.0, max(0.0, stats.yavg / 255))
    contrast = min(1.0, max(0.0, (stats.ymax - stats.ymin) / 255))
    return FrameQuality(brightness=brightness, contrast=contrast)


def _positive_number(value: object) -> Optional[float]:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def probe_video_info(
    input_path: str,
    ffprobe_path: Optional[str],
    timeout: float,
) -> VideoInfo:
    """Read duration and dimensions with ffprobe.

    Video stream duration wins over container duration. Any failure
    (missing ffprobe, bad JSON, timeout) yields an all-None VideoInfo.

    Args:
        input_path: Local file or stream URL.
        ffprobe_path: Resolved ffprobe executable, or None.
        timeout: Request timeout in seconds (capped at 30s).

    Returns:
        VideoInfo with whatever could be determined.
    """
    if not ffprobe_path:
        return VideoInfo()

    cmd = [
        ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        input_path,
    ]
    try:
        result = run_process(
            cmd,
            timeout=min(timeout, FFPROBE_TIMEOUT),
            label="ffprobe",
            capture_stdout=True,
        )
        parsed = json.loads(result.stdout.decode("utf-8", errors="replace"))
    except (ProcessError, ValueError) as e:
        logger.debug(f"ffprobe failed for {input_path}: {e}")
        return VideoInfo()

    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    for stream in parsed.get("streams") or []:
        if stream.get("codec_type") != "video":
            continue
        if width is None and isinstance(stream.get("width"), int):
            width = stream["width"]
        if height is None and isinstance(stream.get("height"), int):
            height = stream["height"]
        stream_duration = _positive_number(stream.get("duration"))
        if stream_duration is not None:
            duration = stream_duration

    if duration is None:
        duration = _positive_number((parsed.get("format") or {}).get("duration"))

    return VideoInfo(duration_seconds=duration, width=width, height=height)


def build_average_hash(pixels: np.ndarray) -> np.ndarray:
    """Average hash: one bit per pixel, set where the pixel is >= the mean."""
    values = np.asarray(pixels, dtype=np.float64)
    return (values >= values.mean()).astype(np.uint8)


def hash_distance_ratio(a: np.ndarray, b: np.ndarray) -> float:
    """Fraction of differing bits over the common length (0 for empty)."""
    length = min(len(a), len(b))
    if length == 0:
        return 0.0
    return float(np.count_nonzero(a[:length] != b[:length])) / length


def hash_frame_at_timestamp(
    ffmpeg_path: str,
    input_path: str,
    timestamp: float,
    timeout: float,
) -> Optional[np.ndarray]:
    """Decode one 32x32 grayscale frame and return its average hash.

    Returns:
        The hash bits, or None if decoding failed or produced too few bytes.
    """
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-ss", str(timestamp),
        "-i", input_path,
        "-frames:v", "1",
        "-vf", f"scale={HASH_GRID_SIZE}:{HASH_GRID_SIZE},format=gray",
        "-f", "rawvideo",
        "-pix_fmt", "gray",
        "-",
    ]
    try:
        result = run_process(cmd, timeout=timeout, label="ffmpeg", capture_stdout=True)
    except ProcessError as e:
        logger.debug(f"Hash sample at {timestamp:.2f}s failed: {e}")
        return None
    if len(result.stdout) < _HASH_PIXELS:
        return None
    pixels = np.frombuffer(result.stdout[:_HASH_PIXELS], dtype=np.uint8)
    return build_average_hash(pixels)


def detect_segment_scenes(
    ffmpeg_path: str,
    input_path: str,
    threshold: float,
    start: float,
    duration: float,
    timeout: float,
) -> list[float]:
    """Score scene changes within one segment and return absolute timestamps.

    Args:
        ffmpeg_path: Resolved ffmpeg executable.
        input_path: Local file or stream URL.
        threshold: ffmpeg scene score threshold.
        start: Segment start in seconds.
        duration: Segment length in seconds; 0 scans the whole input.
        timeout: Request timeout in seconds (floored at 300s).

    Returns:
        Scene change timestamps offset by ``start``, in decode order.
    """
    cmd = [ffmpeg_path, "-hide_banner"]
    if duration > 0:
        cmd += ["-ss", str(start), "-t", str(duration)]
    cmd += [
        "-i", input_path,
        "-vf", f"select='gt(scene,{threshold})',showinfo",
        "-fps_mode", "vfr",
        "-an",
        "-sn",
        "-f", "null",
        "-",
    ]

    timestamps: list[float] = []

    def on_line(line: str) -> None:
        ts = parse_showinfo_timestamp(line)
        if ts is not None:
            timestamps.append(ts + start)

    run_process(
        cmd,
        timeout=max(timeout, FFMPEG_TIMEOUT_FALLBACK),
        label="ffmpeg",
        on_stderr_line=on_line,
    )
    return timestamps


def extract_frame(
    ffmpeg_path: str,
    input_path: str,
    timestamp: float,
    output_path: Path,
    timeout: float,
    on_line: Optional[Callable[[str], None]] = None,
) -> ExtractedFrame:
    """Extract one PNG frame with a fast input seek plus an accurate output seek.

    Input seeking lands on a keyframe up to SEEK_PAD_SECONDS before the
    target; the remaining offset is decoded precisely.

    Raises:
        ProcessError: If ffmpeg fails or times out.
        FFmpegError: If no output frame was written.
    """
    seek_base = max(0.0, timestamp - SEEK_PAD_SECONDS)
    seek_offset = max(0.0, timestamp - seek_base)

    cmd = [ffmpeg_path, "-hide_banner"]
    if seek_base > 0:
        cmd += ["-ss", str(seek_base)]
    cmd += ["-i", input_path]
    if seek_offset > 0:
        cmd += ["-ss", str(seek_offset)]
    cmd += [
        "-vf", "signalstats,showinfo,metadata=print",
        "-vframes", "1",
        "-q:v", "2",
        "-an",
        "-sn",
        "-y",
        str(output_path),
    ]

    frame = ExtractedFrame(
        output_path=output_path,
        requested_timestamp=timestamp,
        seek_base=seek_base,
    )

    def handle_line(line: str) -> None:
        if frame.actual_timestamp is None:
            frame.actual_timestamp = parse_showinfo_timestamp(line)
        parse_signalstats(line, frame.stats)
        if on_line is not None:
            on_line(line)

    run_process(cmd, timeout=timeout, label="ffmpeg", on_stderr_line=handle_line)

    if not output_path.is_file() or output_path.stat().st_size == 0:
        raise FFmpegError(f"ffmpeg produced no output frame at {output_path}")

    logger.debug(f"Extracted frame at {timestamp:.2f}s to {output_path}")
    return frame
