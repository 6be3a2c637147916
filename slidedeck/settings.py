"""Slide settings resolution and environment-driven engine configuration."""

import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

from slidedeck.constants import (
    DEFAULT_MAX_SLIDES,
    DEFAULT_MIN_DURATION_SECONDS,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SCENE_THRESHOLD,
    DEFAULT_SLIDES_SAMPLE_COUNT,
    DEFAULT_SLIDES_WORKERS,
    DEFAULT_YT_DLP_FORMAT_DETECT,
    DEFAULT_YT_DLP_FORMAT_EXTRACT,
    MAX_SLIDES_SAMPLE_COUNT,
    MAX_SLIDES_WORKERS,
    MIN_SLIDES_SAMPLE_COUNT,
)
from slidedeck.models import SlideSettings

logger = logging.getLogger(__name__)

RawValue = Union[str, int, float, None]

_MAX_MIN_DURATION_SECONDS = 86400.0


def _parse_number(raw: RawValue) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = raw.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    return value if math.isfinite(value) else None


def resolve_slide_settings(
    slides: bool = False,
    ocr: bool = False,
    output_dir: Union[str, Path, None] = None,
    scene_threshold: RawValue = None,
    max_slides: RawValue = None,
    min_duration: RawValue = None,
    auto_tune_threshold: bool = True,
    cwd: Optional[Path] = None,
) -> Optional[SlideSettings]:
    """Validate raw flag values into SlideSettings.

    OCR implies slides. When neither is requested, returns None.

    Args:
        slides: Whether slide extraction was requested.
        ocr: Whether OCR was requested.
        output_dir: Base output directory (relative paths resolve against cwd).
        scene_threshold: Base scene threshold, 0.1-1.
        max_slides: Maximum slide count, integer >= 1.
        min_duration: Minimum seconds between slides, 0-86400.
        auto_tune_threshold: Whether to calibrate the threshold per video.
        cwd: Base for relative output directories (defaults to the process cwd).

    Returns:
        Resolved settings, or None if slides are disabled.

    Raises:
        ValueError: If a value is out of range; the message names the flag.
    """
    if not slides and not ocr:
        return None

    base_dir = Path(output_dir) if output_dir else Path(DEFAULT_OUTPUT_DIR)
    if not base_dir.is_absolute():
        base_dir = (cwd or Path.cwd()) / base_dir

    threshold = _parse_number(scene_threshold)
    if threshold is None:
        if scene_threshold not in (None, ""):
            raise ValueError(f"Unsupported --slides-scene-threshold: {scene_threshold}")
        threshold = DEFAULT_SCENE_THRESHOLD
    if threshold < 0.1 or threshold > 1:
        raise ValueError(
            f"Unsupported --slides-scene-threshold: {scene_threshold} (range 0.1-1)"
        )

    max_value = _parse_number(max_slides)
    if max_value is None:
        if max_slides not in (None, ""):
            raise ValueError(f"Unsupported --slides-max: {max_slides}")
        max_value = float(DEFAULT_MAX_SLIDES)
    if max_value < 1 or not float(max_value).is_integer():
        raise ValueError(f"Unsupported --slides-max: {max_slides} (minimum 1)")

    min_value = _parse_number(min_duration)
    if min_value is None:
        if min_duration not in (None, ""):
            raise ValueError(f"Unsupported --slides-min-duration: {min_duration}")
        min_value = DEFAULT_MIN_DURATION_SECONDS
    if min_value < 0 or min_value > _MAX_MIN_DURATION_SECONDS:
        raise ValueError(
            f"Unsupported --slides-min-duration: {min_duration} (range 0-86400)"
        )

    return SlideSettings(
        output_dir=base_dir,
        ocr=ocr,
        scene_threshold=threshold,
        auto_tune_threshold=auto_tune_threshold,
        max_slides=int(max_value),
        min_duration_seconds=min_value,
    )


def _env_value(env: Mapping[str, str], name: str) -> Optional[str]:
    """Look up ``SLIDEDECK_<name>`` first, then the unprefixed alias."""
    for key in (f"SLIDEDECK_{name}", name):
        value = (env.get(key) or "").strip()
        if value:
            return value
    return None


def _env_int(env: Mapping[str, str], name: str, default: int, lower: int, upper: int) -> int:
    raw = _env_value(env, name)
    value = _parse_number(raw)
    if value is None:
        if raw is not None:
            logger.warning(f"Ignoring invalid {name}={raw!r}")
        return default
    return max(lower, min(upper, int(round(value))))


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _env_value(env, name)
    if raw is None:
        return default
    return raw.lower() not in ("0", "false", "no", "off")


@dataclass(frozen=True)
class EngineConfig:
    """Knobs for a slide extraction run that are not per-request settings."""

    workers: int = DEFAULT_SLIDES_WORKERS
    sample_count: int = DEFAULT_SLIDES_SAMPLE_COUNT
    ytdlp_format_detect: str = DEFAULT_YT_DLP_FORMAT_DETECT
    ytdlp_format_extract: str = DEFAULT_YT_DLP_FORMAT_EXTRACT
    stream_first: bool = True
    timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT
    ytdlp_path: Optional[str] = None
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    tesseract_path: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build a config from ``SLIDEDECK_*`` variables (``SLIDES_*`` aliases accepted)."""
        env = os.environ if env is None else env

        timeout = _parse_number(_env_value(env, "TIMEOUT"))
        if timeout is None or timeout <= 0:
            timeout = DEFAULT_REQUEST_TIMEOUT

        return cls(
            workers=_env_int(env, "SLIDES_WORKERS", DEFAULT_SLIDES_WORKERS, 1, MAX_SLIDES_WORKERS),
            sample_count=_env_int(
                env,
                "SLIDES_SAMPLES",
                DEFAULT_SLIDES_SAMPLE_COUNT,
                MIN_SLIDES_SAMPLE_COUNT,
                MAX_SLIDES_SAMPLE_COUNT,
            ),
            ytdlp_format_detect=_env_value(env, "SLIDES_YTDLP_FORMAT_DETECT")
            or DEFAULT_YT_DLP_FORMAT_DETECT,
            ytdlp_format_extract=_env_value(env, "SLIDES_YTDLP_FORMAT_EXTRACT")
            or DEFAULT_YT_DLP_FORMAT_EXTRACT,
            stream_first=_env_bool(env, "SLIDES_STREAM_FIRST", True),
            timeout_seconds=timeout,
            ytdlp_path=(env.get("YT_DLP_PATH") or "").strip() or None,
            ffmpeg_path=(env.get("FFMPEG_PATH") or "").strip() or None,
            ffprobe_path=(env.get("FFPROBE_PATH") or "").strip() or None,
            tesseract_path=(env.get("TESSERACT_PATH") or "").strip() or None,
        )
