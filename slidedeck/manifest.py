"""slides.json manifest persistence and cache validation."""

import json
import logging
from pathlib import Path
from typing import Optional

from slidedeck.constants import IMAGE_FORMAT, MANIFEST_FILENAME, SLIDE_FILENAME_PREFIX
from slidedeck.models import SlideExtractionResult, SlideSettings, SlideSource

logger = logging.getLogger(__name__)


def resolve_slides_dir(output_dir: Path, source_id: str) -> Path:
    """Per-source output directory: ``<output_dir>/<source_id>``."""
    return Path(output_dir) / source_id


def prepare_slides_dir(slides_dir: Path) -> None:
    """Create the directory and delete slide images and the manifest from earlier runs."""
    slides_dir.mkdir(parents=True, exist_ok=True)
    for entry in slides_dir.iterdir():
        is_slide = entry.name.startswith(SLIDE_FILENAME_PREFIX) and entry.name.endswith(
            f".{IMAGE_FORMAT}"
        )
        if (is_slide or entry.name == MANIFEST_FILENAME) and entry.is_file():
            entry.unlink(missing_ok=True)


def write_slides_manifest(result: SlideExtractionResult) -> Path:
    """Write ``slides.json`` with image paths relative to the slides directory.

    Returns:
        Path of the written manifest.
    """
    manifest_path = Path(result.slides_dir) / MANIFEST_FILENAME
    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(result.to_manifest(), f, ensure_ascii=False, indent=2)
    logger.info(f"Saved manifest: {manifest_path}")
    return manifest_path


def _settings_match(result: SlideExtractionResult, settings: SlideSettings) -> bool:
    return (
        result.scene_threshold == settings.scene_threshold
        and result.auto_tune_threshold == settings.auto_tune_threshold
        and result.max_slides == settings.max_slides
        and result.min_slide_duration == settings.min_duration_seconds
    )


def read_slides_cache_if_valid(
    source: SlideSource,
    settings: SlideSettings,
) -> Optional[SlideExtractionResult]:
    """Load a previous result if it still answers this request.

    The manifest must parse, describe the same source with the same
    settings, carry OCR text when OCR is requested, respect the slide cap,
    index slides 1..N and reference only images that exist.

    Returns:
        The cached result, or None if there is no usable cache.
    """
    slides_dir = resolve_slides_dir(settings.output_dir, source.source_id)
    manifest_path = slides_dir / MANIFEST_FILENAME
    if not manifest_path.is_file():
        return None

    try:
        with open(manifest_path, encoding="utf-8") as f:
            payload = json.load(f)
        result = SlideExtractionResult.from_manifest(payload, slides_dir)
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.debug(f"Ignoring unreadable slides cache {manifest_path}: {e}")
        return None

    if (
        result.source_id != source.source_id
        or result.source_url != source.url
        or result.source_kind != source.kind
    ):
        return None
    if not _settings_match(result, settings):
        return None
    if settings.ocr and not result.ocr_requested:
        return None
    if len(result.slides) > settings.max_slides:
        return None
    if [slide.index for slide in result.slides] != list(range(1, len(result.slides) + 1)):
        return None
    if settings.ocr and any(slide.ocr_text is None for slide in result.slides):
        return None
    if not all(Path(slide.image_path).is_file() for slide in result.slides):
        return None

    logger.info(f"Using cached slides from {slides_dir}")
    return result
