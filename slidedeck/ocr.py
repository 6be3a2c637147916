"""OCR for extracted slides using Tesseract via pytesseract."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Sequence

import pytesseract
from PIL import Image

from slidedeck.constants import TESSERACT_TIMEOUT
from slidedeck.models import SlideImage
from slidedeck.pool import ProgressCallback, run_with_concurrency

logger = logging.getLogger(__name__)

TESSERACT_CONFIG = "--oem 3 --psm 6"
_ALNUM_PATTERN = re.compile(r"[a-z0-9]", re.IGNORECASE)
_LINE_SPLIT = re.compile(r"\r?\n")


def clean_ocr_text(text: str) -> str:
    """Drop OCR noise lines.

    Lines shorter than two characters, space-free runs longer than twenty
    characters and lines without any ASCII letter or digit are removed.
    """
    lines = []
    for raw_line in _LINE_SPLIT.split(text):
        line = raw_line.strip()
        if len(line) < 2:
            continue
        if len(line) > 20 and " " not in line:
            continue
        if not _ALNUM_PATTERN.search(line):
            continue
        lines.append(line)
    return "\n".join(lines)


def estimate_ocr_confidence(text: str) -> float:
    """Fraction of characters that are ASCII letters or digits (0 for empty text)."""
    if not text:
        return 0.0
    alnum = sum(1 for char in text if _ALNUM_PATTERN.match(char))
    return min(1.0, alnum / len(text))


class TesseractExtractor:
    """Run Tesseract on slide images through pytesseract."""

    def __init__(self, tesseract_path: str, timeout: float = TESSERACT_TIMEOUT) -> None:
        self._tesseract_path = tesseract_path
        self._timeout = timeout
        pytesseract.pytesseract.tesseract_cmd = tesseract_path
        self._version: Optional[str] = None

    @property
    def version(self) -> Optional[str]:
        if self._version is None:
            try:
                self._version = str(pytesseract.get_tesseract_version()).strip()
            except (pytesseract.TesseractNotFoundError, OSError) as e:
                logger.debug(f"Could not read tesseract version: {e}")
        return self._version

    def extract_text(self, image_path: Path) -> str:
        """Return raw OCR text for one image.

        Raises:
            pytesseract.TesseractError: If tesseract exits non-zero.
            RuntimeError: If tesseract exceeded the timeout.
            OSError: If the image cannot be opened.
        """
        with Image.open(image_path) as image:
            return pytesseract.image_to_string(
                image,
                config=TESSERACT_CONFIG,
                timeout=self._timeout,
            )


def run_ocr_on_slides(
    slides: Sequence[SlideImage],
    tesseract_path: str,
    workers: int,
    on_progress: Optional[ProgressCallback] = None,
) -> list[SlideImage]:
    """OCR every slide concurrently.

    A failing image gets empty text and zero confidence instead of failing
    the run.

    Args:
        slides: Slides with image files on disk.
        tesseract_path: Resolved tesseract executable.
        workers: OCR concurrency (1-16).
        on_progress: Completion callback.

    Returns:
        Slides with ``ocr_text`` and ``ocr_confidence`` set, ordered by index.
    """
    extractor = TesseractExtractor(tesseract_path)
    logger.debug(f"Running OCR with tesseract {extractor.version or 'unknown'}")

    def ocr_task(slide: SlideImage) -> SlideImage:
        try:
            cleaned = clean_ocr_text(extractor.extract_text(Path(slide.image_path)))
        except (pytesseract.TesseractError, RuntimeError, OSError) as e:
            logger.warning(f"OCR failed for {slide.image_path}: {e}")
            return slide.with_changes(ocr_text="", ocr_confidence=0.0)
        return slide.with_changes(
            ocr_text=cleaned,
            ocr_confidence=estimate_ocr_confidence(cleaned),
        )

    tasks = [(lambda slide=slide: ocr_task(slide)) for slide in slides]
    results = run_with_concurrency(tasks, workers, on_progress)
    return sorted(results, key=lambda slide: slide.index)
