"""Tests for OCR text cleanup and the slide OCR runner."""

import shutil
from pathlib import Path

import pytest
import pytesseract
from PIL import Image, ImageDraw

from slidedeck import ocr
from slidedeck.models import SlideImage
from slidedeck.ocr import clean_ocr_text, estimate_ocr_confidence, run_ocr_on_slides


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Hello world\n|\n~~~~\nSlide 2\n", "Hello world\nSlide 2"),
        ("  Deep Learning  \r\n- CNNs\r\n", "Deep Learning\n- CNNs"),
        ("abcdefghijklmnopqrstuvwxyz0123\nok", "ok"),
        ("", ""),
    ],
)
def test_clean_ocr_text(raw: str, expected: str) -> None:
    assert clean_ocr_text(raw) == expected


def test_estimate_ocr_confidence() -> None:
    assert estimate_ocr_confidence("") == 0.0
    assert estimate_ocr_confidence("ab c") == pytest.approx(0.75)
    assert estimate_ocr_confidence("Slide42") == pytest.approx(1.0)
    assert estimate_ocr_confidence("!!") == 0.0


def _make_slide_image(path: Path, text: str) -> None:
    image = Image.new("RGB", (320, 180), color=(255, 255, 255))
    ImageDraw.Draw(image).text((20, 60), text, fill=(0, 0, 0))
    image.save(path)


def test_run_ocr_on_slides_keeps_failures_soft(tmp_path: Path, monkeypatch) -> None:
    """A failing image gets empty text; the others are cleaned and scored."""
    good = tmp_path / "slide_0001.png"
    bad = tmp_path / "slide_0002.png"
    _make_slide_image(good, "Agenda")
    _make_slide_image(bad, "Broken")

    calls = []

    def fake_image_to_string(image, config=None, timeout=0):
        calls.append(config)
        if image.filename.endswith("slide_0002.png"):
            raise pytesseract.TesseractError(1, "boom")
        return "Agenda\n|\nIntroduction to sorting\n"

    monkeypatch.setattr(ocr.pytesseract, "image_to_string", fake_image_to_string)
    monkeypatch.setattr(ocr.pytesseract, "get_tesseract_version", lambda: "5.3.0")

    slides = [
        SlideImage(index=2, timestamp=20.0, image_path=str(bad)),
        SlideImage(index=1, timestamp=10.0, image_path=str(good)),
    ]
    result = run_ocr_on_slides(slides, "/usr/bin/tesseract", workers=2)

    assert [slide.index for slide in result] == [1, 2]
    assert result[0].ocr_text == "Agenda\nIntroduction to sorting"
    assert 0 < result[0].ocr_confidence <= 1
    assert result[1].ocr_text == ""
    assert result[1].ocr_confidence == 0.0
    assert calls == [ocr.TESSERACT_CONFIG, ocr.TESSERACT_CONFIG]


@pytest.mark.manual
def test_manual_tesseract_ocr(tmp_path: Path) -> None:
    tesseract = shutil.which("tesseract")
    assert tesseract, "Tesseract missing"

    image_path = tmp_path / "slide_manual.png"
    image = Image.new("RGB", (1280, 720), color=(255, 255, 255))
    draw = ImageDraw.Draw(image)
    draw.text((80, 80), "Deep Learning Overview", fill=(0, 0, 0))
    draw.text((80, 160), "Convolutional Networks", fill=(0, 0, 0))
    image = image.resize((2560, 1440))
    image.save(image_path)

    result = run_ocr_on_slides(
        [SlideImage(index=1, timestamp=0.0, image_path=str(image_path))],
        tesseract,
        workers=1,
    )
    assert "Deep" in (result[0].ocr_text or "")
