"""Data types shared by the slide extraction pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal, Optional

SlideSourceKind = Literal["youtube", "direct"]
AutoTuneStrategy = Literal["hash", "none"]


@dataclass(frozen=True)
class SlideSource:
    """A video source with a stable id used to name its output directory."""

    url: str
    kind: SlideSourceKind
    source_id: str


@dataclass(frozen=True)
class SlideSettings:
    """Resolved slide extraction settings."""

    output_dir: Path
    ocr: bool = False
    scene_threshold: float = 0.3
    auto_tune_threshold: bool = True
    max_slides: int = 10
    min_duration_seconds: float = 2.0


@dataclass(frozen=True)
class VideoInfo:
    """Advisory probe results; any field may be unknown."""

    duration_seconds: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class SceneSegment:
    """Interval between two consecutive scene boundaries (end None = open)."""

    start: float
    end: Optional[float] = None


@dataclass
class SlideImage:
    """One extracted slide frame."""

    index: int
    timestamp: float
    image_path: str
    image_version: Optional[int] = None
    ocr_text: Optional[str] = None
    ocr_confidence: Optional[float] = None

    def with_changes(self, **changes: Any) -> "SlideImage":
        return replace(self, **changes)


@dataclass(frozen=True)
class AutoTune:
    """How the scene threshold was chosen."""

    enabled: bool
    chosen_threshold: float
    confidence: float
    strategy: AutoTuneStrategy

    @classmethod
    def disabled(cls, threshold: float) -> "AutoTune":
        return cls(enabled=False, chosen_threshold=threshold, confidence=0.0, strategy="none")


@dataclass
class SlideExtractionResult:
    """Complete outcome of one slide extraction run."""

    source_url: str
    source_kind: SlideSourceKind
    source_id: str
    slides_dir: str
    scene_threshold: float
    auto_tune_threshold: bool
    auto_tune: AutoTune
    max_slides: int
    min_slide_duration: float
    ocr_requested: bool
    ocr_available: bool
    slides: list[SlideImage] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_manifest(self) -> dict[str, Any]:
        """Serialize to the on-disk manifest layout (image paths relative to slides_dir)."""
        return {
            "sourceUrl": self.source_url,
            "sourceKind": self.source_kind,
            "sourceId": self.source_id,
            "slidesDir": self.slides_dir,
            "sceneThreshold": self.scene_threshold,
            "autoTuneThreshold": self.auto_tune_threshold,
            "autoTune": {
                "enabled": self.auto_tune.enabled,
                "chosenThreshold": self.auto_tune.chosen_threshold,
                "confidence": self.auto_tune.confidence,
                "strategy": self.auto_tune.strategy,
            },
            "maxSlides": self.max_slides,
            "minSlideDuration": self.min_slide_duration,
            "ocrRequested": self.ocr_requested,
            "ocrAvailable": self.ocr_available,
            "slideCount": len(self.slides),
            "warnings": list(self.warnings),
            "slides": [_slide_to_manifest(slide, self.slides_dir) for slide in self.slides],
        }

    @classmethod
    def from_manifest(cls, payload: dict[str, Any], slides_dir: Path) -> "SlideExtractionResult":
        """Rebuild a result from a manifest; image paths are resolved against slides_dir.

        Raises:
            KeyError, TypeError, ValueError: If the payload is malformed.
        """
        auto_tune_raw = payload["autoTune"]
        auto_tune = AutoTune(
            enabled=bool(auto_tune_raw["enabled"]),
            chosen_threshold=float(auto_tune_raw["chosenThreshold"]),
            confidence=float(auto_tune_raw["confidence"]),
            strategy=auto_tune_raw["strategy"],
        )
        slides = [
            SlideImage(
                index=int(raw["index"]),
                timestamp=float(raw["timestamp"]),
                image_path=str(slides_dir / raw["imagePath"]),
                image_version=raw.get("imageVersion"),
                ocr_text=raw.get("ocrText"),
                ocr_confidence=raw.get("ocrConfidence"),
            )
            for raw in payload["slides"]
        ]
        return cls(
            source_url=str(payload["sourceUrl"]),
            source_kind=payload["sourceKind"],
            source_id=str(payload["sourceId"]),
            slides_dir=str(slides_dir),
            scene_threshold=float(payload["sceneThreshold"]),
            auto_tune_threshold=bool(payload["autoTuneThreshold"]),
            auto_tune=auto_tune,
            max_slides=int(payload["maxSlides"]),
            min_slide_duration=float(payload["minSlideDuration"]),
            ocr_requested=bool(payload["ocrRequested"]),
            ocr_available=bool(payload["ocrAvailable"]),
            slides=slides,
            warnings=[str(item) for item in payload.get("warnings", [])],
        )


def _slide_to_manifest(slide: SlideImage, slides_dir: str) -> dict[str, Any]:
    image_path = Path(slide.image_path)
    try:
        relative = image_path.relative_to(slides_dir).as_posix()
    except ValueError:
        relative = image_path.name
    entry: dict[str, Any] = {
        "index": slide.index,
        "timestamp": slide.timestamp,
        "imagePath": relative,
    }
    if slide.image_version is not None:
        entry["imageVersion"] = slide.image_version
    if slide.ocr_text is not None:
        entry["ocrText"] = slide.ocr_text
    if slide.ocr_confidence is not None:
        entry["ocrConfidence"] = slide.ocr_confidence
    return entry
