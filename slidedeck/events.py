"""Streaming events emitted while slides are extracted."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from slidedeck.models import SlideExtractionResult, SlideImage, SlideSourceKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlideMeta:
    """Source context attached to every slide chunk."""

    slides_dir: str
    source_url: str
    source_id: str
    source_kind: SlideSourceKind
    ocr_available: bool


@dataclass(frozen=True)
class SlideChunk:
    """A slide became available (placeholder with empty image_path, or a real frame)."""

    slide: SlideImage
    meta: SlideMeta


@dataclass(frozen=True)
class TimelineReady:
    """Timestamp selection is final; frames do not exist yet."""

    result: SlideExtractionResult


@dataclass(frozen=True)
class Status:
    """Human-readable status line, e.g. ``Slides: detecting scenes 42%``."""

    text: str


@dataclass(frozen=True)
class Log:
    """Diagnostic message (timings, per-frame adjustments)."""

    message: str


SlidesEvent = Union[SlideChunk, TimelineReady, Status, Log]


class SlidesObserver:
    """Receives pipeline events. The base class ignores everything."""

    def handle(self, event: SlidesEvent) -> None:
        pass


class NullObserver(SlidesObserver):
    """Stands in when nobody is listening."""
    pass


class LoggingObserver(SlidesObserver):
    """Forward events to the ``logging`` module."""

    def handle(self, event: SlidesEvent) -> None:
        if isinstance(event, Status):
            logger.info(event.text)
        elif isinstance(event, Log):
            logger.debug(event.message)
        elif isinstance(event, TimelineReady):
            logger.info(f"Slide timeline ready: {len(event.result.slides)} slides")
        elif isinstance(event, SlideChunk) and event.slide.image_path:
            logger.debug(
                f"Slide {event.slide.index} ready at {event.slide.timestamp:.2f}s: "
                f"{event.slide.image_path}"
            )


class CallbackObserver(SlidesObserver):
    """Adapt plain callables to the observer interface; missing ones are skipped."""

    def __init__(
        self,
        on_slide: Optional[Callable[[SlideChunk], None]] = None,
        on_timeline: Optional[Callable[[SlideExtractionResult], None]] = None,
        on_status: Optional[Callable[[str], None]] = None,
        on_log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._on_slide = on_slide
        self._on_timeline = on_timeline
        self._on_status = on_status
        self._on_log = on_log

    def handle(self, event: SlidesEvent) -> None:
        if isinstance(event, SlideChunk) and self._on_slide:
            self._on_slide(event)
        elif isinstance(event, TimelineReady) and self._on_timeline:
            self._on_timeline(event.result)
        elif isinstance(event, Status) and self._on_status:
            self._on_status(event.text)
        elif isinstance(event, Log) and self._on_log:
            self._on_log(event.message)


class SerializedObserver(SlidesObserver):
    """Deliver events to another observer one at a time.

    Download pumps and pool workers report from their own threads.
    """

    def __init__(self, observer: SlidesObserver) -> None:
        self._observer = observer
        self._lock = threading.Lock()

    def handle(self, event: SlidesEvent) -> None:
        with self._lock:
            self._observer.handle(event)


class MonotonicProgress:
    """Format ``Slides: <label> <pct>%`` lines that never move backwards.

    Concurrent workers finish out of order, so only increases are forwarded
    and identical lines are suppressed.
    """

    def __init__(self, observer: SlidesObserver) -> None:
        self._observer = observer
        self._last_text = ""
        self._last_percent = 0
        self._lock = threading.Lock()

    def report(self, label: str, percent: float, detail: Optional[str] = None) -> None:
        clamped = max(0, min(100, round(percent)))
        suffix = f" {detail}" if detail else ""
        with self._lock:
            next_percent = max(self._last_percent, clamped)
            text = f"Slides: {label}{suffix} {next_percent}%"
            if text == self._last_text:
                return
            self._last_text = text
            self._last_percent = next_percent
            self._observer.handle(Status(text))

    @property
    def percent(self) -> int:
        return self._last_percent


class SlidesLog:
    """Emit ``Log`` events, including ``<label> elapsedMs=N`` timings."""

    def __init__(self, observer: SlidesObserver) -> None:
        self._observer = observer

    def __call__(self, message: str) -> None:
        self._observer.handle(Log(message))

    def timing(self, label: str, started_at: float) -> int:
        elapsed_ms = int(round((time.monotonic() - started_at) * 1000))
        self(f"{label} elapsedMs={elapsed_ms}")
        return elapsed_ms
