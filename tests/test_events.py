"""Tests for progress reporting and observer adapters."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor

from slidedeck.events import (
    CallbackObserver,
    LoggingObserver,
    MonotonicProgress,
    SerializedObserver,
    SlidesLog,
    SlidesObserver,
    Status,
)


class _Collect(SlidesObserver):
    def __init__(self):
        self.events = []

    def handle(self, event):
        self.events.append(event)


def test_progress_never_moves_backwards():
    observer = _Collect()
    progress = MonotonicProgress(observer)

    progress.report("detecting scenes", 10)
    progress.report("detecting scenes", 10)
    progress.report("detecting scenes", 4.2, "(1/8)")
    progress.report("extracting frames", 250)

    assert [event.text for event in observer.events] == [
        "Slides: detecting scenes 10%",
        "Slides: detecting scenes (1/8) 10%",
        "Slides: extracting frames 100%",
    ]
    assert progress.percent == 100


def test_slides_log_timing():
    messages = []
    log = SlidesLog(CallbackObserver(on_log=messages.append))

    elapsed = log.timing("rename slides", time.monotonic() - 0.05)
    log("pipeline=acquire")

    assert elapsed >= 40
    assert messages[0] == f"rename slides elapsedMs={elapsed}"
    assert messages[1] == "pipeline=acquire"


def test_callback_observer_skips_missing_handlers():
    statuses = []
    observer = CallbackObserver(on_status=statuses.append)
    observer.handle(Status("Slides: queued"))
    SlidesLog(observer)("ignored")
    assert statuses == ["Slides: queued"]


def test_logging_observer(caplog):
    with caplog.at_level(logging.INFO, logger="slidedeck.events"):
        LoggingObserver().handle(Status("Slides: running OCR 97%"))
    assert "Slides: running OCR 97%" in caplog.text


def test_progress_from_many_threads_stays_ordered():
    class _Checking(SlidesObserver):
        def __init__(self):
            self.events = []
            self.active = 0
            self.overlaps = 0

        def handle(self, event):
            self.active += 1
            if self.active > 1:
                self.overlaps += 1
            time.sleep(0.001)
            self.events.append(event)
            self.active -= 1

    inner = _Checking()
    progress = MonotonicProgress(SerializedObserver(inner))

    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(lambda p: progress.report("extracting frames", p), range(101)))

    percents = [int(event.text.rsplit(" ", 1)[1].rstrip("%")) for event in inner.events]
    assert percents == sorted(set(percents))
    assert percents[-1] == 100
    assert inner.overlaps == 0
