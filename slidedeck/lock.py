"""FIFO advisory locks keyed by slides output directory."""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)


class SlidesLockRegistry:
    """Serialize runs that share a key; different keys never wait on each other.

    Each holder registers an event as the key's newest tail and waits for the
    previous tail, forming a FIFO chain. The entry is removed once the last
    holder in the chain releases.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._tails: dict[str, threading.Event] = {}

    @contextmanager
    def hold(self, key: str, on_wait: Optional[Callable[[], None]] = None) -> Iterator[None]:
        current = threading.Event()
        with self._mutex:
            previous = self._tails.get(key)
            self._tails[key] = current

        if previous is not None:
            logger.debug(f"Waiting for slides lock: {key}")
            if on_wait is not None:
                on_wait()
            previous.wait()

        try:
            yield
        finally:
            current.set()
            with self._mutex:
                if self._tails.get(key) is current:
                    del self._tails[key]

    def is_held(self, key: str) -> bool:
        with self._mutex:
            return key in self._tails
