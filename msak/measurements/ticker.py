"""Callback scheduler firing at exponentially distributed, bounded intervals.

Modeled on github.com/m-lab/go/memoryless: randomized sampling avoids
phase-locking with periodic behaviour on the path (ACK clocking, queue drains).
"""

from __future__ import annotations

import logging
import math
import random
import threading
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_EXPECTED_MS = 250
DEFAULT_MIN_MS = 100
DEFAULT_MAX_MS = 400


class MemorylessTicker:
    def __init__(
        self,
        expected_ms: float = DEFAULT_EXPECTED_MS,
        min_ms: float = DEFAULT_MIN_MS,
        max_ms: float = DEFAULT_MAX_MS,
        rng: Optional[random.Random] = None,
        name: str = "ticker",
    ):
        if not (min_ms <= expected_ms <= max_ms):
            raise ValueError("(min_ms <= expected_ms <= max_ms) must be true")
        self.expected_ms = expected_ms
        self.min_ms = min_ms
        self.max_ms = max_ms
        self.name = name
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def next_delay_ms(self) -> float:
        u = self._rng.random()
        delay = -math.log(1.0 - u) * self.expected_ms
        if delay > self.max_ms:
            return self.max_ms
        if delay < self.min_ms:
            return self.min_ms
        return delay

    def start(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if self._thread is not None:
                return
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._loop, args=(callback, stop_event), name=self.name, daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            stop_event, thread = self._stop_event, self._thread
            self._stop_event = None
            self._thread = None
        if stop_event is None:
            return
        stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _loop(self, callback: Callable[[], None], stop_event: threading.Event) -> None:
        # The next delay is drawn only after the callback returns, so calls never overlap.
        while not stop_event.wait(self.next_delay_ms() / 1000.0):
            try:
                callback()
            except Exception:
                LOGGER.exception("Ticker %s callback failed", self.name)
