"""Bounded, closeable channel used to hand measurement updates to consumers."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Deque, Generic, Iterator, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

DEFAULT_CAPACITY = 32

T = TypeVar("T")


class UpdateChannel(Generic[T]):
    """Many producers, one consumer.

    ``send`` never blocks: when the buffer is full the new item is dropped and
    logged at DEBUG. ``close`` may be called any number of times; items already
    buffered are still delivered to the consumer after it.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, name: str = "updates"):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.name = name
        self._items: Deque[T] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def send(self, item: T) -> bool:
        with self._cond:
            if self._closed:
                return False
            if len(self._items) >= self.capacity:
                self.dropped += 1
                LOGGER.debug("Channel %s full (%d), dropping update", self.name, self.capacity)
                return False
            self._items.append(item)
            self._cond.notify()
            return True

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()

    def receive(self, timeout: Optional[float] = None) -> Optional[T]:
        """Next item, or ``None`` once closed and drained or when *timeout* expires."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items:
                if self._closed:
                    return None
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)
            return self._items.popleft()

    def is_drained(self) -> bool:
        with self._cond:
            return self._closed and not self._items

    def __iter__(self) -> Iterator[T]:
        while True:
            item = self.receive()
            if item is None:
                return
            yield item
