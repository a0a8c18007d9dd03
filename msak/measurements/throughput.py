"""Multi-stream throughput test orchestration."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import urlsplit

from ..channel import DEFAULT_CAPACITY, UpdateChannel
from ..errors import HarnessError, IllegalStateError, InvalidUrlError
from ..net.websocket import WebSocket, connect_websocket
from .models import ThroughputConfig, ThroughputUpdate
from .throughput_stream import NotStartedError, ThroughputStream, with_query_defaults

LOGGER = logging.getLogger(__name__)


class ThroughputTest:
    """Runs ``config.streams`` streams against one server and merges their updates.

    The test ends when every stream has ended, when :meth:`stop` is called, or
    when the watchdog fires after ``duration + grace``. The last two are
    recorded as a *soft end*: the client, not the server, ended the test.
    Streams that fail on the network are isolated and listed in
    :attr:`failed_streams`; harness problems end the test and land in
    :attr:`error`.
    """

    def __init__(
        self,
        config: ThroughputConfig,
        connector: Callable[..., WebSocket] = connect_websocket,
        channel_capacity: int = DEFAULT_CAPACITY,
        **stream_options,
    ):
        if config.streams <= 0:
            raise HarnessError("a throughput test needs at least one stream")
        self.config = config
        self.direction = config.direction
        base = config.server.throughput_url(config.direction)
        self.url = with_query_defaults(base, {"duration": config.duration_ms, "delay": config.delay_ms})
        parts = urlsplit(self.url)
        if parts.scheme not in ("ws", "wss") or not parts.hostname:
            raise InvalidUrlError(f"bad throughput URL: {self.url}")
        self.server_host = parts.hostname

        self.updates: UpdateChannel[ThroughputUpdate] = UpdateChannel(channel_capacity, name="throughput")
        self.streams: List[ThroughputStream] = [
            ThroughputStream(
                index,
                self.url,
                config.direction,
                streams=config.streams,
                user_agent=config.user_agent,
                connector=connector,
                channel_capacity=channel_capacity,
                **stream_options,
            )
            for index in range(config.streams)
        ]
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.error: Optional[BaseException] = None
        self.soft_end = False

        self._lock = threading.Lock()
        self._finished = threading.Event()
        self._unfinished = len(self.streams)
        self._threads: List[threading.Thread] = []

    @property
    def started(self) -> bool:
        return self.start_time is not None

    @property
    def ended(self) -> bool:
        return self.end_time is not None

    @property
    def failed_streams(self) -> List[int]:
        return [stream.index for stream in self.streams if stream.error is not None]

    def start(self) -> None:
        with self._lock:
            if self.end_time is not None:
                raise IllegalStateError("throughput test already finished; create a new instance")
            if self.start_time is not None:
                raise IllegalStateError("throughput test already started")
            self.start_time = datetime.now(timezone.utc)

        LOGGER.info(
            "Starting throughput test: direction=%s streams=%d duration=%dms delay=%dms host=%s",
            self.direction.value,
            len(self.streams),
            self.config.duration_ms,
            self.config.delay_ms,
            self.server_host,
        )
        for index, stream in enumerate(self.streams):
            thread = threading.Thread(
                target=self._run_stream,
                args=(index, stream, index * self.config.delay_ms / 1000.0),
                name=f"throughput-stream-{index}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

        watchdog = threading.Thread(target=self._watchdog, name="throughput-watchdog", daemon=True)
        self._threads.append(watchdog)
        watchdog.start()

    def stop(self) -> None:
        """End the test from the client side. Safe before start and after the end."""

        if self.ended:
            return
        if self.started:
            LOGGER.debug("Stopping throughput test")
            self.soft_end = True
        self.finish()

    def finish(self) -> None:
        with self._lock:
            if self.end_time is not None:
                return
            self.end_time = datetime.now(timezone.utc)
        self._finished.set()
        LOGGER.debug("Finishing throughput test")

        for stream in self.streams:
            try:
                stream.stop()
            except NotStartedError:
                pass

        if self.error is not None:
            LOGGER.warning("Throughput test finished with error: %s", self.error)
        self.updates.close()

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in list(self._threads):
            thread.join(timeout)

    def _watchdog(self) -> None:
        total = (self.config.duration_ms + self.config.grace_ms) / 1000.0
        LOGGER.debug("Watchdog armed for %.1fs", total)
        if self._finished.wait(total):
            return
        # usual for uploads: the server finalizes only after the client stops sending
        LOGGER.warning("Test not ended by server, finishing on client (soft end)")
        self.soft_end = True
        self.finish()

    def _run_stream(self, index: int, stream: ThroughputStream, start_delay: float) -> None:
        if start_delay > 0 and self._finished.wait(start_delay):
            return
        if self._finished.is_set():
            return
        try:
            LOGGER.debug("Stream #%d starting", index)
            stream.start()
            for update in stream.updates:
                self.updates.send(update)
        except HarnessError as exc:
            LOGGER.error("Harness failure running stream #%d: %s", index, exc)
            self.error = exc
            self.finish()
            return

        if stream.error is not None:
            LOGGER.info("Stream #%d ended with error (isolated): %s", index, stream.error)
        else:
            LOGGER.debug("Stream #%d ended", index)

        with self._lock:
            self._unfinished -= 1
            remaining = self._unfinished
        if remaining == 0:
            LOGGER.debug("All streams finished, finishing test")
            self.finish()
