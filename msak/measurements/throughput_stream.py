"""A single WebSocket stream of a throughput test."""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..channel import DEFAULT_CAPACITY, UpdateChannel
from ..errors import IllegalStateError
from ..net.websocket import (
    DEFAULT_OPEN_TIMEOUT,
    NORMAL_CLOSURE,
    TextMessage,
    WebSocket,
    WebSocketClosedError,
    connect_websocket,
)
from ..server import THROUGHPUT_WS_PROTO
from .codec import decode_throughput_measurement, encode_throughput_measurement
from .models import ByteCounters, ThroughputDirection, ThroughputMeasurement, ThroughputUpdate
from .ticker import DEFAULT_EXPECTED_MS, DEFAULT_MAX_MS, DEFAULT_MIN_MS, MemorylessTicker

LOGGER = logging.getLogger(__name__)

MIN_MESSAGE_SIZE = 1 << 10
MAX_SCALED_MESSAGE_SIZE = 1 << 20
MESSAGE_SCALING_FRACTION = 16
QUEUE_FULL_DELAY_MS = 1


class NotStartedError(Exception):
    def __init__(self):
        super().__init__("stream not started")


class UnexpectedCloseError(Exception):
    def __init__(self, code: int, reason: str = ""):
        super().__init__(f"websocket closed with unexpected code: {code} {reason}".rstrip())
        self.code = code
        self.reason = reason


class StreamFailureError(Exception):
    def __init__(self, message: str = "websocket failure", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def next_message_size(
    size: int,
    total_sent: int,
    max_size: int = MAX_SCALED_MESSAGE_SIZE,
    fraction: int = MESSAGE_SCALING_FRACTION,
) -> int:
    """Upload message size to use after a successful send.

    Doubles while the current size is below ``total_sent / fraction``, never
    past *max_size*.
    """
    if size < max_size and size < total_sent / fraction:
        return min(size * 2, max_size)
    return size


def with_query_defaults(url: str, defaults: Dict[str, object]) -> str:
    """Append query parameters that *url* does not already carry."""

    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    present = {key for key, _ in query}
    missing = [(key, str(value)) for key, value in defaults.items() if key not in present and value is not None]
    if not missing:
        return url
    return urlunsplit(parts._replace(query=urlencode(query + missing)))


def per_stream_url(url: str, streams: int, index: int) -> str:
    """Set ``streams`` and ``index`` on *url*, keeping every other parameter."""

    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    existing = dict(query)
    if "streams" in existing:
        LOGGER.warning("Overriding existing streams=%s with %d", existing["streams"], streams)
    if "index" in existing:
        LOGGER.warning("Overriding existing index=%s with %d", existing["index"], index)
    kept = [(key, value) for key, value in query if key not in ("streams", "index")]
    kept += [("streams", str(streams)), ("index", str(index))]
    return urlunsplit(parts._replace(query=urlencode(kept)))


class ThroughputStream:
    """One WebSocket carrying load and periodic measurement messages.

    The receive loop runs on its own thread; the ticker and, for uploads, the
    sender loop run on two more. All of them stop when :meth:`_finish` runs,
    which happens exactly once per stream.
    """

    def __init__(
        self,
        index: int,
        url: str,
        direction: ThroughputDirection,
        streams: int = 1,
        user_agent: Optional[str] = None,
        connector: Callable[..., WebSocket] = connect_websocket,
        min_message_size: int = MIN_MESSAGE_SIZE,
        max_message_size: int = MAX_SCALED_MESSAGE_SIZE,
        scaling_fraction: int = MESSAGE_SCALING_FRACTION,
        queue_full_delay_ms: float = QUEUE_FULL_DELAY_MS,
        measurement_interval_ms=(DEFAULT_EXPECTED_MS, DEFAULT_MIN_MS, DEFAULT_MAX_MS),
        channel_capacity: int = DEFAULT_CAPACITY,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    ):
        self.index = index
        self.direction = direction
        self.url = per_stream_url(url, streams, index)
        self.user_agent = user_agent
        self.min_message_size = min_message_size
        self.max_message_size = max_message_size
        self.scaling_fraction = scaling_fraction
        self.queue_full_delay_ms = queue_full_delay_ms
        self.open_timeout = open_timeout
        self._connector = connector

        self.updates: UpdateChannel[ThroughputUpdate] = UpdateChannel(channel_capacity, name=f"stream-{index}")
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.error: Optional[BaseException] = None

        expected, minimum, maximum = measurement_interval_ms
        self._ticker = MemorylessTicker(expected, minimum, maximum, name=f"stream-{index}-ticker")
        self._lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._app_sent = 0
        self._app_received = 0
        self._started = False
        self._started_at: Optional[float] = None
        self._ws: Optional[WebSocket] = None
        self._thread: Optional[threading.Thread] = None
        self._upload_thread: Optional[threading.Thread] = None

    @property
    def started(self) -> bool:
        return self._started

    @property
    def ended(self) -> bool:
        return self.end_time is not None

    def counters(self) -> ByteCounters:
        with self._counter_lock:
            return ByteCounters(bytes_sent=self._app_sent, bytes_received=self._app_received)

    def _add_sent(self, count: int) -> int:
        with self._counter_lock:
            self._app_sent += count
            return self._app_sent

    def _add_received(self, count: int) -> None:
        with self._counter_lock:
            self._app_received += count

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self.end_time is not None:
                LOGGER.debug("Stream #%d already ended, not starting", self.index)
                return
            if self._started:
                raise IllegalStateError(f"stream #{self.index} already started")
            self._started = True
            self.start_time = datetime.now(timezone.utc)
            self._started_at = time.monotonic()
        LOGGER.debug("Starting stream #%d: direction=%s url=%s", self.index, self.direction.value, self.url)
        self._thread = threading.Thread(target=self._run, name=f"stream-{self.index}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        with self._lock:
            started = self._started
            ws = self._ws
        if not started:
            if self.ended:
                return
            self._finish(None)
            raise NotStartedError()
        if ws is not None:
            threading.Thread(target=self._close_quietly, args=(ws,), name=f"stream-{self.index}-close", daemon=True).start()
        self._finish(None)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _close_quietly(self, ws: WebSocket) -> None:
        try:
            ws.close(NORMAL_CLOSURE, "stream stopped")
        except (WebSocketClosedError, OSError, RuntimeError) as exc:
            LOGGER.debug("Graceful close of stream #%d failed, aborting: %s", self.index, exc)
            try:
                ws.abort()
            except OSError as abort_exc:
                LOGGER.debug("Abort of stream #%d failed: %s", self.index, abort_exc)

    def _finish(self, error: Optional[BaseException]) -> None:
        with self._lock:
            if self.end_time is not None:
                return
            self.end_time = datetime.now(timezone.utc)
            self.error = error
        LOGGER.debug(
            "Finishing stream #%d (err=%s)", self.index, type(error).__name__ if error else "none"
        )
        self._ticker.stop()
        self.updates.close()

    def _emit(self, update: ThroughputUpdate) -> None:
        self.updates.send(update)

    # ------------------------------------------------------------------
    # I/O loops
    # ------------------------------------------------------------------

    def _run(self) -> None:
        try:
            ws = self._connector(
                self.url,
                subprotocols=[THROUGHPUT_WS_PROTO],
                user_agent=self.user_agent,
                open_timeout=self.open_timeout,
            )
        except Exception as exc:
            LOGGER.info("Stream #%d could not connect to %s: %s", self.index, self.url, exc)
            self._finish(StreamFailureError(f"websocket connect failed: {exc}", exc))
            return

        with self._lock:
            stopped = self.end_time is not None
            if not stopped:
                self._ws = ws
        if stopped:
            self._close_quietly(ws)
            return

        LOGGER.debug("Stream #%d open", self.index)
        self._ticker.start(self._send_measurement)
        if self.direction is ThroughputDirection.UPLOAD:
            self._upload_thread = threading.Thread(
                target=self._upload_loop, args=(ws,), name=f"stream-{self.index}-upload", daemon=True
            )
            self._upload_thread.start()

        try:
            self._receive(ws)
        finally:
            self._close_quietly(ws)

    def _receive(self, ws: WebSocket) -> None:
        try:
            for message in ws.incoming():
                if self.ended:
                    break
                if isinstance(message, TextMessage):
                    self._add_received(len(message.text.encode("utf-8")))
                    self._handle_measurement(message.text)
                else:
                    self._add_received(len(message.data))
        except WebSocketClosedError as exc:
            LOGGER.info("Stream #%d closed unexpectedly: %s %s", self.index, exc.code, exc.reason)
            self._finish(UnexpectedCloseError(exc.code, exc.reason))
        except Exception as exc:
            LOGGER.info("Stream #%d receive loop failed: %s", self.index, exc)
            self._finish(StreamFailureError(f"websocket receive failed: {exc}", exc))
        else:
            LOGGER.debug("Stream #%d incoming completed", self.index)
            self._finish(None)

    def _handle_measurement(self, text: str) -> None:
        try:
            measurement = decode_throughput_measurement(text)
        except ValueError as exc:
            LOGGER.warning("Stream #%d: undecodable measurement message: %s", self.index, exc)
            return
        self._emit(ThroughputUpdate(True, self.index, datetime.now(timezone.utc), measurement))

    def _send_measurement(self) -> None:
        ws = self._ws
        if ws is None or self.ended or self._started_at is None:
            return
        elapsed_ms = int((time.monotonic() - self._started_at) * 1000)
        measurement = ThroughputMeasurement(application=self.counters(), elapsed_time=elapsed_ms)
        try:
            ws.send_text(encode_throughput_measurement(measurement))
        except (WebSocketClosedError, OSError) as exc:
            LOGGER.debug("Stream #%d unable to send measurement: %s", self.index, exc)
            return
        self._emit(ThroughputUpdate(False, self.index, datetime.now(timezone.utc), measurement))

    def _upload_loop(self, ws: WebSocket) -> None:
        size = self.min_message_size
        payload = os.urandom(size)
        while not self.ended:
            try:
                ws.send_binary(payload)
            except (WebSocketClosedError, OSError) as exc:
                LOGGER.debug("Stream #%d binary send failed: %s", self.index, exc)
                break
            total = self._add_sent(len(payload))
            new_size = next_message_size(size, total, self.max_message_size, self.scaling_fraction)
            if new_size != size:
                size = new_size
                payload = os.urandom(size)
                LOGGER.debug("Stream #%d scaled message size to %d bytes", self.index, size)
            else:
                time.sleep(self.queue_full_delay_ms / 1000.0)
