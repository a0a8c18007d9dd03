"""Drive a latency or throughput test to completion and summarize it.

Every public entry point returns exactly one terminal outcome: a summary or a
raised :class:`~msak.errors.MsakError`. Cancellation goes through an explicit
:class:`RunHandle` owned by the caller.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List, Optional, Union

from ..errors import HarnessError, IllegalStateError, MsakError, MsakErrorCode, RunCanceledError, map_exception
from .latency import LatencyTest
from .models import (
    LatencyConfig,
    LatencySummary,
    LatencyUpdate,
    ThroughputConfig,
    ThroughputDirection,
    ThroughputSummary,
    ThroughputUpdate,
)
from .throughput import ThroughputTest

LOGGER = logging.getLogger(__name__)

_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="msak-run")

Stoppable = Union[LatencyTest, ThroughputTest]


class RunHandle:
    """Cancellation token for one run.

    A :meth:`cancel` that arrives before the test is attached stops the test as
    soon as it is attached.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._test: Optional[Stoppable] = None
        self.future: Optional[Future] = None

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def attach(self, test: Stoppable) -> None:
        with self._lock:
            self._test = test
            cancelled = self._cancelled
        if cancelled:
            _stop_quietly(test)

    def detach(self, test: Stoppable) -> None:
        with self._lock:
            if self._test is test:
                self._test = None

    def cancel(self) -> bool:
        """Request cancellation; returns True if a running test was told to stop."""

        with self._lock:
            self._cancelled = True
            test = self._test
        if test is None:
            return False
        _stop_quietly(test)
        return True

    def result(self, timeout: Optional[float] = None):
        if self.future is None:
            raise RuntimeError("handle was not returned by a submit_* call")
        return self.future.result(timeout)


def _stop_quietly(test: Stoppable) -> None:
    try:
        test.stop()
    except HarnessError as exc:
        LOGGER.debug("stop() ignored: %s", exc)


def _start_unless_cancelled(test: Stoppable, handle: RunHandle, what: str) -> None:
    if handle.cancelled:
        raise RunCanceledError(f"{what} run cancelled before start")
    try:
        test.start()
    except IllegalStateError:
        if handle.cancelled:
            raise RunCanceledError(f"{what} run cancelled") from None
        raise
    # a cancel() between the check and start() could not stop the test yet
    if handle.cancelled:
        _stop_quietly(test)


class ThroughputAccumulator:
    """Turns cumulative per-stream counters into byte totals.

    Each update carries cumulative counters. Only the increase since the last
    update for the same stream and origin is added; a decrease (duplicated or
    reordered snapshot) adds nothing.
    """

    def __init__(self, direction: ThroughputDirection, streams: int):
        self.direction = direction
        self.streams = streams
        self._last_client = [0] * streams
        self._last_server = [0] * streams
        self.app_bytes_total = 0
        self.client_bytes = 0
        self.server_bytes = 0
        self.client_updates = 0
        self.server_updates = 0
        self.first_time: Optional[datetime] = None
        self.last_time: Optional[datetime] = None

    @property
    def updates(self) -> int:
        return self.client_updates + self.server_updates

    def add(self, update: ThroughputUpdate) -> int:
        """Account for *update*; returns the bytes it contributed."""

        index = update.stream
        if not 0 <= index < self.streams:
            LOGGER.debug("Ignoring update for out-of-range stream %d", index)
            return 0
        app = update.measurement.application
        download = self.direction is ThroughputDirection.DOWNLOAD
        if update.from_server:
            cumulative = app.bytes_sent if download else app.bytes_received
            delta = max(0, cumulative - self._last_server[index])
            self._last_server[index] = max(self._last_server[index], cumulative)
            self.server_bytes += delta
            self.server_updates += 1
        else:
            cumulative = app.bytes_received if download else app.bytes_sent
            delta = max(0, cumulative - self._last_client[index])
            self._last_client[index] = max(self._last_client[index], cumulative)
            self.client_bytes += delta
            self.client_updates += 1
        self.app_bytes_total += delta

        if self.first_time is None:
            self.first_time = update.time
        self.last_time = update.time
        return delta

    def elapsed_seconds(self) -> float:
        if self.first_time is None or self.last_time is None:
            return 0.001
        elapsed_ms = (self.last_time - self.first_time).total_seconds() * 1000.0
        return max(1.0, elapsed_ms) / 1000.0

    def summary(self, soft_end: bool = False, failed_streams: Optional[List[int]] = None) -> ThroughputSummary:
        mbits = self.app_bytes_total * 8.0 / 1_000_000.0
        return ThroughputSummary(
            direction=self.direction,
            app_bytes_total=self.app_bytes_total,
            mbits=mbits,
            mbps=mbits / self.elapsed_seconds(),
            client_updates=self.client_updates,
            server_updates=self.server_updates,
            client_bytes=self.client_bytes,
            server_bytes=self.server_bytes,
            soft_end=soft_end,
            failed_streams=list(failed_streams or []),
        )


def summarize_latency(result) -> LatencySummary:
    rtts = [trip.rtt_us for trip in result.round_trips if trip.rtt_us is not None]
    mean_ms = stdev_ms = None
    if rtts:
        mean_us = sum(rtts) / len(rtts)
        variance = sum((value - mean_us) ** 2 for value in rtts) / len(rtts)
        mean_ms = mean_us / 1000.0
        stdev_ms = math.sqrt(variance) / 1000.0
    return LatencySummary(
        sent=result.packets_sent or 0,
        received=result.packets_received or 0,
        mean_ms=mean_ms,
        stdev_ms=stdev_ms,
        result=result,
    )


def _drain(channel, deadline: float, on_update: Optional[Callable], sink: Optional[Callable] = None) -> bool:
    """Consume *channel* until it closes; returns False if *deadline* passed first."""

    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return channel.is_drained()
        update = channel.receive(timeout=remaining)
        if update is None:
            if channel.is_drained():
                return True
            continue
        if sink is not None:
            sink(update)
        if on_update is not None:
            on_update(update)


def run_latency(
    config: LatencyConfig,
    handle: Optional[RunHandle] = None,
    on_update: Optional[Callable[[LatencyUpdate], None]] = None,
    **test_options,
) -> LatencySummary:
    handle = handle or RunHandle()
    test: Optional[LatencyTest] = None
    try:
        test = LatencyTest(config, **test_options)
        handle.attach(test)
        _start_unless_cancelled(test, handle, "latency")
        deadline = time.monotonic() + (config.duration_ms + config.grace_ms) / 1000.0
        if not _drain(test.updates, deadline, on_update):
            raise MsakError(MsakErrorCode.TIMEOUT, "Timed out waiting for latency test")
        test.join(timeout=1.0)
        if test.error is not None:
            raise test.error
        if test.result is None:
            raise MsakError(MsakErrorCode.NO_RESULT, "latency test ended without a result")
        summary = summarize_latency(test.result)
        LOGGER.info("Latency run against %s: %s", test.server_host, summary.as_text())
        return summary
    except MsakError:
        raise
    except Exception as exc:
        raise map_exception(exc) from exc
    finally:
        if test is not None:
            handle.detach(test)
            if test.started:
                _stop_quietly(test)


def run_throughput(
    config: ThroughputConfig,
    handle: Optional[RunHandle] = None,
    on_update: Optional[Callable[[ThroughputUpdate], None]] = None,
    **test_options,
) -> ThroughputSummary:
    handle = handle or RunHandle()
    test: Optional[ThroughputTest] = None
    try:
        test = ThroughputTest(config, **test_options)
        handle.attach(test)
        accumulator = ThroughputAccumulator(config.direction, config.streams)
        _start_unless_cancelled(test, handle, "throughput")
        deadline = time.monotonic() + (config.duration_ms + config.grace_ms) / 1000.0
        if not _drain(test.updates, deadline, on_update, accumulator.add):
            # soft: summarize what arrived
            LOGGER.info("Throughput drain timed out; summarizing %d update(s)", accumulator.updates)
            _stop_quietly(test)
        if test.error is not None:
            raise test.error
        if handle.cancelled:
            raise RunCanceledError("throughput run cancelled")
        if accumulator.app_bytes_total == 0 and accumulator.updates == 0:
            raise MsakError(
                MsakErrorCode.HANDSHAKE_FAILED,
                "No data or updates received; websocket handshake likely failed",
                _first_stream_cause(test),
            )
        summary = accumulator.summary(soft_end=test.soft_end, failed_streams=test.failed_streams)
        LOGGER.info("Throughput run against %s: %s", test.server_host, summary.as_text())
        return summary
    except MsakError:
        raise
    except Exception as exc:
        raise map_exception(exc) from exc
    finally:
        if test is not None:
            handle.detach(test)
            _stop_quietly(test)


def _first_stream_cause(test: ThroughputTest) -> Optional[BaseException]:
    for stream in test.streams:
        if stream.error is not None:
            return getattr(stream.error, "cause", None) or stream.error
    return None


def submit_latency(
    config: LatencyConfig,
    on_update: Optional[Callable[[LatencyUpdate], None]] = None,
    **test_options,
) -> RunHandle:
    handle = RunHandle()
    handle.future = _EXECUTOR.submit(run_latency, config, handle, on_update, **test_options)
    return handle


def submit_throughput(
    config: ThroughputConfig,
    on_update: Optional[Callable[[ThroughputUpdate], None]] = None,
    **test_options,
) -> RunHandle:
    handle = RunHandle()
    handle.future = _EXECUTOR.submit(run_throughput, config, handle, on_update, **test_options)
    return handle
