from datetime import datetime, timedelta, timezone

import pytest

from msak.errors import IllegalStateError, MsakError, MsakErrorCode, RunCanceledError
from msak.measurements.models import (
    ByteCounters,
    LatencyConfig,
    LatencyResult,
    LatencyRoundTrip,
    ThroughputDirection,
    ThroughputMeasurement,
    ThroughputUpdate,
)
from msak.measurements.runner import (
    RunHandle,
    ThroughputAccumulator,
    _start_unless_cancelled,
    run_latency,
    summarize_latency,
)
from msak.server import ServerFactory

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _update(from_server, stream, seconds, sent=0, received=0):
    measurement = ThroughputMeasurement(ByteCounters(sent, received), elapsed_time=int(seconds * 1e6))
    return ThroughputUpdate(from_server, stream, T0 + timedelta(seconds=seconds), measurement)


def test_accumulator_adds_only_increases():
    acc = ThroughputAccumulator(ThroughputDirection.DOWNLOAD, streams=2)
    assert acc.add(_update(False, 0, 0.0, received=1000)) == 1000
    assert acc.add(_update(False, 0, 0.5, received=800)) == 0
    assert acc.add(_update(False, 0, 0.6, received=1500)) == 500
    assert acc.add(_update(True, 0, 0.7, sent=2000)) == 2000
    assert acc.add(_update(False, 1, 1.0, received=100)) == 100

    assert acc.app_bytes_total == 3600
    assert (acc.client_bytes, acc.server_bytes) == (1600, 2000)
    assert (acc.client_updates, acc.server_updates) == (4, 1)

    summary = acc.summary()
    assert summary.mbits == pytest.approx(3600 * 8 / 1e6)
    assert summary.mbps == pytest.approx(summary.mbits / 1.0)
    assert not summary.soft_end


def test_accumulator_upload_uses_sent_on_client_and_received_on_server():
    acc = ThroughputAccumulator(ThroughputDirection.UPLOAD, streams=1)
    acc.add(_update(False, 0, 0.0, sent=4000, received=99))
    acc.add(_update(True, 0, 0.5, sent=77, received=3000))
    assert (acc.client_bytes, acc.server_bytes) == (4000, 3000)


def test_accumulator_ignores_unknown_streams():
    acc = ThroughputAccumulator(ThroughputDirection.DOWNLOAD, streams=1)
    assert acc.add(_update(False, 3, 0.0, received=10)) == 0
    assert acc.add(_update(True, -1, 0.0, sent=10)) == 0
    assert acc.updates == 0
    assert acc.app_bytes_total == 0


def test_accumulator_elapsed_floor():
    acc = ThroughputAccumulator(ThroughputDirection.DOWNLOAD, streams=1)
    acc.add(_update(False, 0, 0.0, received=1_000_000))
    assert acc.elapsed_seconds() == pytest.approx(0.001)
    summary = acc.summary(soft_end=True, failed_streams=[2])
    assert summary.mbps == pytest.approx(8000.0)
    assert summary.soft_end
    assert summary.failed_streams == [2]
    assert "Throughput download OK" in summary.as_text()


def test_summarize_latency_population_stdev():
    result = LatencyResult(
        id="r",
        round_trips=(LatencyRoundTrip(1000), LatencyRoundTrip(3000), LatencyRoundTrip(None, True)),
        packets_sent=3,
        packets_received=2,
    )
    summary = summarize_latency(result)
    assert (summary.sent, summary.received) == (3, 2)
    assert summary.mean_ms == pytest.approx(2.0)
    assert summary.stdev_ms == pytest.approx(1.0)
    assert summary.as_text() == "OK 2/3 mean=2.00ms stdev=1.00ms"


def test_summarize_latency_without_samples():
    summary = summarize_latency(LatencyResult(id="r"))
    assert summary.mean_ms is None
    assert summary.as_text() == "OK 0/0 (no samples)"


def test_cancel_before_attach_cancels_run():
    handle = RunHandle()
    assert handle.cancel() is False
    assert handle.cancelled
    config = LatencyConfig(server=ServerFactory.for_latency("127.0.0.1", http_port=9))
    with pytest.raises(MsakError) as info:
        run_latency(config, handle)
    assert info.value.code is MsakErrorCode.CANCELED


def test_result_requires_submitted_handle():
    with pytest.raises(RuntimeError):
        RunHandle().result()


class CancelOnStart:
    """Cancels its own handle from inside start(), before it is running.

    ``ends_on_early_stop`` mimics a throughput test (an early stop finishes it
    and start() then refuses); otherwise it mimics a latency test (an early stop
    is refused and start() goes ahead).
    """

    def __init__(self, handle, ends_on_early_stop):
        self.handle = handle
        self.ends_on_early_stop = ends_on_early_stop
        self.started = False
        self.ended = False
        self.stops = 0

    def start(self):
        self.handle.cancel()
        if self.ended:
            raise IllegalStateError("already finished")
        self.started = True

    def stop(self):
        if not self.started:
            if self.ends_on_early_stop:
                self.ended = True
                return
            raise IllegalStateError("not started")
        self.stops += 1


def test_cancel_racing_start_stops_running_test():
    handle = RunHandle()
    test = CancelOnStart(handle, ends_on_early_stop=False)
    handle.attach(test)
    _start_unless_cancelled(test, handle, "latency")
    assert test.started
    assert test.stops == 1


def test_cancel_racing_start_of_finished_test_is_a_cancel():
    handle = RunHandle()
    test = CancelOnStart(handle, ends_on_early_stop=True)
    handle.attach(test)
    with pytest.raises(RunCanceledError):
        _start_unless_cancelled(test, handle, "throughput")
    assert test.ended
    assert not test.started


def test_start_refusal_without_cancel_propagates():
    class Refusing:
        def start(self):
            raise IllegalStateError("already started")

    with pytest.raises(IllegalStateError):
        _start_unless_cancelled(Refusing(), RunHandle(), "latency")
