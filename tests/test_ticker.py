import random
import threading
import time

import pytest

from msak.measurements.ticker import MemorylessTicker


@pytest.mark.parametrize("bounds", [(250, 300, 400), (250, 100, 200), (10, 20, 5)])
def test_rejects_inconsistent_bounds(bounds):
    expected, minimum, maximum = bounds
    with pytest.raises(ValueError):
        MemorylessTicker(expected, minimum, maximum)


def test_delays_stay_within_bounds():
    ticker = MemorylessTicker(250, 100, 400, rng=random.Random(7))
    samples = [ticker.next_delay_ms() for _ in range(10_000)]
    assert min(samples) >= 100
    assert max(samples) <= 400
    assert min(samples) == 100
    assert max(samples) == 400


def test_mean_tracks_expected_with_wide_bounds():
    ticker = MemorylessTicker(250, 0, 1e9, rng=random.Random(42))
    samples = [ticker.next_delay_ms() for _ in range(10_000)]
    mean = sum(samples) / len(samples)
    assert 225 <= mean <= 275


def test_start_and_stop_are_idempotent():
    calls = []
    lock = threading.Lock()

    def tick():
        with lock:
            calls.append(time.monotonic())

    ticker = MemorylessTicker(10, 5, 20)
    ticker.start(tick)
    ticker.start(tick)
    time.sleep(0.2)
    ticker.stop()
    ticker.stop()
    assert not ticker.running
    with lock:
        count = len(calls)
    assert count > 0
    time.sleep(0.1)
    assert len(calls) == count


def test_failing_callback_keeps_ticking():
    calls = []

    def tick():
        calls.append(1)
        raise RuntimeError("boom")

    ticker = MemorylessTicker(10, 5, 20)
    ticker.start(tick)
    time.sleep(0.2)
    ticker.stop()
    assert len(calls) > 1
