"""Unit tests for the in-memory metrics recorder."""

import pytest

from tradecal.ops import get_metrics_recorder
from tradecal.ops.metrics import InMemoryMetricsRecorder, metric_key


def test_counters_and_gauges():
    recorder = InMemoryMetricsRecorder()
    recorder.increment("engine.analyses")
    recorder.increment("engine.analyses", 2)
    recorder.gauge("learning.DYN_SF.learned_brier", 0.21)

    snapshot = recorder.snapshot()
    assert snapshot["counters"] == {"engine.analyses": 3}
    assert snapshot["gauges"]["learning.DYN_SF.learned_brier"] == pytest.approx(0.21)


def test_timings_summary():
    recorder = InMemoryMetricsRecorder()
    recorder.timing("engine.dashboard", 10.0)
    recorder.timing("engine.dashboard", 30.0)
    with recorder.timed("engine.drift"):
        pass

    timings = recorder.snapshot()["timings"]
    assert timings["engine.dashboard"] == {"count": 2, "avg_ms": 20.0, "max_ms": 30.0}
    assert timings["engine.drift"]["count"] == 1


def test_timed_records_on_error():
    recorder = InMemoryMetricsRecorder()
    with pytest.raises(ValueError):
        with recorder.timed("engine.backtest"):
            raise ValueError("boom")
    assert recorder.snapshot()["timings"]["engine.backtest"]["count"] == 1


def test_reset_and_default_recorder():
    recorder = InMemoryMetricsRecorder()
    recorder.increment("x")
    recorder.reset()
    assert recorder.snapshot() == {"counters": {}, "timings": {}, "gauges": {}}
    assert get_metrics_recorder() is get_metrics_recorder()


def test_segment_scoped_keys():
    assert metric_key("learning.applied") == "learning.applied"
    assert metric_key("learning.applied", "DYN_SF") == "learning.DYN_SF.applied"
    assert metric_key("applied", "RED_SF") == "RED_SF.applied"
