"""
Latency monitor tests - stage timers and rolling statistics
"""

import time

from order_execution.latency_monitor import LatencyMonitor, LatencyTimer


def test_latency_timer():
    """Test the context-manager timer"""
    with LatencyTimer("routing") as timer:
        time.sleep(0.01)

    assert not timer.is_running
    assert timer.elapsed_ms() >= 10.0


def test_stage_timers():
    """Test start/stop bookkeeping per order and stage"""
    monitor = LatencyMonitor()

    monitor.start_timer("order-1", "routing")
    monitor.start_timer("order-1", "end_to_end")
    assert monitor.active_timers() == 2

    assert monitor.stop_timer("order-1", "routing") >= 0.0
    assert monitor.stop_timer("order-1", "routing") == 0.0
    monitor.stop_timer("order-1", "end_to_end")

    assert monitor.active_timers() == 0
    assert monitor.get_stats("routing").count == 1


def test_statistics():
    """Test mean, median, p95 and max over recorded samples"""
    monitor = LatencyMonitor()
    for value in range(1, 101):
        monitor.record("execution", float(value))

    stats = monitor.get_stats("execution")

    assert stats.count == 100
    assert stats.mean == 50.5
    assert stats.median == 50.5
    assert stats.p95 == 96.0
    assert stats.max_value == 100.0
    assert monitor.get_stats("unknown") is None


def test_history_is_bounded():
    """Test the rolling window"""
    monitor = LatencyMonitor(history_size=10)
    for value in range(50):
        monitor.record("routing", float(value))

    summary = monitor.get_summary()

    assert summary['routing']['count'] == 10
    assert summary['routing']['max_ms'] == 49.0
