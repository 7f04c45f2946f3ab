import pytest
from datetime import datetime, timedelta

from app.services.failure_monitor import FailureMonitor


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def test_rejects_non_positive_threshold():
    with pytest.raises(ValueError):
        FailureMonitor(failure_threshold=0)


def test_alerts_once_when_threshold_reached():
    alerts = []
    monitor = FailureMonitor(failure_threshold=3, window_seconds=60, alert_handler=alerts.append)

    monitor.record_failure("write a")
    monitor.record_failure("write b")
    assert alerts == []

    monitor.record_failure("write c")
    assert len(alerts) == 1
    assert "write c" in alerts[0]

    monitor.record_failure("write d")
    assert len(alerts) == 1


def test_failures_outside_window_are_forgotten():
    alerts = []
    clock = FakeClock()
    monitor = FailureMonitor(failure_threshold=2, window_seconds=10, alert_handler=alerts.append, clock=clock)

    monitor.record_failure("first")
    clock.advance(11)
    assert monitor.recent_failures == 0

    monitor.record_failure("second")
    assert alerts == []
    assert monitor.stats["total_failures"] == 2


def test_stats():
    monitor = FailureMonitor(failure_threshold=5, window_seconds=30)

    monitor.record_success()
    monitor.record_success()
    monitor.record_failure("delete x")

    assert monitor.stats == {
        'total_successes': 2,
        'total_failures': 1,
        'recent_failures': 1,
        'window_seconds': 30
    }
