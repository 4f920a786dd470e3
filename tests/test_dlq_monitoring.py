import threading
import time

from chaptersync.monitoring import (
    DLQ_CRITICAL,
    DLQ_THRESHOLD,
    DLQMonitor,
    DLQThresholds,
    evaluate_dlq_count,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _monitor(**kwargs):
    clock = kwargs.pop("clock", FakeClock())
    return DLQMonitor(clock=clock, **kwargs), clock


def test_no_alert_below_warning():
    monitor, _ = _monitor()
    received = []
    monitor.register_handler(received.append)

    assert monitor.check_dlq_health(10) is None
    assert monitor.check_dlq_health(49) is None
    assert received == []


def test_severity_levels_follow_default_thresholds():
    thresholds = DLQThresholds()
    assert evaluate_dlq_count(50, thresholds).severity == "warning"
    assert evaluate_dlq_count(199, thresholds).severity == "warning"
    assert evaluate_dlq_count(200, thresholds).severity == "error"
    assert evaluate_dlq_count(200, thresholds).type == DLQ_THRESHOLD

    critical = evaluate_dlq_count(750, thresholds)
    assert critical.type == DLQ_CRITICAL
    assert critical.severity == "critical"
    assert critical.message.startswith("CRITICAL:")
    assert "750" in critical.message
    assert critical.to_dict()["failureCount"] == 750


def test_alert_is_dispatched_to_every_handler():
    monitor, _ = _monitor()
    first, second = [], []
    monitor.register_handler(first.append)
    monitor.register_handler(second.append)

    alert = monitor.check_dlq_health(500)

    assert alert is not None
    assert first == [alert]
    assert second == [alert]


def test_cooldown_suppresses_repeat_alerts_of_same_type():
    monitor, clock = _monitor(cooldown_seconds=300)
    received = []
    monitor.register_handler(received.append)

    assert monitor.check_dlq_health(50).severity == "warning"
    assert monitor.check_dlq_health(200) is None
    critical = monitor.check_dlq_health(500)
    assert critical is not None and critical.type == DLQ_CRITICAL
    assert monitor.check_dlq_health(600) is None

    clock.now += 300
    assert monitor.check_dlq_health(200).severity == "error"
    assert [alert.severity for alert in received] == ["warning", "critical", "error"]

    monitor.reset_cooldowns()
    assert monitor.check_dlq_health(200) is not None


def test_unregistered_handler_is_not_called():
    monitor, _ = _monitor()
    received = []
    unregister = monitor.register_handler(received.append)
    assert monitor.handler_count() == 1

    unregister()
    unregister()

    assert monitor.handler_count() == 0
    assert monitor.check_dlq_health(500) is not None
    assert received == []


def test_failing_handler_does_not_block_others():
    monitor, _ = _monitor()
    received = []

    def broken(alert):
        raise RuntimeError("webhook down")

    monitor.register_handler(broken)
    monitor.register_handler(received.append)

    alert = monitor.check_dlq_health(200)

    assert alert is not None
    assert received == [alert]


def test_slow_handler_is_bounded_by_dispatch_timeout():
    monitor, _ = _monitor(dispatch_timeout_seconds=0.05)
    release = threading.Event()
    received = []
    monitor.register_handler(lambda alert: release.wait(2))
    monitor.register_handler(received.append)

    started = time.monotonic()
    alert = monitor.check_dlq_health(500)
    elapsed = time.monotonic() - started
    release.set()

    assert alert is not None
    assert elapsed < 1.0
    assert received == [alert]


def test_custom_thresholds():
    monitor, _ = _monitor()

    alert = monitor.check_dlq_thresholds(25, {"warning": 20, "error": 50, "critical": 100})
    assert alert is not None
    assert alert.severity == "warning"

    monitor.reset_cooldowns()
    assert monitor.check_dlq_thresholds(100, {"warning": 20, "error": 50, "critical": 100}).type == (
        DLQ_CRITICAL
    )
    assert monitor.check_dlq_health(25) is None


def test_invalid_thresholds_are_rejected():
    for kwargs in (
        {"warning": 0, "error": 10, "critical": 20},
        {"warning": 30, "error": 10, "critical": 20},
        {"warning": 10, "error": 30, "critical": 20},
    ):
        try:
            DLQThresholds(**kwargs)
        except ValueError:
            continue
        raise AssertionError(f"Expected ValueError for {kwargs}")

    monitor, _ = _monitor()
    for custom in ({"warning": 300}, {"panic": 1}):
        try:
            monitor.check_dlq_thresholds(10, custom)
        except ValueError:
            continue
        raise AssertionError(f"Expected ValueError for {custom}")


def test_repeated_checks_within_cooldown_raise_once():
    monitor, _ = _monitor()
    received = []
    monitor.register_handler(received.append)

    results = [monitor.check_dlq_health(100) for _ in range(3)]

    assert results[0] is not None
    assert results[0].failure_count == 100
    assert results[1:] == [None, None]
    assert len(received) == 1
