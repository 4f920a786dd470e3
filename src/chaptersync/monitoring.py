from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Mapping

from .models import DLQAlert
from .utils import log_event, utc_now

AlertHandler = Callable[[DLQAlert], None]

DLQ_THRESHOLD = "dlq_threshold"
DLQ_CRITICAL = "dlq_critical"

_SEVERITY_LEVELS = {
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass(frozen=True)
class DLQThresholds:
    warning: int = 50
    error: int = 200
    critical: int = 500

    def __post_init__(self) -> None:
        if not 0 < self.warning <= self.error <= self.critical:
            raise ValueError(
                "DLQ thresholds must satisfy 0 < warning <= error <= critical, "
                f"got warning={self.warning} error={self.error} critical={self.critical}"
            )

    def merged(self, overrides: Mapping[str, int] | None) -> "DLQThresholds":
        if not overrides:
            return self
        unknown = set(overrides) - {"warning", "error", "critical"}
        if unknown:
            raise ValueError(f"unknown DLQ thresholds: {', '.join(sorted(unknown))}")
        return DLQThresholds(
            warning=int(overrides.get("warning", self.warning)),
            error=int(overrides.get("error", self.error)),
            critical=int(overrides.get("critical", self.critical)),
        )


def evaluate_dlq_count(failure_count: int, thresholds: DLQThresholds) -> DLQAlert | None:
    """Build the alert a backlog of ``failure_count`` dead jobs warrants, if any."""
    if failure_count >= thresholds.critical:
        return DLQAlert(
            type=DLQ_CRITICAL,
            severity="critical",
            failure_count=failure_count,
            message=(
                f"CRITICAL: dead-letter queue holds {failure_count} failed jobs "
                f"(critical threshold {thresholds.critical})"
            ),
            timestamp=utc_now(),
        )
    if failure_count >= thresholds.error:
        severity, threshold = "error", thresholds.error
    elif failure_count >= thresholds.warning:
        severity, threshold = "warning", thresholds.warning
    else:
        return None
    return DLQAlert(
        type=DLQ_THRESHOLD,
        severity=severity,
        failure_count=failure_count,
        message=(
            f"Dead-letter queue holds {failure_count} failed jobs "
            f"({severity} threshold {threshold})"
        ),
        timestamp=utc_now(),
    )


class DLQMonitor:
    """Raises dead-letter backlog alerts to registered handlers.

    Alerts of one type are suppressed for ``cooldown_seconds`` after being
    raised. Each handler runs in its own thread and a check never waits longer
    than ``dispatch_timeout_seconds`` for them.
    """

    def __init__(
        self,
        cooldown_seconds: float = 300.0,
        thresholds: DLQThresholds | Mapping[str, int] | None = None,
        clock: Callable[[], float] = time.monotonic,
        dispatch_timeout_seconds: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if isinstance(thresholds, DLQThresholds):
            self.thresholds = thresholds
        else:
            self.thresholds = DLQThresholds().merged(thresholds)
        self.cooldown_seconds = cooldown_seconds
        self.dispatch_timeout_seconds = dispatch_timeout_seconds
        self._clock = clock
        self._logger = logger or logging.getLogger("chaptersync.monitoring")
        self._lock = threading.Lock()
        self._handlers: dict[int, AlertHandler] = {}
        self._next_handler_id = 0
        self._last_raised: dict[str, float] = {}

    @classmethod
    def from_config(cls, cfg, **kwargs) -> "DLQMonitor":
        return cls(
            cooldown_seconds=cfg.cooldown_seconds,
            thresholds=DLQThresholds(cfg.warning, cfg.error, cfg.critical),
            **kwargs,
        )

    def register_handler(self, handler: AlertHandler) -> Callable[[], None]:
        with self._lock:
            handler_id = self._next_handler_id
            self._next_handler_id += 1
            self._handlers[handler_id] = handler

        def unregister() -> None:
            with self._lock:
                self._handlers.pop(handler_id, None)

        return unregister

    def handler_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def reset_cooldowns(self) -> None:
        with self._lock:
            self._last_raised.clear()

    def check_dlq_health(
        self,
        failure_count: int,
        thresholds: DLQThresholds | Mapping[str, int] | None = None,
    ) -> DLQAlert | None:
        if isinstance(thresholds, DLQThresholds):
            effective = thresholds
        else:
            effective = self.thresholds.merged(thresholds)
        alert = evaluate_dlq_count(failure_count, effective)
        if alert is None:
            return None
        now = self._clock()
        with self._lock:
            last = self._last_raised.get(alert.type)
            if last is not None and now - last < self.cooldown_seconds:
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "dlq_alert_suppressed",
                    type=alert.type,
                    failure_count=failure_count,
                )
                return None
            self._last_raised[alert.type] = now
            handlers = list(self._handlers.values())
        self._dispatch(alert, handlers)
        return alert

    def check_dlq_thresholds(
        self, failure_count: int, custom: Mapping[str, int] | None = None
    ) -> DLQAlert | None:
        return self.check_dlq_health(failure_count, self.thresholds.merged(custom))

    def _dispatch(self, alert: DLQAlert, handlers: list[AlertHandler]) -> None:
        if not handlers:
            return
        executor = ThreadPoolExecutor(
            max_workers=len(handlers), thread_name_prefix="dlq-alert"
        )
        try:
            futures = {executor.submit(handler, alert): handler for handler in handlers}
            done, pending = wait(futures, timeout=self.dispatch_timeout_seconds)
            for future in done:
                exc = future.exception()
                if exc is not None:
                    log_event(
                        self._logger,
                        logging.ERROR,
                        "dlq_alert_handler_failed",
                        handler=_handler_name(futures[future]),
                        error=exc,
                    )
            for future in pending:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "dlq_alert_handler_timeout",
                    handler=_handler_name(futures[future]),
                    timeout=self.dispatch_timeout_seconds,
                )
        finally:
            executor.shutdown(wait=False)


def log_alert_handler(alert: DLQAlert) -> None:
    logger = logging.getLogger("chaptersync.monitoring")
    log_event(
        logger,
        _SEVERITY_LEVELS.get(alert.severity, logging.WARNING),
        "dlq_alert",
        type=alert.type,
        severity=alert.severity,
        failure_count=alert.failure_count,
        message=repr(alert.message),
    )


def _handler_name(handler: AlertHandler) -> str:
    return getattr(handler, "__qualname__", None) or handler.__class__.__name__
