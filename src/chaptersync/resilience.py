from __future__ import annotations

import logging
import re
import socket
import threading
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterable, TypeVar
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse

from .utils import log_event, utc_now

T = TypeVar("T")

ALLOWED_HOSTS = frozenset({"mangadex.org", "api.mangadex.org"})
SOURCE_ID_MAX_LENGTH = 500
_SOURCE_ID_RE = re.compile(r"[A-Za-z0-9_-]+")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class ScraperError(Exception):
    def __init__(
        self,
        message: str,
        source: str,
        is_retryable: bool = False,
        code: str = "SCRAPER_ERROR",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.source = source
        self.is_retryable = is_retryable
        self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {self.message} (source={self.source})"


class RateLimitError(ScraperError):
    def __init__(
        self,
        source: str,
        message: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(
            message or f"rate limited by {source}",
            source,
            is_retryable=True,
            code="RATE_LIMIT",
        )
        self.retry_after = retry_after


class CircuitBreakerOpenError(ScraperError):
    def __init__(self, source: str) -> None:
        super().__init__(
            f"circuit breaker open for {source}",
            source,
            is_retryable=False,
            code="CIRCUIT_OPEN",
        )


def is_retryable_error(exc: BaseException) -> bool:
    """Decide whether a failed job should be delivered again."""
    flag = getattr(exc, "is_retryable", None)
    if isinstance(flag, bool):
        return flag
    if isinstance(exc, (ValueError, KeyError)):
        return False
    return True


def classify_error(exc: BaseException, source: str) -> ScraperError:
    if isinstance(exc, ScraperError):
        return exc
    if isinstance(exc, HTTPError):
        status = exc.code
        if status in (404, 410):
            return ScraperError(f"HTTP {status}", source, False, "NOT_FOUND")
        if status == 429:
            return RateLimitError(
                source,
                f"HTTP 429 from {source}",
                retry_after=_parse_retry_after(exc.headers.get("Retry-After") if exc.headers else None),
            )
        if status >= 500:
            return ScraperError(f"HTTP {status}", source, True, "SERVER_ERROR")
        return ScraperError(f"HTTP {status}", source, False, f"HTTP_{status}")
    if isinstance(exc, (URLError, socket.timeout, TimeoutError, ConnectionError)):
        reason = getattr(exc, "reason", None) or exc
        return ScraperError(f"network error: {reason}", source, True, "NETWORK_ERROR")
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ScraperError(f"unexpected response: {exc}", source, False, "PARSE_ERROR")
    return ScraperError(str(exc) or exc.__class__.__name__, source, True, "UNKNOWN_ERROR")


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if target.tzinfo is None:
        return None
    return max(0.0, (target - utc_now()).total_seconds())


def validate_source_id(source_id: object) -> bool:
    if not isinstance(source_id, str):
        return False
    if not source_id or len(source_id) > SOURCE_ID_MAX_LENGTH:
        return False
    return _SOURCE_ID_RE.fullmatch(source_id) is not None


def validate_source_url(url: object, allowed_hosts: Iterable[str] | None = None) -> bool:
    if not isinstance(url, str) or not url:
        return False
    hosts = {host.lower() for host in (allowed_hosts if allowed_hosts is not None else ALLOWED_HOSTS)}
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https"):
        return False
    hostname = (parsed.hostname or "").lower()
    return hostname in hosts


class CircuitBreaker:
    """Consecutive-failure breaker with a timed half-open trial."""

    def __init__(
        self,
        failure_threshold: int = 5,
        open_cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.open_cooldown_seconds = open_cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._state = CLOSED
        self._opened_at: float | None = None

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def is_open(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            return self._state == OPEN

    def record_failure(self) -> bool:
        """Count a failure; returns True when this call opened the breaker."""
        with self._lock:
            self._maybe_half_open()
            self._failures += 1
            if self._state == HALF_OPEN or (
                self._state == CLOSED and self._failures >= self.failure_threshold
            ):
                self._state = OPEN
                self._opened_at = self._clock()
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = CLOSED
            self._opened_at = None

    def reset(self) -> None:
        self.record_success()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "state": self._state,
                "failures": self._failures,
                "failure_threshold": self.failure_threshold,
            }

    def _maybe_half_open(self) -> None:
        if self._state != OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.open_cooldown_seconds:
            self._state = HALF_OPEN


class TokenBucket:
    def __init__(
        self,
        rate_per_second: float = 5.0,
        burst: int = 5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate_per_second = rate_per_second
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._updated = clock()

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def acquire(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for a token. Fails closed."""
        deadline = self._clock() + max(0.0, timeout)
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                needed = (1.0 - self._tokens) / self.rate_per_second
            remaining = deadline - self._clock()
            if remaining <= 0 or needed > remaining:
                return False
            self._sleep(needed)

    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._updated = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate_per_second)


@dataclass
class _SourceGuard:
    breaker: CircuitBreaker
    bucket: TokenBucket


class ResilienceGateway:
    """Per-source breakers and rate limiters shared by every worker thread."""

    def __init__(
        self,
        failure_threshold: int = 5,
        open_cooldown_seconds: float = 300.0,
        rate_per_second: float = 5.0,
        burst: int = 5,
        acquire_timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.open_cooldown_seconds = open_cooldown_seconds
        self.rate_per_second = rate_per_second
        self.burst = burst
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self._logger = logger or logging.getLogger("chaptersync.resilience")
        self._lock = threading.Lock()
        self._guards: dict[str, _SourceGuard] = {}

    @classmethod
    def from_config(cls, cfg, **kwargs: Any) -> "ResilienceGateway":
        return cls(
            failure_threshold=cfg.failure_threshold,
            open_cooldown_seconds=cfg.open_cooldown_seconds,
            rate_per_second=cfg.rate_per_second,
            burst=cfg.burst,
            acquire_timeout_seconds=cfg.acquire_timeout_seconds,
            **kwargs,
        )

    def _guard(self, source: str) -> _SourceGuard:
        with self._lock:
            guard = self._guards.get(source)
            if guard is None:
                guard = _SourceGuard(
                    breaker=CircuitBreaker(
                        self.failure_threshold, self.open_cooldown_seconds, self._clock
                    ),
                    bucket=TokenBucket(
                        self.rate_per_second, self.burst, self._clock, self._sleep
                    ),
                )
                self._guards[source] = guard
            return guard

    def acquire_token(self, source: str, timeout: float | None = None) -> bool:
        wait = self.acquire_timeout_seconds if timeout is None else timeout
        granted = self._guard(source).bucket.acquire(wait)
        if not granted:
            log_event(self._logger, logging.WARNING, "rate_limit_token_denied", source=source, waited=wait)
        return granted

    def is_open(self, source: str) -> bool:
        return self._guard(source).breaker.is_open()

    def record_failure(self, source: str) -> None:
        breaker = self._guard(source).breaker
        if breaker.record_failure():
            log_event(
                self._logger,
                logging.WARNING,
                "circuit_opened",
                source=source,
                failures=breaker.failures,
            )

    def record_success(self, source: str) -> None:
        breaker = self._guard(source).breaker
        if breaker.state != CLOSED:
            log_event(self._logger, logging.INFO, "circuit_closed", source=source)
        breaker.record_success()

    def reset(self, source: str) -> None:
        with self._lock:
            guard = self._guards.get(source)
        if guard is not None:
            guard.breaker.reset()

    def reset_all(self) -> None:
        with self._lock:
            guards = list(self._guards.values())
        for guard in guards:
            guard.breaker.reset()

    def breaker_snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            guards = dict(self._guards)
        return {source: guard.breaker.snapshot() for source, guard in sorted(guards.items())}

    def call(self, source: str, func: Callable[[], T]) -> T:
        """Run one upstream call behind the source's breaker.

        Failures are classified; only retryable, non-rate-limit failures count
        towards opening the breaker.
        """
        if self.is_open(source):
            raise CircuitBreakerOpenError(source)
        try:
            result = func()
        except Exception as exc:  # noqa: BLE001
            classified = classify_error(exc, source)
            if classified.is_retryable and not isinstance(classified, RateLimitError):
                self.record_failure(source)
            if classified is exc:
                raise
            raise classified from exc
        self.record_success(source)
        return result
