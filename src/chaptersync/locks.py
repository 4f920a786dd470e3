from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from .storage import release_lease, try_acquire_lease
from .utils import log_event


class LockTimeoutError(TimeoutError):
    is_retryable = True

    def __init__(self, key: str, waited_seconds: float) -> None:
        super().__init__(f"timed out after {waited_seconds:.1f}s waiting for lock {key}")
        self.key = key
        self.waited_seconds = waited_seconds


class LeaseLock(ABC):
    """Key-scoped mutual exclusion with a bounded lease."""

    @abstractmethod
    def acquire(self, key: str, holder: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def release(self, key: str, holder: str) -> None:
        raise NotImplementedError

    @contextmanager
    def hold(self, key: str) -> Iterator[str]:
        holder = f"lock_{uuid.uuid4().hex}"
        if not self.acquire(key, holder):
            raise LockTimeoutError(key, getattr(self, "wait_seconds", 0.0))
        try:
            yield holder
        finally:
            self.release(key, holder)


class DBLeaseLock(LeaseLock):
    """Lease rows in the ``leases`` table; an expired lease can be taken over."""

    def __init__(
        self,
        conn: Any,
        ttl_seconds: float = 30.0,
        wait_seconds: float = 10.0,
        poll_interval_seconds: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._logger = logger or logging.getLogger("chaptersync.locks")

    @classmethod
    def from_config(cls, conn: Any, cfg, **kwargs: Any) -> "DBLeaseLock":
        return cls(
            conn,
            ttl_seconds=cfg.lock_ttl_seconds,
            wait_seconds=cfg.lock_wait_seconds,
            poll_interval_seconds=cfg.lock_poll_interval_seconds,
            **kwargs,
        )

    def acquire(self, key: str, holder: str) -> bool:
        deadline = self._clock() + self.wait_seconds
        attempts = 0
        while True:
            attempts += 1
            if try_acquire_lease(self.conn, key, holder, self.ttl_seconds):
                if attempts > 1:
                    log_event(
                        self._logger,
                        logging.DEBUG,
                        "lease_acquired_after_wait",
                        key=key,
                        attempts=attempts,
                    )
                return True
            if self._clock() >= deadline:
                log_event(self._logger, logging.WARNING, "lease_wait_timeout", key=key, attempts=attempts)
                return False
            self._sleep(self.poll_interval_seconds)

    def release(self, key: str, holder: str) -> None:
        if not release_lease(self.conn, key, holder):
            log_event(self._logger, logging.WARNING, "lease_lost_before_release", key=key, holder=holder)
