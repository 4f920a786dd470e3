from email.message import Message
from urllib.error import HTTPError, URLError

from chaptersync.resilience import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    RateLimitError,
    ResilienceGateway,
    ScraperError,
    TokenBucket,
    classify_error,
    is_retryable_error,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _gateway(clock=None, **kwargs):
    clock = clock or FakeClock()
    kwargs.setdefault("acquire_timeout_seconds", 0)
    return ResilienceGateway(clock=clock, sleep=clock.advance, **kwargs)


def test_breaker_opens_at_threshold():
    gateway = _gateway(failure_threshold=5)
    for _ in range(4):
        gateway.record_failure("mangadex")
    assert gateway.is_open("mangadex") is False

    gateway.record_failure("mangadex")
    assert gateway.is_open("mangadex") is True
    assert gateway.is_open("other") is False


def test_success_resets_failure_count():
    gateway = _gateway(failure_threshold=3)
    gateway.record_failure("mangadex")
    gateway.record_failure("mangadex")
    gateway.record_success("mangadex")
    gateway.record_failure("mangadex")
    gateway.record_failure("mangadex")

    assert gateway.is_open("mangadex") is False
    assert gateway.breaker_snapshot()["mangadex"]["failures"] == 2


def test_reset_all_closes_every_breaker():
    gateway = _gateway(failure_threshold=1)
    gateway.record_failure("mangadex")
    gateway.record_failure("mangapark")
    assert gateway.is_open("mangadex") and gateway.is_open("mangapark")

    gateway.reset_all()

    assert gateway.is_open("mangadex") is False
    assert gateway.is_open("mangapark") is False


def test_breaker_half_opens_after_cooldown():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, open_cooldown_seconds=60, clock=clock)
    breaker.record_failure()
    assert breaker.record_failure() is True
    assert breaker.state == "open"

    clock.advance(59)
    assert breaker.is_open() is True

    clock.advance(1)
    assert breaker.state == "half_open"
    assert breaker.is_open() is False

    # One failed trial reopens immediately.
    assert breaker.record_failure() is True
    assert breaker.is_open() is True

    clock.advance(60)
    breaker.record_success()
    assert breaker.state == "closed"
    assert breaker.failures == 0


def test_call_rejects_when_open():
    gateway = _gateway(failure_threshold=1)
    gateway.record_failure("mangadex")
    calls = []

    try:
        gateway.call("mangadex", lambda: calls.append(1))
    except CircuitBreakerOpenError as exc:
        assert exc.code == "CIRCUIT_OPEN"
        assert exc.is_retryable is False
    else:
        raise AssertionError("Expected CircuitBreakerOpenError")
    assert calls == []


def test_call_counts_only_retryable_failures():
    gateway = _gateway(failure_threshold=2)

    def not_found():
        raise HTTPError("https://api.mangadex.org/manga/x", 404, "Not Found", None, None)

    def server_error():
        raise HTTPError("https://api.mangadex.org/manga/x", 503, "Unavailable", None, None)

    for func in (not_found, not_found, not_found):
        try:
            gateway.call("mangadex", func)
        except ScraperError as exc:
            assert exc.code == "NOT_FOUND"
        else:
            raise AssertionError("Expected ScraperError")
    assert gateway.is_open("mangadex") is False

    for _ in range(2):
        try:
            gateway.call("mangadex", server_error)
        except ScraperError as exc:
            assert exc.code == "SERVER_ERROR"
            assert exc.is_retryable is True
    assert gateway.is_open("mangadex") is True


def test_rate_limit_errors_never_open_breaker():
    gateway = _gateway(failure_threshold=1)

    def limited():
        raise RateLimitError("mangadex", retry_after=3)

    for _ in range(5):
        try:
            gateway.call("mangadex", limited)
        except RateLimitError:
            pass
    assert gateway.is_open("mangadex") is False
    assert gateway.breaker_snapshot()["mangadex"]["failures"] == 0


def test_call_returns_result_and_records_success():
    gateway = _gateway(failure_threshold=2)
    gateway.record_failure("mangadex")
    assert gateway.call("mangadex", lambda: "ok") == "ok"
    assert gateway.breaker_snapshot()["mangadex"]["failures"] == 0


def test_token_bucket_fails_closed():
    clock = FakeClock()
    bucket = TokenBucket(rate_per_second=1.0, burst=2, clock=clock, sleep=clock.advance)

    assert bucket.try_acquire() is True
    assert bucket.try_acquire() is True
    assert bucket.try_acquire() is False
    assert bucket.acquire(timeout=0.5) is False

    clock.advance(1.0)
    assert bucket.try_acquire() is True


def test_token_bucket_waits_within_timeout():
    clock = FakeClock()
    bucket = TokenBucket(rate_per_second=2.0, burst=1, clock=clock, sleep=clock.advance)
    assert bucket.try_acquire() is True

    start = clock.now
    assert bucket.acquire(timeout=1.0) is True
    assert 0.4 <= clock.now - start <= 0.6


def test_gateway_denies_token_after_burst():
    gateway = _gateway(rate_per_second=0.01, burst=1)
    assert gateway.acquire_token("mangadex") is True
    assert gateway.acquire_token("mangadex") is False
    assert gateway.acquire_token("other") is True


def test_classify_error_maps_transport_failures():
    headers = Message()
    headers["Retry-After"] = "7"
    limited = classify_error(
        HTTPError("https://api.mangadex.org", 429, "Too Many Requests", headers, None),
        "mangadex",
    )
    assert isinstance(limited, RateLimitError)
    assert limited.retry_after == 7.0
    assert limited.is_retryable is True

    network = classify_error(URLError("connection refused"), "mangadex")
    assert network.code == "NETWORK_ERROR"
    assert network.is_retryable is True

    timeout = classify_error(TimeoutError("read timed out"), "mangadex")
    assert timeout.code == "NETWORK_ERROR"

    parse = classify_error(ValueError("Expecting value"), "mangadex")
    assert parse.code == "PARSE_ERROR"
    assert parse.is_retryable is False

    forbidden = classify_error(
        HTTPError("https://api.mangadex.org", 403, "Forbidden", None, None), "mangadex"
    )
    assert forbidden.code == "HTTP_403"
    assert forbidden.is_retryable is False

    original = ScraperError("boom", "mangadex", True, "CUSTOM")
    assert classify_error(original, "mangadex") is original


def test_scraper_error_str_includes_code_and_source():
    error = ScraperError("feed missing", "mangadex", code="PARSE_ERROR")
    assert str(error) == "PARSE_ERROR: feed missing (source=mangadex)"
    assert error.is_retryable is False


def test_is_retryable_error():
    assert is_retryable_error(RateLimitError("mangadex")) is True
    assert is_retryable_error(CircuitBreakerOpenError("mangadex")) is False
    assert is_retryable_error(ValueError("bad payload")) is False
    assert is_retryable_error(KeyError("seriesId")) is False
    assert is_retryable_error(RuntimeError("database is locked")) is True
