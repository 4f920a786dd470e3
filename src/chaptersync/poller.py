from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .config import Config, default_config
from .models import ScrapedChapter, SeriesSource
from .resilience import (
    CircuitBreakerOpenError,
    RateLimitError,
    ResilienceGateway,
    ScraperError,
    validate_source_id,
    validate_source_url,
)
from .scrapers import ScraperRegistry
from .storage import (
    deactivate_series_source,
    enqueue_jobs_bulk,
    get_series_source,
    record_poll_failure,
    record_poll_success,
)
from .utils import canonical_decimal, log_event, to_iso, utc_now

INGEST_JOB_TYPE = "chapter_ingest"


@dataclass(frozen=True)
class PollResult:
    series_source_id: str
    status: str
    found_count: int = 0
    enqueued_count: int = 0
    skipped_invalid: int = 0
    job_ids: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "series_source_id": self.series_source_id,
            "status": self.status,
            "found_count": self.found_count,
            "enqueued_count": self.enqueued_count,
            "skipped_invalid": self.skipped_invalid,
            "job_ids": list(self.job_ids),
            "error": self.error,
        }


def normalize_chapter(chapter: ScrapedChapter) -> dict[str, Any] | None:
    """Map a scraped chapter to ingest fields; None when it has no usable key or URL."""
    url = (chapter.chapter_url or "").strip()
    if not url:
        return None
    number: str | None = None
    if chapter.chapter_number is not None and chapter.chapter_number != "":
        try:
            number = canonical_decimal(chapter.chapter_number)
        except ValueError:
            number = None
    slug: str | None = None
    if number is None:
        slug = (chapter.chapter_slug or "").strip() or None
        if slug is None:
            return None
    source_chapter_id = chapter.source_chapter_id
    if source_chapter_id is not None:
        source_chapter_id = str(source_chapter_id)
        if not source_chapter_id:
            source_chapter_id = None
    title = (chapter.chapter_title or "").strip() or None
    return {
        "chapterNumber": number,
        "chapterSlug": slug,
        "chapterTitle": title,
        "chapterUrl": url,
        "sourceChapterId": source_chapter_id,
        "publishedAt": to_iso(chapter.published_at),
    }


def poll_source(
    conn: Any,
    series_source_id: str,
    gateway: ResilienceGateway,
    registry: ScraperRegistry,
    config: Config | None = None,
    logger: logging.Logger | None = None,
) -> PollResult:
    """Fetch one source configuration and enqueue an ingest job per chapter.

    Failures are recorded on the source and re-raised for the queue's retry
    policy. Rate-limit and open-breaker outcomes do not count as source
    failures since no upstream request completed.
    """
    config = config or default_config()
    logger = logger or logging.getLogger("chaptersync.poller")

    source = get_series_source(conn, series_source_id)
    if source is None:
        raise ScraperError(
            f"series source {series_source_id} not found", "unknown", False, "SOURCE_NOT_FOUND"
        )
    if source.source_status != "active":
        raise ScraperError(
            f"series source {series_source_id} is {source.source_status}",
            source.source_name,
            False,
            "SOURCE_INACTIVE",
        )

    scraper = registry.get(source.source_name)
    if scraper is None or not scraper.supported:
        return _mark_unsupported(conn, source, config, logger)

    if not validate_source_id(source.source_id):
        error = ScraperError(
            f"invalid source id for {source.id}", source.source_name, False, "INVALID_SOURCE_ID"
        )
        record_poll_failure(conn, source.id, str(error))
        raise error
    if not validate_source_url(source.source_url, config.sources.allowed_hosts):
        error = ScraperError(
            f"source url host not allowed for {source.id}",
            source.source_name,
            False,
            "INVALID_SOURCE_URL",
        )
        record_poll_failure(conn, source.id, str(error))
        raise error

    if not gateway.acquire_token(source.source_name):
        error = RateLimitError(source.source_name, "rate limit token not granted in time")
        record_poll_failure(conn, source.id, str(error), increment=False)
        raise error

    try:
        series = gateway.call(source.source_name, lambda: scraper.scrape_series(source.source_id))
    except (CircuitBreakerOpenError, RateLimitError) as exc:
        record_poll_failure(conn, source.id, str(exc), increment=False)
        log_event(
            logger,
            logging.WARNING,
            "poll_source_deferred",
            series_source_id=source.id,
            source=source.source_name,
            code=exc.code,
        )
        raise
    except ScraperError as exc:
        record_poll_failure(conn, source.id, str(exc))
        log_event(
            logger,
            logging.ERROR,
            "poll_source_failed",
            series_source_id=source.id,
            source=source.source_name,
            code=exc.code,
            retryable=exc.is_retryable,
        )
        raise

    payloads: list[dict[str, Any]] = []
    seen: set[tuple[str | None, str | None, str | None]] = set()
    skipped = 0
    for chapter in series.chapters:
        normalized = normalize_chapter(chapter)
        if normalized is None:
            skipped += 1
            continue
        key = (
            normalized["chapterNumber"],
            normalized["chapterSlug"],
            normalized["sourceChapterId"],
        )
        if key in seen:
            continue
        seen.add(key)
        payloads.append(
            {"seriesId": source.series_id, "seriesSourceId": source.id, **normalized}
        )

    job_ids = enqueue_jobs_bulk(
        conn, INGEST_JOB_TYPE, payloads, max_attempts=config.jobs.max_attempts
    )
    next_check = utc_now() + timedelta(minutes=source.check_interval_minutes)
    record_poll_success(conn, source.id, next_check.isoformat())
    log_event(
        logger,
        logging.INFO,
        "poll_source_completed",
        series_source_id=source.id,
        source=source.source_name,
        found=len(series.chapters),
        enqueued=len(job_ids),
        skipped_invalid=skipped,
    )
    return PollResult(
        series_source_id=source.id,
        status="ok",
        found_count=len(series.chapters),
        enqueued_count=len(job_ids),
        skipped_invalid=skipped,
        job_ids=job_ids,
    )


def _mark_unsupported(
    conn: Any, source: SeriesSource, config: Config, logger: logging.Logger
) -> PollResult:
    reason = f"source {source.source_name} is not supported"
    next_check = utc_now() + timedelta(days=config.sources.unsupported_recheck_days)
    deactivate_series_source(conn, source.id, reason, next_check.isoformat())
    log_event(
        logger,
        logging.WARNING,
        "poll_source_unsupported",
        series_source_id=source.id,
        source=source.source_name,
    )
    return PollResult(series_source_id=source.id, status="unsupported", error=reason)
