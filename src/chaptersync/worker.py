from __future__ import annotations

import argparse
import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import timedelta

from .config import Config, ConfigError, load_runtime_config
from .models import Job
from .monitoring import DLQMonitor, log_alert_handler
from .poller import poll_source
from .reconciler import ingest_chapter
from .resilience import RateLimitError, ResilienceGateway, is_retryable_error
from .scrapers import ScraperRegistry, build_default_registry
from .storage import (
    claim_next_job,
    complete_job,
    count_dead_jobs,
    dead_letter_job,
    enqueue_job,
    get_setting,
    has_pending_job,
    init_db,
    list_due_sources,
    requeue_job,
    set_setting,
)
from .utils import configure_logging, log_event, parse_iso, utc_now, utc_now_iso, utc_now_iso_offset

WORKER_JOB_TYPES = [
    "poll_source",
    "chapter_ingest",
    "poll_due_sources",
    "dlq_health_check",
]


@dataclass
class WorkerContext:
    """Process-wide collaborators shared by every worker thread."""

    gateway: ResilienceGateway
    registry: ScraperRegistry
    monitor: DLQMonitor


def build_context(
    config: Config,
    registry: ScraperRegistry | None = None,
    register_log_handler: bool = True,
) -> WorkerContext:
    monitor = DLQMonitor.from_config(config.dlq)
    if register_log_handler:
        monitor.register_handler(log_alert_handler)
    return WorkerContext(
        gateway=ResilienceGateway.from_config(config.resilience),
        registry=registry
        or build_default_registry(
            timeout_seconds=config.resilience.http_timeout_seconds,
            user_agent=config.resilience.user_agent,
        ),
        monitor=monitor,
    )


_default_context: WorkerContext | None = None
_default_context_lock = threading.Lock()


def default_context(config: Config) -> WorkerContext:
    """Return the process-wide context, building it on first use.

    Breaker counts, rate-limit buckets and alert cooldowns live on the
    context, so every job in the process must share one.
    """
    global _default_context
    with _default_context_lock:
        if _default_context is None:
            _default_context = build_context(config)
        return _default_context


def reset_default_context() -> None:
    global _default_context
    with _default_context_lock:
        _default_context = None


def _setup_logging() -> logging.Logger:
    return configure_logging("chaptersync.worker")


def run_once(
    worker_id: str,
    allowed_types: list[str] | None = None,
    context: WorkerContext | None = None,
) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    context = context or default_context(config)
    _run_periodic_ticks(conn, config, allowed_types, logger)
    job = claim_next_job(
        conn,
        worker_id,
        allowed_types=allowed_types or WORKER_JOB_TYPES,
        lock_timeout_seconds=config.jobs.lock_timeout_seconds,
    )
    if not job:
        conn.close()
        return 0
    try:
        return _process_claimed_job(conn, config, context, job, logger)
    finally:
        conn.close()


def _process_claimed_job(conn, config: Config, context: WorkerContext, job: Job, logger: logging.Logger) -> int:
    try:
        result = run_claimed_job(conn, config, context, job, logger)
    except Exception as exc:  # noqa: BLE001
        handle_job_failure(conn, config, job, exc, logger)
        return 1

    if complete_job(conn, job.id, result=result):
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, job_type=job.job_type)
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def _process_claimed_job_thread(worker_id: str, job: Job, context: WorkerContext) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        return _process_claimed_job(conn, config, context, job, logger)
    finally:
        conn.close()


def handle_job_failure(conn, config: Config, job: Job, exc: BaseException, logger: logging.Logger) -> str:
    """Re-queue a retryable failure with backoff or move the job to the dead letters.

    Returns the job's new status.
    """
    error = f"{exc.__class__.__name__}: {exc}"
    if is_retryable_error(exc) and job.attempts < job.max_attempts:
        delay = compute_backoff(config, job.attempts, exc)
        requeue_job(conn, job.id, utc_now_iso_offset(seconds=delay), error=error)
        log_event(
            logger,
            logging.WARNING,
            "job_requeued",
            job_id=job.id,
            job_type=job.job_type,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            delay_seconds=round(delay, 2),
            error=error,
        )
        return "queued"
    dead_letter_job(conn, job.id, error)
    log_event(
        logger,
        logging.ERROR,
        "job_dead_lettered",
        job_id=job.id,
        job_type=job.job_type,
        attempt=job.attempts,
        retryable=is_retryable_error(exc),
        error=error,
    )
    return "dead"


def compute_backoff(config: Config, attempts: int, exc: BaseException | None = None) -> float:
    delay = config.jobs.backoff_seconds * (2 ** max(0, attempts - 1))
    delay = min(delay, config.jobs.max_backoff_seconds)
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        delay = max(delay, exc.retry_after)
    return delay


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    allowed_types: list[str] | None = None,
    concurrency: int = 1,
    context: WorkerContext | None = None,
) -> int:
    if concurrency <= 1:
        while True:
            run_once(worker_id, allowed_types, context)
            time.sleep(sleep_seconds)
        return 0

    logger = _setup_logging()
    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            while len(futures) < max_workers:
                try:
                    conn = init_db()
                    config = load_runtime_config(conn)
                except ConfigError as exc:
                    log_event(logger, logging.ERROR, "config_error", error=str(exc))
                    break
                if context is None:
                    context = default_context(config)
                _run_periodic_ticks(conn, config, allowed_types, logger)
                job = claim_next_job(
                    conn,
                    worker_id,
                    allowed_types=allowed_types or WORKER_JOB_TYPES,
                    lock_timeout_seconds=config.jobs.lock_timeout_seconds,
                )
                conn.close()
                if not job:
                    break
                futures.add(executor.submit(_process_claimed_job_thread, worker_id, job, context))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def run_claimed_job(conn, config: Config, context: WorkerContext, job: Job, logger: logging.Logger) -> dict[str, object]:
    log_event(
        logger,
        logging.INFO,
        "job_claimed",
        job_id=job.id,
        job_type=job.job_type,
        attempt=job.attempts,
    )
    if job.job_type == "poll_source":
        return _handle_poll_source(conn, config, context, job.payload, logger)
    if job.job_type == "chapter_ingest":
        return ingest_chapter(conn, job.payload, config=config).to_dict()
    if job.job_type == "poll_due_sources":
        return _handle_poll_due_sources(conn, config, logger)
    if job.job_type == "dlq_health_check":
        return _handle_dlq_health_check(conn, context, logger)
    raise ValueError(f"unsupported job type {job.job_type}")


def _handle_poll_source(
    conn, config: Config, context: WorkerContext, payload: dict[str, object], logger: logging.Logger
) -> dict[str, object]:
    series_source_id = str(payload.get("seriesSourceId") or "")
    if not series_source_id:
        raise ValueError("poll_source requires seriesSourceId")
    result = poll_source(
        conn,
        series_source_id,
        gateway=context.gateway,
        registry=context.registry,
        config=config,
    )
    return result.to_dict()


def _handle_poll_due_sources(conn, config: Config, logger: logging.Logger) -> dict[str, object]:
    due = list_due_sources(conn, utc_now_iso())
    enqueued = 0
    for source in due:
        payload = {"seriesSourceId": source.id}
        if has_pending_job(conn, "poll_source", payload):
            continue
        enqueue_job(conn, "poll_source", payload, max_attempts=config.jobs.max_attempts)
        enqueued += 1
    log_event(logger, logging.INFO, "poll_due_sources_enqueued", due=len(due), enqueued=enqueued)
    return {"due": len(due), "enqueued": enqueued}


def _handle_dlq_health_check(conn, context: WorkerContext, logger: logging.Logger) -> dict[str, object]:
    dead = count_dead_jobs(conn)
    alert = context.monitor.check_dlq_health(dead)
    log_event(
        logger,
        logging.INFO,
        "dlq_health_checked",
        dead_jobs=dead,
        alert=alert.severity if alert else None,
    )
    return {"dead_jobs": dead, "alert": alert.to_dict() if alert else None}


def _run_periodic_ticks(conn, config: Config, allowed_types: list[str] | None, logger: logging.Logger) -> None:
    if _allows(allowed_types, "poll_due_sources"):
        _maybe_enqueue_poll_due_sources(conn, config, logger)
    if _allows(allowed_types, "dlq_health_check"):
        _maybe_enqueue_dlq_check(conn, config, logger)


def _allows(allowed_types: list[str] | None, job_type: str) -> bool:
    return not allowed_types or job_type in allowed_types


def _maybe_enqueue_poll_due_sources(conn, config: Config, logger: logging.Logger) -> None:
    if has_pending_job(conn, "poll_due_sources"):
        return
    if not _interval_elapsed(conn, "poll_due.last_enqueued_at", config.jobs.poll_due_interval_seconds):
        return
    now = utc_now_iso()
    due = list_due_sources(conn, now)
    if not due:
        return
    enqueue_job(conn, "poll_due_sources", None, debounce=True)
    set_setting(conn, "poll_due.last_enqueued_at", now)
    log_event(logger, logging.INFO, "poll_due_sources_tick", due_count=len(due))


def _maybe_enqueue_dlq_check(conn, config: Config, logger: logging.Logger) -> None:
    if has_pending_job(conn, "dlq_health_check"):
        return
    if not _interval_elapsed(conn, "dlq.last_check_enqueued_at", config.dlq.check_interval_seconds):
        return
    enqueue_job(conn, "dlq_health_check", None, debounce=True)
    set_setting(conn, "dlq.last_check_enqueued_at", utc_now_iso())
    log_event(logger, logging.DEBUG, "dlq_health_check_tick")


def _interval_elapsed(conn, setting_key: str, interval_seconds: int) -> bool:
    last = get_setting(conn, setting_key, None)
    if not isinstance(last, str):
        return True
    return parse_iso(last) + timedelta(seconds=interval_seconds) <= utc_now()


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chaptersync-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=5, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("CS_WORKER_ONLY_TYPES", ""))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("CS_WORKER_CONCURRENCY", "1")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    allowed_types = _parse_only_types(args.only_job_types)
    if args.once:
        return run_once(args.worker_id, allowed_types)
    return run_loop(args.worker_id, args.sleep, allowed_types, args.concurrency)


if __name__ == "__main__":
    raise SystemExit(main())
