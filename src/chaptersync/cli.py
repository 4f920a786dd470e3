from __future__ import annotations

import argparse
import logging
from datetime import timedelta

from .config import ConfigError, load_runtime_config, load_sources_file
from .poller import poll_source
from .resilience import ScraperError
from .storage import (
    SOFT_DELETE_TABLES,
    count_dead_jobs,
    deactivate_series_source,
    default_db_path,
    enqueue_job,
    get_series_source,
    init_db,
    list_jobs,
    list_series_sources,
    purge_expired_leases,
    purge_soft_deleted,
    replay_dead_jobs,
    restore,
    soft_delete,
    upsert_series_source,
)
from .utils import configure_logging, log_event, utc_now
from .worker import WORKER_JOB_TYPES, build_context


def _setup_logging() -> logging.Logger:
    return configure_logging("chaptersync")


def _open(args: argparse.Namespace, logger: logging.Logger):
    conn = init_db(args.db)
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    return conn, config


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=args.db)
    return 0


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        sources = load_sources_file(args.path)
    except (ConfigError, OSError) as exc:
        log_event(logger, logging.ERROR, "sources_import_error", error=str(exc))
        return 1
    if not sources:
        log_event(logger, logging.ERROR, "sources_import_error", error="no sources found")
        return 1
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    for source in sources:
        try:
            upsert_series_source(conn, source)
        except ValueError as exc:
            log_event(
                logger,
                logging.ERROR,
                "sources_import_error",
                source_name=source.get("source_name"),
                source_id=source.get("source_id"),
                error=str(exc),
            )
            return 1
    log_event(logger, logging.INFO, "sources_imported", count=len(sources), path=args.path)
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    sources = list_series_sources(
        conn, series_id=args.series_id, include_deleted=args.include_deleted
    )
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `chaptersync sources import sources.yml`",
        )
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            id=source.id,
            series_id=source.series_id,
            source_name=source.source_name,
            source_id=source.source_id,
            status=source.source_status,
            failures=source.failure_count,
            next_check_at=source.next_check_at,
            deleted_at=source.deleted_at,
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_sources_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        source = upsert_series_source(
            conn,
            {
                "series_id": args.series_id,
                "source_name": args.name,
                "source_id": args.source_id,
                "source_url": args.url,
                "trust_score": args.trust_score,
                "check_interval_minutes": args.interval_minutes,
            },
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "source_add_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "source_added", id=source.id, source_name=source.source_name)
    return 0


def _cmd_sources_deactivate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    if not deactivate_series_source(conn, args.id, args.reason):
        log_event(logger, logging.ERROR, "source_not_found", id=args.id)
        return 1
    log_event(logger, logging.INFO, "source_deactivated", id=args.id, reason=args.reason)
    return 0


def _cmd_sources_delete(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    if not soft_delete(conn, "series_sources", args.id):
        log_event(logger, logging.ERROR, "source_not_found", id=args.id)
        return 1
    log_event(logger, logging.INFO, "source_deleted", id=args.id)
    return 0


def _cmd_sources_restore(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    if not restore(conn, "series_sources", args.id):
        log_event(logger, logging.ERROR, "source_not_deleted", id=args.id)
        return 1
    log_event(logger, logging.INFO, "source_restored", id=args.id)
    return 0


def _cmd_poll(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    if get_series_source(conn, args.id) is None:
        log_event(logger, logging.ERROR, "source_not_found", id=args.id)
        return 1
    context = build_context(config, register_log_handler=False)
    try:
        result = poll_source(
            conn, args.id, gateway=context.gateway, registry=context.registry, config=config
        )
    except ScraperError as exc:
        log_event(
            logger,
            logging.ERROR,
            "poll_error",
            id=args.id,
            code=exc.code,
            retryable=exc.is_retryable,
            error=exc.message,
        )
        return 1
    log_event(logger, logging.INFO, "poll_result", **result.to_dict())
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    payload: dict[str, object] = {}
    if args.series_source_id:
        payload["seriesSourceId"] = args.series_source_id
    if args.job_type == "poll_source" and not payload:
        log_event(logger, logging.ERROR, "job_enqueue_error", error="--series-source-id is required")
        return 1
    job_id = enqueue_job(
        conn,
        args.job_type,
        payload or None,
        debounce=args.debounce,
        max_attempts=config.jobs.max_attempts,
    )
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=args.job_type)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    for job in list_jobs(conn, limit=args.limit, status=args.status):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            attempts=f"{job.attempts}/{job.max_attempts}",
            requested_at=job.requested_at,
            finished_at=job.finished_at,
            error=job.error,
        )
    return 0


def _cmd_jobs_dead(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    if args.replay:
        replayed = replay_dead_jobs(conn, job_type=args.job_type)
        log_event(logger, logging.INFO, "dead_jobs_replayed", count=replayed)
        return 0
    for job in list_jobs(conn, limit=args.limit, status="dead", job_type=args.job_type):
        log_event(
            logger,
            logging.INFO,
            "dead_job",
            job_id=job.id,
            job_type=job.job_type,
            attempts=job.attempts,
            error=job.error,
        )
    log_event(logger, logging.INFO, "dead_jobs", count=count_dead_jobs(conn, args.job_type))
    return 0


def _cmd_dlq_check(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    context = build_context(config)
    custom = {
        key: value
        for key, value in (
            ("warning", args.warning),
            ("error", args.error),
            ("critical", args.critical),
        )
        if value is not None
    }
    dead = count_dead_jobs(conn)
    try:
        alert = context.monitor.check_dlq_thresholds(dead, custom or None)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "dlq_check_error", error=str(exc))
        return 1
    log_event(
        logger,
        logging.INFO,
        "dlq_status",
        dead_jobs=dead,
        alert=alert.severity if alert else None,
    )
    return 2 if alert and alert.severity == "critical" else 0


def _cmd_purge(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    cutoff = (utc_now() - timedelta(days=args.older_than_days)).isoformat()
    # Children first so foreign keys stay satisfied.
    totals: dict[str, int] = {}
    for table in ("feed_entries", "chapter_sources", "logical_chapters", "series_sources"):
        if table in args.tables:
            totals[table] = purge_soft_deleted(conn, table, cutoff)
    totals["leases"] = purge_expired_leases(conn)
    log_event(logger, logging.INFO, "purged", cutoff=cutoff, **totals)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chaptersync", description="ChapterSync CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the SQLite state database (defaults to $CS_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    sources_parser = subparsers.add_parser("sources", help="Manage series sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.add_argument("--series-id", help="Only sources of this series")
    sources_list.add_argument(
        "--include-deleted", action="store_true", help="Include soft-deleted sources"
    )
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_add = sources_subparsers.add_parser("add", help="Add or update a source")
    sources_add.add_argument("--series-id", required=True, help="Series id")
    sources_add.add_argument("--name", required=True, help="Source name (selects the scraper)")
    sources_add.add_argument("--source-id", required=True, help="Series id on the source")
    sources_add.add_argument("--url", required=True, help="Canonical series URL on the source")
    sources_add.add_argument("--trust-score", type=float, default=1.0, help="Metadata trust score")
    sources_add.add_argument(
        "--interval-minutes", type=int, default=60, help="Minutes between polls"
    )
    sources_add.set_defaults(func=_cmd_sources_add)

    sources_deactivate = sources_subparsers.add_parser("deactivate", help="Stop polling a source")
    sources_deactivate.add_argument("id", help="Series source id")
    sources_deactivate.add_argument("--reason", default="deactivated by operator")
    sources_deactivate.set_defaults(func=_cmd_sources_deactivate)

    sources_delete = sources_subparsers.add_parser("delete", help="Soft-delete a source")
    sources_delete.add_argument("id", help="Series source id")
    sources_delete.set_defaults(func=_cmd_sources_delete)

    sources_restore = sources_subparsers.add_parser("restore", help="Restore a soft-deleted source")
    sources_restore.add_argument("id", help="Series source id")
    sources_restore.set_defaults(func=_cmd_sources_restore)

    poll_parser = subparsers.add_parser("poll", help="Poll one source now")
    poll_parser.add_argument("id", help="Series source id")
    poll_parser.set_defaults(func=_cmd_poll)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("job_type", choices=WORKER_JOB_TYPES, help="Job type to enqueue")
    jobs_enqueue.add_argument("--series-source-id", help="Series source id for poll_source")
    jobs_enqueue.add_argument(
        "--debounce",
        action="store_true",
        help="Avoid enqueuing if an identical job is queued/running",
    )
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.add_argument("--status", help="Only jobs with this status")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_dead = jobs_subparsers.add_parser("dead", help="Show or replay dead-lettered jobs")
    jobs_dead.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_dead.add_argument("--job-type", help="Only jobs of this type")
    jobs_dead.add_argument("--replay", action="store_true", help="Re-queue dead jobs")
    jobs_dead.set_defaults(func=_cmd_jobs_dead)

    dlq_parser = subparsers.add_parser("dlq", help="Dead-letter queue health")
    dlq_subparsers = dlq_parser.add_subparsers(dest="dlq_command", required=True)
    dlq_check = dlq_subparsers.add_parser("check", help="Check dead-letter backlog now")
    dlq_check.add_argument("--warning", type=int, help="Override warning threshold")
    dlq_check.add_argument("--error", type=int, help="Override error threshold")
    dlq_check.add_argument("--critical", type=int, help="Override critical threshold")
    dlq_check.set_defaults(func=_cmd_dlq_check)

    purge_parser = subparsers.add_parser("purge", help="Remove old soft-deleted rows")
    purge_parser.add_argument("--older-than-days", type=int, default=30)
    purge_parser.add_argument(
        "--tables",
        nargs="+",
        choices=SOFT_DELETE_TABLES,
        default=list(SOFT_DELETE_TABLES),
        help="Tables to purge",
    )
    purge_parser.set_defaults(func=_cmd_purge)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.db is None:
        args.db = default_db_path()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
