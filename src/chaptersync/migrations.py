from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]

# Column types are kept portable so the same statements run on PostgreSQL.
INITIAL_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS series_sources (
        id TEXT PRIMARY KEY,
        series_id TEXT NOT NULL,
        source_name TEXT NOT NULL,
        source_id TEXT NOT NULL,
        source_url TEXT NOT NULL,
        trust_score DOUBLE PRECISION NOT NULL DEFAULT 1.0,
        failure_count INTEGER NOT NULL DEFAULT 0,
        source_status TEXT NOT NULL DEFAULT 'active',
        check_interval_minutes INTEGER NOT NULL DEFAULT 60,
        next_check_at TEXT NULL,
        last_checked_at TEXT NULL,
        last_success_at TEXT NULL,
        last_error TEXT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deleted_at TEXT NULL,
        UNIQUE(source_name, source_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS logical_chapters (
        id TEXT PRIMARY KEY,
        series_id TEXT NOT NULL,
        chapter_number TEXT NULL,
        chapter_slug TEXT NULL,
        chapter_title TEXT NULL,
        title_trust DOUBLE PRECISION NULL,
        published_at TEXT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deleted_at TEXT NULL,
        CHECK ((chapter_number IS NULL AND chapter_slug IS NOT NULL)
            OR (chapter_number IS NOT NULL AND chapter_slug IS NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chapter_sources (
        id TEXT PRIMARY KEY,
        chapter_id TEXT NOT NULL REFERENCES logical_chapters(id),
        series_source_id TEXT NOT NULL REFERENCES series_sources(id),
        source_chapter_id TEXT NULL,
        source_chapter_key TEXT NULL,
        source_chapter_url TEXT NOT NULL,
        chapter_title TEXT NULL,
        published_at TEXT NULL,
        detected_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deleted_at TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feed_entries (
        id TEXT PRIMARY KEY,
        series_id TEXT NOT NULL,
        chapter_id TEXT NOT NULL UNIQUE REFERENCES logical_chapters(id),
        chapter_number TEXT NULL,
        chapter_slug TEXT NULL,
        sources_json TEXT NOT NULL,
        first_seen_at TEXT NOT NULL,
        last_updated_at TEXT NOT NULL,
        deleted_at TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        job_type TEXT NOT NULL,
        status TEXT NOT NULL,
        payload_json TEXT NULL,
        result_json TEXT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 5,
        requested_at TEXT NOT NULL,
        started_at TEXT NULL,
        finished_at TEXT NULL,
        locked_by TEXT NULL,
        locked_at TEXT NULL,
        error TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leases (
        name TEXT PRIMARY KEY,
        holder TEXT NOT NULL,
        acquired_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
]

INDEXES = [
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_logical_chapters_number
    ON logical_chapters(series_id, chapter_number)
    WHERE chapter_number IS NOT NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_logical_chapters_slug
    ON logical_chapters(series_id, chapter_slug)
    WHERE chapter_slug IS NOT NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_chapter_sources_native
    ON chapter_sources(chapter_id, source_chapter_key)
    WHERE source_chapter_key IS NOT NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_chapter_sources_config
    ON chapter_sources(chapter_id, series_source_id)
    WHERE source_chapter_key IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_series_sources_due ON series_sources(source_status, next_check_at)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, requested_at)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_type_status ON jobs(job_type, status)",
]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("chaptersync.migrations")
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    for statement in INITIAL_SCHEMA:
        conn.execute(statement)


def _migration_indexes(conn: sqlite3.Connection) -> None:
    for statement in INDEXES:
        conn.execute(statement)


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_indexes", _migration_indexes),
    ]
