from __future__ import annotations

import logging

from .migrations import INDEXES, INITIAL_SCHEMA
from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("chaptersync.migrations")
    conn.execute("BEGIN")
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
    if "pg_bootstrap_001" not in applied:
        for statement in INITIAL_SCHEMA:
            conn.execute(statement)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (%s, %s)",
            ("pg_bootstrap_001", utc_now_iso()),
        )
        conn.commit()
        logger.info("migration_applied version=pg_bootstrap_001")
        conn.execute("BEGIN")
    if "pg_indexes_002" not in applied:
        for statement in INDEXES:
            conn.execute(statement)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (%s, %s)",
            ("pg_indexes_002", utc_now_iso()),
        )
        logger.info("migration_applied version=pg_indexes_002")
    conn.commit()
