from __future__ import annotations

import json
import os
import uuid
from typing import Any, Iterable

from .db import DBConn, connect_db
from .models import ChapterSource, FeedEntry, Job, LogicalChapter, SeriesSource
from .utils import json_dumps, json_loads_or, sha256_hex, utc_now_iso, utc_now_iso_offset

SOFT_DELETE_TABLES = ("series_sources", "logical_chapters", "chapter_sources", "feed_entries")

LIVE = "deleted_at IS NULL"

# Rows still referenced by a child row are kept.
_PURGE_GUARDS = {
    "logical_chapters": (
        "AND NOT EXISTS (SELECT 1 FROM chapter_sources c WHERE c.chapter_id = logical_chapters.id) "
        "AND NOT EXISTS (SELECT 1 FROM feed_entries f WHERE f.chapter_id = logical_chapters.id)"
    ),
    "series_sources": (
        "AND NOT EXISTS (SELECT 1 FROM chapter_sources c WHERE c.series_source_id = series_sources.id)"
    ),
}

SERIES_SOURCE_COLUMNS = (
    "id, series_id, source_name, source_id, source_url, trust_score, failure_count, "
    "source_status, check_interval_minutes, next_check_at, last_checked_at, "
    "last_success_at, last_error, created_at, updated_at, deleted_at"
)
LOGICAL_CHAPTER_COLUMNS = (
    "id, series_id, chapter_number, chapter_slug, chapter_title, title_trust, "
    "published_at, created_at, updated_at, deleted_at"
)
CHAPTER_SOURCE_COLUMNS = (
    "id, chapter_id, series_source_id, source_chapter_id, source_chapter_url, "
    "chapter_title, published_at, detected_at, updated_at, deleted_at"
)
FEED_ENTRY_COLUMNS = (
    "id, series_id, chapter_id, chapter_number, chapter_slug, sources_json, "
    "first_seen_at, last_updated_at, deleted_at"
)
JOB_COLUMNS = (
    "id, job_type, status, payload_json, result_json, attempts, max_attempts, "
    "requested_at, started_at, finished_at, locked_by, locked_at, error"
)

SERIES_SOURCE_MUTABLE = {
    "series_id",
    "source_url",
    "trust_score",
    "failure_count",
    "source_status",
    "check_interval_minutes",
    "next_check_at",
    "last_checked_at",
    "last_success_at",
    "last_error",
}
LOGICAL_CHAPTER_MUTABLE = {"chapter_title", "title_trust", "published_at"}
CHAPTER_SOURCE_MUTABLE = {"source_chapter_url", "chapter_title", "published_at"}


def default_db_path() -> str:
    data_dir = os.environ.get("CS_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path or default_db_path())


def _new_id() -> str:
    return str(uuid.uuid4())


def _live_clause(include_deleted: bool) -> str:
    return "1=1" if include_deleted else LIVE


def _update_columns(
    conn: Any,
    table: str,
    row_id: str,
    fields: dict[str, object],
    allowed: set[str],
    include_deleted: bool = False,
) -> bool:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"cannot update {table} columns: {', '.join(sorted(unknown))}")
    if not fields:
        return False
    assignments = ", ".join(f"{column} = ?" for column in fields)
    timestamp_column = "last_updated_at" if table == "feed_entries" else "updated_at"
    cursor = conn.execute(
        f"""
        UPDATE {table}
        SET {assignments}, {timestamp_column} = ?
        WHERE id = ? AND {_live_clause(include_deleted)}
        """,
        (*fields.values(), utc_now_iso(), row_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def soft_delete(conn: Any, table: str, row_id: str) -> bool:
    if table not in SOFT_DELETE_TABLES:
        raise ValueError(f"{table} does not support soft deletion")
    cursor = conn.execute(
        f"UPDATE {table} SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
        (utc_now_iso(), row_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def restore(conn: Any, table: str, row_id: str) -> bool:
    if table not in SOFT_DELETE_TABLES:
        raise ValueError(f"{table} does not support soft deletion")
    cursor = conn.execute(
        f"UPDATE {table} SET deleted_at = NULL WHERE id = ? AND deleted_at IS NOT NULL",
        (row_id,),
    )
    conn.commit()
    return cursor.rowcount == 1


def purge_soft_deleted(conn: Any, table: str, older_than_iso: str) -> int:
    """Physically remove soft-deleted rows; maintenance only."""
    if table not in SOFT_DELETE_TABLES:
        raise ValueError(f"{table} does not support soft deletion")
    cursor = conn.execute(
        f"""
        DELETE FROM {table}
        WHERE deleted_at IS NOT NULL AND deleted_at < ? {_PURGE_GUARDS.get(table, "")}
        """,
        (older_than_iso,),
    )
    conn.commit()
    return cursor.rowcount


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )
    conn.commit()


# Series sources


def upsert_series_source(conn: Any, payload: dict[str, object]) -> SeriesSource:
    source_name = str(payload.get("source_name") or "").strip()
    source_id = str(payload.get("source_id") or "").strip()
    series_id = str(payload.get("series_id") or "").strip()
    source_url = str(payload.get("source_url") or "").strip()
    if not source_name or not source_id:
        raise ValueError("source_name and source_id are required")
    if not series_id:
        raise ValueError("series_id is required")
    if not source_url:
        raise ValueError("source_url is required")
    trust_score = float(payload.get("trust_score", 1.0))
    interval = int(payload.get("check_interval_minutes", 60))
    now = utc_now_iso()
    with conn.transaction():
        existing = find_series_source(conn, source_name, source_id, include_deleted=True)
        if existing is None:
            row_id = str(payload.get("id") or _new_id())
            conn.execute(
                """
                INSERT INTO series_sources
                    (id, series_id, source_name, source_id, source_url, trust_score,
                     failure_count, source_status, check_interval_minutes, next_check_at,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, NULL, ?, ?)
                """,
                (
                    row_id,
                    series_id,
                    source_name,
                    source_id,
                    source_url,
                    trust_score,
                    str(payload.get("source_status") or "active"),
                    interval,
                    now,
                    now,
                ),
            )
        else:
            row_id = existing.id
            conn.execute(
                """
                UPDATE series_sources
                SET series_id = ?, source_url = ?, trust_score = ?,
                    check_interval_minutes = ?, source_status = ?,
                    deleted_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (
                    series_id,
                    source_url,
                    trust_score,
                    interval,
                    str(payload.get("source_status") or existing.source_status),
                    now,
                    row_id,
                ),
            )
    source = get_series_source(conn, row_id)
    if source is None:
        raise RuntimeError("series source upsert lost its row")
    return source


def get_series_source(
    conn: Any, series_source_id: str, include_deleted: bool = False
) -> SeriesSource | None:
    cursor = conn.execute(
        f"""
        SELECT {SERIES_SOURCE_COLUMNS}
        FROM series_sources
        WHERE id = ? AND {_live_clause(include_deleted)}
        """,
        (series_source_id,),
    )
    row = cursor.fetchone()
    return _row_to_series_source(row) if row else None


def find_series_source(
    conn: Any, source_name: str, source_id: str, include_deleted: bool = False
) -> SeriesSource | None:
    cursor = conn.execute(
        f"""
        SELECT {SERIES_SOURCE_COLUMNS}
        FROM series_sources
        WHERE source_name = ? AND source_id = ? AND {_live_clause(include_deleted)}
        """,
        (source_name, source_id),
    )
    row = cursor.fetchone()
    return _row_to_series_source(row) if row else None


def list_series_sources(
    conn: Any,
    series_id: str | None = None,
    status: str | None = None,
    include_deleted: bool = False,
) -> list[SeriesSource]:
    clauses = [_live_clause(include_deleted)]
    params: list[object] = []
    if series_id:
        clauses.append("series_id = ?")
        params.append(series_id)
    if status:
        clauses.append("source_status = ?")
        params.append(status)
    cursor = conn.execute(
        f"""
        SELECT {SERIES_SOURCE_COLUMNS}
        FROM series_sources
        WHERE {" AND ".join(clauses)}
        ORDER BY series_id, source_name, source_id
        """,
        tuple(params),
    )
    return [_row_to_series_source(row) for row in cursor.fetchall()]


def count_series_sources(
    conn: Any, series_id: str | None = None, include_deleted: bool = False
) -> int:
    clauses = [_live_clause(include_deleted)]
    params: list[object] = []
    if series_id:
        clauses.append("series_id = ?")
        params.append(series_id)
    cursor = conn.execute(
        f"SELECT COUNT(*) FROM series_sources WHERE {' AND '.join(clauses)}",
        tuple(params),
    )
    return int(cursor.fetchone()[0])


def update_series_source(conn: Any, series_source_id: str, **fields: object) -> bool:
    return _update_columns(
        conn, "series_sources", series_source_id, fields, SERIES_SOURCE_MUTABLE
    )


def list_due_sources(conn: Any, now_iso: str) -> list[SeriesSource]:
    cursor = conn.execute(
        f"""
        SELECT {SERIES_SOURCE_COLUMNS}
        FROM series_sources
        WHERE {LIVE}
          AND source_status = 'active'
          AND (next_check_at IS NULL OR next_check_at <= ?)
        ORDER BY next_check_at IS NOT NULL, next_check_at
        """,
        (now_iso,),
    )
    return [_row_to_series_source(row) for row in cursor.fetchall()]


def record_poll_success(conn: Any, series_source_id: str, next_check_at: str) -> None:
    now = utc_now_iso()
    conn.execute(
        f"""
        UPDATE series_sources
        SET failure_count = 0,
            last_error = NULL,
            last_checked_at = ?,
            last_success_at = ?,
            next_check_at = ?,
            updated_at = ?
        WHERE id = ? AND {LIVE}
        """,
        (now, now, next_check_at, now, series_source_id),
    )
    conn.commit()


def record_poll_failure(
    conn: Any, series_source_id: str, error: str, increment: bool = True
) -> None:
    now = utc_now_iso()
    conn.execute(
        f"""
        UPDATE series_sources
        SET failure_count = failure_count + ?,
            last_error = ?,
            last_checked_at = ?,
            updated_at = ?
        WHERE id = ? AND {LIVE}
        """,
        (1 if increment else 0, error, now, now, series_source_id),
    )
    conn.commit()


def deactivate_series_source(
    conn: Any, series_source_id: str, reason: str, next_check_at: str | None = None
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        f"""
        UPDATE series_sources
        SET source_status = 'inactive',
            last_error = ?,
            last_checked_at = ?,
            next_check_at = ?,
            updated_at = ?
        WHERE id = ? AND {LIVE}
        """,
        (reason, now, next_check_at, now, series_source_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def _row_to_series_source(row: tuple) -> SeriesSource:
    (
        row_id,
        series_id,
        source_name,
        source_id,
        source_url,
        trust_score,
        failure_count,
        source_status,
        check_interval_minutes,
        next_check_at,
        last_checked_at,
        last_success_at,
        last_error,
        created_at,
        updated_at,
        deleted_at,
    ) = row
    return SeriesSource(
        id=row_id,
        series_id=series_id,
        source_name=source_name,
        source_id=source_id,
        source_url=source_url,
        trust_score=float(trust_score),
        failure_count=int(failure_count),
        source_status=source_status,
        check_interval_minutes=int(check_interval_minutes),
        next_check_at=next_check_at,
        last_checked_at=last_checked_at,
        last_success_at=last_success_at,
        last_error=last_error,
        created_at=created_at,
        updated_at=updated_at,
        deleted_at=deleted_at,
    )


# Logical chapters


def find_logical_chapter(
    conn: Any,
    series_id: str,
    chapter_number: str | None = None,
    chapter_slug: str | None = None,
    include_deleted: bool = False,
) -> LogicalChapter | None:
    if (chapter_number is None) == (chapter_slug is None):
        raise ValueError("exactly one of chapter_number or chapter_slug is required")
    key_column = "chapter_number" if chapter_number is not None else "chapter_slug"
    key_value = chapter_number if chapter_number is not None else chapter_slug
    cursor = conn.execute(
        f"""
        SELECT {LOGICAL_CHAPTER_COLUMNS}
        FROM logical_chapters
        WHERE series_id = ? AND {key_column} = ? AND {_live_clause(include_deleted)}
        """,
        (series_id, key_value),
    )
    row = cursor.fetchone()
    return _row_to_logical_chapter(row) if row else None


def get_logical_chapter(
    conn: Any, chapter_id: str, include_deleted: bool = False
) -> LogicalChapter | None:
    cursor = conn.execute(
        f"""
        SELECT {LOGICAL_CHAPTER_COLUMNS}
        FROM logical_chapters
        WHERE id = ? AND {_live_clause(include_deleted)}
        """,
        (chapter_id,),
    )
    row = cursor.fetchone()
    return _row_to_logical_chapter(row) if row else None


def upsert_logical_chapter(
    conn: Any,
    series_id: str,
    *,
    chapter_number: str | None = None,
    chapter_slug: str | None = None,
    create: dict[str, object] | None = None,
    update: dict[str, object] | None = None,
) -> tuple[LogicalChapter, bool]:
    """Create or reuse the chapter for a key, restoring a soft-deleted row.

    Returns the chapter and whether this call created it.
    """
    create = dict(create or {})
    update = dict(update or {})
    for fields in (create, update):
        unknown = set(fields) - LOGICAL_CHAPTER_MUTABLE
        if unknown:
            raise ValueError(f"cannot set logical_chapters columns: {', '.join(sorted(unknown))}")
    now = utc_now_iso()
    with conn.transaction():
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO logical_chapters
                (id, series_id, chapter_number, chapter_slug, chapter_title, title_trust,
                 published_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                _new_id(),
                series_id,
                chapter_number,
                chapter_slug,
                create.get("chapter_title"),
                create.get("title_trust"),
                create.get("published_at"),
                now,
                now,
            ),
        )
        created = cursor.rowcount == 1
        existing = find_logical_chapter(
            conn,
            series_id,
            chapter_number=chapter_number,
            chapter_slug=chapter_slug,
            include_deleted=True,
        )
        if existing is None:
            raise RuntimeError("logical chapter upsert lost its row")
        if not created and (existing.deleted_at is not None or update):
            assignments = ["deleted_at = NULL", "updated_at = ?"]
            params: list[object] = [now]
            for column, value in update.items():
                assignments.append(f"{column} = ?")
                params.append(value)
            conn.execute(
                f"UPDATE logical_chapters SET {', '.join(assignments)} WHERE id = ?",
                (*params, existing.id),
            )
            existing = get_logical_chapter(conn, existing.id)
            if existing is None:
                raise RuntimeError("logical chapter update lost its row")
    return existing, created


def list_logical_chapters(
    conn: Any, series_id: str, include_deleted: bool = False
) -> list[LogicalChapter]:
    cursor = conn.execute(
        f"""
        SELECT {LOGICAL_CHAPTER_COLUMNS}
        FROM logical_chapters
        WHERE series_id = ? AND {_live_clause(include_deleted)}
        ORDER BY created_at, id
        """,
        (series_id,),
    )
    return [_row_to_logical_chapter(row) for row in cursor.fetchall()]


def count_logical_chapters(conn: Any, series_id: str, include_deleted: bool = False) -> int:
    cursor = conn.execute(
        f"""
        SELECT COUNT(*) FROM logical_chapters
        WHERE series_id = ? AND {_live_clause(include_deleted)}
        """,
        (series_id,),
    )
    return int(cursor.fetchone()[0])


def update_logical_chapter(conn: Any, chapter_id: str, **fields: object) -> bool:
    return _update_columns(conn, "logical_chapters", chapter_id, fields, LOGICAL_CHAPTER_MUTABLE)


def _row_to_logical_chapter(row: tuple) -> LogicalChapter:
    (
        row_id,
        series_id,
        chapter_number,
        chapter_slug,
        chapter_title,
        title_trust,
        published_at,
        created_at,
        updated_at,
        deleted_at,
    ) = row
    return LogicalChapter(
        id=row_id,
        series_id=series_id,
        chapter_number=chapter_number,
        chapter_slug=chapter_slug,
        chapter_title=chapter_title,
        title_trust=float(title_trust) if title_trust is not None else None,
        published_at=published_at,
        created_at=created_at,
        updated_at=updated_at,
        deleted_at=deleted_at,
    )


# Chapter sources


def find_chapter_source(
    conn: Any,
    chapter_id: str,
    series_source_id: str,
    source_chapter_id: str | None,
    include_deleted: bool = False,
) -> ChapterSource | None:
    if source_chapter_id is not None:
        where = "chapter_id = ? AND source_chapter_key = ?"
        params: tuple = (chapter_id, sha256_hex(source_chapter_id))
    else:
        where = "chapter_id = ? AND series_source_id = ? AND source_chapter_key IS NULL"
        params = (chapter_id, series_source_id)
    cursor = conn.execute(
        f"""
        SELECT {CHAPTER_SOURCE_COLUMNS}
        FROM chapter_sources
        WHERE {where} AND {_live_clause(include_deleted)}
        """,
        params,
    )
    row = cursor.fetchone()
    return _row_to_chapter_source(row) if row else None


def upsert_chapter_source(
    conn: Any,
    chapter_id: str,
    series_source_id: str,
    source_chapter_id: str | None,
    *,
    source_chapter_url: str,
    chapter_title: str | None = None,
    published_at: str | None = None,
) -> tuple[ChapterSource, bool]:
    """Create or refresh one source's observation of a chapter.

    The natural key is the source-native chapter id when present and the
    source config otherwise. Restoring a soft-deleted row does not count as
    a creation.
    """
    now = utc_now_iso()
    source_chapter_key = sha256_hex(source_chapter_id) if source_chapter_id is not None else None
    with conn.transaction():
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO chapter_sources
                (id, chapter_id, series_source_id, source_chapter_id, source_chapter_key,
                 source_chapter_url, chapter_title, published_at, detected_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                _new_id(),
                chapter_id,
                series_source_id,
                source_chapter_id,
                source_chapter_key,
                source_chapter_url,
                chapter_title,
                published_at,
                now,
                now,
            ),
        )
        created = cursor.rowcount == 1
        existing = find_chapter_source(
            conn, chapter_id, series_source_id, source_chapter_id, include_deleted=True
        )
        if existing is None:
            raise RuntimeError("chapter source upsert lost its row")
        if not created:
            conn.execute(
                """
                UPDATE chapter_sources
                SET source_chapter_url = ?,
                    chapter_title = COALESCE(?, chapter_title),
                    published_at = COALESCE(?, published_at),
                    deleted_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (source_chapter_url, chapter_title, published_at, now, existing.id),
            )
            existing = get_chapter_source(conn, existing.id)
            if existing is None:
                raise RuntimeError("chapter source update lost its row")
    return existing, created


def get_chapter_source(
    conn: Any, chapter_source_id: str, include_deleted: bool = False
) -> ChapterSource | None:
    cursor = conn.execute(
        f"""
        SELECT {CHAPTER_SOURCE_COLUMNS}
        FROM chapter_sources
        WHERE id = ? AND {_live_clause(include_deleted)}
        """,
        (chapter_source_id,),
    )
    row = cursor.fetchone()
    return _row_to_chapter_source(row) if row else None


def list_chapter_sources(
    conn: Any,
    chapter_id: str | None = None,
    series_source_id: str | None = None,
    include_deleted: bool = False,
) -> list[ChapterSource]:
    clauses = [_live_clause(include_deleted)]
    params: list[object] = []
    if chapter_id:
        clauses.append("chapter_id = ?")
        params.append(chapter_id)
    if series_source_id:
        clauses.append("series_source_id = ?")
        params.append(series_source_id)
    cursor = conn.execute(
        f"""
        SELECT {CHAPTER_SOURCE_COLUMNS}
        FROM chapter_sources
        WHERE {" AND ".join(clauses)}
        ORDER BY detected_at, id
        """,
        tuple(params),
    )
    return [_row_to_chapter_source(row) for row in cursor.fetchall()]


def count_chapter_sources(
    conn: Any,
    chapter_id: str | None = None,
    series_source_id: str | None = None,
    include_deleted: bool = False,
) -> int:
    clauses = [_live_clause(include_deleted)]
    params: list[object] = []
    if chapter_id:
        clauses.append("chapter_id = ?")
        params.append(chapter_id)
    if series_source_id:
        clauses.append("series_source_id = ?")
        params.append(series_source_id)
    cursor = conn.execute(
        f"SELECT COUNT(*) FROM chapter_sources WHERE {' AND '.join(clauses)}",
        tuple(params),
    )
    return int(cursor.fetchone()[0])


def _row_to_chapter_source(row: tuple) -> ChapterSource:
    (
        row_id,
        chapter_id,
        series_source_id,
        source_chapter_id,
        source_chapter_url,
        chapter_title,
        published_at,
        detected_at,
        updated_at,
        deleted_at,
    ) = row
    return ChapterSource(
        id=row_id,
        chapter_id=chapter_id,
        series_source_id=series_source_id,
        source_chapter_id=source_chapter_id,
        source_chapter_url=source_chapter_url,
        chapter_title=chapter_title,
        published_at=published_at,
        detected_at=detected_at,
        updated_at=updated_at,
        deleted_at=deleted_at,
    )


# Feed entries


def get_feed_entry_for_chapter(
    conn: Any, chapter_id: str, include_deleted: bool = False
) -> FeedEntry | None:
    cursor = conn.execute(
        f"""
        SELECT {FEED_ENTRY_COLUMNS}
        FROM feed_entries
        WHERE chapter_id = ? AND {_live_clause(include_deleted)}
        """,
        (chapter_id,),
    )
    row = cursor.fetchone()
    return _row_to_feed_entry(row) if row else None


def upsert_feed_entry(
    conn: Any, chapter: LogicalChapter, source_ref: dict[str, object]
) -> FeedEntry:
    """Attach a source to the chapter's feed entry, creating or restoring it."""
    now = utc_now_iso()
    with conn.transaction():
        existing = get_feed_entry_for_chapter(conn, chapter.id, include_deleted=True)
        if existing is None:
            row_id = _new_id()
            conn.execute(
                """
                INSERT INTO feed_entries
                    (id, series_id, chapter_id, chapter_number, chapter_slug, sources_json,
                     first_seen_at, last_updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row_id,
                    chapter.series_id,
                    chapter.id,
                    chapter.chapter_number,
                    chapter.chapter_slug,
                    json_dumps([source_ref]),
                    now,
                    now,
                ),
            )
        else:
            row_id = existing.id
            sources = [
                item
                for item in existing.sources
                if item.get("series_source_id") != source_ref.get("series_source_id")
            ]
            sources.append(source_ref)
            conn.execute(
                """
                UPDATE feed_entries
                SET sources_json = ?, last_updated_at = ?, deleted_at = NULL
                WHERE id = ?
                """,
                (json_dumps(sources), now, row_id),
            )
    entry = get_feed_entry_for_chapter(conn, chapter.id)
    if entry is None or entry.id != row_id:
        raise RuntimeError("feed entry upsert lost its row")
    return entry


def list_feed_entries(
    conn: Any, series_id: str, include_deleted: bool = False
) -> list[FeedEntry]:
    cursor = conn.execute(
        f"""
        SELECT {FEED_ENTRY_COLUMNS}
        FROM feed_entries
        WHERE series_id = ? AND {_live_clause(include_deleted)}
        ORDER BY first_seen_at DESC, id
        """,
        (series_id,),
    )
    return [_row_to_feed_entry(row) for row in cursor.fetchall()]


def count_feed_entries(conn: Any, series_id: str, include_deleted: bool = False) -> int:
    cursor = conn.execute(
        f"""
        SELECT COUNT(*) FROM feed_entries
        WHERE series_id = ? AND {_live_clause(include_deleted)}
        """,
        (series_id,),
    )
    return int(cursor.fetchone()[0])


def _row_to_feed_entry(row: tuple) -> FeedEntry:
    (
        row_id,
        series_id,
        chapter_id,
        chapter_number,
        chapter_slug,
        sources_json,
        first_seen_at,
        last_updated_at,
        deleted_at,
    ) = row
    sources = json_loads_or(sources_json, [])
    return FeedEntry(
        id=row_id,
        series_id=series_id,
        chapter_id=chapter_id,
        chapter_number=chapter_number,
        chapter_slug=chapter_slug,
        sources=sources if isinstance(sources, list) else [],
        first_seen_at=first_seen_at,
        last_updated_at=last_updated_at,
        deleted_at=deleted_at,
    )


# Jobs


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    debounce: bool = False,
    max_attempts: int = 5,
    not_before: str | None = None,
) -> str:
    if debounce:
        pending = _get_pending_job_id(conn, job_type, payload if payload else None)
        if pending:
            return pending
    job_id = _new_job_id()
    conn.execute(
        f"""
        INSERT INTO jobs ({JOB_COLUMNS})
        VALUES (?, ?, 'queued', ?, NULL, 0, ?, ?, NULL, NULL, NULL, NULL, NULL)
        """,
        (
            job_id,
            job_type,
            json_dumps(payload) if payload else None,
            max_attempts,
            not_before or utc_now_iso(),
        ),
    )
    conn.commit()
    return job_id


def enqueue_jobs_bulk(
    conn: Any,
    job_type: str,
    payloads: Iterable[dict[str, object]],
    max_attempts: int = 5,
) -> list[str]:
    now = utc_now_iso()
    rows = []
    for payload in payloads:
        rows.append(
            (_new_job_id(), job_type, json_dumps(payload), max_attempts, now)
        )
    if not rows:
        return []
    with conn.transaction():
        conn.executemany(
            f"""
            INSERT INTO jobs ({JOB_COLUMNS})
            VALUES (?, ?, 'queued', ?, NULL, 0, ?, ?, NULL, NULL, NULL, NULL, NULL)
            """,
            rows,
        )
    return [row[0] for row in rows]


def get_job(conn: Any, job_id: str) -> Job | None:
    cursor = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: Any,
    limit: int = 50,
    status: str | None = None,
    job_type: str | None = None,
) -> list[Job]:
    clauses = ["1=1"]
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if job_type:
        clauses.append("job_type = ?")
        params.append(job_type)
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {JOB_COLUMNS}
        FROM jobs
        WHERE {" AND ".join(clauses)}
        ORDER BY requested_at DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def pending_count(conn: Any, job_type: str | None = None) -> int:
    params: tuple = ()
    type_clause = ""
    if job_type:
        type_clause = " AND job_type = ?"
        params = (job_type,)
    cursor = conn.execute(
        f"SELECT COUNT(*) FROM jobs WHERE status IN ('queued', 'running'){type_clause}",
        params,
    )
    return int(cursor.fetchone()[0])


def count_dead_jobs(conn: Any, job_type: str | None = None) -> int:
    params: tuple = ()
    type_clause = ""
    if job_type:
        type_clause = " AND job_type = ?"
        params = (job_type,)
    cursor = conn.execute(
        f"SELECT COUNT(*) FROM jobs WHERE status = 'dead'{type_clause}",
        params,
    )
    return int(cursor.fetchone()[0])


def count_jobs_by_status(conn: Any) -> dict[str, int]:
    cursor = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
    return {status: int(count) for status, count in cursor.fetchall()}


def has_pending_job(
    conn: Any, job_type: str, payload: dict[str, object] | None = None
) -> bool:
    return _get_pending_job_id(conn, job_type, payload) is not None


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Job | None:
    now = utc_now_iso()
    with conn.transaction():
        if lock_timeout_seconds is not None:
            cutoff = _iso_offset(-lock_timeout_seconds)
            conn.execute(
                """
                UPDATE jobs
                SET status = 'queued',
                    locked_by = NULL,
                    locked_at = NULL,
                    started_at = NULL,
                    error = 'stale_lock_requeued'
                WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
                """,
                (cutoff,),
            )
        params: list[object] = [now]
        type_clause = ""
        if allowed_types:
            placeholders = ",".join(["?"] * len(allowed_types))
            type_clause = f" AND job_type IN ({placeholders})"
            params.extend(allowed_types)
        skip_locked = " FOR UPDATE SKIP LOCKED" if conn.backend == "postgres" else ""
        cursor = conn.execute(
            f"""
            SELECT id
            FROM jobs
            WHERE status = 'queued' AND locked_by IS NULL AND requested_at <= ? {type_clause}
            ORDER BY requested_at ASC
            LIMIT 1{skip_locked}
            """,
            tuple(params),
        )
        row = cursor.fetchone()
        if not row:
            return None
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?,
                attempts = attempts + 1
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            """,
            (now, worker_id, now, row[0]),
        )
        if cursor.rowcount != 1:
            return None
    return get_job(conn, row[0])


def complete_job(conn: Any, job_id: str, result: dict[str, object] | None = None) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?,
            locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?, locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def requeue_job(conn: Any, job_id: str, not_before: str, error: str | None = None) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued',
            requested_at = ?,
            result_json = NULL,
            started_at = NULL,
            finished_at = NULL,
            locked_by = NULL,
            locked_at = NULL,
            error = ?
        WHERE id = ? AND status = 'running'
        """,
        (not_before, error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def dead_letter_job(conn: Any, job_id: str, error: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'dead', finished_at = ?, error = ?, locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def replay_dead_jobs(conn: Any, job_type: str | None = None) -> int:
    params: list[object] = [utc_now_iso()]
    type_clause = ""
    if job_type:
        type_clause = " AND job_type = ?"
        params.append(job_type)
    cursor = conn.execute(
        f"""
        UPDATE jobs
        SET status = 'queued', attempts = 0, requested_at = ?, finished_at = NULL,
            started_at = NULL, error = NULL
        WHERE status = 'dead'{type_clause}
        """,
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount


def _get_pending_job_id(
    conn: Any, job_type: str, payload: dict[str, object] | None
) -> str | None:
    if payload is None:
        cursor = conn.execute(
            """
            SELECT id FROM jobs
            WHERE job_type = ? AND status IN ('queued', 'running')
            ORDER BY requested_at DESC
            LIMIT 1
            """,
            (job_type,),
        )
    else:
        cursor = conn.execute(
            """
            SELECT id FROM jobs
            WHERE job_type = ? AND status IN ('queued', 'running') AND payload_json = ?
            ORDER BY requested_at DESC
            LIMIT 1
            """,
            (job_type, json_dumps(payload)),
        )
    row = cursor.fetchone()
    return row[0] if row else None


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        status,
        payload_json,
        result_json,
        attempts,
        max_attempts,
        requested_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    payload = json_loads_or(payload_json, {})
    return Job(
        id=job_id,
        job_type=job_type,
        status=status,
        payload=payload if isinstance(payload, dict) else {},
        result=json_loads_or(result_json, None),
        attempts=int(attempts),
        max_attempts=int(max_attempts),
        requested_at=requested_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


# Leases


def try_acquire_lease(conn: Any, lease_name: str, holder: str, ttl_seconds: float) -> bool:
    now = utc_now_iso()
    expires_at = _iso_offset(ttl_seconds)
    with conn.transaction():
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO leases (name, holder, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            """,
            (lease_name, holder, now, expires_at),
        )
        if cursor.rowcount == 1:
            return True
        cursor = conn.execute(
            """
            UPDATE leases
            SET holder = ?, acquired_at = ?, expires_at = ?
            WHERE name = ? AND (expires_at < ? OR holder = ?)
            """,
            (holder, now, expires_at, lease_name, now, holder),
        )
        return cursor.rowcount == 1


def release_lease(conn: Any, lease_name: str, holder: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM leases WHERE name = ? AND holder = ?",
        (lease_name, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def purge_expired_leases(conn: Any) -> int:
    cursor = conn.execute("DELETE FROM leases WHERE expires_at < ?", (utc_now_iso(),))
    conn.commit()
    return cursor.rowcount


def _iso_offset(seconds: float) -> str:
    return utc_now_iso_offset(seconds=seconds)
