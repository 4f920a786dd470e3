from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from jsonschema import Draft7Validator

from .config import Config, default_config
from .locks import DBLeaseLock, LeaseLock
from .models import LogicalChapter, SeriesSource
from .storage import (
    enqueue_job,
    find_logical_chapter,
    get_series_source,
    upsert_chapter_source,
    upsert_feed_entry,
    upsert_logical_chapter,
)
from .utils import canonical_decimal, log_event, parse_iso, sha256_hex, to_iso

NOTIFY_JOB_TYPE = "notify_chapter"

_NULLABLE_STRING = {"type": ["string", "null"]}

INGEST_PAYLOAD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["seriesId", "seriesSourceId", "chapterUrl"],
    "properties": {
        "seriesId": {"type": "string", "minLength": 1},
        "seriesSourceId": {"type": "string", "minLength": 1},
        "chapterNumber": {"type": ["string", "number", "null"]},
        "chapterSlug": _NULLABLE_STRING,
        "chapterTitle": _NULLABLE_STRING,
        "chapterUrl": {"type": "string", "minLength": 1},
        "sourceChapterId": _NULLABLE_STRING,
        "publishedAt": _NULLABLE_STRING,
    },
    "anyOf": [
        {
            "required": ["chapterNumber"],
            "properties": {"chapterNumber": {"type": ["string", "number"]}},
        },
        {
            "required": ["chapterSlug"],
            "properties": {"chapterSlug": {"type": "string", "minLength": 1}},
        },
    ],
}

_VALIDATOR = Draft7Validator(INGEST_PAYLOAD_SCHEMA)


class InvalidIngestPayload(ValueError):
    is_retryable = False


@dataclass(frozen=True)
class IngestResult:
    chapter_id: str
    chapter_source_id: str
    is_new: bool
    feed_entry_id: str | None = None
    notification_job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chapter_id": self.chapter_id,
            "chapter_source_id": self.chapter_source_id,
            "is_new": self.is_new,
            "feed_entry_id": self.feed_entry_id,
            "notification_job_id": self.notification_job_id,
        }


def validate_ingest_payload(payload: Any) -> None:
    errors = sorted(_VALIDATOR.iter_errors(payload), key=lambda err: list(err.absolute_path))
    if errors:
        details = "; ".join(
            f"{'/'.join(str(part) for part in err.absolute_path) or '<root>'}: {err.message}"
            for err in errors
        )
        raise InvalidIngestPayload(f"invalid chapter ingest payload: {details}")


def resolve_chapter_key(payload: dict[str, Any]) -> tuple[str | None, str | None]:
    """Return (chapter_number, chapter_slug); exactly one is set.

    A present chapter number always wins, so numeric and slug chapters never
    share an identity.
    """
    number = payload.get("chapterNumber")
    if number is not None and number != "":
        try:
            return canonical_decimal(number), None
        except ValueError as exc:
            raise InvalidIngestPayload(str(exc)) from exc
    slug = (payload.get("chapterSlug") or "").strip()
    if not slug:
        raise InvalidIngestPayload("chapterNumber or chapterSlug is required")
    return None, slug


def chapter_lock_key(series_id: str, chapter_number: str | None, chapter_slug: str | None) -> str:
    kind, value = ("n", chapter_number) if chapter_number is not None else ("s", chapter_slug)
    return f"chapter:{sha256_hex(f'{series_id}|{kind}|{value}')}"


def ingest_chapter(
    conn: Any,
    payload: dict[str, Any],
    lock: LeaseLock | None = None,
    config: Config | None = None,
    logger: logging.Logger | None = None,
) -> IngestResult:
    """Merge one chapter observation into the canonical chapter store.

    Safe to run any number of times for the same payload: the chapter and the
    observation are created once, and only a newly created observation updates
    the feed entry and enqueues a notification.
    """
    config = config or default_config()
    logger = logger or logging.getLogger("chaptersync.reconciler")
    validate_ingest_payload(payload)
    chapter_number, chapter_slug = resolve_chapter_key(payload)
    series_id = payload["seriesId"]

    source = get_series_source(conn, payload["seriesSourceId"])
    if source is None:
        raise InvalidIngestPayload(f"series source {payload['seriesSourceId']} not found")
    if source.series_id != series_id:
        raise InvalidIngestPayload(
            f"series source {source.id} does not belong to series {series_id}"
        )

    lock = lock or DBLeaseLock.from_config(conn, config.reconcile)
    title = (payload.get("chapterTitle") or "").strip() or None
    published_at = to_iso(payload.get("publishedAt"))
    source_chapter_id = payload.get("sourceChapterId")
    if source_chapter_id == "":
        source_chapter_id = None

    with lock.hold(chapter_lock_key(series_id, chapter_number, chapter_slug)):
        with conn.transaction():
            existing = find_logical_chapter(
                conn,
                series_id,
                chapter_number=chapter_number,
                chapter_slug=chapter_slug,
                include_deleted=True,
            )
            chapter, chapter_created = upsert_logical_chapter(
                conn,
                series_id,
                chapter_number=chapter_number,
                chapter_slug=chapter_slug,
                create={
                    "chapter_title": title,
                    "title_trust": source.trust_score if title else None,
                    "published_at": published_at,
                },
                update=_merge_chapter_fields(existing, source, title, published_at),
            )
            observation, is_new = upsert_chapter_source(
                conn,
                chapter.id,
                source.id,
                source_chapter_id,
                source_chapter_url=payload["chapterUrl"],
                chapter_title=title,
                published_at=published_at,
            )
            feed_entry_id = None
            notification_job_id = None
            if is_new:
                entry = upsert_feed_entry(
                    conn,
                    chapter,
                    {
                        "series_source_id": source.id,
                        "name": source.source_name,
                        "url": payload["chapterUrl"],
                    },
                )
                feed_entry_id = entry.id
                notification_job_id = enqueue_job(
                    conn,
                    NOTIFY_JOB_TYPE,
                    {
                        "seriesId": series_id,
                        "chapterId": chapter.id,
                        "chapterNumber": chapter.chapter_number,
                        "chapterSlug": chapter.chapter_slug,
                        "chapterTitle": chapter.chapter_title,
                        "feedEntryId": entry.id,
                        "sourceName": source.source_name,
                        "chapterUrl": payload["chapterUrl"],
                    },
                    max_attempts=config.jobs.max_attempts,
                )

    log_event(
        logger,
        logging.INFO if is_new else logging.DEBUG,
        "chapter_ingested",
        series_id=series_id,
        chapter_id=chapter.id,
        chapter_key=chapter.chapter_key,
        series_source_id=source.id,
        chapter_created=chapter_created,
        is_new=is_new,
    )
    return IngestResult(
        chapter_id=chapter.id,
        chapter_source_id=observation.id,
        is_new=is_new,
        feed_entry_id=feed_entry_id,
        notification_job_id=notification_job_id,
    )


def _merge_chapter_fields(
    existing: LogicalChapter | None,
    source: SeriesSource,
    title: str | None,
    published_at: str | None,
) -> dict[str, object]:
    if existing is None:
        return {}
    update: dict[str, object] = {}
    if title and (
        existing.chapter_title is None
        or existing.title_trust is None
        or source.trust_score >= existing.title_trust
    ):
        if title != existing.chapter_title or existing.title_trust != source.trust_score:
            update["chapter_title"] = title
            update["title_trust"] = source.trust_score
    if published_at and (
        existing.published_at is None
        or parse_iso(published_at) < parse_iso(existing.published_at)
    ):
        update["published_at"] = published_at
    return update
