from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class SeriesSource:
    id: str
    series_id: str
    source_name: str
    source_id: str
    source_url: str
    trust_score: float
    failure_count: int
    source_status: str
    check_interval_minutes: int
    next_check_at: str | None
    last_checked_at: str | None
    last_success_at: str | None
    last_error: str | None
    created_at: str
    updated_at: str
    deleted_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.source_status == "active" and self.deleted_at is None


@dataclass(frozen=True)
class LogicalChapter:
    id: str
    series_id: str
    chapter_number: str | None
    chapter_slug: str | None
    chapter_title: str | None
    title_trust: float | None
    published_at: str | None
    created_at: str
    updated_at: str
    deleted_at: str | None = None

    @property
    def chapter_key(self) -> str:
        return self.chapter_number if self.chapter_number is not None else str(self.chapter_slug)


@dataclass(frozen=True)
class ChapterSource:
    id: str
    chapter_id: str
    series_source_id: str
    source_chapter_id: str | None
    source_chapter_url: str
    chapter_title: str | None
    published_at: str | None
    detected_at: str
    updated_at: str
    deleted_at: str | None = None


@dataclass(frozen=True)
class FeedEntry:
    id: str
    series_id: str
    chapter_id: str
    chapter_number: str | None
    chapter_slug: str | None
    sources: list[dict[str, object]]
    first_seen_at: str
    last_updated_at: str
    deleted_at: str | None = None


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    attempts: int
    max_attempts: int
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None


@dataclass(frozen=True)
class ScrapedChapter:
    chapter_url: str
    chapter_number: str | float | int | None = None
    chapter_slug: str | None = None
    chapter_title: str | None = None
    source_chapter_id: str | None = None
    published_at: datetime | str | None = None


@dataclass(frozen=True)
class ScrapedSeries:
    source_id: str
    title: str
    chapters: list[ScrapedChapter] = field(default_factory=list)


@dataclass(frozen=True)
class DLQAlert:
    type: str
    severity: str
    failure_count: int
    message: str
    timestamp: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type,
            "severity": self.severity,
            "failureCount": self.failure_count,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
