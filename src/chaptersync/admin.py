from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .monitoring import DLQMonitor, evaluate_dlq_count, log_alert_handler
from .storage import (
    count_dead_jobs,
    count_jobs_by_status,
    enqueue_job,
    get_feed_entry_for_chapter,
    get_series_source,
    init_db,
    list_chapter_sources,
    list_logical_chapters,
    list_series_sources,
    soft_delete,
)
from .utils import log_event

app = FastAPI(title="ChapterSync Admin API")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("CS_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class RuntimeConfigRequest(BaseModel):
    config: dict


class DLQCheckRequest(BaseModel):
    warning: int | None = None
    error: int | None = None
    critical: int | None = None


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _get_monitor(conn) -> DLQMonitor:
    monitor = getattr(app.state, "dlq_monitor", None)
    if monitor is None:
        try:
            config = load_runtime_config(conn)
        except ConfigError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        monitor = DLQMonitor.from_config(config.dlq)
        monitor.register_handler(log_alert_handler)
        app.state.dlq_monitor = monitor
    return monitor


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "ChapterSync Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    conn = _get_conn()
    try:
        jobs = count_jobs_by_status(conn)
    finally:
        conn.close()
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
        "jobs": jobs,
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    app.state.dlq_monitor = None
    return {"status": "ok"}


@app.get("/dlq", dependencies=[Depends(_require_admin_token)])
def dlq_status() -> dict[str, object]:
    conn = _get_conn()
    try:
        monitor = _get_monitor(conn)
        dead = count_dead_jobs(conn)
    finally:
        conn.close()
    alert = evaluate_dlq_count(dead, monitor.thresholds)
    return {
        "dead_jobs": dead,
        "status": alert.severity if alert else "ok",
        "thresholds": {
            "warning": monitor.thresholds.warning,
            "error": monitor.thresholds.error,
            "critical": monitor.thresholds.critical,
        },
    }


@app.post("/dlq/check", dependencies=[Depends(_require_admin_token)])
def dlq_check(payload: DLQCheckRequest | None = None) -> dict[str, object]:
    conn = _get_conn()
    try:
        monitor = _get_monitor(conn)
        dead = count_dead_jobs(conn)
    finally:
        conn.close()
    custom = payload.model_dump(exclude_none=True) if payload else {}
    try:
        alert = monitor.check_dlq_thresholds(dead, custom or None)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"dead_jobs": dead, "alert": alert.to_dict() if alert else None}


@app.get("/sources", dependencies=[Depends(_require_admin_token)])
def sources_list(series_id: str | None = None, include_deleted: bool = False) -> list[dict[str, object]]:
    conn = _get_conn()
    try:
        sources = list_series_sources(conn, series_id=series_id, include_deleted=include_deleted)
    finally:
        conn.close()
    return [source.__dict__ for source in sources]


@app.get("/sources/{series_source_id}", dependencies=[Depends(_require_admin_token)])
def sources_read(series_source_id: str) -> dict[str, object]:
    conn = _get_conn()
    try:
        source = get_series_source(conn, series_source_id)
    finally:
        conn.close()
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    return source.__dict__


@app.post("/sources/{series_source_id}/poll", dependencies=[Depends(_require_admin_token)])
def sources_poll(series_source_id: str) -> dict[str, str]:
    logger = logging.getLogger("chaptersync.admin")
    conn = _get_conn()
    try:
        source = get_series_source(conn, series_source_id)
        if not source:
            raise HTTPException(status_code=404, detail="source_not_found")
        config = load_runtime_config(conn)
        job_id = enqueue_job(
            conn,
            "poll_source",
            {"seriesSourceId": source.id},
            debounce=True,
            max_attempts=config.jobs.max_attempts,
        )
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type="poll_source")
    return {"job_id": job_id}


@app.delete("/sources/{series_source_id}", dependencies=[Depends(_require_admin_token)])
def sources_delete(series_source_id: str) -> dict[str, str]:
    conn = _get_conn()
    try:
        deleted = soft_delete(conn, "series_sources", series_source_id)
    finally:
        conn.close()
    if not deleted:
        raise HTTPException(status_code=404, detail="source_not_found")
    return {"status": "deleted"}


@app.get("/series/{series_id}/chapters", dependencies=[Depends(_require_admin_token)])
def series_chapters(series_id: str) -> list[dict[str, object]]:
    conn = _get_conn()
    try:
        rows = []
        for chapter in list_logical_chapters(conn, series_id):
            entry = get_feed_entry_for_chapter(conn, chapter.id)
            rows.append(
                {
                    **chapter.__dict__,
                    "sources": [
                        {
                            "id": item.id,
                            "series_source_id": item.series_source_id,
                            "source_chapter_id": item.source_chapter_id,
                            "url": item.source_chapter_url,
                            "detected_at": item.detected_at,
                        }
                        for item in list_chapter_sources(conn, chapter_id=chapter.id)
                    ],
                    "feed_entry_id": entry.id if entry else None,
                }
            )
    finally:
        conn.close()
    return rows


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("chaptersync")
    except Exception:  # noqa: BLE001
        return "unknown"


def main() -> None:
    import uvicorn

    uvicorn.run(
        "chaptersync.admin:app",
        host=os.environ.get("CS_ADMIN_HOST", "0.0.0.0"),
        port=int(os.environ.get("CS_ADMIN_PORT", "8001")),
        log_level=os.environ.get("CS_LOG_LEVEL", "info").lower(),
    )
