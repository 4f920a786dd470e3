from chaptersync.storage import (
    claim_next_job,
    complete_job,
    count_dead_jobs,
    count_jobs_by_status,
    dead_letter_job,
    enqueue_job,
    enqueue_jobs_bulk,
    fail_job,
    get_job,
    has_pending_job,
    init_db,
    list_jobs,
    pending_count,
    replay_dead_jobs,
    requeue_job,
)
from chaptersync.utils import utc_now_iso_offset


def test_enqueue_and_claim_job(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = init_db(str(db_path))
    conn2 = init_db(str(db_path))

    job_id = enqueue_job(conn, "poll_source", {"seriesSourceId": "src-1"})
    claimed = claim_next_job(conn, "worker-1")

    assert claimed is not None
    assert claimed.id == job_id
    assert claimed.status == "running"
    assert claimed.attempts == 1
    assert claimed.payload == {"seriesSourceId": "src-1"}

    second = claim_next_job(conn2, "worker-2")
    assert second is None


def test_claim_respects_allowed_types(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    enqueue_job(conn, "notify_chapter", {"chapterId": "c-1"})
    ingest_id = enqueue_job(conn, "chapter_ingest", {"seriesId": "s-1"})

    claimed = claim_next_job(conn, "worker-1", allowed_types=["chapter_ingest"])

    assert claimed is not None
    assert claimed.id == ingest_id
    assert claim_next_job(conn, "worker-1", allowed_types=["chapter_ingest"]) is None


def test_debounce_poll_job(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    payload = {"seriesSourceId": "src-1"}

    first = enqueue_job(conn, "poll_source", payload, debounce=True)
    claimed = claim_next_job(conn, "worker-1")
    assert claimed is not None
    assert claimed.id == first
    second = enqueue_job(conn, "poll_source", payload, debounce=True)
    other = enqueue_job(conn, "poll_source", {"seriesSourceId": "src-2"}, debounce=True)

    assert first == second
    assert other != first
    assert has_pending_job(conn, "poll_source", payload) is True


def test_job_lifecycle_records_result(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    job_id = enqueue_job(conn, "poll_source", {"seriesSourceId": "src-1"})
    assert claim_next_job(conn, "worker-1") is not None

    result = {"status": "ok", "found_count": 5}
    assert complete_job(conn, job_id, result=result) is True

    jobs = list_jobs(conn, limit=1)
    assert jobs[0].status == "succeeded"
    assert jobs[0].result == result
    assert jobs[0].locked_by is None


def test_stale_lock_requeues_job(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    job_id = enqueue_job(conn, "poll_source", {"seriesSourceId": "src-1"})
    assert claim_next_job(conn, "worker-1") is not None
    conn.execute(
        "UPDATE jobs SET locked_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-3600), job_id),
    )
    conn.commit()

    reclaimed = claim_next_job(conn, "worker-2", lock_timeout_seconds=600)

    assert reclaimed is not None
    assert reclaimed.id == job_id
    assert reclaimed.locked_by == "worker-2"
    assert reclaimed.attempts == 2


def test_requeued_job_waits_until_not_before(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    job_id = enqueue_job(conn, "chapter_ingest", {"seriesId": "s-1"})
    assert claim_next_job(conn, "worker-1") is not None
    assert requeue_job(conn, job_id, utc_now_iso_offset(seconds=300), error="boom") is True

    assert claim_next_job(conn, "worker-1") is None
    job = get_job(conn, job_id)
    assert job.status == "queued"
    assert job.error == "boom"
    assert pending_count(conn, "chapter_ingest") == 1

    conn.execute(
        "UPDATE jobs SET requested_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-1), job_id),
    )
    conn.commit()
    again = claim_next_job(conn, "worker-1")
    assert again is not None
    assert again.attempts == 2


def test_enqueue_with_not_before_delays_claim(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    enqueue_job(conn, "poll_source", {"seriesSourceId": "src-1"}, not_before=utc_now_iso_offset(seconds=60))

    assert claim_next_job(conn, "worker-1") is None
    assert pending_count(conn) == 1


def test_dead_letter_and_replay(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    ids = [enqueue_job(conn, "chapter_ingest", {"n": index}) for index in range(3)]
    enqueue_job(conn, "poll_source", {"seriesSourceId": "src-1"})

    for _ in ids:
        job = claim_next_job(conn, "worker-1", allowed_types=["chapter_ingest"])
        assert dead_letter_job(conn, job.id, "ValueError: bad payload") is True

    assert count_dead_jobs(conn) == 3
    assert count_dead_jobs(conn, "poll_source") == 0
    assert count_jobs_by_status(conn) == {"dead": 3, "queued": 1}

    assert replay_dead_jobs(conn, job_type="chapter_ingest") == 3
    assert count_dead_jobs(conn) == 0
    replayed = get_job(conn, ids[0])
    assert replayed.status == "queued"
    assert replayed.attempts == 0


def test_enqueue_jobs_bulk(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    payloads = [{"chapterNumber": str(number)} for number in range(1, 6)]

    job_ids = enqueue_jobs_bulk(conn, "chapter_ingest", payloads, max_attempts=3)

    assert len(job_ids) == 5
    assert len(set(job_ids)) == 5
    assert pending_count(conn, "chapter_ingest") == 5
    assert get_job(conn, job_ids[0]).max_attempts == 3
    assert enqueue_jobs_bulk(conn, "chapter_ingest", []) == []


def test_fail_job_marks_running_job_failed(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job_id = enqueue_job(conn, "notify_chapter", {"chapterId": "c-1"})

    assert fail_job(conn, job_id, "not claimed") is False
    claim_next_job(conn, "worker-1")
    assert fail_job(conn, job_id, "RuntimeError: boom") is True

    job = get_job(conn, job_id)
    assert job.status == "failed"
    assert job.error == "RuntimeError: boom"
    assert pending_count(conn) == 0
