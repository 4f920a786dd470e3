from chaptersync.cli import main
from chaptersync.storage import (
    claim_next_job,
    count_series_sources,
    dead_letter_job,
    enqueue_job,
    get_series_source,
    init_db,
    list_series_sources,
    pending_count,
)


def _write_sources(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text(
        """
sources:
  - series_id: one-piece
    source_name: mangadex
    source_id: a1b2c3
    source_url: https://mangadex.org/title/a1b2c3
  - series_id: one-piece
    source_name: mangapark
    source_id: one-piece
    source_url: https://mangapark.net/title/one-piece
""",
        encoding="utf-8",
    )
    return path


def test_sources_import_and_poll_unsupported(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    assert main(["--db", db_path, "sources", "import", str(_write_sources(tmp_path))]) == 0

    conn = init_db(db_path)
    assert count_series_sources(conn) == 2
    park = [source for source in list_series_sources(conn) if source.source_name == "mangapark"][0]

    assert main(["--db", db_path, "poll", park.id]) == 0
    assert get_series_source(conn, park.id).source_status == "inactive"


def test_sources_delete_and_restore(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    main(["--db", db_path, "sources", "import", str(_write_sources(tmp_path))])
    conn = init_db(db_path)
    source = list_series_sources(conn)[0]

    assert main(["--db", db_path, "sources", "delete", source.id]) == 0
    assert count_series_sources(conn) == 1
    assert main(["--db", db_path, "sources", "delete", source.id]) == 1
    assert main(["--db", db_path, "sources", "restore", source.id]) == 0
    assert count_series_sources(conn) == 2


def test_import_rejects_invalid_file(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text("- {series_id: s, source_name: mangadex}\n", encoding="utf-8")
    assert main(["--db", str(tmp_path / "state.sqlite3"), "sources", "import", str(path)]) == 1


def test_jobs_enqueue_requires_source_for_poll(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    assert main(["--db", db_path, "jobs", "enqueue", "poll_source"]) == 1
    assert main(["--db", db_path, "jobs", "enqueue", "poll_source", "--series-source-id", "x"]) == 0
    assert pending_count(init_db(db_path), "poll_source") == 1


def test_dlq_check_exit_codes(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    for index in range(3):
        enqueue_job(conn, "chapter_ingest", {"n": index})
        job = claim_next_job(conn, "worker-1")
        dead_letter_job(conn, job.id, "ValueError: bad payload")

    assert main(["--db", db_path, "dlq", "check"]) == 0
    assert main(["--db", db_path, "dlq", "check", "--warning", "1", "--error", "2", "--critical", "3"]) == 2
    assert main(["--db", db_path, "dlq", "check", "--warning", "5", "--error", "2"]) == 1

    assert main(["--db", db_path, "jobs", "dead", "--replay"]) == 0
    assert pending_count(conn, "chapter_ingest") == 3
