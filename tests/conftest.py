import pytest

from chaptersync.storage import init_db, upsert_series_source
from chaptersync.worker import reset_default_context


@pytest.fixture(autouse=True)
def _fresh_worker_context():
    reset_default_context()
    yield
    reset_default_context()


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "state.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def make_source():
    def _make(conn, **overrides):
        payload = {
            "series_id": "series-1",
            "source_name": "mangadex",
            "source_id": "a1b2c3",
            "source_url": "https://mangadex.org/title/a1b2c3",
            "trust_score": 1.0,
            "check_interval_minutes": 60,
        }
        payload.update(overrides)
        return upsert_series_source(conn, payload)

    return _make
