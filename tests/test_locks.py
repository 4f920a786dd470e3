from chaptersync.locks import DBLeaseLock, LockTimeoutError
from chaptersync.resilience import is_retryable_error
from chaptersync.storage import init_db, purge_expired_leases, release_lease, try_acquire_lease


def test_lease_is_exclusive_until_released(conn):
    assert try_acquire_lease(conn, "chapter:abc", "holder-1", 30) is True
    assert try_acquire_lease(conn, "chapter:abc", "holder-2", 30) is False
    assert try_acquire_lease(conn, "chapter:abc", "holder-1", 30) is True
    assert try_acquire_lease(conn, "chapter:other", "holder-2", 30) is True

    assert release_lease(conn, "chapter:abc", "holder-2") is False
    assert release_lease(conn, "chapter:abc", "holder-1") is True
    assert try_acquire_lease(conn, "chapter:abc", "holder-2", 30) is True


def test_expired_lease_can_be_taken_over(conn):
    assert try_acquire_lease(conn, "chapter:abc", "holder-1", -1) is True
    assert try_acquire_lease(conn, "chapter:abc", "holder-2", 30) is True
    assert release_lease(conn, "chapter:abc", "holder-1") is False

    try_acquire_lease(conn, "chapter:stale", "holder-3", -1)
    assert purge_expired_leases(conn) == 1


def test_hold_releases_on_exit_and_error(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    other = init_db(db_path)
    lock = DBLeaseLock(conn, ttl_seconds=30, wait_seconds=0)

    with lock.hold("chapter:abc") as holder:
        assert holder.startswith("lock_")
        assert try_acquire_lease(other, "chapter:abc", "someone-else", 30) is False

    try:
        with lock.hold("chapter:abc"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert try_acquire_lease(other, "chapter:abc", "someone-else", 30) is True


def test_hold_times_out_when_lease_is_held(conn):
    try_acquire_lease(conn, "chapter:abc", "someone-else", 30)
    sleeps = []

    class Clock:
        now = 0.0

        def __call__(self):
            return self.now

        def sleep(self, seconds):
            sleeps.append(seconds)
            self.now += seconds

    clock = Clock()
    lock = DBLeaseLock(
        conn,
        wait_seconds=1.0,
        poll_interval_seconds=0.25,
        clock=clock,
        sleep=clock.sleep,
    )

    try:
        with lock.hold("chapter:abc"):
            raise AssertionError("lock should not be acquired")
    except LockTimeoutError as exc:
        assert exc.key == "chapter:abc"
        assert is_retryable_error(exc) is True
    else:
        raise AssertionError("Expected LockTimeoutError")
    assert sleeps == [0.25, 0.25, 0.25, 0.25]
