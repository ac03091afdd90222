"""Unit tests for marker-file key locking."""

import os
import threading
import time

import pytest

from record_store.storage.errors import LockTimeoutError
from record_store.storage.lock_manager import LockManager


@pytest.fixture
def locks(tmp_path):
    return LockManager(tmp_path / ".locks", max_retries=3, retry_delay=0.01, timeout=1.0)


class TestLockManager:
    def test_acquire_creates_marker_with_holder(self, locks):
        locks.acquire("clients/c1")
        marker = locks.marker_path("clients/c1")
        assert marker.exists()
        assert marker.read_text() == LockManager.holder_id()
        assert locks.active_count == 1
        locks.release("clients/c1")
        assert not marker.exists()
        assert locks.active_count == 0

    def test_release_is_idempotent(self, locks):
        locks.release("clients/never-held")
        locks.acquire("clients/c1")
        locks.release("clients/c1")
        locks.release("clients/c1")
        assert not locks.is_held("clients/c1")

    def test_context_manager_releases_on_error(self, locks):
        with pytest.raises(RuntimeError):
            with locks.lock("clients/c1"):
                raise RuntimeError("boom")
        assert not locks.is_held("clients/c1")

    def test_contention_times_out(self, locks):
        """A second acquirer gives up after its retry limit while the first holds the key."""
        locks.acquire("clients/c1")
        with pytest.raises(LockTimeoutError) as exc_info:
            locks.acquire("clients/c1")
        assert exc_info.value.key == "clients/c1"
        assert exc_info.value.attempts == 3
        assert exc_info.value.holder == LockManager.holder_id()
        assert locks.is_held("clients/c1")

    def test_marker_from_other_process_blocks(self, locks):
        marker = locks.marker_path("clients/c1")
        marker.write_text("999:1")
        with pytest.raises(LockTimeoutError, match="held by 999:1"):
            locks.acquire("clients/c1")

    def test_different_keys_do_not_contend(self, locks):
        locks.acquire("clients/c1")
        locks.acquire("clients/c2")
        assert locks.active_count == 2
        assert locks.release_all() == 2
        assert locks.active_count == 0

    def test_mutual_exclusion_across_threads(self, tmp_path):
        locks = LockManager(tmp_path / ".locks", max_retries=500, retry_delay=0.005, timeout=10.0)
        inside = []
        overlaps = []

        def worker():
            with locks.lock("clients/c1"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(True)
                time.sleep(0.005)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []

    def test_clear_stale_locks(self, locks):
        stale = locks.marker_path("clients/old")
        stale.write_text("1:1")
        old = time.time() - 1000
        os.utime(stale, (old, old))
        fresh = locks.marker_path("clients/new")
        fresh.write_text("1:2")

        assert locks.clear_stale_locks(300) == 1
        assert not stale.exists()
        assert fresh.exists()
