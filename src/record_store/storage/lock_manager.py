"""Per-key mutual exclusion using lock marker files.

Each key gets a marker file ``root/.locks/<key>.lock`` created with
O_CREAT | O_EXCL, so creation succeeds for exactly one holder. The marker
holds the holder identifier (pid and thread). An in-process set of held
keys short-circuits the filesystem check for keys this process already
holds.

Acquisition retries with a fixed delay up to ``max_retries`` attempts or
``timeout`` seconds, whichever comes first, then fails with
LockTimeoutError. Waiters are not queued: order among waiters for the same
key is unspecified. Release is idempotent; a missing marker is not an error.
"""

import contextlib
import logging
import os
import threading
import time
from pathlib import Path
from typing import Generator, Optional, Set

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class LockManager:
    """Marker-file lock manager for record keys."""

    def __init__(
        self,
        lock_dir: Path,
        max_retries: int = 10,
        retry_delay: float = 0.1,
        timeout: float = 5.0,
    ):
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._held: Set[str] = set()
        self._held_lock = threading.Lock()

    def marker_path(self, key: str) -> Path:
        safe_key = key.replace("/", "_").replace("\\", "_")
        return self.lock_dir / f"{safe_key}{LOCK_SUFFIX}"

    @staticmethod
    def holder_id() -> str:
        return f"{os.getpid()}:{threading.get_ident()}"

    @property
    def active_count(self) -> int:
        with self._held_lock:
            return len(self._held)

    def is_held(self, key: str) -> bool:
        with self._held_lock:
            if key in self._held:
                return True
        return self.marker_path(key).exists()

    def _try_acquire(self, key: str) -> bool:
        marker = self.marker_path(key)
        with self._held_lock:
            if key in self._held:
                return False
            try:
                fd = os.open(str(marker), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                return False
            try:
                os.write(fd, self.holder_id().encode("utf-8"))
            finally:
                os.close(fd)
            self._held.add(key)
            return True

    def acquire(self, key: str) -> None:
        """Acquire the lock for *key*.

        Raises:
            LockTimeoutError: If the retry limit or timeout is exhausted.
        """
        deadline = time.monotonic() + self.timeout
        attempts = 0
        while attempts < self.max_retries:
            attempts += 1
            if self._try_acquire(key):
                logger.debug(f"Acquired lock: {key}")
                return
            if time.monotonic() + self.retry_delay > deadline:
                break
            time.sleep(self.retry_delay)

        raise LockTimeoutError(key, attempts, self._read_holder(key))

    def release(self, key: str) -> None:
        """Release the lock for *key*. Best-effort and idempotent."""
        try:
            self.marker_path(key).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to release lock for {key}: {e}")
        finally:
            with self._held_lock:
                self._held.discard(key)
        logger.debug(f"Released lock: {key}")

    @contextlib.contextmanager
    def lock(self, key: str) -> Generator[None, None, None]:
        """Hold the lock for *key* for the duration of the ``with`` block."""
        self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    def release_all(self) -> int:
        """Release every lock held by this manager. Returns how many were released."""
        with self._held_lock:
            held = list(self._held)
        for key in held:
            self.release(key)
        return len(held)

    def _read_holder(self, key: str) -> Optional[str]:
        try:
            return self.marker_path(key).read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    def clear_stale_locks(self, max_age_seconds: float) -> int:
        """Remove markers older than *max_age_seconds* (left behind by crashed holders).

        Returns:
            Number of markers removed
        """
        removed = 0
        now = time.time()
        for marker in self.lock_dir.glob(f"*{LOCK_SUFFIX}"):
            try:
                age = now - marker.stat().st_mtime
                if age > max_age_seconds:
                    marker.unlink()
                    removed += 1
                    logger.info(f"Removed stale lock marker (age: {age:.0f}s): {marker}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to remove stale lock marker {marker}: {e}")
        return removed
