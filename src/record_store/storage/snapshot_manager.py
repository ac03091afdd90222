"""
Whole-store snapshots.

A snapshot is a full copy of the storage root (minus the snapshot tree,
lock markers and in-flight temp files) under
``root/snapshots/snapshot_<timestamp>/`` together with a manifest:

    snapshot.meta.json  {"timestamp", "version", "totalFiles", "checksum"}

The checksum is a SHA-256 over every copied file's relative path and
bytes, in sorted path order, so the same store content always produces the
same checksum. Restore verifies it before touching live data.
"""

import hashlib
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .atomic_io import TEMP_SUFFIX, atomic_write_json, read_json_file
from .errors import SnapshotNotFoundError, StorageError

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "snapshot_"
MANIFEST_NAME = "snapshot.meta.json"
MANIFEST_VERSION = "1.0"


def _iter_files(directory: Path, skip: Tuple[str, ...] = ()) -> List[Path]:
    """Regular files under *directory*, sorted, excluding top-level names in *skip* and temp files."""
    files: List[Path] = []
    if not directory.is_dir():
        return files
    for entry in sorted(directory.iterdir()):
        if entry.name in skip:
            continue
        if entry.is_dir():
            files.extend(p for p in sorted(entry.rglob("*")) if p.is_file())
        elif entry.is_file():
            files.append(entry)
    return [
        p for p in files if not p.name.endswith(TEMP_SUFFIX) and p.name != MANIFEST_NAME
    ]


def directory_checksum(directory: Path, skip: Tuple[str, ...] = ()) -> Tuple[str, int]:
    """Return (sha256 hex, file count) over the files of *directory*."""
    digest = hashlib.sha256()
    count = 0
    for path in _iter_files(directory, skip):
        digest.update(path.relative_to(directory).as_posix().encode("utf-8"))
        digest.update(b"\0")
        digest.update(path.read_bytes())
        count += 1
    return digest.hexdigest(), count


class SnapshotManager:
    """Creates, lists, restores and prunes snapshots of one storage root."""

    def __init__(
        self,
        root: Path,
        snapshot_dir: Path,
        excluded: Tuple[str, ...],
        preserved: Tuple[str, ...] = (),
        retention_count: int = 10,
        on_restore: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            root: Storage root being snapshotted
            snapshot_dir: Directory holding snapshots (inside *root*)
            excluded: Top-level names never copied into a snapshot
            preserved: Top-level names left in place when restoring
            retention_count: Snapshots kept by ``cleanup_old_snapshots``
            on_restore: Called after a restore so caches can be reloaded
        """
        self.root = Path(root)
        self.snapshot_dir = Path(snapshot_dir)
        self.excluded = tuple(excluded)
        self.preserved = tuple(preserved)
        self.retention_count = retention_count
        self.on_restore = on_restore
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)

    def snapshot_path(self, snapshot_id: str) -> Path:
        return self.snapshot_dir / snapshot_id

    def _new_snapshot_id(self) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        snapshot_id = f"{SNAPSHOT_PREFIX}{stamp}"
        suffix = 1
        while self.snapshot_path(snapshot_id).exists():
            snapshot_id = f"{SNAPSHOT_PREFIX}{stamp}_{suffix}"
            suffix += 1
        return snapshot_id

    def create_snapshot(self) -> str:
        """Copy the live store into a new snapshot directory.

        Returns:
            The snapshot id (directory name)
        """
        snapshot_id = self._new_snapshot_id()
        target = self.snapshot_path(snapshot_id)
        target.mkdir(parents=True)

        try:
            for entry in sorted(self.root.iterdir()):
                if entry.name in self.excluded or entry.name.endswith(TEMP_SUFFIX):
                    continue
                if entry.is_dir():
                    shutil.copytree(
                        entry, target / entry.name, ignore=shutil.ignore_patterns(f"*{TEMP_SUFFIX}")
                    )
                elif entry.is_file():
                    shutil.copy2(entry, target / entry.name)

            checksum, total_files = directory_checksum(target)
            manifest = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "version": MANIFEST_VERSION,
                "totalFiles": total_files,
                "checksum": checksum,
            }
            atomic_write_json(target / MANIFEST_NAME, manifest)
        except Exception as e:
            logger.error(f"Failed to create snapshot {snapshot_id}: {e}")
            shutil.rmtree(target, ignore_errors=True)
            raise StorageError(f"Failed to create snapshot {snapshot_id}: {e}") from e

        logger.info(f"Snapshot created: {snapshot_id} ({total_files} files)")
        return snapshot_id

    def read_manifest(self, snapshot_id: str) -> Dict[str, Any]:
        """Return the manifest of *snapshot_id*.

        Raises:
            SnapshotNotFoundError: If the snapshot or its manifest is missing.
        """
        if not snapshot_id or "/" in snapshot_id or snapshot_id.startswith("."):
            raise SnapshotNotFoundError(snapshot_id)
        manifest_path = self.snapshot_path(snapshot_id) / MANIFEST_NAME
        try:
            manifest = read_json_file(manifest_path)
        except ValueError as e:
            raise StorageError(f"Snapshot manifest is corrupt: {snapshot_id}") from e
        if manifest is None:
            raise SnapshotNotFoundError(snapshot_id)
        return manifest

    def verify_snapshot(self, snapshot_id: str) -> bool:
        manifest = self.read_manifest(snapshot_id)
        checksum, total_files = directory_checksum(self.snapshot_path(snapshot_id))
        return checksum == manifest.get("checksum") and total_files == manifest.get("totalFiles")

    def restore_from_snapshot(self, snapshot_id: str) -> str:
        """Replace the live store with the content of *snapshot_id*.

        The snapshot is validated and a safety snapshot of the current state
        is taken before anything live is removed.

        Returns:
            Id of the safety snapshot taken before restoring

        Raises:
            SnapshotNotFoundError: If the snapshot does not exist.
            StorageError: If the snapshot fails its checksum or the copy fails.
        """
        if not self.verify_snapshot(snapshot_id):
            raise StorageError(f"Snapshot {snapshot_id} failed checksum verification")

        safety_id = self.create_snapshot()
        logger.info(f"Created safety snapshot {safety_id} before restoring {snapshot_id}")

        source = self.snapshot_path(snapshot_id)
        keep = set(self.excluded) | set(self.preserved)
        try:
            for entry in self.root.iterdir():
                if entry.name in keep:
                    continue
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()

            for entry in sorted(source.iterdir()):
                if entry.name == MANIFEST_NAME or entry.name in keep:
                    continue
                if entry.is_dir():
                    shutil.copytree(entry, self.root / entry.name)
                else:
                    shutil.copy2(entry, self.root / entry.name)
        except OSError as e:
            logger.error(f"Failed to restore from snapshot {snapshot_id}: {e}")
            raise StorageError(
                f"Restore from {snapshot_id} failed; safety snapshot {safety_id} holds the prior state"
            ) from e
        finally:
            if self.on_restore is not None:
                self.on_restore()

        logger.info(f"Restored from snapshot: {snapshot_id}")
        return safety_id

    def list_snapshots(self) -> List[str]:
        """Snapshot ids, oldest first."""
        if not self.snapshot_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.snapshot_dir.iterdir()
            if entry.is_dir()
            and entry.name.startswith(SNAPSHOT_PREFIX)
            and (entry / MANIFEST_NAME).is_file()
        )

    def latest_snapshot(self) -> Optional[str]:
        snapshots = self.list_snapshots()
        return snapshots[-1] if snapshots else None

    def cleanup_old_snapshots(self, keep: Optional[int] = None) -> int:
        """Delete all but the newest *keep* snapshots (default: retention count)."""
        keep = self.retention_count if keep is None else keep
        snapshots = self.list_snapshots()
        doomed = snapshots[: max(len(snapshots) - keep, 0)]
        for snapshot_id in doomed:
            shutil.rmtree(self.snapshot_path(snapshot_id), ignore_errors=True)
            logger.debug(f"Cleaned up old snapshot: {snapshot_id}")
        if doomed:
            logger.info(f"Removed {len(doomed)} old snapshots, kept {keep}")
        return len(doomed)
