"""Backup-before-write policy.

When ``backup_on_write`` is enabled, the current on-disk bytes of a record
are copied to ``root/backups/<category>/<id>_<timestamp>.json`` before it is
overwritten or deleted. Transactions keep the backup path so rollback can
put the exact prior bytes back.

The policy is off by default: one copy per write grows the store without
bound, and snapshots cover point-in-time recovery. Backups that do exist
are pruned by age with ``cleanup_old_backups``.
"""

import logging
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .atomic_io import atomic_write_bytes

logger = logging.getLogger(__name__)


class BackupManager:
    """Creates, restores and prunes per-record backups."""

    def __init__(self, backup_dir: Path, enabled: bool = False, retention_days: int = 30):
        self.backup_dir = Path(backup_dir)
        self.enabled = enabled
        self.retention_days = retention_days
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def backup(self, category: str, record_id: str, source: Path) -> Optional[Path]:
        """Copy *source* into the backup tree. Returns None when disabled or absent.

        Failures are logged and reported as None: a missing backup reduces
        rollback fidelity but never blocks the write.
        """
        if not self.enabled or not source.is_file():
            return None

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.backup_dir / category / f"{record_id}_{timestamp}.json"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
            logger.debug(f"Created backup: {target}")
            return target
        except OSError as e:
            logger.warning(f"Failed to create backup for {category}/{record_id}: {e}")
            return None

    def restore(self, backup_path: Path, target: Path) -> bool:
        """Atomically put the backed-up bytes at *target*. False if the backup is gone."""
        if not backup_path.is_file():
            return False
        atomic_write_bytes(target, backup_path.read_bytes())
        logger.debug(f"Restored {target} from backup {backup_path}")
        return True

    def discard(self, backup_path: Path) -> None:
        try:
            backup_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to cleanup backup {backup_path}: {e}")

    def cleanup_old_backups(self, days_to_keep: Optional[int] = None) -> int:
        """Delete backups older than *days_to_keep* (default: configured retention).

        Returns:
            Number of backups removed
        """
        days = self.retention_days if days_to_keep is None else days_to_keep
        cutoff = time.time() - days * 86400
        removed = 0

        if not self.backup_dir.exists():
            return 0

        for backup_file in self.backup_dir.rglob("*.json"):
            try:
                if backup_file.stat().st_mtime < cutoff:
                    backup_file.unlink()
                    removed += 1
                    logger.debug(f"Cleaned up old backup: {backup_file}")
            except OSError as e:
                logger.warning(f"Failed to cleanup old backup {backup_file}: {e}")

        if removed:
            logger.info(f"Removed {removed} backups older than {days} days")
        return removed
