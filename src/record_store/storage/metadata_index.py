"""Per-category metadata index: checksum, size and modified time per record.

One JSON file per category at ``root/indexes/<category>.json``:

    {"<id>": {"id": ..., "lastModified": <ISO-8601>, "size": <bytes>, "checksum": <sha256 hex>}}

The index is a service with its own lock, decoupled from record locks:
every change goes through ``apply(delta)``, which performs the
read-modify-write of the category file under an in-process RLock. Writers
to different records therefore never lose each other's entries.

Checksums cover the exact on-disk bytes (the envelope when encrypted).
"""

import hashlib
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .atomic_io import atomic_write_json, read_json_file

logger = logging.getLogger(__name__)


def compute_checksum(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _iso_mtime(mtime: float) -> str:
    return datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat()


@dataclass
class MetadataEntry:
    """Integrity metadata for one stored record."""

    id: str
    last_modified: str
    size: int
    checksum: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lastModified": self.last_modified,
            "size": self.size,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetadataEntry":
        return cls(
            id=data["id"],
            last_modified=data.get("lastModified", ""),
            size=int(data.get("size", 0)),
            checksum=data.get("checksum", ""),
        )

    @classmethod
    def for_payload(cls, record_id: str, payload: bytes, mtime: float) -> "MetadataEntry":
        return cls(
            id=record_id,
            last_modified=_iso_mtime(mtime),
            size=len(payload),
            checksum=compute_checksum(payload),
        )


@dataclass
class MetadataDelta:
    """A single index change. ``entry`` None means removal."""

    category: str
    record_id: str
    entry: Optional[MetadataEntry] = None


class MetadataIndex:
    """Checksum index service over all categories of one store."""

    def __init__(self, index_dir: Path):
        self.index_dir = Path(index_dir)
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self._cache: Dict[str, Dict[str, MetadataEntry]] = {}
        self._lock = threading.RLock()

    def index_path(self, category: str) -> Path:
        return self.index_dir / f"{category}.json"

    def _load(self, category: str) -> Dict[str, MetadataEntry]:
        if category in self._cache:
            return self._cache[category]
        entries: Dict[str, MetadataEntry] = {}
        try:
            raw = read_json_file(self.index_path(category), default={})
            for record_id, data in raw.items():
                entries[record_id] = MetadataEntry.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Metadata index for {category} is unreadable, starting empty: {e}")
            entries = {}
        self._cache[category] = entries
        return entries

    def _save(self, category: str) -> None:
        entries = self._cache.get(category, {})
        atomic_write_json(
            self.index_path(category),
            {record_id: entry.to_dict() for record_id, entry in entries.items()},
        )

    def ensure(self, category: str) -> None:
        """Create an empty index file for *category* if none exists."""
        with self._lock:
            if not self.index_path(category).exists():
                self._cache.setdefault(category, {})
                self._save(category)

    def apply(self, delta: MetadataDelta) -> None:
        """Apply one change and persist the category file.

        Raises:
            OSError: If the index file cannot be written. Callers treat this
                as a best-effort failure.
        """
        with self._lock:
            entries = self._load(delta.category)
            if delta.entry is None:
                if entries.pop(delta.record_id, None) is None:
                    return
            else:
                entries[delta.record_id] = delta.entry
            self._save(delta.category)

    def record_write(self, category: str, record_id: str, payload: bytes, path: Path) -> MetadataEntry:
        entry = MetadataEntry.for_payload(record_id, payload, path.stat().st_mtime)
        self.apply(MetadataDelta(category, record_id, entry))
        return entry

    def record_delete(self, category: str, record_id: str) -> None:
        self.apply(MetadataDelta(category, record_id))

    def get(self, category: str, record_id: str) -> Optional[MetadataEntry]:
        with self._lock:
            return self._load(category).get(record_id)

    def entries(self, category: str) -> Dict[str, MetadataEntry]:
        with self._lock:
            return dict(self._load(category))

    def verify(self, category: str, record_id: str, payload: bytes) -> Optional[bool]:
        """Compare *payload* with the indexed checksum.

        Returns:
            True/False for a match/mismatch, None when the record has no entry
            (hand-placed or legacy files).
        """
        entry = self.get(category, record_id)
        if entry is None:
            return None
        return entry.checksum == compute_checksum(payload)

    def rebuild(self, category: str, files: Dict[str, Path]) -> int:
        """Replace the category index with entries computed from *files* (id -> path).

        Entries derive only from file bytes and mtimes, so rebuilding an
        unchanged store twice produces identical index content.

        Returns:
            Number of entries written
        """
        entries: Dict[str, MetadataEntry] = {}
        for record_id, path in sorted(files.items()):
            try:
                payload = path.read_bytes()
                entries[record_id] = MetadataEntry.for_payload(
                    record_id, payload, path.stat().st_mtime
                )
            except OSError as e:
                logger.warning(f"Skipping {category}/{record_id} during metadata rebuild: {e}")
        with self._lock:
            self._cache[category] = entries
            self._save(category)
        logger.info(f"Rebuilt metadata index for {category}: {len(entries)} entries")
        return len(entries)

    def reset(self) -> None:
        """Drop cached state so the next access reloads from disk."""
        with self._lock:
            self._cache.clear()
