"""Flattened search strings for one high-volume category.

Each entry carries a precomputed lowercase ``searchText`` so prefix and
substring queries need no tokenization at query time. Persisted as a JSON
list at ``root/indexes/<category>-lite.json``.
"""

import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..storage.atomic_io import atomic_write_json, read_json_file

logger = logging.getLogger(__name__)

NAME_PREFIX_SCORE = 2.0
IDENTIFIER_PREFIX_SCORE = 1.5
SUBSTRING_SCORE = 1.0


@dataclass
class LiteEntry:
    id: str
    partition: Optional[int] = None
    name: str = ""
    identifier: str = ""
    status: str = ""
    type: str = ""
    updatedAt: Optional[str] = None
    createdAt: Optional[str] = None
    searchText: str = ""

    @classmethod
    def from_record(
        cls, record_id: str, data: Dict[str, Any], partition: Optional[int] = None
    ) -> "LiteEntry":
        name = data.get("name") or data.get("companyName") or data.get("title") or ""
        identifier = data.get("registeredNumber") or data.get("id") or record_id
        status = data.get("status") or ""
        record_type = data.get("type") or ""
        address = data.get("address")
        parts = [
            name,
            identifier,
            data.get("registeredNumber"),
            data.get("mainEmail"),
            data.get("mainPhone"),
            " ".join(str(v) for v in address.values() if v) if isinstance(address, dict) else "",
            status,
            record_type,
        ]
        return cls(
            id=record_id,
            partition=partition,
            name=str(name),
            identifier=str(identifier),
            status=str(status),
            type=str(record_type),
            updatedAt=data.get("updatedAt"),
            createdAt=data.get("createdAt"),
            searchText=" ".join(str(p) for p in parts if p).lower(),
        )


class LiteIndex:
    """In-memory list of LiteEntry objects with JSON persistence."""

    def __init__(self, index_dir: Path, category: str):
        self.category = category
        self.path = Path(index_dir) / f"{category}-lite.json"
        self._entries: Dict[str, LiteEntry] = {}
        self._loaded = False
        self._lock = threading.RLock()

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        entries: Dict[str, LiteEntry] = {}
        try:
            for data in read_json_file(self.path, default=[]):
                entry = LiteEntry(**data)
                entries[entry.id] = entry
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load {self.category} lite index, starting empty: {e}")
            entries = {}
        self._entries = entries
        self._loaded = True

    def _save(self) -> None:
        atomic_write_json(
            self.path, [asdict(entry) for _, entry in sorted(self._entries.items())]
        )

    def __len__(self) -> int:
        with self._lock:
            self._ensure_loaded()
            return len(self._entries)

    def upsert(self, entry: LiteEntry) -> None:
        with self._lock:
            self._ensure_loaded()
            self._entries[entry.id] = entry
            self._save()

    def remove(self, record_id: str) -> None:
        with self._lock:
            self._ensure_loaded()
            if self._entries.pop(record_id, None) is not None:
                self._save()

    def replace(self, entries: List[LiteEntry]) -> None:
        with self._lock:
            self._entries = {entry.id: entry for entry in entries}
            self._loaded = True
            self._save()
        logger.info(f"Rebuilt {self.category} lite index: {len(entries)} entries")

    def reset(self) -> None:
        with self._lock:
            self._entries = {}
            self._loaded = False

    def match(self, query: str, partition: Optional[int] = None) -> List[Tuple[LiteEntry, float]]:
        """Entries whose search text contains *query* (already lowercased), with a score."""
        with self._lock:
            self._ensure_loaded()
            entries = list(self._entries.values())

        matches: List[Tuple[LiteEntry, float]] = []
        for entry in entries:
            if partition is not None and entry.partition != partition:
                continue
            if query not in entry.searchText:
                continue
            if entry.name.lower().startswith(query):
                score = NAME_PREFIX_SCORE
            elif entry.identifier.lower().startswith(query):
                score = IDENTIFIER_PREFIX_SCORE
            else:
                score = SUBSTRING_SCORE
            matches.append((entry, score))
        return matches
