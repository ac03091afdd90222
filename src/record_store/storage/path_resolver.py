"""Key to filesystem location resolution.

Resolution is an ordered chain of locator strategies. Each strategy knows
one physical layout and answers ``candidates(key)`` (paths where the key
could live) and ``locate(key)`` (the first candidate that exists). The
chain is tried in order, so the canonical layout always wins when present:

    CanonicalLocator      root/<category>/<id>.json
                          root/<parent>/<scope>/<category>/<id>.json  (scoped)
    ScopedLegacyLocator   root/<category>/<id>.json                   (scoped, pre-nesting)
    PartitionLocator      root/<category>/portfolio-<n>/<id>.json     (partitioned)

Writes always target the canonical path; legacy copies are removed after a
successful write, so the layout heals itself over time.

Scoped categories need the owning parent id. Callers may omit it: the
ScopeLookup table maps id -> parent, and on a miss a bounded directory scan
finds the owner and caches the answer.
"""

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from ..config import PartitionConfig
from .atomic_io import atomic_write_json, read_json_file
from .keys import RecordKey, derive_partition

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"


def _json_ids(directory: Path) -> List[str]:
    """Record ids of the ``*.json`` files directly inside *directory*."""
    if not directory.is_dir():
        return []
    return [
        entry.name[: -len(RECORD_SUFFIX)]
        for entry in directory.iterdir()
        if entry.is_file()
        and entry.name.endswith(RECORD_SUFFIX)
        and not entry.name.startswith(".")
    ]


class LocatorStrategy(ABC):
    """One physical layout for records."""

    name = "locator"

    def __init__(self, root: Path):
        self.root = root

    @abstractmethod
    def candidates(self, key: RecordKey) -> List[Path]:
        """Paths where *key* may be stored under this layout, most likely first."""

    def locate(self, key: RecordKey) -> Optional[Path]:
        for path in self.candidates(key):
            if path.is_file():
                return path
        return None


class CanonicalLocator(LocatorStrategy):
    """Current layout. The only layout that receives writes."""

    name = "canonical"

    def __init__(self, root: Path, scoped_categories: Dict[str, str]):
        super().__init__(root)
        self.scoped_categories = scoped_categories

    def path_for(self, key: RecordKey) -> Optional[Path]:
        parent_category = self.scoped_categories.get(key.category)
        if parent_category is None:
            return self.root / key.category / f"{key.record_id}{RECORD_SUFFIX}"
        if not key.scope:
            return None
        return (
            self.root
            / parent_category
            / key.scope
            / key.category
            / f"{key.record_id}{RECORD_SUFFIX}"
        )

    def candidates(self, key: RecordKey) -> List[Path]:
        path = self.path_for(key)
        return [path] if path is not None else []


class ScopedLegacyLocator(LocatorStrategy):
    """Flat layout used by scoped categories before records were nested."""

    name = "scoped-legacy"

    def __init__(self, root: Path, scoped_categories: Dict[str, str]):
        super().__init__(root)
        self.scoped_categories = scoped_categories

    def candidates(self, key: RecordKey) -> List[Path]:
        if key.category not in self.scoped_categories:
            return []
        return [self.root / key.category / f"{key.record_id}{RECORD_SUFFIX}"]


class PartitionLocator(LocatorStrategy):
    """Numbered partition directories of the partitioned category (read-only)."""

    name = "partition"

    def __init__(self, root: Path, partition: PartitionConfig):
        super().__init__(root)
        self.partition = partition

    def partition_dir(self, category: str, code: int) -> Path:
        return self.root / category / f"{self.partition.directory_prefix}{code}"

    def candidates(self, key: RecordKey) -> List[Path]:
        if key.category != self.partition.category:
            return []
        codes = self.partition.codes()
        hinted = derive_partition(key.record_id)
        if hinted is not None and hinted in codes:
            codes.remove(hinted)
            codes.insert(0, hinted)
        filename = f"{key.record_id}{RECORD_SUFFIX}"
        return [self.partition_dir(key.category, code) / filename for code in codes]

    def list_ids(self, category: str) -> List[str]:
        if category != self.partition.category:
            return []
        ids: List[str] = []
        for code in self.partition.codes():
            ids.extend(_json_ids(self.partition_dir(category, code)))
        return ids


class ScopeLookup:
    """Persistent id -> parent id table for one storage root, per scoped category."""

    def __init__(self, index_dir: Path):
        self.index_dir = index_dir / "scopes"
        self._tables: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()

    def _table_path(self, category: str) -> Path:
        return self.index_dir / f"{category}.json"

    def _table(self, category: str) -> Dict[str, str]:
        with self._lock:
            if category not in self._tables:
                try:
                    self._tables[category] = read_json_file(
                        self._table_path(category), default={}
                    )
                except (OSError, ValueError) as e:
                    logger.warning(f"Failed to load scope table for {category}: {e}")
                    self._tables[category] = {}
            return self._tables[category]

    def get(self, category: str, record_id: str) -> Optional[str]:
        with self._lock:
            return self._table(category).get(record_id)

    def set(self, category: str, record_id: str, scope: str) -> None:
        with self._lock:
            table = self._table(category)
            if table.get(record_id) == scope:
                return
            table[record_id] = scope
            self._persist(category)

    def remove(self, category: str, record_id: str) -> None:
        with self._lock:
            table = self._table(category)
            if table.pop(record_id, None) is not None:
                self._persist(category)

    def reset(self) -> None:
        with self._lock:
            self._tables.clear()

    def _persist(self, category: str) -> None:
        try:
            atomic_write_json(self._table_path(category), self._tables[category])
        except OSError as e:
            logger.warning(f"Failed to persist scope table for {category}: {e}")


class PathResolver:
    """Maps document keys to filesystem locations through the locator chain."""

    def __init__(
        self,
        root: Path,
        scoped_categories: Dict[str, str],
        partition: PartitionConfig,
        index_dir: Path,
        max_scope_scan: int = 5000,
    ):
        self.root = root
        self.scoped_categories = dict(scoped_categories)
        self.partition = partition
        self.max_scope_scan = max_scope_scan
        self.canonical = CanonicalLocator(root, self.scoped_categories)
        self.partitions = PartitionLocator(root, partition)
        self.chain: List[LocatorStrategy] = [
            self.canonical,
            ScopedLegacyLocator(root, self.scoped_categories),
            self.partitions,
        ]
        self.scopes = ScopeLookup(index_dir)

    def is_scoped(self, category: str) -> bool:
        return category in self.scoped_categories

    def qualify(self, category: str, record_id: str, scope: Optional[str] = None) -> RecordKey:
        """Build a key, filling in the parent scope of scoped records when omitted.

        Categories that are not scoped never carry a scope, so one record
        always maps to one search document key.
        """
        if not self.is_scoped(category):
            if scope:
                logger.debug(f"Ignoring scope {scope!r} for unscoped category {category}")
            return RecordKey(category, record_id)
        if scope:
            return RecordKey(category, record_id, scope)
        found = self.scopes.get(category, record_id)
        if found is None:
            found = self._scan_for_scope(category, record_id)
        return RecordKey(category, record_id, found)

    def _scan_for_scope(self, category: str, record_id: str) -> Optional[str]:
        parent_dir = self.root / self.scoped_categories[category]
        if not parent_dir.is_dir():
            return None
        filename = f"{record_id}{RECORD_SUFFIX}"
        scanned = 0
        for entry in parent_dir.iterdir():
            if not entry.is_dir():
                continue
            scanned += 1
            if scanned > self.max_scope_scan:
                logger.warning(
                    f"Scope scan for {category}/{record_id} stopped after "
                    f"{self.max_scope_scan} directories"
                )
                break
            if (entry / category / filename).is_file():
                self.scopes.set(category, record_id, entry.name)
                return entry.name
        return None

    def canonical_path(self, key: RecordKey) -> Path:
        """Write target for *key*.

        Raises:
            ValueError: If *key* belongs to a scoped category and has no scope.
        """
        path = self.canonical.path_for(key)
        if path is None:
            raise ValueError(
                f"Scoped category {key.category} requires a parent scope for {key.record_id}"
            )
        return path

    def resolve(self, key: RecordKey) -> Optional[Path]:
        """First existing location for *key* along the chain, or None when absent."""
        try:
            for strategy in self.chain:
                path = strategy.locate(key)
                if path is not None:
                    return path
        except OSError as e:
            logger.warning(f"Failed to resolve {key}: {e}")
        return None

    def all_locations(self, key: RecordKey) -> List[Path]:
        """Every existing physical location of *key* (canonical and legacy)."""
        found: List[Path] = []
        for strategy in self.chain:
            for path in strategy.candidates(key):
                if path.is_file() and path not in found:
                    found.append(path)
        return found

    def legacy_locations(self, key: RecordKey) -> List[Path]:
        canonical = self.canonical.path_for(key)
        return [path for path in self.all_locations(key) if path != canonical]

    def list_ids(self, category: str, scope: Optional[str] = None) -> List[str]:
        """Ids stored for *category* across canonical and legacy layouts, de-duplicated."""
        ids: List[str] = []
        if self.is_scoped(category):
            ids.extend(self._list_scoped(category, scope))
        else:
            ids.extend(_json_ids(self.root / category))
            ids.extend(self.partitions.list_ids(category))
        return sorted(set(ids))

    def _list_scoped(self, category: str, scope: Optional[str]) -> List[str]:
        parent_dir = self.root / self.scoped_categories[category]
        ids: List[str] = []
        if scope:
            ids.extend(_json_ids(parent_dir / scope / category))
        elif parent_dir.is_dir():
            for entry in parent_dir.iterdir():
                if not entry.is_dir():
                    continue
                for record_id in _json_ids(entry / category):
                    self.scopes.set(category, record_id, entry.name)
                    ids.append(record_id)

        for record_id in _json_ids(self.root / category):
            if scope is None or self.scopes.get(category, record_id) == scope:
                ids.append(record_id)
        return ids
