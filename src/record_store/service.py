"""
RecordStorage: the collaborator-facing API of the storage engine.

Composes the primary store, the search indexer and query engine, and the
snapshot manager behind one object. Business code only talks to this
class::

    storage = RecordStorage(StoreConfig(storage_root=Path("./data")))
    storage.write("clients", "1A001", {"name": "Acme Ltd"})
    storage.search("acme")
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import StoreConfig
from .search import PaginatedResults, QueryEngine, SearchIndexer, SearchOptions
from .storage.record_store import (
    BACKUP_DIR,
    LOCK_DIR,
    SNAPSHOT_DIR,
    BulkItem,
    BulkResult,
    RecordStore,
)
from .storage.snapshot_manager import SnapshotManager

logger = logging.getLogger(__name__)


class RecordStorage:
    """Filesystem record storage with transactions, snapshots and search."""

    def __init__(self, config: Optional[StoreConfig] = None):
        self.config = config or StoreConfig()
        self.store = RecordStore(self.config)
        self.indexer = SearchIndexer(self.store, self.config.search)
        if self.config.search.enabled:
            self.store.add_listener(self.indexer)
        self.query_engine = QueryEngine(self.store, self.indexer, self.config.search)
        self.snapshots = SnapshotManager(
            self.store.root,
            self.store.root / SNAPSHOT_DIR,
            excluded=(SNAPSHOT_DIR, LOCK_DIR),
            preserved=(BACKUP_DIR,),
            retention_count=self.config.snapshots.retention_count,
            on_restore=self._reset_caches,
        )
        self._closed = False

    def __enter__(self) -> "RecordStorage":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def write(
        self,
        category: str,
        record_id: str,
        data: Dict[str, Any],
        scope: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.store.write(category, record_id, data, scope, transaction_id)

    def read(
        self, category: str, record_id: str, scope: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        return self.store.read(category, record_id, scope)

    def delete(
        self,
        category: str,
        record_id: str,
        scope: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> bool:
        return self.store.delete(category, record_id, scope, transaction_id)

    def list(
        self, category: str, scope: Optional[str] = None, partition: Optional[int] = None
    ) -> List[str]:
        return self.store.list(category, scope, partition)

    def list_records(
        self, category: str, scope: Optional[str] = None, partition: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return self.store.list_records(category, scope, partition)

    def search_files(
        self,
        category: str,
        predicate: Callable[[Dict[str, Any]], bool],
        partition: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return self.store.search_files(category, predicate, partition)

    def bulk_read(
        self, category: str, ids: List[str], scope: Optional[str] = None
    ) -> Dict[str, Optional[Dict[str, Any]]]:
        return self.store.bulk_read(category, ids, scope)

    def bulk_write(
        self,
        category: str,
        items: Iterable[BulkItem],
        transaction_id: Optional[str] = None,
    ) -> BulkResult:
        return self.store.bulk_write(category, items, transaction_id)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str, options: Optional[SearchOptions] = None) -> PaginatedResults:
        return self.query_engine.search(query, options)

    def get_search_stats(self) -> Dict[str, Any]:
        categories = {
            category: self.indexer.index.stats(category)
            for category in self.config.search.categories
        }
        return {
            "totalTerms": sum(stats["terms"] for stats in categories.values()),
            "categories": categories,
        }

    def optimize_search_index(self, category: str) -> Dict[str, int]:
        before, after = self.indexer.index.optimize(category)
        return {"before": before, "after": after}

    def get_index_health(self) -> Dict[str, Dict[str, Any]]:
        health: Dict[str, Dict[str, Any]] = {}
        for category in self.config.search.categories:
            try:
                has_records = bool(self.store.list(category))
                health[category] = self.indexer.index.health(category, has_records)
            except Exception as e:
                health[category] = {
                    "status": "corrupted",
                    "issues": [f"Error checking index: {e}"],
                }
        return health

    def rebuild_indexes(self, categories: Optional[List[str]] = None) -> Dict[str, Dict[str, int]]:
        """Recompute metadata, inverted and lite indexes from the records on disk.

        Running it twice on an unchanged store produces identical index files.
        """
        targets = categories if categories is not None else self.config.all_categories()
        summary: Dict[str, Dict[str, int]] = {}
        for category in targets:
            entry = {"metadata": self.store.rebuild_metadata(category)}
            if self.config.search.enabled and self.indexer.is_indexed(category):
                entry["search"] = self.indexer.rebuild(category)
            summary[category] = entry
        logger.info(f"Rebuilt indexes for {len(summary)} categories")
        return summary

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def begin_transaction(self) -> str:
        return self.store.begin_transaction()

    def commit_transaction(self, transaction_id: str) -> None:
        self.store.commit_transaction(transaction_id)

    def rollback_transaction(self, transaction_id: str) -> None:
        self.store.rollback_transaction(transaction_id)

    def transaction(self):
        """Context manager yielding a transaction id; rolls back if the block raises."""
        return self.store.transaction()

    # ------------------------------------------------------------------
    # Snapshots and backups
    # ------------------------------------------------------------------

    def create_snapshot(self) -> str:
        return self.snapshots.create_snapshot()

    def restore_from_snapshot(self, snapshot_id: str) -> str:
        return self.snapshots.restore_from_snapshot(snapshot_id)

    def list_snapshots(self) -> List[str]:
        return self.snapshots.list_snapshots()

    def cleanup_old_snapshots(self, keep: Optional[int] = None) -> int:
        return self.snapshots.cleanup_old_snapshots(keep)

    def cleanup_old_backups(self, days_to_keep: Optional[int] = None) -> int:
        return self.store.backups.cleanup_old_backups(days_to_keep)

    def _reset_caches(self) -> None:
        self.store.reset_caches()
        self.indexer.reset()

    # ------------------------------------------------------------------
    # Stats and lifecycle
    # ------------------------------------------------------------------

    def get_storage_stats(self) -> Dict[str, Any]:
        root = self.store.root
        categories = self.store.category_counts()
        total_size = 0
        for path in root.rglob("*"):
            try:
                if path.is_file():
                    total_size += path.stat().st_size
            except OSError:
                continue

        return {
            "storage_path": str(root),
            "backup_path": str(self.store.backups.backup_dir),
            "snapshot_path": str(self.snapshots.snapshot_dir),
            "categories": categories,
            "partitions": self.store.partition_counts(),
            "total_files": sum(categories.values()),
            "total_size": total_size,
            "last_snapshot": self.snapshots.latest_snapshot(),
            "active_locks": self.store.locks.active_count,
            "pending_transactions": self.store.transactions.pending_count,
        }

    def close(self) -> None:
        if self._closed:
            return
        pending = self.store.transactions.pending_count
        if pending:
            logger.warning(
                f"Closing storage with {pending} open transactions; their changes stay applied"
            )
        released = self.store.locks.release_all()
        if released:
            logger.warning(f"Released {released} locks still held at close")
        self._closed = True
        logger.info(f"Closed storage at {self.store.root}")
