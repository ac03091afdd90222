"""Primary record store.

Write path, per key and under that key's lock:

    resolve canonical path -> encode (optionally encrypt) -> write temp sibling
    -> atomic rename over target -> remove legacy copies -> update metadata index
    -> notify listeners (search indexer)

Primary write and delete failures propagate to the caller. Secondary index
maintenance (metadata index, listeners) is best-effort: failures are logged
and swallowed, and ``RecordStorage.rebuild_indexes`` repairs drift.
"""

import contextlib
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional, Tuple, Union

from ..config import StoreConfig
from .atomic_io import atomic_write_bytes, cleanup_orphaned_temp_files
from .backup_manager import BackupManager
from .codec import RecordCodec
from .errors import (
    ConfigurationError,
    DecodeError,
    IntegrityMismatchError,
    StorageError,
)
from .keys import RecordKey, record_partition, validate_segment
from .lock_manager import LockManager
from .metadata_index import MetadataIndex, compute_checksum
from .path_resolver import PathResolver
from .transaction_manager import (
    OperationType,
    TransactionManager,
    TransactionOperation,
)

logger = logging.getLogger(__name__)

INDEX_DIR = "indexes"
SNAPSHOT_DIR = "snapshots"
BACKUP_DIR = "backups"
LOCK_DIR = ".locks"
RESERVED_DIRS = frozenset({INDEX_DIR, SNAPSHOT_DIR, BACKUP_DIR, LOCK_DIR})


class RecordListener:
    """Receives record lifecycle notifications from the store."""

    def record_written(self, key: RecordKey, record: Dict[str, Any]) -> None:
        pass

    def record_deleted(self, key: RecordKey) -> None:
        pass


@dataclass
class BulkWriteItem:
    id: str
    data: Dict[str, Any]
    scope: Optional[str] = None


@dataclass
class BulkResult:
    """Per-item outcome of a bulk write."""

    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


BulkItem = Union[BulkWriteItem, Tuple[str, Dict[str, Any]], Dict[str, Any]]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce_item(item: BulkItem) -> BulkWriteItem:
    if isinstance(item, BulkWriteItem):
        return item
    if isinstance(item, tuple):
        return BulkWriteItem(id=item[0], data=item[1])
    if isinstance(item, dict):
        return BulkWriteItem(id=item["id"], data=item["data"], scope=item.get("scope"))
    raise TypeError(f"Unsupported bulk item: {type(item).__name__}")


class RecordStore:
    """Filesystem-backed per-record JSON store."""

    def __init__(self, config: StoreConfig):
        self.config = config
        self.root = Path(config.storage_root)
        self.index_dir = self.root / INDEX_DIR
        self.lock_dir = self.root / LOCK_DIR

        if config.encryption.enabled and not config.encryption.key:
            raise ConfigurationError(
                "Encryption is enabled but no key is configured "
                "(set encryption.key or RECORD_STORE_ENCRYPTION_KEY)"
            )
        for category in config.all_categories():
            self._check_category(category)

        self.root.mkdir(parents=True, exist_ok=True)
        self.codec = RecordCodec(config.encryption.key, config.encryption.version)
        self.resolver = PathResolver(
            self.root,
            config.scoped_categories,
            config.partition,
            self.index_dir,
            max_scope_scan=config.max_scope_scan,
        )
        self.locks = LockManager(
            self.lock_dir,
            max_retries=config.locks.max_retries,
            retry_delay=config.locks.retry_delay,
            timeout=config.locks.timeout,
        )
        self.metadata = MetadataIndex(self.index_dir)
        self.backups = BackupManager(
            self.root / BACKUP_DIR,
            enabled=config.backups.backup_on_write,
            retention_days=config.backups.retention_days,
        )
        self.transactions = TransactionManager(discard_backup=self.backups.discard)
        self._listeners: List[RecordListener] = []
        self._listeners_lock = threading.Lock()

        self._initialize_layout()

    def _initialize_layout(self) -> None:
        for category in self.config.categories:
            (self.root / category).mkdir(parents=True, exist_ok=True)
            self.metadata.ensure(category)

        stale = self.locks.clear_stale_locks(self.config.locks.stale_after)
        if stale:
            logger.info(f"Cleared {stale} stale lock markers")
        cleanup_orphaned_temp_files(self.root)
        logger.info(f"File storage initialized at: {self.root}")

    @staticmethod
    def _check_category(category: str) -> str:
        validate_segment(category, "category")
        if category in RESERVED_DIRS:
            raise ValueError(f"Category name is reserved: {category}")
        return category

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: RecordListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def _notify_written(self, key: RecordKey, record: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener.record_written(key, record)
            except Exception as e:
                logger.warning(f"Search index update failed for {key}: {e}")

    def _notify_deleted(self, key: RecordKey) -> None:
        for listener in list(self._listeners):
            try:
                listener.record_deleted(key)
            except Exception as e:
                logger.warning(f"Search index removal failed for {key}: {e}")

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def key_for(self, category: str, record_id: str, scope: Optional[str] = None) -> RecordKey:
        self._check_category(category)
        validate_segment(record_id)
        if scope is not None:
            validate_segment(scope, "scope")
        return self.resolver.qualify(category, record_id, scope)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write(
        self,
        category: str,
        record_id: str,
        data: Dict[str, Any],
        scope: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Atomically write a full record, replacing any prior version.

        Returns:
            The stored record, including store-managed timestamps.

        Raises:
            LockTimeoutError: If the key lock cannot be acquired.
            TransactionNotFoundError: If *transaction_id* is unknown.
            ValueError: For invalid ids or a scoped record without a scope.
            OSError: If the record file cannot be written.
        """
        if not isinstance(data, dict):
            raise TypeError(f"Record data must be a dict, got {type(data).__name__}")
        if transaction_id is not None:
            self.transactions.get(transaction_id)

        key = self.key_for(category, record_id, scope)
        target = self.resolver.canonical_path(key)

        try:
            with self.locks.lock(key.lock_key):
                moved_from = self._previous_scope_key(key)
                prior_path = self.resolver.resolve(key)
                if prior_path is None and moved_from is not None:
                    prior_path = self.resolver.resolve(moved_from)
                prior_bytes = self._read_prior(prior_path)
                backup_path = (
                    self.backups.backup(category, record_id, prior_path)
                    if prior_path is not None
                    else None
                )

                record = self._stamp(data, prior_bytes)
                payload = self.codec.encode(record, encrypt=self.config.encryption.enabled)
                atomic_write_bytes(target, payload)

                for legacy in self.resolver.legacy_locations(key):
                    legacy.unlink(missing_ok=True)
                    logger.debug(f"Removed legacy copy {legacy} of {key}")
                if moved_from is not None:
                    for old in self.resolver.all_locations(moved_from):
                        old.unlink(missing_ok=True)
                        logger.debug(f"Moved {key} out of scope {moved_from.scope}")

                if key.scope and self.resolver.is_scoped(category):
                    self.resolver.scopes.set(category, record_id, key.scope)

                self._update_metadata(key, payload, target)

                if transaction_id is not None:
                    capture = self.config.transactions.capture_pre_images
                    self.transactions.record(
                        transaction_id,
                        TransactionOperation(
                            type=OperationType.WRITE,
                            key=key,
                            prior_path=prior_path,
                            prior_bytes=prior_bytes if capture else None,
                            backup_path=backup_path,
                        ),
                    )

                if moved_from is not None:
                    self._notify_deleted(moved_from)
                self._notify_written(key, record)
        except Exception as e:
            logger.error(f"Failed to write {key}.json: {e}")
            raise

        logger.debug(f"Written {key}.json")
        return record

    def _previous_scope_key(self, key: RecordKey) -> Optional[RecordKey]:
        """Key of the same scoped record under the parent it was last stored under, if different."""
        if not key.scope or not self.resolver.is_scoped(key.category):
            return None
        previous = self.resolver.scopes.get(key.category, key.record_id)
        if previous is None or previous == key.scope:
            return None
        return RecordKey(key.category, key.record_id, previous)

    def _read_prior(self, prior_path: Optional[Path]) -> Optional[bytes]:
        if prior_path is None:
            return None
        try:
            return prior_path.read_bytes()
        except FileNotFoundError:
            return None

    def _stamp(self, data: Dict[str, Any], prior_bytes: Optional[bytes]) -> Dict[str, Any]:
        stamps = self.config.timestamps
        record = dict(data)
        if not stamps.enabled:
            return record

        now = _utc_now()
        if not record.get(stamps.created_field):
            created = None
            if prior_bytes is not None:
                try:
                    created = self.codec.decode(prior_bytes).get(stamps.created_field)
                except DecodeError:
                    created = None
            record[stamps.created_field] = created or now
        record[stamps.updated_field] = now
        return record

    def _update_metadata(self, key: RecordKey, payload: bytes, path: Path) -> None:
        try:
            self.metadata.record_write(key.category, key.record_id, payload, path)
        except Exception as e:
            logger.warning(f"Failed to update index for {key}: {e}")

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def read(
        self, category: str, record_id: str, scope: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Read a record, or None if it does not exist.

        Raises:
            DecodeError: If the stored bytes are malformed or fail to decrypt.
            IntegrityMismatchError: On checksum mismatch in strict mode.
        """
        key = self.key_for(category, record_id, scope)
        path = self.resolver.resolve(key)
        if path is None:
            return None

        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None

        if self.config.integrity.verify_on_read:
            self._verify(key, raw)

        try:
            return self.codec.decode(raw)
        except DecodeError as e:
            logger.error(f"Failed to read {key}.json: {e}")
            raise

    def _verify(self, key: RecordKey, raw: bytes) -> None:
        try:
            matches = self.metadata.verify(key.category, key.record_id, raw)
        except Exception as e:
            logger.warning(f"Failed to verify data integrity for {key}: {e}")
            return
        if matches is False:
            entry = self.metadata.get(key.category, key.record_id)
            expected = entry.checksum if entry else ""
            if self.config.integrity.strict:
                raise IntegrityMismatchError(
                    key.category, key.record_id, expected, compute_checksum(raw)
                )
            logger.warning(f"Data integrity check failed for {key}")

    def exists(self, category: str, record_id: str, scope: Optional[str] = None) -> bool:
        return self.resolver.resolve(self.key_for(category, record_id, scope)) is not None

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(
        self,
        category: str,
        record_id: str,
        scope: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> bool:
        """Remove every physical copy of a record.

        Returns:
            True if anything was removed, False for an absent key (a no-op).
        """
        if transaction_id is not None:
            self.transactions.get(transaction_id)

        key = self.key_for(category, record_id, scope)
        try:
            with self.locks.lock(key.lock_key):
                locations = self.resolver.all_locations(key)
                if not locations:
                    return False

                prior_path = locations[0]
                prior_bytes = self._read_prior(prior_path)
                backup_path = self.backups.backup(category, record_id, prior_path)

                for path in locations:
                    path.unlink(missing_ok=True)

                if self.resolver.is_scoped(category):
                    self.resolver.scopes.remove(category, record_id)

                try:
                    self.metadata.record_delete(category, record_id)
                except Exception as e:
                    logger.warning(f"Failed to remove from index {key}: {e}")

                if transaction_id is not None:
                    capture = self.config.transactions.capture_pre_images
                    self.transactions.record(
                        transaction_id,
                        TransactionOperation(
                            type=OperationType.DELETE,
                            key=key,
                            prior_path=prior_path,
                            prior_bytes=prior_bytes if capture else None,
                            backup_path=backup_path,
                        ),
                    )

                self._notify_deleted(key)
        except Exception as e:
            logger.error(f"Failed to delete {key}.json: {e}")
            raise

        logger.debug(f"Deleted {key}.json")
        return True

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list(
        self,
        category: str,
        scope: Optional[str] = None,
        partition: Optional[int] = None,
    ) -> List[str]:
        """Ids in *category* (optionally one scope), de-duplicated across layouts.

        With *partition*, each candidate is read and kept only when its
        partition (record field, else derived from the id) equals *partition*.
        """
        self._check_category(category)
        if scope is not None:
            validate_segment(scope, "scope")
        ids = self.resolver.list_ids(category, scope)
        if partition is None:
            return ids
        return [record_id for record_id, _ in self._iter_partition(category, ids, scope, partition)]

    def list_records(
        self,
        category: str,
        scope: Optional[str] = None,
        partition: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ids = self.resolver.list_ids(self._check_category(category), scope)
        if partition is not None:
            return [record for _, record in self._iter_partition(category, ids, scope, partition)]
        return [record for _, record in self._iter_records(category, ids, scope)]

    def search_files(
        self,
        category: str,
        predicate: Callable[[Dict[str, Any]], bool],
        partition: Optional[int] = None,
        scope: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Linear scan returning records that satisfy *predicate*."""
        return [
            record
            for record in self.list_records(category, scope=scope, partition=partition)
            if predicate(record)
        ]

    def iter_records(
        self, category: str, scope: Optional[str] = None
    ) -> Generator[Tuple[RecordKey, Dict[str, Any]], None, None]:
        """Yield (key, record) for every readable record of *category*."""
        for record_id in self.resolver.list_ids(self._check_category(category), scope):
            key = self.resolver.qualify(category, record_id, scope)
            try:
                record = self.read(category, record_id, key.scope)
            except StorageError as e:
                logger.warning(f"Failed to read {key}.json during scan: {e}")
                continue
            if record is not None:
                yield key, record

    def _iter_records(
        self, category: str, ids: Iterable[str], scope: Optional[str]
    ) -> Generator[Tuple[str, Dict[str, Any]], None, None]:
        for record_id in ids:
            try:
                record = self.read(category, record_id, scope)
            except StorageError as e:
                logger.warning(f"Failed to read {category}/{record_id}.json during search: {e}")
                continue
            if record is not None:
                yield record_id, record

    def _iter_partition(
        self, category: str, ids: Iterable[str], scope: Optional[str], partition: int
    ) -> Generator[Tuple[str, Dict[str, Any]], None, None]:
        field_name = self.config.partition.record_field
        for record_id, record in self._iter_records(category, ids, scope):
            if record_partition(record, record_id, field_name) == partition:
                yield record_id, record

    def locations(self, category: str) -> Dict[str, Path]:
        """Current physical location of every record in *category* (id -> path)."""
        found: Dict[str, Path] = {}
        for record_id in self.resolver.list_ids(self._check_category(category)):
            path = self.resolver.resolve(self.resolver.qualify(category, record_id))
            if path is not None:
                found[record_id] = path
        return found

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def bulk_read(
        self, category: str, ids: List[str], scope: Optional[str] = None
    ) -> Dict[str, Optional[Dict[str, Any]]]:
        """Read many records with bounded concurrency; failed reads map to None."""

        def read_one(record_id: str) -> Optional[Dict[str, Any]]:
            try:
                return self.read(category, record_id, scope)
            except Exception as e:
                logger.warning(f"Failed to read {category}/{record_id}.json: {e}")
                return None

        with ThreadPoolExecutor(max_workers=self.config.bulk.max_workers) as pool:
            values = list(pool.map(read_one, ids))
        return dict(zip(ids, values))

    def bulk_write(
        self,
        category: str,
        items: Iterable[BulkItem],
        transaction_id: Optional[str] = None,
    ) -> BulkResult:
        """Write many records.

        Outside a transaction, items are written concurrently and each
        failure is collected without affecting the others. Inside a
        transaction, items are written in order; the first failure rolls the
        transaction back and is re-raised.
        """
        work = [_coerce_item(item) for item in items]
        result = BulkResult()

        if transaction_id is not None:
            try:
                for item in work:
                    self.write(category, item.id, item.data, item.scope, transaction_id)
                    result.succeeded.append(item.id)
            except Exception:
                logger.error(f"Bulk write failed for {category}, rolling back {transaction_id}")
                self.rollback_transaction(transaction_id)
                raise
            return result

        def write_one(item: BulkWriteItem) -> Optional[str]:
            try:
                self.write(category, item.id, item.data, item.scope)
                return None
            except Exception as e:
                return str(e) or type(e).__name__

        with ThreadPoolExecutor(max_workers=self.config.bulk.max_workers) as pool:
            outcomes = list(pool.map(write_one, work))

        for item, error in zip(work, outcomes):
            if error is None:
                result.succeeded.append(item.id)
            else:
                result.failed[item.id] = error

        logger.info(
            f"Bulk write completed: {len(result.succeeded)} items in {category}, "
            f"{len(result.failed)} failed"
        )
        return result

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def begin_transaction(self) -> str:
        return self.transactions.begin()

    def commit_transaction(self, transaction_id: str) -> None:
        self.transactions.commit(transaction_id)

    def rollback_transaction(self, transaction_id: str) -> None:
        self.transactions.rollback(transaction_id, self._undo)

    @contextlib.contextmanager
    def transaction(self) -> Generator[str, None, None]:
        """Commit on normal exit, roll back when the block raises."""
        transaction_id = self.begin_transaction()
        try:
            yield transaction_id
        except BaseException:
            self.rollback_transaction(transaction_id)
            raise
        self.commit_transaction(transaction_id)

    def _undo(self, operation: TransactionOperation) -> None:
        key = operation.key
        canonical = self.resolver.canonical_path(key)
        with self.locks.lock(key.lock_key):
            restored = False
            if operation.prior_path is not None:
                if operation.prior_bytes is not None:
                    atomic_write_bytes(operation.prior_path, operation.prior_bytes)
                    restored = True
                elif operation.backup_path is not None:
                    restored = self.backups.restore(operation.backup_path, operation.prior_path)

            if operation.type is OperationType.WRITE:
                if restored and operation.prior_path != canonical:
                    canonical.unlink(missing_ok=True)
                elif not restored:
                    if operation.existed_before:
                        logger.warning(
                            f"No pre-image for {key}; rollback deletes the written record"
                        )
                    for path in self.resolver.all_locations(key):
                        path.unlink(missing_ok=True)
            elif not restored:
                logger.warning(f"Cannot restore deleted record {key}: no pre-image or backup")

            self._refresh_indexes(key)

    def _refresh_indexes(self, key: RecordKey) -> None:
        """Bring metadata and listener indexes in line with what is on disk for *key*."""
        path = self.resolver.resolve(key)
        if path is None:
            if self.resolver.is_scoped(key.category):
                self.resolver.scopes.remove(key.category, key.record_id)
                restored = self.resolver.qualify(key.category, key.record_id)
                if restored.scope and restored.scope != key.scope:
                    self._notify_deleted(key)
                    self._refresh_indexes(restored)
                    return
            try:
                self.metadata.record_delete(key.category, key.record_id)
            except Exception as e:
                logger.warning(f"Failed to remove from index {key}: {e}")
            self._notify_deleted(key)
            return

        raw = path.read_bytes()
        if key.scope and self.resolver.is_scoped(key.category):
            self.resolver.scopes.set(key.category, key.record_id, key.scope)
        self._update_metadata(key, raw, path)
        try:
            record = self.codec.decode(raw)
        except DecodeError as e:
            logger.warning(f"Restored record {key} is undecodable: {e}")
            return
        self._notify_written(key, record)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def rebuild_metadata(self, category: str) -> int:
        return self.metadata.rebuild(category, self.locations(category))

    def reset_caches(self) -> None:
        """Forget cached index state (after files were replaced underneath the store)."""
        self.metadata.reset()
        self.resolver.scopes.reset()

    def category_counts(self) -> Dict[str, int]:
        return {category: len(self.list(category)) for category in self.config.categories}

    def partition_counts(self) -> Dict[int, int]:
        partition = self.config.partition
        counts = {code: 0 for code in partition.codes()}
        if partition.category not in self.config.all_categories():
            return counts
        for record_id, record in self._iter_records(
            partition.category, self.resolver.list_ids(partition.category), None
        ):
            code = record_partition(record, record_id, partition.record_field)
            if code in counts:
                counts[code] += 1
        return counts
