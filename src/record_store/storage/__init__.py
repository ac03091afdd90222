"""Filesystem-based record storage components."""

from .errors import (
    ConfigurationError,
    DecodeError,
    IntegrityMismatchError,
    LockTimeoutError,
    RecordNotFoundError,
    SearchIndexError,
    SnapshotNotFoundError,
    StorageError,
    TransactionNotFoundError,
)
from .keys import RecordKey
from .lock_manager import LockManager
from .codec import RecordCodec
from .path_resolver import PathResolver
from .metadata_index import MetadataIndex
from .record_store import BulkResult, BulkWriteItem, RecordListener, RecordStore
from .snapshot_manager import SnapshotManager
from .transaction_manager import TransactionManager

__all__ = [
    "BulkResult",
    "BulkWriteItem",
    "ConfigurationError",
    "DecodeError",
    "IntegrityMismatchError",
    "LockManager",
    "LockTimeoutError",
    "MetadataIndex",
    "PathResolver",
    "RecordCodec",
    "RecordKey",
    "RecordListener",
    "RecordNotFoundError",
    "RecordStore",
    "SearchIndexError",
    "SnapshotManager",
    "SnapshotNotFoundError",
    "StorageError",
    "TransactionManager",
    "TransactionNotFoundError",
]
