"""Error taxonomy for the storage engine."""

from typing import Optional


class StorageError(Exception):
    """Base class for all storage engine errors."""

    pass


class ConfigurationError(StorageError):
    """Raised when the store is started with an unusable configuration."""

    pass


class RecordNotFoundError(StorageError):
    """Signal type for collaborators mapping an absent record to their own response.

    The store itself reports absence by returning None from read() and by
    treating deletes of absent keys as no-ops.
    """

    def __init__(self, category: str, record_id: str):
        self.category = category
        self.record_id = record_id
        super().__init__(f"Record not found: {category}/{record_id}")


class LockTimeoutError(StorageError):
    """Raised when a key lock cannot be acquired within the retry limit."""

    def __init__(self, key: str, attempts: int, holder: Optional[str] = None):
        self.key = key
        self.attempts = attempts
        self.holder = holder
        message = f"Failed to acquire lock for {key} after {attempts} attempts"
        if holder:
            message += f" (held by {holder})"
        super().__init__(message)


class DecodeError(StorageError):
    """Raised for malformed JSON or an envelope that fails to decrypt."""

    pass


class IntegrityMismatchError(StorageError):
    """Raised in strict mode when an on-disk checksum disagrees with the index."""

    def __init__(self, category: str, record_id: str, expected: str, actual: str):
        self.category = category
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Data integrity check failed for {category}/{record_id}: "
            f"expected {expected[:12]}, got {actual[:12]}"
        )


class TransactionNotFoundError(StorageError):
    """Raised when committing or rolling back an unknown transaction id."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class SnapshotNotFoundError(StorageError):
    """Raised when restoring from a snapshot that does not exist."""

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot not found: {snapshot_id}")


class SearchIndexError(StorageError):
    """Raised when a persisted search index cannot be loaded."""

    pass
