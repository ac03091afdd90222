"""Best-effort, in-memory transactions.

Operations inside a transaction are applied to the store immediately. The
transaction only remembers how to undo them: the prior on-disk bytes of
the record (pre-image) and/or a backup file path. ``rollback`` walks the
operations in reverse and hands each to an undo callback supplied by the
store; ``commit`` discards the undo log.

The undo log lives in process memory. It does not survive a restart, and
a crash mid-transaction leaves the operations applied so far in place.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import StorageError, TransactionNotFoundError
from .keys import RecordKey

logger = logging.getLogger(__name__)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class OperationType(str, Enum):
    WRITE = "write"
    DELETE = "delete"


@dataclass
class TransactionOperation:
    """One applied operation and what is known about the state it replaced."""

    type: OperationType
    key: RecordKey
    prior_path: Optional[Path] = None
    prior_bytes: Optional[bytes] = None
    backup_path: Optional[Path] = None

    @property
    def existed_before(self) -> bool:
        return self.prior_path is not None


@dataclass
class Transaction:
    id: str
    operations: List[TransactionOperation] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: TransactionStatus = TransactionStatus.PENDING


class TransactionManager:
    """Tracks pending transactions and drives their rollback."""

    def __init__(self, discard_backup: Optional[Callable[[Path], None]] = None):
        self._pending: Dict[str, Transaction] = {}
        self._lock = threading.Lock()
        self._discard_backup = discard_backup

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def begin(self) -> str:
        transaction = Transaction(id=str(uuid.uuid4()))
        with self._lock:
            self._pending[transaction.id] = transaction
        logger.debug(f"Started transaction: {transaction.id}")
        return transaction.id

    def get(self, transaction_id: str) -> Transaction:
        """Return a pending transaction.

        Raises:
            TransactionNotFoundError: If the id is unknown or already finished.
        """
        with self._lock:
            transaction = self._pending.get(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    def record(self, transaction_id: str, operation: TransactionOperation) -> None:
        transaction = self.get(transaction_id)
        with self._lock:
            transaction.operations.append(operation)

    def commit(self, transaction_id: str) -> Transaction:
        """Mark the transaction committed and drop its undo log."""
        with self._lock:
            transaction = self._pending.pop(transaction_id, None)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        transaction.status = TransactionStatus.COMMITTED
        if self._discard_backup is not None:
            for operation in transaction.operations:
                if operation.backup_path is not None:
                    self._discard_backup(operation.backup_path)

        logger.debug(
            f"Committed transaction: {transaction_id} ({len(transaction.operations)} operations)"
        )
        return transaction

    def rollback(
        self,
        transaction_id: str,
        undo: Callable[[TransactionOperation], None],
    ) -> Transaction:
        """Undo recorded operations newest-first.

        Every operation is attempted even if an earlier undo fails; failures
        are reported together afterwards.

        Raises:
            TransactionNotFoundError: If the id is unknown or already finished.
            StorageError: If one or more operations could not be undone.
        """
        with self._lock:
            transaction = self._pending.pop(transaction_id, None)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        failures: List[str] = []
        for operation in reversed(transaction.operations):
            try:
                undo(operation)
            except Exception as e:
                logger.error(
                    f"Failed to undo {operation.type.value} of {operation.key} "
                    f"in transaction {transaction_id}: {e}"
                )
                failures.append(f"{operation.type.value} {operation.key}: {e}")

        transaction.status = TransactionStatus.ROLLED_BACK
        logger.debug(f"Rolled back transaction: {transaction_id}")

        if failures:
            raise StorageError(
                f"Rollback of transaction {transaction_id} incomplete: " + "; ".join(failures)
            )
        return transaction
