"""Document keys and partition derivation."""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

_PARTITION_PREFIX = re.compile(r"^(\d+)[A-Za-z]")


@dataclass(frozen=True)
class RecordKey:
    """A (category, id[, scope]) document key.

    ``scope`` is the owning parent id for scoped categories and None otherwise.
    """

    category: str
    record_id: str
    scope: Optional[str] = None

    @property
    def lock_key(self) -> str:
        return f"{self.category}/{self.record_id}"

    @property
    def document_key(self) -> str:
        """Key used for this record inside the search indexes."""
        if self.scope:
            return f"{self.scope}:{self.record_id}"
        return self.record_id

    def __str__(self) -> str:
        if self.scope:
            return f"{self.category}/{self.scope}/{self.record_id}"
        return f"{self.category}/{self.record_id}"


def validate_segment(value: str, what: str = "id") -> str:
    """Reject values that could escape the storage root when used as a path segment."""
    if not value or not isinstance(value, str):
        raise ValueError(f"Record {what} must be a non-empty string")
    if "/" in value or "\\" in value or value in (".", "..") or value.startswith("."):
        raise ValueError(f"Invalid record {what}: {value!r}")
    if "\x00" in value:
        raise ValueError(f"Invalid record {what}: contains NUL byte")
    return value


def parse_document_key(document_key: str) -> RecordKey:
    """Inverse of RecordKey.document_key, without the category."""
    if ":" in document_key:
        scope, record_id = document_key.split(":", 1)
        return RecordKey("", record_id, scope)
    return RecordKey("", document_key)


def derive_partition(record_id: str) -> Optional[int]:
    """Partition code encoded in the leading digits of a reference id ("3A001" -> 3)."""
    match = _PARTITION_PREFIX.match(record_id)
    if not match:
        return None
    return int(match.group(1))


def record_partition(
    record: Optional[Dict[str, Any]], record_id: str, field: str
) -> Optional[int]:
    """Partition of a record: the explicit field when usable, else derived from the id.

    A field that is present but not an integer (booleans, non-numeric
    strings) is ambiguous and yields None without consulting the id.
    """
    if record and record.get(field) is not None:
        value = record[field]
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return None
    return derive_partition(record_id)
