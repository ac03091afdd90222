"""Configuration management for Record Store."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ROOT_ENV_VAR = "RECORD_STORE_ROOT"
ENCRYPTION_KEY_ENV_VAR = "RECORD_STORE_ENCRYPTION_KEY"


class PartitionConfig(BaseModel):
    """Configuration for the partitioned (legacy portfolio) category."""

    category: str = Field(
        default="clients", description="Category whose records carry a partition code"
    )
    min_code: int = Field(default=1, description="Lowest valid partition code")
    max_code: int = Field(default=10, description="Highest valid partition code")
    record_field: str = Field(
        default="portfolioCode",
        description="Record field holding the partition code",
    )
    directory_prefix: str = Field(
        default="portfolio-",
        description="Directory prefix of the legacy partitioned layout",
    )

    def codes(self) -> List[int]:
        """Return every valid partition code in ascending order."""
        return list(range(self.min_code, self.max_code + 1))

    def is_valid(self, code: int) -> bool:
        return self.min_code <= code <= self.max_code


class LockConfig(BaseModel):
    """Configuration for per-key lock acquisition."""

    max_retries: int = Field(default=10, description="Maximum acquisition attempts")
    retry_delay: float = Field(
        default=0.1, description="Delay between acquisition attempts in seconds"
    )
    timeout: float = Field(
        default=5.0, description="Overall acquisition timeout in seconds"
    )
    stale_after: float = Field(
        default=300.0,
        description="Lock markers older than this (seconds) are cleared at start-up",
    )


class EncryptionConfig(BaseModel):
    """Configuration for at-rest encryption of record payloads."""

    enabled: bool = Field(default=False, description="Encrypt new writes")
    key: Optional[str] = Field(
        default=None,
        description=f"AES-256 key as 64 hex characters (or set {ENCRYPTION_KEY_ENV_VAR})",
    )
    version: int = Field(default=1, description="Envelope version written")

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: Optional[str]) -> Optional[str]:
        """Keys must be 32 bytes expressed as hex."""
        if v is None:
            return v
        try:
            raw = bytes.fromhex(v)
        except ValueError:
            raise ValueError("Encryption key must be hex encoded")
        if len(raw) != 32:
            raise ValueError(
                f"Encryption key must be 32 bytes (64 hex chars), got {len(raw)} bytes"
            )
        return v


class IntegrityConfig(BaseModel):
    """Configuration for checksum verification on read."""

    verify_on_read: bool = Field(
        default=True, description="Compare on-disk checksum against metadata index"
    )
    strict: bool = Field(
        default=False,
        description="Raise IntegrityMismatchError instead of logging a warning",
    )


class BackupConfig(BaseModel):
    """Configuration for per-write backups.

    Backups are disabled by default: a copy on every write grows storage
    without bound. Snapshots are the recommended recovery mechanism.
    """

    backup_on_write: bool = Field(
        default=False, description="Copy the prior version before overwrite/delete"
    )
    retention_days: int = Field(
        default=30, description="Backups older than this are pruned"
    )


class SnapshotConfig(BaseModel):
    """Configuration for whole-store snapshots."""

    retention_count: int = Field(
        default=10, description="Number of snapshots kept by cleanup"
    )


class TransactionConfig(BaseModel):
    """Configuration for best-effort transactions."""

    capture_pre_images: bool = Field(
        default=True,
        description="Keep the prior bytes of records touched inside a transaction for rollback",
    )


class BulkConfig(BaseModel):
    """Configuration for bulk read/write fan-out."""

    max_workers: int = Field(default=10, description="Concurrent bulk operations")


class SearchConfig(BaseModel):
    """Configuration for the inverted search index and query engine."""

    enabled: bool = Field(default=True, description="Maintain search indexes")
    categories: List[str] = Field(
        default=[
            "clients",
            "people",
            "services",
            "tasks",
            "calendar",
            "documents",
            "compliance",
        ],
        description="Categories maintained in the inverted index",
    )
    default_categories: List[str] = Field(
        default=["clients", "people", "services", "tasks", "documents"],
        description="Categories searched when the query names none",
    )
    lite_category: Optional[str] = Field(
        default="clients",
        description="High-volume category with a flattened prefix/substring index",
    )
    fuzzy_threshold: float = Field(
        default=0.7, description="Minimum normalized similarity for fuzzy hits"
    )
    fuzzy_min_length: int = Field(
        default=4, description="Minimum query term length for fuzzy matching"
    )
    min_term_length: int = Field(
        default=3, description="Shortest term kept by the tokenizer"
    )
    default_limit: int = Field(default=50, description="Default page size")


class TimestampConfig(BaseModel):
    """Configuration for store-managed record timestamps."""

    enabled: bool = Field(default=True, description="Stamp timestamps on write")
    created_field: str = Field(default="createdAt", description="Creation field")
    updated_field: str = Field(default="updatedAt", description="Update field")


class StoreConfig(BaseModel):
    """Main configuration for Record Store."""

    storage_root: Path = Field(
        default=Path("./storage"), description="Root directory of the store"
    )
    categories: List[str] = Field(
        default=[
            "clients",
            "people",
            "client-parties",
            "services",
            "tasks",
            "service-templates",
            "task-templates",
            "calendar",
            "documents",
            "compliance",
            "events",
            "config",
            "templates",
            "tax-calculations",
        ],
        description="Known categories created at initialisation",
    )
    scoped_categories: Dict[str, str] = Field(
        default={"client-parties": "clients"},
        description="Scoped category -> parent category",
    )
    max_scope_scan: int = Field(
        default=5000,
        description="Maximum parent directories scanned to locate a scoped record",
    )

    partition: PartitionConfig = Field(default_factory=PartitionConfig)
    locks: LockConfig = Field(default_factory=LockConfig)
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    integrity: IntegrityConfig = Field(default_factory=IntegrityConfig)
    backups: BackupConfig = Field(default_factory=BackupConfig)
    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    bulk: BulkConfig = Field(default_factory=BulkConfig)
    transactions: TransactionConfig = Field(default_factory=TransactionConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    timestamps: TimestampConfig = Field(default_factory=TimestampConfig)

    @field_validator("storage_root", mode="before")
    @classmethod
    def convert_path(cls, v: Any) -> Path:
        """Convert string paths to Path objects."""
        if isinstance(v, str):
            return Path(v)
        if isinstance(v, Path):
            return v
        raise ValueError(f"Expected str or Path, got {type(v)}")

    def all_categories(self) -> List[str]:
        """Known categories plus any search-only categories, de-duplicated."""
        seen = list(self.categories)
        for category in self.search.categories:
            if category not in seen:
                seen.append(category)
        return seen


class ConfigManager:
    """Manages configuration loading and saving."""

    DEFAULT_CONFIG_PATH = Path(".record-store/config.json")

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self._config: Optional[StoreConfig] = None

    def load(self) -> StoreConfig:
        """Load configuration from file (or defaults) and apply environment overrides."""
        data: Dict[str, Any] = {}
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = json.load(f)
            except Exception as e:
                raise ValueError(f"Failed to load config from {self.config_path}: {e}")

        env_root = os.environ.get(ROOT_ENV_VAR)
        if env_root:
            data["storage_root"] = env_root

        env_key = os.environ.get(ENCRYPTION_KEY_ENV_VAR)
        if env_key:
            encryption = dict(data.get("encryption") or {})
            encryption.setdefault("key", env_key)
            data["encryption"] = encryption

        try:
            self._config = StoreConfig(**data)
        except Exception as e:
            raise ValueError(f"Invalid configuration in {self.config_path}: {e}")
        return self._config

    def save(self, config: Optional[StoreConfig] = None) -> None:
        """Save configuration to file. The encryption key is never written."""
        if config is None:
            config = self._config

        if config is None:
            raise ValueError("No configuration to save")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = config.model_dump(mode="json")
        config_dict["encryption"]["key"] = None

        with open(self.config_path, "w") as f:
            json.dump(config_dict, f, indent=2)

    def get_config(self) -> StoreConfig:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            self.load()
        if self._config is None:
            raise RuntimeError("Failed to load configuration")
        return self._config

    def update_config(self, **kwargs: Any) -> StoreConfig:
        """Update configuration with new values."""
        config = self.get_config()

        config_dict = config.model_dump()
        config_dict.update(kwargs)

        new_config = StoreConfig(**config_dict)
        self._config = new_config
        self.save()
        return new_config
