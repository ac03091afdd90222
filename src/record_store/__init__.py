"""
Record Store - embedded filesystem document storage with search.

Per-record JSON files with atomic writes, per-key locking, checksum
indexing, optional AES-GCM encryption at rest, best-effort transactions,
snapshot/restore, and an inverted full-text index with fuzzy matching.
"""

__version__ = "1.4.0"

from .config import StoreConfig, ConfigManager
from .service import RecordStorage

__all__ = ["StoreConfig", "ConfigManager", "RecordStorage", "__version__"]
