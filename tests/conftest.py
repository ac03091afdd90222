"""
Shared pytest fixtures for Record Store tests.

Every fixture builds its store under pytest's ``tmp_path`` so tests never
share on-disk state.
"""

from pathlib import Path
from typing import Generator

import pytest

from record_store.config import LockConfig, StoreConfig
from record_store.service import RecordStorage
from record_store.storage.codec import generate_key


@pytest.fixture
def storage_root(tmp_path) -> Path:
    return tmp_path / "storage"


@pytest.fixture
def store_config(storage_root) -> StoreConfig:
    """Default configuration with fast lock retries."""
    return StoreConfig(
        storage_root=storage_root,
        locks=LockConfig(max_retries=5, retry_delay=0.01, timeout=1.0),
    )


@pytest.fixture
def storage(store_config) -> Generator[RecordStorage, None, None]:
    instance = RecordStorage(store_config)
    yield instance
    instance.close()


@pytest.fixture
def encryption_key() -> str:
    return generate_key()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep environment overrides from leaking into configuration loading."""
    monkeypatch.delenv("RECORD_STORE_ROOT", raising=False)
    monkeypatch.delenv("RECORD_STORE_ENCRYPTION_KEY", raising=False)
