"""Unit tests for StoreConfig models and ConfigManager loading/saving."""

import json
from pathlib import Path

import pytest

from record_store.config import (
    ConfigManager,
    EncryptionConfig,
    PartitionConfig,
    StoreConfig,
)
from record_store.storage.codec import generate_key


class TestStoreConfigDefaults:
    """Defaults mirror the documented configuration surface."""

    def test_default_values(self):
        config = StoreConfig()
        assert config.storage_root == Path("./storage")
        assert "clients" in config.categories
        assert config.scoped_categories == {"client-parties": "clients"}
        assert config.encryption.enabled is False
        assert config.backups.backup_on_write is False
        assert config.transactions.capture_pre_images is True
        assert config.bulk.max_workers == 10
        assert config.search.fuzzy_threshold == 0.7

    def test_storage_root_accepts_strings(self):
        config = StoreConfig(storage_root="/tmp/records")
        assert config.storage_root == Path("/tmp/records")

    def test_storage_root_rejects_other_types(self):
        with pytest.raises(ValueError):
            StoreConfig(storage_root=42)

    def test_all_categories_includes_search_only_categories(self):
        config = StoreConfig(categories=["clients"])
        categories = config.all_categories()
        assert categories[0] == "clients"
        assert "people" in categories
        assert len(categories) == len(set(categories))

    def test_partition_codes(self):
        partition = PartitionConfig(min_code=1, max_code=3)
        assert partition.codes() == [1, 2, 3]
        assert partition.is_valid(2)
        assert not partition.is_valid(4)


class TestEncryptionConfig:
    """Key validation."""

    def test_valid_key_is_accepted(self):
        key = generate_key()
        assert EncryptionConfig(enabled=True, key=key).key == key

    def test_non_hex_key_is_rejected(self):
        with pytest.raises(ValueError):
            EncryptionConfig(key="not-hex-at-all")

    def test_short_key_is_rejected(self):
        with pytest.raises(ValueError):
            EncryptionConfig(key="ab" * 16)


class TestConfigManager:
    """Loading, environment overrides and saving."""

    def test_load_returns_defaults_when_file_missing(self, tmp_path):
        manager = ConfigManager(tmp_path / "missing" / "config.json")
        config = manager.load()
        assert config.storage_root == Path("./storage")

    def test_load_reads_json_file(self, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text(
            json.dumps({"storage_root": str(tmp_path / "data"), "bulk": {"max_workers": 3}})
        )
        config = ConfigManager(config_path).load()
        assert config.storage_root == tmp_path / "data"
        assert config.bulk.max_workers == 3

    def test_invalid_json_raises_value_error(self, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text("{not json")
        with pytest.raises(ValueError, match="Failed to load config"):
            ConfigManager(config_path).load()

    def test_environment_overrides_root_and_key(self, tmp_path, monkeypatch):
        key = generate_key()
        monkeypatch.setenv("RECORD_STORE_ROOT", str(tmp_path / "env-root"))
        monkeypatch.setenv("RECORD_STORE_ENCRYPTION_KEY", key)
        config = ConfigManager(tmp_path / "config.json").load()
        assert config.storage_root == tmp_path / "env-root"
        assert config.encryption.key == key

    def test_save_never_writes_encryption_key(self, tmp_path):
        config_path = tmp_path / ".record-store" / "config.json"
        manager = ConfigManager(config_path)
        config = StoreConfig(
            storage_root=tmp_path, encryption=EncryptionConfig(enabled=True, key=generate_key())
        )
        manager.save(config)

        saved = json.loads(config_path.read_text())
        assert saved["encryption"]["enabled"] is True
        assert saved["encryption"]["key"] is None

    def test_save_without_config_raises(self, tmp_path):
        with pytest.raises(ValueError, match="No configuration"):
            ConfigManager(tmp_path / "config.json").save()

    def test_update_config_persists_changes(self, tmp_path):
        config_path = tmp_path / "config.json"
        manager = ConfigManager(config_path)
        manager.update_config(max_scope_scan=10)

        reloaded = ConfigManager(config_path).load()
        assert reloaded.max_scope_scan == 10
