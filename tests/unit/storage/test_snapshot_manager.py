"""Unit tests for whole-store snapshots."""

import json

import pytest

from record_store.storage.errors import SnapshotNotFoundError, StorageError
from record_store.storage.snapshot_manager import (
    MANIFEST_NAME,
    SnapshotManager,
    directory_checksum,
)


@pytest.fixture
def root(tmp_path):
    root = tmp_path / "store"
    (root / "clients").mkdir(parents=True)
    (root / "clients" / "c1.json").write_text('{"name": "Acme"}')
    (root / "indexes").mkdir()
    (root / "indexes" / "clients.json").write_text("{}")
    (root / ".locks").mkdir()
    (root / ".locks" / "clients_c9.lock").write_text("1:1")
    (root / "backups").mkdir()
    return root


@pytest.fixture
def manager(root):
    return SnapshotManager(
        root,
        root / "snapshots",
        excluded=("snapshots", ".locks"),
        preserved=("backups",),
        retention_count=2,
    )


class TestCreateSnapshot:
    def test_snapshot_copies_store_and_writes_manifest(self, manager, root):
        snapshot_id = manager.create_snapshot()
        snapshot = root / "snapshots" / snapshot_id

        assert snapshot_id.startswith("snapshot_")
        assert (snapshot / "clients" / "c1.json").read_text() == '{"name": "Acme"}'
        assert not (snapshot / ".locks").exists()
        assert not (snapshot / "snapshots").exists()

        manifest = json.loads((snapshot / MANIFEST_NAME).read_text())
        assert manifest["version"] == "1.0"
        assert manifest["totalFiles"] == 2
        assert manifest["checksum"] == directory_checksum(snapshot)[0]

    def test_temp_files_are_not_copied(self, manager, root):
        (root / "clients" / "c2.json.1.1.tmp").write_text("partial")
        snapshot = root / "snapshots" / manager.create_snapshot()
        assert list(snapshot.rglob("*.tmp")) == []

    def test_snapshot_ids_are_unique(self, manager):
        first = manager.create_snapshot()
        second = manager.create_snapshot()
        assert first != second
        assert manager.list_snapshots() == sorted([first, second])
        assert manager.latest_snapshot() == max(first, second)

    def test_checksum_is_deterministic(self, tmp_path):
        for name in ("a", "b"):
            (tmp_path / name / "x").mkdir(parents=True)
            (tmp_path / name / "x" / "1.json").write_text("same")
        assert directory_checksum(tmp_path / "a") == directory_checksum(tmp_path / "b")


class TestRestore:
    def test_restore_brings_back_prior_state(self, manager, root):
        snapshot_id = manager.create_snapshot()
        (root / "clients" / "c1.json").write_text('{"name": "Mutated"}')
        (root / "clients" / "c2.json").write_text('{"name": "Added later"}')

        safety_id = manager.restore_from_snapshot(snapshot_id)

        assert (root / "clients" / "c1.json").read_text() == '{"name": "Acme"}'
        assert not (root / "clients" / "c2.json").exists()
        safety = root / "snapshots" / safety_id
        assert (safety / "clients" / "c2.json").exists()

    def test_restore_preserves_locks_and_backups(self, manager, root):
        snapshot_id = manager.create_snapshot()
        (root / "backups" / "c1_x.json").write_text("{}")
        manager.restore_from_snapshot(snapshot_id)
        assert (root / ".locks" / "clients_c9.lock").exists()
        assert (root / "backups" / "c1_x.json").exists()

    def test_missing_snapshot_fails_before_any_change(self, manager, root):
        with pytest.raises(SnapshotNotFoundError):
            manager.restore_from_snapshot("snapshot_missing")
        assert (root / "clients" / "c1.json").exists()
        assert manager.list_snapshots() == []

    def test_tampered_snapshot_is_refused(self, manager, root):
        snapshot_id = manager.create_snapshot()
        (root / "snapshots" / snapshot_id / "clients" / "c1.json").write_text("tampered")
        (root / "clients" / "c1.json").write_text('{"name": "Live"}')

        with pytest.raises(StorageError, match="checksum"):
            manager.restore_from_snapshot(snapshot_id)
        assert (root / "clients" / "c1.json").read_text() == '{"name": "Live"}'

    def test_restore_callback_runs(self, root):
        calls = []
        manager = SnapshotManager(
            root, root / "snapshots", excluded=("snapshots", ".locks"), on_restore=lambda: calls.append(1)
        )
        manager.restore_from_snapshot(manager.create_snapshot())
        assert calls == [1]


class TestRetention:
    def test_cleanup_keeps_newest(self, manager):
        ids = [manager.create_snapshot() for _ in range(4)]
        assert manager.cleanup_old_snapshots() == 2
        assert manager.list_snapshots() == sorted(ids)[-2:]
        assert manager.cleanup_old_snapshots(keep=0) == 2
        assert manager.list_snapshots() == []
