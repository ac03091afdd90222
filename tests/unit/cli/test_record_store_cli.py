"""Tests for the record-store administration CLI."""

import json

import pytest
from click.testing import CliRunner

from record_store.cli import cli
from record_store.service import RecordStorage


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, store_config, tmp_path):
    """Run the CLI against the test store, never touching the working directory's config."""
    config_path = tmp_path / "missing-config.json"

    def _invoke(*args, **kwargs):
        return runner.invoke(
            cli,
            ["--config", str(config_path), "--root", str(store_config.storage_root), *args],
            **kwargs,
        )

    return _invoke


@pytest.fixture
def seeded(store_config):
    with RecordStorage(store_config) as storage:
        storage.write("clients", "1A001", {"name": "Acme Ltd"})
        storage.write("tasks", "t1", {"title": "VAT return"})
    return store_config.storage_root


def _json_output(output: str):
    return json.loads(output[output.index("{") :])


class TestRecordCommands:
    def test_stats(self, invoke, seeded):
        result = invoke("stats")
        assert result.exit_code == 0, result.output
        assert "clients" in result.output
        assert "Total records: 2" in result.output
        assert "Last snapshot: none" in result.output

    def test_get_prints_record(self, invoke, seeded):
        result = invoke("get", "clients", "1A001")
        assert result.exit_code == 0, result.output
        assert _json_output(result.output)["name"] == "Acme Ltd"

    def test_get_missing_record_fails(self, invoke, seeded):
        result = invoke("get", "clients", "9Z999")
        assert result.exit_code == 1
        assert "Record not found: clients/9Z999" in result.output

    def test_get_rejects_unsafe_id(self, invoke, seeded):
        result = invoke("get", "clients", "..")
        assert result.exit_code == 1
        assert "Failed to read" in result.output

    def test_invalid_config_file(self, runner, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text("{not json")
        result = runner.invoke(cli, ["--config", str(config_path), "stats"])
        assert result.exit_code == 1
        assert "Failed to load config" in result.output


class TestSearchCommand:
    def test_search_json(self, invoke, seeded):
        result = invoke("search", "acme", "--json")
        assert result.exit_code == 0, result.output
        page = _json_output(result.output)
        assert page["total"] == 1
        assert page["results"][0]["id"] == "1A001"
        assert "name" in page["results"][0]["matchedFields"]
        assert page["hasMore"] is False

    def test_search_table(self, invoke, seeded):
        result = invoke("search", "vat", "--category", "tasks")
        assert result.exit_code == 0, result.output
        assert "t1" in result.output

    def test_search_without_results(self, invoke, seeded):
        result = invoke("search", "nothingmatches")
        assert result.exit_code == 0
        assert "No results found" in result.output

    def test_search_rejects_bad_sort(self, invoke, seeded):
        result = invoke("search", "acme", "--sort-by", "relevance")
        assert result.exit_code == 2


class TestIndexCommands:
    def test_reindex_category(self, invoke, seeded):
        result = invoke("reindex", "--category", "clients")
        assert result.exit_code == 0, result.output
        assert "clients: metadata=1, search=1" in result.output

    def test_health_fails_until_rebuilt(self, invoke, seeded):
        assert invoke("health").exit_code == 1
        assert invoke("reindex").exit_code == 0
        result = invoke("health")
        assert result.exit_code == 0, result.output
        assert "healthy" in result.output


class TestSnapshotCommands:
    def test_create_list_restore_prune(self, invoke, seeded, store_config):
        created = invoke("snapshot", "create")
        assert created.exit_code == 0, created.output
        snapshot_id = created.output.strip().split(": ")[-1]

        listed = invoke("snapshot", "list")
        assert snapshot_id in listed.output

        with RecordStorage(store_config) as storage:
            storage.write("clients", "1A001", {"name": "Changed"})

        restored = invoke("snapshot", "restore", snapshot_id, "--yes")
        assert restored.exit_code == 0, restored.output
        assert f"Restored from {snapshot_id}" in restored.output

        with RecordStorage(store_config) as storage:
            assert storage.read("clients", "1A001")["name"] == "Acme Ltd"

        pruned = invoke("snapshot", "prune", "--keep", "0")
        assert "Removed 2 snapshots" in pruned.output

    def test_restore_asks_for_confirmation(self, invoke, seeded):
        snapshot_id = invoke("snapshot", "create").output.strip().split(": ")[-1]
        result = invoke("snapshot", "restore", snapshot_id, input="n\n")
        assert result.exit_code == 1
        assert "Aborted" in result.output

    def test_restore_unknown_snapshot(self, invoke, seeded):
        result = invoke("snapshot", "restore", "snapshot_missing", "--yes")
        assert result.exit_code == 1
        assert "Snapshot not found" in result.output

    def test_list_without_snapshots(self, invoke, seeded):
        assert "No snapshots" in invoke("snapshot", "list").output


class TestBackupCommands:
    def test_prune(self, invoke, seeded):
        result = invoke("backups", "prune", "--days", "1")
        assert result.exit_code == 0
        assert "Removed 0 backups" in result.output
