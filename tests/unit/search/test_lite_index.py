"""Unit tests for the flattened lite index."""

import json

from record_store.search.lite_index import LiteEntry, LiteIndex


def _entry(record_id, name, registered=None, partition=None):
    data = {"name": name}
    if registered:
        data["registeredNumber"] = registered
    return LiteEntry.from_record(record_id, data, partition)


class TestLiteEntry:
    def test_search_text_is_flattened_and_lowercased(self):
        entry = LiteEntry.from_record(
            "1A001",
            {
                "name": "Acme Ltd",
                "registeredNumber": "12345678",
                "mainEmail": "Hello@Acme.test",
                "address": {"line1": "1 High Street", "city": "Leeds"},
                "status": "active",
            },
            1,
        )
        assert entry.identifier == "12345678"
        assert entry.partition == 1
        assert entry.searchText == (
            "acme ltd 12345678 12345678 hello@acme.test 1 high street leeds active"
        )

    def test_identifier_falls_back_to_record_id(self):
        assert LiteEntry.from_record("2B002", {"companyName": "Globex"}).identifier == "2B002"


class TestLiteIndex:
    def test_match_scores_name_then_identifier_then_substring(self, tmp_path):
        lite = LiteIndex(tmp_path, "clients")
        lite.upsert(_entry("1A001", "Acme Ltd"))
        lite.upsert(_entry("2B002", "Zeta Holdings", registered="ACM99"))
        lite.upsert(_entry("3C003", "Beta Acme"))
        lite.upsert(_entry("4D004", "Unrelated"))

        scores = {entry.id: score for entry, score in lite.match("acm")}
        assert scores == {"1A001": 2.0, "2B002": 1.5, "3C003": 1.0}

    def test_partition_filter(self, tmp_path):
        lite = LiteIndex(tmp_path, "clients")
        lite.upsert(_entry("1A001", "Acme North", partition=1))
        lite.upsert(_entry("2A001", "Acme South", partition=2))
        assert [entry.id for entry, _ in lite.match("acme", partition=2)] == ["2A001"]

    def test_persisted_sorted_and_reloaded(self, tmp_path):
        lite = LiteIndex(tmp_path, "clients")
        lite.upsert(_entry("2B002", "Globex"))
        lite.upsert(_entry("1A001", "Acme"))

        on_disk = json.loads((tmp_path / "clients-lite.json").read_text())
        assert [item["id"] for item in on_disk] == ["1A001", "2B002"]

        reloaded = LiteIndex(tmp_path, "clients")
        assert len(reloaded) == 2

    def test_upsert_replaces_entry(self, tmp_path):
        lite = LiteIndex(tmp_path, "clients")
        lite.upsert(_entry("1A001", "Acme"))
        lite.upsert(_entry("1A001", "Globex"))
        assert len(lite) == 1
        assert lite.match("acme") == []

    def test_remove(self, tmp_path):
        lite = LiteIndex(tmp_path, "clients")
        lite.upsert(_entry("1A001", "Acme"))
        lite.remove("1A001")
        lite.remove("missing")
        assert len(LiteIndex(tmp_path, "clients")) == 0

    def test_unreadable_file_starts_empty(self, tmp_path):
        (tmp_path / "clients-lite.json").write_text("not json")
        assert len(LiteIndex(tmp_path, "clients")) == 0
