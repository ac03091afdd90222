"""Unit tests for the locator strategy chain and scope lookup."""

import pytest

from record_store.config import PartitionConfig
from record_store.storage.keys import RecordKey
from record_store.storage.path_resolver import (
    CanonicalLocator,
    PartitionLocator,
    PathResolver,
    ScopedLegacyLocator,
)

SCOPED = {"client-parties": "clients"}


def _touch(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{}")
    return path


@pytest.fixture
def resolver(tmp_path):
    return PathResolver(tmp_path, SCOPED, PartitionConfig(), tmp_path / "indexes")


class TestLocators:
    """Each strategy is independently testable."""

    def test_canonical_paths(self, tmp_path):
        locator = CanonicalLocator(tmp_path, SCOPED)
        assert locator.path_for(RecordKey("tasks", "t1")) == tmp_path / "tasks" / "t1.json"
        assert (
            locator.path_for(RecordKey("client-parties", "p1", "c1"))
            == tmp_path / "clients" / "c1" / "client-parties" / "p1.json"
        )
        assert locator.path_for(RecordKey("client-parties", "p1")) is None

    def test_scoped_legacy_only_applies_to_scoped_categories(self, tmp_path):
        locator = ScopedLegacyLocator(tmp_path, SCOPED)
        assert locator.candidates(RecordKey("tasks", "t1")) == []
        flat = _touch(tmp_path / "client-parties" / "p1.json")
        assert locator.locate(RecordKey("client-parties", "p1")) == flat

    def test_partition_locator_tries_derived_partition_first(self, tmp_path):
        locator = PartitionLocator(tmp_path, PartitionConfig())
        candidates = locator.candidates(RecordKey("clients", "7A001"))
        assert candidates[0] == tmp_path / "clients" / "portfolio-7" / "7A001.json"
        assert len(candidates) == 10
        assert locator.candidates(RecordKey("tasks", "7A001")) == []

    def test_partition_locator_finds_any_partition(self, tmp_path):
        locator = PartitionLocator(tmp_path, PartitionConfig())
        legacy = _touch(tmp_path / "clients" / "portfolio-2" / "7A001.json")
        assert locator.locate(RecordKey("clients", "7A001")) == legacy


class TestPathResolver:
    def test_canonical_wins_over_legacy(self, resolver, tmp_path):
        _touch(tmp_path / "clients" / "portfolio-1" / "1A001.json")
        canonical = _touch(tmp_path / "clients" / "1A001.json")
        key = RecordKey("clients", "1A001")
        assert resolver.resolve(key) == canonical
        assert len(resolver.all_locations(key)) == 2
        assert resolver.legacy_locations(key) == [
            tmp_path / "clients" / "portfolio-1" / "1A001.json"
        ]

    def test_resolve_absent_key_returns_none(self, resolver):
        assert resolver.resolve(RecordKey("clients", "nope")) is None

    def test_canonical_path_requires_scope_for_scoped_category(self, resolver):
        with pytest.raises(ValueError, match="requires a parent scope"):
            resolver.canonical_path(RecordKey("client-parties", "p1"))

    def test_qualify_finds_scope_by_scan_and_caches_it(self, resolver, tmp_path):
        _touch(tmp_path / "clients" / "c9" / "client-parties" / "p1.json")
        key = resolver.qualify("client-parties", "p1")
        assert key.scope == "c9"
        assert resolver.scopes.get("client-parties", "p1") == "c9"
        assert (tmp_path / "indexes" / "scopes" / "client-parties.json").exists()

    def test_qualify_leaves_unscoped_categories_alone(self, resolver):
        assert resolver.qualify("tasks", "t1") == RecordKey("tasks", "t1")

    def test_qualify_drops_scope_for_unscoped_categories(self, resolver):
        key = resolver.qualify("people", "p1", "x")
        assert key == RecordKey("people", "p1")
        assert key.document_key == "p1"

    def test_qualify_unknown_scoped_record_has_no_scope(self, resolver):
        assert resolver.qualify("client-parties", "ghost").scope is None

    def test_scope_scan_is_bounded(self, tmp_path):
        resolver = PathResolver(
            tmp_path, SCOPED, PartitionConfig(), tmp_path / "indexes", max_scope_scan=0
        )
        _touch(tmp_path / "clients" / "c1" / "client-parties" / "p1.json")
        assert resolver.qualify("client-parties", "p1").scope is None

    def test_list_ids_deduplicates_across_layouts(self, resolver, tmp_path):
        _touch(tmp_path / "clients" / "1A001.json")
        _touch(tmp_path / "clients" / "portfolio-1" / "1A001.json")
        _touch(tmp_path / "clients" / "portfolio-2" / "2A001.json")
        (tmp_path / "clients" / "3A001.json.1.2.tmp").write_text("partial")
        assert resolver.list_ids("clients") == ["1A001", "2A001"]

    def test_list_scoped_ids(self, resolver, tmp_path):
        _touch(tmp_path / "clients" / "c1" / "client-parties" / "p1.json")
        _touch(tmp_path / "clients" / "c2" / "client-parties" / "p2.json")
        _touch(tmp_path / "client-parties" / "p3.json")
        resolver.scopes.set("client-parties", "p3", "c1")

        assert resolver.list_ids("client-parties") == ["p1", "p2", "p3"]
        assert resolver.list_ids("client-parties", "c1") == ["p1", "p3"]
