"""Unit tests for the inverted index service."""

import json
import threading

import pytest

from record_store.storage.errors import SearchIndexError
from record_store.search.inverted_index import DocumentDelta, InvertedIndex, Posting


def _postings(*terms, score=3.0, partition=None):
    return {term: Posting(fields=["name"], score=score, partition=partition) for term in terms}


@pytest.fixture
def index(tmp_path):
    return InvertedIndex(tmp_path / "indexes")


class TestApply:
    def test_apply_adds_postings_and_persists(self, index):
        index.apply(DocumentDelta("clients", "c1", _postings("acme", "ltd")))

        assert index.document_terms("clients", "c1") == {"acme", "ltd"}
        on_disk = json.loads(index.index_path("clients").read_text())
        assert on_disk["acme"]["c1"]["fields"] == ["name"]
        assert on_disk["acme"]["c1"]["score"] == 3.0

    def test_reapply_purges_old_terms(self, index):
        """Old-value terms stop matching once a document is re-indexed."""
        index.apply(DocumentDelta("clients", "c1", _postings("acme")))
        index.apply(DocumentDelta("clients", "c1", _postings("globex")))

        assert index.query("clients", "acme", fuzzy=False) == []
        assert [m.term for m in index.query("clients", "globex", fuzzy=False)] == ["globex"]
        assert "acme" not in json.loads(index.index_path("clients").read_text())

    def test_removal_keeps_other_documents(self, index):
        index.apply(DocumentDelta("clients", "c1", _postings("acme")))
        index.apply(DocumentDelta("clients", "c2", _postings("acme")))
        index.apply(DocumentDelta("clients", "c1"))

        matches = index.query("clients", "acme", fuzzy=False)
        assert list(matches[0].documents) == ["c2"]

    def test_removing_unknown_document_is_noop(self, index):
        index.apply(DocumentDelta("clients", "ghost"))
        assert not index.has_index_file("clients")

    def test_concurrent_apply_loses_nothing(self, index, tmp_path):
        def worker(n):
            index.apply(DocumentDelta("tasks", f"t{n}", _postings(f"term{n}", "shared")))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        fresh = InvertedIndex(tmp_path / "indexes")
        assert len(fresh.query("tasks", "shared", fuzzy=False)[0].documents) == 20


class TestQuery:
    def test_fuzzy_match_carries_similarity(self, index):
        index.apply(DocumentDelta("people", "p1", _postings("smith")))
        matches = index.query("people", "smyth")
        assert len(matches) == 1
        assert matches[0].term == "smith"
        assert matches[0].similarity == pytest.approx(0.8)

    def test_short_terms_are_not_fuzzy_matched(self, index):
        index.apply(DocumentDelta("people", "p1", _postings("bob")))
        assert index.query("people", "rob") == []

    def test_dissimilar_terms_do_not_match(self, index):
        index.apply(DocumentDelta("clients", "c1", _postings("acme")))
        assert index.query("clients", "zeta") == []
        assert [m.term for m in index.query("clients", "acne")] == ["acme"]

    def test_fuzzy_disabled(self, index):
        index.apply(DocumentDelta("people", "p1", _postings("smith")))
        assert index.query("people", "smyth", fuzzy=False) == []

    def test_unreadable_index_raises(self, index):
        index.index_path("clients").write_text("{broken")
        with pytest.raises(SearchIndexError):
            index.query("clients", "acme")


class TestMaintenance:
    def test_optimize_drops_rare_low_score_terms(self, index):
        index.apply(DocumentDelta("clients", "c1", {"rare": Posting(["status"], 1.5)}))
        index.apply(DocumentDelta("clients", "c1", {"rare": Posting(["status"], 1.5), "heavy": Posting(["name"], 9.0)}))
        index.apply(DocumentDelta("clients", "c2", {"common": Posting(["status"], 1.0)}))
        index.apply(DocumentDelta("clients", "c3", {"common": Posting(["status"], 1.0)}))

        assert index.optimize("clients") == (3, 2)
        assert index.query("clients", "rare", fuzzy=False) == []
        assert index.query("clients", "heavy", fuzzy=False)
        assert index.query("clients", "common", fuzzy=False)

    def test_stats(self, index):
        index.apply(DocumentDelta("clients", "c1", _postings("acme", "ltd")))
        index.apply(DocumentDelta("clients", "c2", _postings("globex", "ltd")))
        stats = index.stats("clients")
        assert stats["terms"] == 3
        assert stats["documents"] == 2
        assert stats["averageTermsPerDocument"] == 1.5
        assert stats["indexSize"] > 0
        assert stats["lastRebuild"] is not None

    def test_replace_installs_rebuilt_terms(self, index):
        index.apply(DocumentDelta("clients", "c1", _postings("stale")))
        index.replace("clients", {"fresh": {"c1": Posting(["name"], 3.0)}})
        assert index.document_terms("clients", "c1") == {"fresh"}


class TestHealth:
    def test_missing_index_needs_rebuild(self, index):
        assert index.health("clients", has_records=False) == {
            "status": "needs_rebuild",
            "issues": ["Index file missing"],
        }

    def test_empty_index_with_records_needs_rebuild(self, index):
        index.replace("clients", {})
        report = index.health("clients", has_records=True)
        assert report["status"] == "needs_rebuild"
        assert "Index is empty but data exists" in report["issues"]

    def test_healthy_index(self, index):
        index.apply(DocumentDelta("clients", "c1", _postings("acme")))
        assert index.health("clients", has_records=True) == {"status": "healthy", "issues": []}

    def test_malformed_entries_are_corrupted(self, index):
        index.index_path("clients").write_text(json.dumps({"acme": "oops", "ltd": {}}))
        report = index.health("clients", has_records=True)
        assert report["status"] == "corrupted"
        assert "1 corrupted entries found" in report["issues"]

    def test_unparseable_file_is_corrupted(self, index):
        index.index_path("clients").write_text("{broken")
        assert index.health("clients", has_records=True)["status"] == "corrupted"
