"""
Inverted term index service.

Per category, ``term -> {document_key -> Posting}`` held in memory and
persisted to ``root/indexes/search/<category>_search.json``. A reverse map
``document_key -> {terms}`` lets a document's old postings be purged in
O(terms of that document) before its new postings are added, so the index
only ever reflects the latest write of each document.

All changes go through ``apply(delta)`` under the service's own RLock,
independent of record locks.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from ..storage.atomic_io import atomic_write_json
from ..storage.errors import SearchIndexError
from .text import similarity

logger = logging.getLogger(__name__)

SEARCH_DIR = "search"
INDEX_SUFFIX = "_search.json"
OPTIMIZE_SCORE_FLOOR = 2.0
CORRUPTION_RATIO = 0.1


@dataclass
class Posting:
    """One document's relevance for one term."""

    fields: List[str] = field(default_factory=list)
    score: float = 0.0
    last_updated: str = ""
    partition: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "fields": list(self.fields),
            "score": self.score,
            "lastUpdated": self.last_updated,
        }
        if self.partition is not None:
            data["partition"] = self.partition
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Posting":
        return cls(
            fields=list(data.get("fields", [])),
            score=float(data.get("score", 0.0)),
            last_updated=data.get("lastUpdated", ""),
            partition=data.get("partition"),
        )


@dataclass
class DocumentDelta:
    """Replace (or, with ``postings`` None, remove) one document's postings."""

    category: str
    document_key: str
    postings: Optional[Dict[str, Posting]] = None


@dataclass
class TermMatch:
    term: str
    similarity: float
    documents: Dict[str, Posting]


class InvertedIndex:
    """Term index over every searchable category of one store."""

    def __init__(
        self,
        index_dir: Path,
        fuzzy_threshold: float = 0.7,
        fuzzy_min_length: int = 4,
    ):
        self.search_dir = Path(index_dir) / SEARCH_DIR
        self.search_dir.mkdir(parents=True, exist_ok=True)
        self.fuzzy_threshold = fuzzy_threshold
        self.fuzzy_min_length = fuzzy_min_length
        self._terms: Dict[str, Dict[str, Dict[str, Posting]]] = {}
        self._documents: Dict[str, Dict[str, Set[str]]] = {}
        self._lock = threading.RLock()

    def index_path(self, category: str) -> Path:
        return self.search_dir / f"{category}{INDEX_SUFFIX}"

    def has_index_file(self, category: str) -> bool:
        return self.index_path(category).is_file()

    # ------------------------------------------------------------------
    # Load / persist
    # ------------------------------------------------------------------

    def _load(self, category: str) -> Dict[str, Dict[str, Posting]]:
        if category in self._terms:
            return self._terms[category]

        terms: Dict[str, Dict[str, Posting]] = {}
        path = self.index_path(category)
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                for term, documents in raw.items():
                    if not isinstance(documents, dict):
                        logger.warning(f"Skipping malformed term '{term}' in {category} index")
                        continue
                    terms[term] = {
                        key: Posting.from_dict(data) for key, data in documents.items()
                    }
            except (OSError, ValueError, TypeError, AttributeError) as e:
                raise SearchIndexError(f"Failed to load search index for {category}: {e}") from e

        self._install(category, terms)
        return terms

    def _install(self, category: str, terms: Dict[str, Dict[str, Posting]]) -> None:
        documents: Dict[str, Set[str]] = {}
        for term, postings in terms.items():
            for document_key in postings:
                documents.setdefault(document_key, set()).add(term)
        self._terms[category] = terms
        self._documents[category] = documents

    def persist(self, category: str) -> None:
        with self._lock:
            terms = self._load(category)
            atomic_write_json(
                self.index_path(category),
                {
                    term: {key: posting.to_dict() for key, posting in postings.items()}
                    for term, postings in terms.items()
                },
            )

    def reset(self) -> None:
        """Drop in-memory state so the next access reloads from disk."""
        with self._lock:
            self._terms.clear()
            self._documents.clear()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _purge(self, category: str, document_key: str) -> bool:
        terms = self._terms[category]
        old_terms = self._documents[category].pop(document_key, set())
        for term in old_terms:
            postings = terms.get(term)
            if postings is None:
                continue
            postings.pop(document_key, None)
            if not postings:
                del terms[term]
        return bool(old_terms)

    def apply(self, delta: DocumentDelta, persist: bool = True) -> None:
        """Purge the document's prior postings, then add the new ones (if any)."""
        with self._lock:
            terms = self._load(delta.category)
            removed = self._purge(delta.category, delta.document_key)
            if delta.postings is None and not removed:
                return
            for term, posting in (delta.postings or {}).items():
                terms.setdefault(term, {})[delta.document_key] = posting
                self._documents[delta.category].setdefault(delta.document_key, set()).add(term)
            if persist:
                self.persist(delta.category)

    def replace(self, category: str, terms: Dict[str, Dict[str, Posting]]) -> None:
        """Swap in a fully rebuilt category index and persist it."""
        with self._lock:
            self._install(category, terms)
            self.persist(category)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(self, category: str, term: str, fuzzy: bool = True) -> List[TermMatch]:
        """Exact postings for *term*, plus near-miss terms when fuzzy matching applies.

        Raises:
            SearchIndexError: If the persisted index cannot be loaded.
        """
        with self._lock:
            terms = self._load(category)
            matches: List[TermMatch] = []
            if term in terms:
                matches.append(TermMatch(term, 1.0, dict(terms[term])))

            if fuzzy and len(term) >= self.fuzzy_min_length:
                for candidate, postings in terms.items():
                    if candidate == term:
                        continue
                    score = similarity(term, candidate)
                    if score > self.fuzzy_threshold:
                        matches.append(TermMatch(candidate, score, dict(postings)))
            return matches

    def document_terms(self, category: str, document_key: str) -> Set[str]:
        with self._lock:
            self._load(category)
            return set(self._documents[category].get(document_key, set()))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def optimize(self, category: str) -> Tuple[int, int]:
        """Drop terms found in a single document with a low total score.

        Returns:
            (terms before, terms after)
        """
        with self._lock:
            terms = self._load(category)
            before = len(terms)
            kept = {
                term: postings
                for term, postings in terms.items()
                if len(postings) > 1
                or sum(p.score for p in postings.values()) > OPTIMIZE_SCORE_FLOOR
            }
            self._install(category, kept)
            self.persist(category)
        logger.info(f"Optimized search index for {category}: {before} -> {len(kept)} terms")
        return before, len(kept)

    def stats(self, category: str) -> Dict[str, Any]:
        with self._lock:
            terms = self._load(category)
            documents = len(self._documents[category])
            term_count = len(terms)

        path = self.index_path(category)
        last_rebuild: Optional[str] = None
        size = 0
        if path.is_file():
            stat = path.stat()
            size = stat.st_size
            last_rebuild = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()

        return {
            "terms": term_count,
            "documents": documents,
            "averageTermsPerDocument": term_count / documents if documents else 0,
            "indexSize": size,
            "lastRebuild": last_rebuild,
        }

    def health(self, category: str, has_records: bool) -> Dict[str, Any]:
        """Classify the persisted index as healthy, needs_rebuild or corrupted."""
        issues: List[str] = []
        status = "healthy"
        path = self.index_path(category)

        if not path.is_file():
            issues.append("Index file missing")
            status = "needs_rebuild"
            raw: Dict[str, Any] = {}
        else:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                if not isinstance(raw, dict):
                    raise ValueError("top-level value is not an object")
            except (OSError, ValueError) as e:
                return {"status": "corrupted", "issues": [f"Error checking index: {e}"]}

        if has_records and not raw:
            issues.append("Index is empty but data exists")
            status = "needs_rebuild"

        corrupted = sum(
            1
            for documents in raw.values()
            if not isinstance(documents, dict)
            or any(not isinstance(p, dict) or "score" not in p for p in documents.values())
        )
        if corrupted:
            issues.append(f"{corrupted} corrupted entries found")
            status = "corrupted" if corrupted > len(raw) * CORRUPTION_RATIO else "needs_rebuild"

        return {"status": status, "issues": issues}
