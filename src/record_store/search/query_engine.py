"""
Query Engine: ranked search over the inverted index with a linear-scan fallback.

Three paths, chosen per query:

1. Lite path: a non-empty query restricted to the lite category, while
   the lite index has entries, is answered by substring matching on the
   precomputed search strings.
2. Index path: query terms are looked up exactly and, for long enough
   terms, fuzzily (similarity > threshold, score discounted by similarity).
   Scores and matched fields are aggregated per document. A category whose
   index file has gone missing is rebuilt from its records before lookup;
   requested categories that are not indexed at all are scanned.
3. Fallback: if either index path raises, records are scanned directly
   with substring containment. Ranking degrades; results stay correct.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import SearchConfig
from ..storage.errors import StorageError
from ..storage.keys import parse_document_key, record_partition
from ..storage.record_store import RecordStore
from .indexer import SearchIndexer
from .lite_index import LiteIndex
from .text import extract_terms

logger = logging.getLogger(__name__)

SORT_FIELDS = ("score", "date", "name")
SORT_ORDERS = ("asc", "desc")
FALLBACK_SCORE = 1.0


@dataclass
class SearchOptions:
    categories: Optional[List[str]] = None
    partition: Optional[int] = None
    limit: Optional[int] = None
    offset: int = 0
    sort_by: str = "score"
    sort_order: str = "desc"
    fuzzy: bool = True
    exact_match: bool = False

    def __post_init__(self) -> None:
        if self.sort_by not in SORT_FIELDS:
            raise ValueError(f"sort_by must be one of {SORT_FIELDS}, got {self.sort_by!r}")
        if self.sort_order not in SORT_ORDERS:
            raise ValueError(f"sort_order must be one of {SORT_ORDERS}, got {self.sort_order!r}")
        if self.offset < 0:
            raise ValueError("offset must be >= 0")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be >= 0")


@dataclass
class SearchResult:
    id: str
    category: str
    data: Optional[Dict[str, Any]] = None
    score: float = 0.0
    matched_fields: List[str] = field(default_factory=list)
    partition: Optional[int] = None
    scope: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "partition": self.partition,
            "scope": self.scope,
            "data": self.data,
            "score": self.score,
            "matchedFields": list(self.matched_fields),
        }


@dataclass
class PaginatedResults:
    results: List[SearchResult]
    total: int
    offset: int
    limit: int
    has_more: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [result.to_dict() for result in self.results],
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
            "hasMore": self.has_more,
        }


def _timestamp(value: Any) -> float:
    if not value or not isinstance(value, str):
        return 0.0
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _record_date(data: Optional[Dict[str, Any]]) -> float:
    data = data or {}
    return _timestamp(data.get("updatedAt") or data.get("createdAt"))


def _record_name(data: Optional[Dict[str, Any]]) -> str:
    data = data or {}
    return str(data.get("name") or data.get("title") or "").casefold()


def _contains(value: Any, needle: str) -> bool:
    if isinstance(value, str):
        return needle in value.lower()
    if isinstance(value, dict):
        return any(_contains(v, needle) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains(v, needle) for v in value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return needle in str(value)
    return False


class QueryEngine:
    """Runs searches for one store."""

    def __init__(self, store: RecordStore, indexer: SearchIndexer, config: SearchConfig):
        self.store = store
        self.indexer = indexer
        self.config = config

    def search(self, query: str, options: Optional[SearchOptions] = None) -> PaginatedResults:
        options = options or SearchOptions()
        categories = list(options.categories or self.config.default_categories)
        limit = self.config.default_limit if options.limit is None else options.limit

        if not self.config.enabled:
            results = self._search_scan(query, categories, options)
        else:
            try:
                lite = self._lite_for(query, categories)
                if lite is not None:
                    results = self._search_lite(lite, query, options)
                else:
                    results = self._search_index(query, categories, options)
            except Exception as e:
                logger.warning(f"Search index unavailable, falling back to linear scan: {e}")
                results = self._search_scan(query, categories, options)

        self._sort(results, options)
        total = len(results)
        page = results[options.offset : options.offset + limit]
        return PaginatedResults(
            results=page,
            total=total,
            offset=options.offset,
            limit=limit,
            has_more=options.offset + limit < total,
        )

    # ------------------------------------------------------------------
    # Lite path
    # ------------------------------------------------------------------

    def _lite_for(self, query: str, categories: List[str]) -> Optional[LiteIndex]:
        """The lite index when it can answer this query on its own, else None."""
        lite = self.indexer.lite
        if lite is None or categories != [lite.category] or not query.strip():
            return None
        self.indexer.ensure_index(lite.category)
        if len(lite) == 0:
            return None
        return lite

    def _search_lite(
        self, lite: LiteIndex, query: str, options: SearchOptions
    ) -> List[SearchResult]:
        results: List[SearchResult] = []
        for entry, score in lite.match(query.strip().lower(), options.partition):
            data = self._load(lite.category, entry.id, None)
            if data is None:
                continue
            results.append(
                SearchResult(
                    id=entry.id,
                    category=lite.category,
                    data=data,
                    score=score,
                    partition=entry.partition,
                )
            )
        return results

    # ------------------------------------------------------------------
    # Index path
    # ------------------------------------------------------------------

    def _query_terms(self, query: str, options: SearchOptions) -> List[str]:
        if options.exact_match:
            term = query.strip().lower()
            return [term] if term else []
        return list(dict.fromkeys(extract_terms(query, self.config.min_term_length)))

    def _search_index(
        self, query: str, categories: List[str], options: SearchOptions
    ) -> List[SearchResult]:
        terms = self._query_terms(query, options)
        fuzzy = options.fuzzy and not options.exact_match
        hits: Dict[Tuple[str, str], SearchResult] = {}

        indexed = [category for category in categories if self.indexer.is_indexed(category)]
        unindexed = [category for category in categories if category not in indexed]
        for category in indexed:
            self.indexer.ensure_index(category)
            for term in terms:
                for match in self.indexer.index.query(category, term, fuzzy):
                    for document_key, posting in match.documents.items():
                        if options.partition is not None and posting.partition != options.partition:
                            continue
                        result = hits.get((category, document_key))
                        if result is None:
                            parsed = parse_document_key(document_key)
                            result = SearchResult(
                                id=parsed.record_id,
                                category=category,
                                partition=posting.partition,
                                scope=parsed.scope,
                            )
                            hits[(category, document_key)] = result
                        result.score += posting.score * match.similarity
                        for field_name in posting.fields:
                            if field_name not in result.matched_fields:
                                result.matched_fields.append(field_name)

        results: List[SearchResult] = []
        for result in hits.values():
            result.data = self._load(result.category, result.id, result.scope)
            if result.data is not None:
                results.append(result)
        if unindexed:
            results.extend(self._search_scan(query, unindexed, options))
        return results

    def _load(self, category: str, record_id: str, scope: Optional[str]) -> Optional[Dict[str, Any]]:
        try:
            return self.store.read(category, record_id, scope)
        except (StorageError, ValueError) as e:
            logger.warning(f"Failed to load data for search result {category}/{record_id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    def _search_scan(
        self, query: str, categories: List[str], options: SearchOptions
    ) -> List[SearchResult]:
        needle = query.strip().lower()
        if not needle:
            return []
        partition_config = self.store.config.partition
        results: List[SearchResult] = []
        for category in categories:
            try:
                records = list(self.store.iter_records(category))
            except (OSError, ValueError) as e:
                logger.warning(f"Linear scan of {category} failed: {e}")
                continue
            for key, record in records:
                partition = None
                if category == partition_config.category:
                    partition = record_partition(
                        record, key.record_id, partition_config.record_field
                    )
                if options.partition is not None and partition != options.partition:
                    continue
                if not _contains(record, needle):
                    continue
                results.append(
                    SearchResult(
                        id=key.record_id,
                        category=category,
                        data=record,
                        score=FALLBACK_SCORE,
                        partition=partition,
                        scope=key.scope,
                    )
                )
        return results

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    @staticmethod
    def _sort(results: List[SearchResult], options: SearchOptions) -> None:
        keys: Dict[str, Callable[[SearchResult], Any]] = {
            "score": lambda r: r.score,
            "date": lambda r: _record_date(r.data),
            "name": lambda r: _record_name(r.data),
        }
        results.sort(key=keys[options.sort_by], reverse=options.sort_order == "desc")
