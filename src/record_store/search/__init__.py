"""Full-text and fuzzy search over stored records."""

from .indexer import SearchIndexer
from .inverted_index import InvertedIndex
from .lite_index import LiteIndex
from .query_engine import PaginatedResults, QueryEngine, SearchOptions, SearchResult

__all__ = [
    "InvertedIndex",
    "LiteIndex",
    "PaginatedResults",
    "QueryEngine",
    "SearchIndexer",
    "SearchOptions",
    "SearchResult",
]
