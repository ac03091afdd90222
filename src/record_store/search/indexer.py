"""Search Indexer: keeps the inverted and lite indexes in step with the store."""

import logging
import threading
from typing import Any, Dict, List, Optional

from ..config import SearchConfig
from ..storage.keys import RecordKey, record_partition
from ..storage.record_store import RecordListener, RecordStore
from .fields import calculate_field_score, get_searchable_fields
from .inverted_index import DocumentDelta, InvertedIndex, Posting
from .lite_index import LiteEntry, LiteIndex
from .text import extract_terms

logger = logging.getLogger(__name__)


class SearchIndexer(RecordListener):
    """Receives write/delete notifications and maintains the search indexes.

    Postings carry ``lastUpdated`` from the record's own timestamps rather
    than the wall clock, so rebuilding an unchanged store twice yields the
    same index content.
    """

    def __init__(self, store: RecordStore, config: SearchConfig):
        self.store = store
        self.config = config
        self.index = InvertedIndex(
            store.index_dir,
            fuzzy_threshold=config.fuzzy_threshold,
            fuzzy_min_length=config.fuzzy_min_length,
        )
        self.lite: Optional[LiteIndex] = (
            LiteIndex(store.index_dir, config.lite_category) if config.lite_category else None
        )
        self._ensure_lock = threading.Lock()

    def is_indexed(self, category: str) -> bool:
        return category in self.config.categories

    def ensure_index(self, category: str) -> None:
        """Rebuild *category* from disk when its index file is missing but records exist.

        Runs once per missing file; later calls see the file and return at once.
        """
        if not self.is_indexed(category) or self.index.has_index_file(category):
            return
        with self._ensure_lock:
            if self.index.has_index_file(category) or not self.store.list(category):
                return
            logger.info(f"Search index for {category} is missing, rebuilding from records")
            self.rebuild(category)

    def _partition(self, key: RecordKey, record: Dict[str, Any]) -> Optional[int]:
        partition = self.store.config.partition
        if key.category != partition.category:
            return None
        return record_partition(record, key.record_id, partition.record_field)

    def build_postings(
        self, category: str, record_id: str, record: Dict[str, Any], partition: Optional[int] = None
    ) -> Dict[str, Posting]:
        """Term -> Posting for one record, summing field scores per term."""
        last_updated = str(record.get("updatedAt") or record.get("createdAt") or "")
        postings: Dict[str, Posting] = {}
        for field_name, value in get_searchable_fields(category, record, record_id).items():
            if not value:
                continue
            for term in extract_terms(value, self.config.min_term_length):
                posting = postings.get(term)
                if posting is None:
                    posting = Posting(last_updated=last_updated, partition=partition)
                    postings[term] = posting
                if field_name not in posting.fields:
                    posting.fields.append(field_name)
                posting.score += calculate_field_score(field_name, term, value)
        return postings

    # ------------------------------------------------------------------
    # RecordListener
    # ------------------------------------------------------------------

    def record_written(self, key: RecordKey, record: Dict[str, Any]) -> None:
        if not self.is_indexed(key.category):
            return
        self.ensure_index(key.category)
        partition = self._partition(key, record)
        postings = self.build_postings(key.category, key.record_id, record, partition)
        self.index.apply(DocumentDelta(key.category, key.document_key, postings))
        if self.lite is not None and key.category == self.lite.category:
            self.lite.upsert(LiteEntry.from_record(key.record_id, record, partition))
        logger.debug(f"Indexed {key} ({len(postings)} terms)")

    def record_deleted(self, key: RecordKey) -> None:
        if not self.is_indexed(key.category):
            return
        self.ensure_index(key.category)
        self.index.apply(DocumentDelta(key.category, key.document_key))
        if self.lite is not None and key.category == self.lite.category:
            self.lite.remove(key.record_id)
        logger.debug(f"Removed {key} from search index")

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def rebuild(self, category: str) -> int:
        """Recompute the category's indexes from the records on disk.

        Returns:
            Number of documents indexed
        """
        terms: Dict[str, Dict[str, Posting]] = {}
        lite_entries: List[LiteEntry] = []
        documents = 0
        for key, record in self.store.iter_records(category):
            partition = self._partition(key, record)
            for term, posting in self.build_postings(
                category, key.record_id, record, partition
            ).items():
                terms.setdefault(term, {})[key.document_key] = posting
            if self.lite is not None and category == self.lite.category:
                lite_entries.append(LiteEntry.from_record(key.record_id, record, partition))
            documents += 1

        self.index.replace(category, terms)
        if self.lite is not None and category == self.lite.category:
            self.lite.replace(lite_entries)
        logger.info(f"Rebuilt search index for {category}: {documents} documents, {len(terms)} terms")
        return documents

    def rebuild_all(self, categories: Optional[List[str]] = None) -> Dict[str, int]:
        targets = categories if categories is not None else self.config.categories
        return {category: self.rebuild(category) for category in targets if self.is_indexed(category)}

    def reset(self) -> None:
        self.index.reset()
        if self.lite is not None:
            self.lite.reset()
