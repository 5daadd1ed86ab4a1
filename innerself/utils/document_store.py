"""
Document store interface shared by the OpenSearch and in-memory backends.

Records are JSON documents keyed by id inside named indexes. Two writes are
conditional so that concurrent pipelines cannot both win:

- ``create`` fails with DocumentConflictError if the id already exists.
- ``replace`` fails with DocumentConflictError if the document changed
  since the version that was read.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .logging_config import get_logger

logger = get_logger(__name__)

RAW_ENTRIES = 'raw_entries'
EXTRACTED_ENTITIES = 'extracted_entities'
PEOPLE_MAP = 'people_map'
LIFE_EVENTS = 'life_events_timeline'
BELIEF_SYSTEM = 'belief_system'
EMBEDDINGS = 'embeddings'
INSIGHTS = 'insights'
HEALTH_METRICS = 'health_metrics'
DREAMS = 'dreams'
COURAGE_LOG = 'courage_log'
PERSONA_SUMMARY = 'user_persona_summary'
PROCESSING_LOCKS = 'processing_locks'

# Fields that are filtered or sorted on, per index. Everything else is
# stored without being indexed for search.
INDEX_FIELDS: Dict[str, Dict[str, str]] = {
    RAW_ENTRIES: {
        'id': 'keyword',
        'text_hash': 'keyword',
        'source': 'keyword',
        'created_at': 'date',
        'deleted_at': 'date',
    },
    EXTRACTED_ENTITIES: {
        'id': 'keyword',
        'entry_id': 'keyword',
        'category': 'keyword',
        'created_at': 'date',
    },
    PEOPLE_MAP: {
        'id': 'keyword',
        'name_key': 'keyword',
        'last_mentioned': 'date',
    },
    LIFE_EVENTS: {
        'id': 'keyword',
        'title_key': 'keyword',
        'event_date': 'date',
        'created_at': 'date',
    },
    BELIEF_SYSTEM: {
        'id': 'keyword',
        'text_key': 'keyword',
        'status': 'keyword',
        'last_reinforced': 'date',
    },
    EMBEDDINGS: {
        'entry_id': 'keyword',
    },
    INSIGHTS: {
        'id': 'keyword',
        'text_key': 'keyword',
        'source_entry_id': 'keyword',
        'created_at': 'date',
    },
    HEALTH_METRICS: {
        'id': 'keyword',
        'metric_key': 'keyword',
        'measured_at': 'date',
    },
    DREAMS: {
        'id': 'keyword',
        'entry_id': 'keyword',
        'dream_date': 'date',
    },
    COURAGE_LOG: {
        'id': 'keyword',
        'entry_id': 'keyword',
        'created_at': 'date',
    },
    PERSONA_SUMMARY: {
        'id': 'keyword',
        'updated_at': 'date',
    },
    PROCESSING_LOCKS: {
        'id': 'keyword',
        'owner': 'keyword',
        'acquired_at': 'date',
    },
}

VECTOR_INDEXES = (EMBEDDINGS, )


class DocumentStoreError(Exception):
    """Base exception for document store failures."""
    pass


class DocumentConflictError(DocumentStoreError):
    """A conditional write lost against a concurrent writer."""
    pass


@dataclass
class VersionedDocument:
    """A document plus the version token needed for a conditional replace."""
    id: str
    document: Dict[str, Any]
    version: Any


class DocumentStore(ABC):
    """Storage backend for all pipeline indexes."""

    @abstractmethod
    def create_indexes(self) -> None:
        """Create every index the pipeline writes to, if missing."""

    @abstractmethod
    def get(self, index: str, doc_id: str) -> Optional[VersionedDocument]:
        """Fetch one document, or None when it does not exist."""

    @abstractmethod
    def create(self, index: str, doc_id: str, document: Dict[str, Any]) -> None:
        """Insert a document. Raises DocumentConflictError if the id exists."""

    @abstractmethod
    def replace(self, index: str, doc_id: str, document: Dict[str, Any], version: Any) -> None:
        """Overwrite a document only if it is still at ``version``."""

    @abstractmethod
    def put(self, index: str, doc_id: str, document: Dict[str, Any]) -> None:
        """Unconditionally write a document."""

    @abstractmethod
    def delete(self, index: str, doc_id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""

    @abstractmethod
    def find(self,
             index: str,
             filters: Optional[Dict[str, Any]] = None,
             missing: Sequence[str] = (),
             sort_by: Optional[str] = None,
             descending: bool = True,
             limit: int = 10) -> List[Dict[str, Any]]:
        """Return documents whose fields equal ``filters`` and lack ``missing``."""

    @abstractmethod
    def knn_search(self, index: str, vector: List[float], top_k: int = 10) -> List[Dict[str, Any]]:
        """Nearest-neighbour search, results as {'id', 'score', 'document'}."""

    def health_check(self) -> bool:
        return True


def upsert_document(store: DocumentStore,
                    index: str,
                    doc_id: str,
                    create: Callable[[], Dict[str, Any]],
                    update: Callable[[Dict[str, Any]], Dict[str, Any]],
                    max_attempts: int = 5) -> str:
    """Atomically insert or update one document.

    ``create`` builds the document when the id is free; ``update`` maps the
    current document to its replacement. A lost race on either write re-reads
    and tries again, so concurrent callers converge on one document that
    reflects every update.

    Returns:
        'created' or 'updated'

    Raises:
        DocumentConflictError: If every attempt lost a race
    """
    for attempt in range(max_attempts):
        current = store.get(index, doc_id)
        try:
            if current is None:
                store.create(index, doc_id, create())
                return 'created'
            store.replace(index, doc_id, update(current.document), current.version)
            return 'updated'
        except DocumentConflictError:
            logger.debug(f'Upsert conflict on {index}/{doc_id}, attempt {attempt + 1}/{max_attempts}')

    raise DocumentConflictError(f'Gave up upserting {index}/{doc_id} after {max_attempts} attempts')
