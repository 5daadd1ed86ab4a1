"""
Repositories over the document store, one per persisted table.

Each table has exactly one writer class in the services package; those
classes go through the repositories below and never touch the store
directly.
"""

import hashlib
import uuid
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional

from ..models.core import Belief, CourageEntry, Dream, ExtractedEntity, HealthMetric, Insight, LifeEvent, Person, RawEntry
from ..utils.document_store import (BELIEF_SYSTEM, COURAGE_LOG, DREAMS, EMBEDDINGS, EXTRACTED_ENTITIES, HEALTH_METRICS,
                                    INSIGHTS, LIFE_EVENTS, PEOPLE_MAP, PERSONA_SUMMARY, PROCESSING_LOCKS, RAW_ENTRIES,
                                    DocumentConflictError, DocumentStore, upsert_document)
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import from_iso, to_iso, utc_now

logger = get_logger(__name__)

DEDUP_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, 'innerself/dedup')


def normalize_key(text: str) -> str:
    """Case-insensitive dedup key for names, titles and statements."""
    return ' '.join(text.split()).lower()


def dedup_id(kind: str, *parts: str) -> str:
    """Stable document id derived from a record's dedup key."""
    payload = '|'.join([kind] + [normalize_key(part) for part in parts])
    return str(uuid.uuid5(DEDUP_NAMESPACE, payload))


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


class RawEntryRepository:
    """raw_entries: written only by the entry pipeline."""

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _to_document(entry: RawEntry) -> Dict[str, Any]:
        return {
            'id': entry.id,
            'created_at': to_iso(entry.created_at),
            'raw_text': entry.raw_text,
            'source': entry.source,
            'text_hash': entry.text_hash,
            'audio_url': entry.audio_url,
            'audio_duration_sec': entry.audio_duration_sec,
            'input_metadata': entry.input_metadata,
            'deleted_at': to_iso(entry.deleted_at) if entry.deleted_at else None,
        }

    @staticmethod
    def _from_document(doc: Dict[str, Any]) -> RawEntry:
        return RawEntry(id=doc['id'],
                        created_at=from_iso(doc['created_at']),
                        raw_text=doc['raw_text'],
                        source=doc['source'],
                        text_hash=doc['text_hash'],
                        audio_url=doc.get('audio_url'),
                        audio_duration_sec=doc.get('audio_duration_sec'),
                        input_metadata=doc.get('input_metadata') or {},
                        deleted_at=from_iso(doc.get('deleted_at')))

    def get(self, entry_id: str) -> Optional[RawEntry]:
        found = self.store.get(RAW_ENTRIES, entry_id)
        return self._from_document(found.document) if found else None

    def find_live_by_text(self, raw_text: str) -> Optional[RawEntry]:
        """Non-deleted entry with byte-identical text, if any."""
        docs = self.store.find(RAW_ENTRIES,
                               filters={'text_hash': text_hash(raw_text)},
                               missing=['deleted_at'],
                               sort_by='created_at',
                               descending=False,
                               limit=5)
        for doc in docs:
            # Guard against a hash collision
            if doc['raw_text'] == raw_text:
                return self._from_document(doc)
        return None

    def insert(self, entry: RawEntry) -> None:
        self.store.create(RAW_ENTRIES, entry.id, self._to_document(entry))

    def delete(self, entry_id: str) -> bool:
        return self.store.delete(RAW_ENTRIES, entry_id)

    def tombstone(self, entry_id: str, deleted_at) -> bool:
        found = self.store.get(RAW_ENTRIES, entry_id)
        if found is None:
            return False
        doc = dict(found.document, deleted_at=to_iso(deleted_at))
        self.store.replace(RAW_ENTRIES, entry_id, doc, found.version)
        return True


class EntityRepository:
    """extracted_entities, keyed by the raw entry id (1:1)."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def insert(self, entry_id: str, entity: ExtractedEntity, created_at) -> None:
        doc = entity.to_dict()
        doc.update({'id': entry_id, 'entry_id': entry_id, 'created_at': to_iso(created_at)})
        self.store.create(EXTRACTED_ENTITIES, entry_id, doc)

    def get_for_entry(self, entry_id: str) -> Optional[ExtractedEntity]:
        found = self.store.get(EXTRACTED_ENTITIES, entry_id)
        return ExtractedEntity.from_dict(found.document) if found else None

    def delete_for_entry(self, entry_id: str) -> bool:
        return self.store.delete(EXTRACTED_ENTITIES, entry_id)

    def recent(self, count: int) -> List[Dict[str, Any]]:
        return self.store.find(EXTRACTED_ENTITIES, sort_by='created_at', descending=True, limit=count)


class PersonRepository:
    """people_map, one document per case-insensitive name."""

    def __init__(self, store: DocumentStore, max_attempts: int = 5):
        self.store = store
        self.max_attempts = max_attempts

    @staticmethod
    def person_id(name: str) -> str:
        return dedup_id('person', name)

    def get_by_name(self, name: str) -> Optional[Person]:
        found = self.store.get(PEOPLE_MAP, self.person_id(name))
        return Person.from_document(found.document) if found else None

    def upsert(self, name: str, create: Callable[[], Person], update: Callable[[Person], Person]) -> str:
        return upsert_document(self.store,
                               PEOPLE_MAP,
                               self.person_id(name),
                               create=lambda: create().to_document(),
                               update=lambda doc: update(Person.from_document(doc)).to_document(),
                               max_attempts=self.max_attempts)


class LifeEventRepository:
    """life_events_timeline, one document per case-insensitive title."""

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def event_id(title: str) -> str:
        return dedup_id('life_event', title)

    def exists(self, title: str) -> bool:
        return self.store.get(LIFE_EVENTS, self.event_id(title)) is not None

    def insert(self, event: LifeEvent) -> None:
        doc = asdict(event)
        doc['title_key'] = normalize_key(event.title)
        self.store.create(LIFE_EVENTS, event.id, doc)

    def get(self, title: str) -> Optional[LifeEvent]:
        found = self.store.get(LIFE_EVENTS, self.event_id(title))
        if found is None:
            return None
        doc = {k: v for k, v in found.document.items() if k != 'title_key'}
        return LifeEvent(**doc)


class BeliefRepository:
    """belief_system, one document per case-insensitive statement."""

    def __init__(self, store: DocumentStore, max_attempts: int = 5):
        self.store = store
        self.max_attempts = max_attempts

    @staticmethod
    def belief_id(text: str) -> str:
        return dedup_id('belief', text)

    @staticmethod
    def _to_document(belief: Belief) -> Dict[str, Any]:
        doc = asdict(belief)
        doc['text_key'] = normalize_key(belief.belief_text)
        return doc

    @staticmethod
    def _from_document(doc: Dict[str, Any]) -> Belief:
        return Belief(**{k: v for k, v in doc.items() if k != 'text_key'})

    def get(self, text: str) -> Optional[Belief]:
        found = self.store.get(BELIEF_SYSTEM, self.belief_id(text))
        return self._from_document(found.document) if found else None

    def upsert(self, text: str, create: Callable[[], Belief], update: Callable[[Belief], Belief]) -> str:
        return upsert_document(self.store,
                               BELIEF_SYSTEM,
                               self.belief_id(text),
                               create=lambda: self._to_document(create()),
                               update=lambda doc: self._to_document(update(self._from_document(doc))),
                               max_attempts=self.max_attempts)


class SideRecordRepository:
    """insights, health_metrics, dreams and courage_log."""

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def insight_id(text: str) -> str:
        return dedup_id('insight', text)

    @staticmethod
    def health_metric_id(metric_name: str, measured_at: str) -> str:
        return dedup_id('health_metric', metric_name, measured_at)

    def insert_insight(self, insight: Insight) -> None:
        doc = asdict(insight)
        doc['text_key'] = normalize_key(insight.insight_text)
        self.store.create(INSIGHTS, insight.id, doc)

    def insert_health_metric(self, metric: HealthMetric) -> None:
        doc = asdict(metric)
        doc['metric_key'] = normalize_key(metric.metric_name)
        self.store.create(HEALTH_METRICS, metric.id, doc)

    def insert_dream(self, dream: Dream) -> None:
        self.store.create(DREAMS, dream.id, asdict(dream))

    def insert_courage(self, entry: CourageEntry) -> None:
        self.store.create(COURAGE_LOG, entry.id, asdict(entry))


class EmbeddingRepository:
    """embeddings: vectors keyed by raw entry id."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def put(self, entry_id: str, embedding: List[float], content_text: str, metadata: Dict[str, Any]) -> None:
        # Re-processing an entry replaces its vector rather than adding a second one
        self.store.put(EMBEDDINGS, entry_id, {
            'entry_id': entry_id,
            'embedding': embedding,
            'content_text': content_text,
            'metadata': metadata,
        })

    def delete(self, entry_id: str) -> bool:
        return self.store.delete(EMBEDDINGS, entry_id)

    def nearest(self, embedding: List[float], top_k: int) -> List[Dict[str, Any]]:
        return self.store.knn_search(EMBEDDINGS, embedding, top_k)


class PersonaSummaryRepository:
    """user_persona_summary: maintained outside the pipeline, read here."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def current_profile(self) -> str:
        docs = self.store.find(PERSONA_SUMMARY, sort_by='updated_at', descending=True, limit=1)
        if not docs:
            return ''
        return docs[0].get('full_psychological_profile') or ''


class ProcessingLockRepository:
    """processing_locks: one document per entry text while a run is in flight.

    The lock id is the text hash, so every run for the same text contends
    for the same document. A lock older than ``stale_after`` seconds
    belongs to a run that died and may be taken over.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def acquire(self, key: str, owner: str, stale_after: float) -> bool:
        """Try once to take the lock. Returns False if another run holds it."""
        doc = {'id': key, 'owner': owner, 'acquired_at': to_iso()}
        try:
            self.store.create(PROCESSING_LOCKS, key, doc)
            return True
        except DocumentConflictError:
            pass

        current = self.store.get(PROCESSING_LOCKS, key)
        if current is None:
            return False
        age = (utc_now() - from_iso(current.document['acquired_at'])).total_seconds()
        if age < stale_after:
            return False

        try:
            self.store.replace(PROCESSING_LOCKS, key, doc, current.version)
        except DocumentConflictError:
            return False
        logger.warning(f'Took over stale processing lock held by {current.document.get("owner")} for {age:.0f}s')
        return True

    def release(self, key: str, owner: str) -> None:
        current = self.store.get(PROCESSING_LOCKS, key)
        if current is not None and current.document.get('owner') == owner:
            self.store.delete(PROCESSING_LOCKS, key)
