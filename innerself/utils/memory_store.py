"""
In-process document store for local runs and tests.

Implements the same conditional-write contract as the OpenSearch backend,
with a lock standing in for the cluster's per-document versioning.
"""

import copy
import math
import threading
from typing import Any, Dict, List, Optional, Sequence

from .document_store import INDEX_FIELDS, DocumentConflictError, DocumentStore, VersionedDocument
from .logging_config import get_logger

logger = get_logger(__name__)


def _cosine(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed store. Documents are deep-copied in and out."""

    def __init__(self):
        self._lock = threading.Lock()
        self._indexes: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[str, Dict[str, int]] = {}
        self.create_indexes()
        logger.info('Initialized in-memory document store')

    def _index(self, index: str) -> Dict[str, Dict[str, Any]]:
        if index not in self._indexes:
            raise KeyError(f'Unknown index: {index}')
        return self._indexes[index]

    def create_indexes(self) -> None:
        with self._lock:
            for index in INDEX_FIELDS:
                self._indexes.setdefault(index, {})
                self._versions.setdefault(index, {})

    def count(self, index: str) -> int:
        with self._lock:
            return len(self._index(index))

    def all(self, index: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._index(index).values()]

    def get(self, index: str, doc_id: str) -> Optional[VersionedDocument]:
        with self._lock:
            doc = self._index(index).get(doc_id)
            if doc is None:
                return None
            return VersionedDocument(id=doc_id, document=copy.deepcopy(doc), version=self._versions[index][doc_id])

    def create(self, index: str, doc_id: str, document: Dict[str, Any]) -> None:
        with self._lock:
            docs = self._index(index)
            if doc_id in docs:
                raise DocumentConflictError(f'Document {index}/{doc_id} already exists')
            docs[doc_id] = copy.deepcopy(document)
            self._versions[index][doc_id] = 1

    def replace(self, index: str, doc_id: str, document: Dict[str, Any], version: Any) -> None:
        with self._lock:
            docs = self._index(index)
            if doc_id not in docs or self._versions[index][doc_id] != version:
                raise DocumentConflictError(f'Document {index}/{doc_id} changed concurrently')
            docs[doc_id] = copy.deepcopy(document)
            self._versions[index][doc_id] += 1

    def put(self, index: str, doc_id: str, document: Dict[str, Any]) -> None:
        with self._lock:
            self._index(index)[doc_id] = copy.deepcopy(document)
            self._versions[index][doc_id] = self._versions[index].get(doc_id, 0) + 1

    def delete(self, index: str, doc_id: str) -> bool:
        with self._lock:
            self._versions[index].pop(doc_id, None)
            return self._index(index).pop(doc_id, None) is not None

    def find(self,
             index: str,
             filters: Optional[Dict[str, Any]] = None,
             missing: Sequence[str] = (),
             sort_by: Optional[str] = None,
             descending: bool = True,
             limit: int = 10) -> List[Dict[str, Any]]:
        filters = filters or {}
        with self._lock:
            matches = [
                doc for doc in self._index(index).values()
                if all(doc.get(field) == value for field, value in filters.items())
                and all(doc.get(field) is None for field in missing)
            ]
            if sort_by:
                matches.sort(key=lambda doc: doc.get(sort_by) or '', reverse=descending)
            return [copy.deepcopy(doc) for doc in matches[:limit]]

    def knn_search(self, index: str, vector: List[float], top_k: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            scored = [{
                'id': doc_id,
                'score': _cosine(vector, doc.get('embedding') or []),
                'document': {k: v for k, v in doc.items() if k != 'embedding'}
            } for doc_id, doc in self._index(index).items()]
        scored.sort(key=lambda result: result['score'], reverse=True)
        return copy.deepcopy(scored[:top_k])
