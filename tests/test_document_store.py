from unittest.mock import MagicMock, patch

import pytest
from opensearchpy.exceptions import ConflictError, NotFoundError

from innerself.utils.config import OpenSearchConfig
from innerself.utils.document_store import (EMBEDDINGS, PEOPLE_MAP, RAW_ENTRIES, DocumentConflictError,
                                            upsert_document)
from innerself.utils.memory_store import InMemoryDocumentStore
from innerself.utils.opensearch_client import OpenSearchClient


def test_create_is_insert_only(store):
    store.create(RAW_ENTRIES, "a", {"id": "a"})
    with pytest.raises(DocumentConflictError):
        store.create(RAW_ENTRIES, "a", {"id": "a"})


def test_replace_checks_version(store):
    store.create(PEOPLE_MAP, "p", {"n": 1})
    current = store.get(PEOPLE_MAP, "p")
    store.replace(PEOPLE_MAP, "p", {"n": 2}, current.version)
    with pytest.raises(DocumentConflictError):
        store.replace(PEOPLE_MAP, "p", {"n": 3}, current.version)
    assert store.get(PEOPLE_MAP, "p").document == {"n": 2}


def test_upsert_retries_after_lost_race():
    store = InMemoryDocumentStore()
    store.create(PEOPLE_MAP, "p", {"n": 1})
    real_replace = store.replace
    calls = []

    def racing_replace(index, doc_id, document, version):
        calls.append(version)
        if len(calls) == 1:
            # Someone else wrote in between our read and our write
            store.put(index, doc_id, {"n": 10})
        real_replace(index, doc_id, document, version)

    store.replace = racing_replace
    outcome = upsert_document(store, PEOPLE_MAP, "p", create=lambda: {"n": 0}, update=lambda d: {"n": d["n"] + 1})

    assert outcome == "updated"
    assert len(calls) == 2
    assert store.get(PEOPLE_MAP, "p").document == {"n": 11}


def test_upsert_gives_up_after_max_attempts():
    store = MagicMock()
    store.get.return_value = None
    store.create.side_effect = DocumentConflictError("taken")
    with pytest.raises(DocumentConflictError):
        upsert_document(store, PEOPLE_MAP, "p", create=dict, update=dict, max_attempts=3)
    assert store.create.call_count == 3


def test_memory_find_filters_missing_and_sorts(store):
    store.create(RAW_ENTRIES, "1", {"text_hash": "h", "created_at": "2024-01-02", "deleted_at": None})
    store.create(RAW_ENTRIES, "2", {"text_hash": "h", "created_at": "2024-01-01", "deleted_at": None})
    store.create(RAW_ENTRIES, "3", {"text_hash": "h", "created_at": "2024-01-03", "deleted_at": "2024-02-01"})

    found = store.find(RAW_ENTRIES, filters={"text_hash": "h"}, missing=["deleted_at"], sort_by="created_at",
                       descending=False)
    assert [d["created_at"] for d in found] == ["2024-01-01", "2024-01-02"]


def test_memory_knn_orders_by_cosine(store):
    store.put(EMBEDDINGS, "near", {"entry_id": "near", "embedding": [1.0, 0.0]})
    store.put(EMBEDDINGS, "far", {"entry_id": "far", "embedding": [0.0, 1.0]})
    results = store.knn_search(EMBEDDINGS, [0.9, 0.1], top_k=1)
    assert [r["id"] for r in results] == ["near"]
    assert "embedding" not in results[0]["document"]


@pytest.fixture
def opensearch():
    config = OpenSearchConfig(endpoint="https://search.example.com",
                              port=443,
                              region="us-east-1",
                              index_prefix="test",
                              dimension=8,
                              use_ssl=True,
                              auth_service="es")
    with patch("innerself.utils.opensearch_client.boto3"), \
            patch("innerself.utils.opensearch_client.AWS4Auth"), \
            patch("innerself.utils.opensearch_client.OpenSearch") as client_cls:
        client = OpenSearchClient(config)
        yield client, client_cls.return_value


def test_opensearch_strips_protocol_and_prefixes_indexes(opensearch):
    client, raw = opensearch
    raw.indices.exists.return_value = False
    raw.indices.create.return_value = {"acknowledged": True}

    assert client.create_index_if_not_exists(EMBEDDINGS) == "created"
    kwargs = raw.indices.create.call_args.kwargs
    assert kwargs["index"] == "test_embeddings"
    mapping = kwargs["body"]["mappings"]
    assert mapping["dynamic"] is False
    assert mapping["properties"]["embedding"]["dimension"] == 8
    assert kwargs["body"]["settings"]["index"]["knn"] is True


def test_opensearch_get_returns_version_token(opensearch):
    client, raw = opensearch
    raw.get.return_value = {"found": True, "_id": "p", "_source": {"n": 1}, "_seq_no": 4, "_primary_term": 2}
    doc = client.get(PEOPLE_MAP, "p")
    assert doc.version == (4, 2)

    raw.get.side_effect = NotFoundError(404, "not_found", {})
    assert client.get(PEOPLE_MAP, "missing") is None


def test_opensearch_conditional_writes_map_conflicts(opensearch):
    client, raw = opensearch
    raw.create.side_effect = ConflictError(409, "version_conflict_engine_exception", {})
    with pytest.raises(DocumentConflictError):
        client.create(RAW_ENTRIES, "a", {"id": "a"})

    raw.index.side_effect = ConflictError(409, "version_conflict_engine_exception", {})
    with pytest.raises(DocumentConflictError):
        client.replace(PEOPLE_MAP, "p", {"n": 2}, (4, 2))
    kwargs = raw.index.call_args.kwargs
    assert kwargs["if_seq_no"] == 4
    assert kwargs["if_primary_term"] == 2
    assert kwargs["refresh"] == "wait_for"


def test_opensearch_find_builds_filter_query(opensearch):
    client, raw = opensearch
    raw.search.return_value = {"hits": {"hits": [{"_source": {"id": "1"}}]}}

    assert client.find(RAW_ENTRIES, filters={"text_hash": "h"}, missing=["deleted_at"], sort_by="created_at",
                       descending=False, limit=5) == [{"id": "1"}]
    body = raw.search.call_args.kwargs["body"]
    assert body["size"] == 5
    assert body["query"]["bool"]["filter"] == [{"term": {"text_hash": "h"}}]
    assert body["query"]["bool"]["must_not"] == [{"exists": {"field": "deleted_at"}}]
    assert body["sort"] == [{"created_at": {"order": "asc"}}]


def test_opensearch_health(opensearch):
    client, raw = opensearch
    raw.cluster.health.return_value = {"status": "yellow"}
    assert client.health_check() is True
    raw.cluster.health.return_value = {"status": "red"}
    assert client.health_check() is False
