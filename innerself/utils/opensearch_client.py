"""
OpenSearch-backed document store for pipeline records and embeddings.
"""

from typing import Any, Dict, List, Optional, Sequence

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .document_store import (INDEX_FIELDS, VECTOR_INDEXES, DocumentConflictError, DocumentStore, DocumentStoreError,
                             VersionedDocument)
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(DocumentStoreError):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient(DocumentStore):
    """OpenSearch client with AWS authentication and error handling.

    Writes use refresh='wait_for' so a record is visible to the next
    pipeline run's dedup lookups as soon as the write returns.
    """

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service=config.auth_service, refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=config.use_ssl,
                                 verify_certs=config.use_ssl,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def _index_name(self, index: str) -> str:
        return f'{self.config.index_prefix}_{index}'

    def _index_body(self, index: str) -> Dict[str, Any]:
        properties = {name: {'type': field_type} for name, field_type in INDEX_FIELDS[index].items()}
        body = {'mappings': {'dynamic': False, 'properties': properties}}

        if index in VECTOR_INDEXES:
            properties['embedding'] = {
                'type': 'knn_vector',
                'dimension': self.config.dimension,
                'method': {
                    'name': 'hnsw',
                    'space_type': 'cosinesimil',
                    'engine': 'nmslib'
                }
            }
            body['settings'] = {'index': {'knn': True, 'knn.algo_param.ef_search': 100}}

        return body

    def create_indexes(self) -> None:
        for index in INDEX_FIELDS:
            self.create_index_if_not_exists(index)

    def create_index_if_not_exists(self, index: str) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index: Logical index name, one of the document_store constants

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self._index_name(index)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(index))
            if response.get('acknowledged', False):
                logger.info(f'Created index {index_name}')
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def get(self, index: str, doc_id: str) -> Optional[VersionedDocument]:
        try:
            response = self.client.get(index=self._index_name(index), id=doc_id)
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error reading {index}/{doc_id}: {e}')
            raise OpenSearchError(f'Failed to read document: {e}')

        if not response.get('found', False):
            return None
        return VersionedDocument(id=response['_id'],
                                 document=response['_source'],
                                 version=(response['_seq_no'], response['_primary_term']))

    def create(self, index: str, doc_id: str, document: Dict[str, Any]) -> None:
        try:
            self.client.create(index=self._index_name(index), id=doc_id, body=document, refresh='wait_for')
            logger.debug(f'Created document {index}/{doc_id}')
        except ConflictError:
            raise DocumentConflictError(f'Document {index}/{doc_id} already exists')
        except OpenSearchException as e:
            logger.error(f'Error creating document {index}/{doc_id}: {e}')
            raise OpenSearchError(f'Failed to create document: {e}')

    def replace(self, index: str, doc_id: str, document: Dict[str, Any], version: Any) -> None:
        seq_no, primary_term = version
        try:
            self.client.index(index=self._index_name(index),
                              id=doc_id,
                              body=document,
                              if_seq_no=seq_no,
                              if_primary_term=primary_term,
                              refresh='wait_for')
        except ConflictError:
            raise DocumentConflictError(f'Document {index}/{doc_id} changed concurrently')
        except OpenSearchException as e:
            logger.error(f'Error replacing document {index}/{doc_id}: {e}')
            raise OpenSearchError(f'Failed to replace document: {e}')

    def put(self, index: str, doc_id: str, document: Dict[str, Any]) -> None:
        try:
            response = self.client.index(index=self._index_name(index), id=doc_id, body=document, refresh='wait_for')
            if response.get('result') not in ['created', 'updated']:
                logger.warning(f'Unexpected result indexing document: {response}')
        except OpenSearchException as e:
            logger.error(f'Error indexing document {index}/{doc_id}: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def delete(self, index: str, doc_id: str) -> bool:
        try:
            self.client.delete(index=self._index_name(index), id=doc_id, refresh='wait_for')
            return True
        except NotFoundError:
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {index}/{doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')

    def find(self,
             index: str,
             filters: Optional[Dict[str, Any]] = None,
             missing: Sequence[str] = (),
             sort_by: Optional[str] = None,
             descending: bool = True,
             limit: int = 10) -> List[Dict[str, Any]]:
        query = {
            'bool': {
                'filter': [{
                    'term': {
                        field: value
                    }
                } for field, value in (filters or {}).items()],
                'must_not': [{
                    'exists': {
                        'field': field
                    }
                } for field in missing]
            }
        }
        search_body = {'size': limit, 'query': query, '_source': {'excludes': ['embedding']}}
        if sort_by:
            search_body['sort'] = [{sort_by: {'order': 'desc' if descending else 'asc'}}]

        try:
            response = self.client.search(index=self._index_name(index), body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error searching {index}: {e}')
            raise OpenSearchError(f'Search failed: {e}')

        return [hit['_source'] for hit in response['hits']['hits']]

    def knn_search(self, index: str, vector: List[float], top_k: int = 10) -> List[Dict[str, Any]]:
        search_body = {
            'size': top_k,
            'query': {
                'knn': {
                    'embedding': {
                        'vector': vector,
                        'k': top_k
                    }
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        try:
            response = self.client.search(index=self._index_name(index), body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

        results = [{'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']} for hit in response['hits']['hits']]
        logger.debug(f'Vector search returned {len(results)} results')
        return results

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch cluster.

        Returns:
            True if cluster is healthy, False otherwise
        """
        try:
            health = self.client.cluster.health()
            return health.get('status') in ['green', 'yellow']
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
