"""
OpenSearch client wrapper for the k-NN indexes of the pattern memory engine.

One index per memory kind (``{index_name}_{kind}``). Timestamps are indexed as
``epoch_second`` dates. Vector search returns the stored embeddings so callers
compute cosine similarity themselves.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

MAX_RESULT_WINDOW = 10000

_KEYWORD = {'type': 'keyword'}
_TEXT = {'type': 'text'}
_DATE = {'type': 'date', 'format': 'epoch_second'}
_INTEGER = {'type': 'integer'}

INDEX_FIELDS = {
    'interpretation': {
        'id': _KEYWORD,
        'event_id': _KEYWORD,
        'user_id': _KEYWORD,
        'content': _TEXT,
        'created_at': _DATE,
        'event_occurred_at': _DATE,
    },
    'insight': {
        'id': _KEYWORD,
        'user_id': _KEYWORD,
        'statement': _TEXT,
        'explanation': _TEXT,
        'confidence': _KEYWORD,
        'status': _KEYWORD,
        'category': _KEYWORD,
        'first_detected_at': _DATE,
        'last_reinforced_at': _DATE,
    },
    'summary': {
        'id': _KEYWORD,
        'user_id': _KEYWORD,
        'summary_type': _KEYWORD,
        'period_key': _KEYWORD,
        'period_start': _DATE,
        'period_end': _DATE,
        'summary': _TEXT,
    },
    'pattern': {
        'id': _KEYWORD,
        'user_id': _KEYWORD,
        'description': _TEXT,
        'status': _KEYWORD,
        'lineage_id': _KEYWORD,
        'version': _INTEGER,
        'reinforcement_count': _INTEGER,
        'supersedes_id': _KEYWORD,
        'superseded_by_id': _KEYWORD,
        'first_detected_at': _DATE,
        'last_reinforced_at': _DATE,
    },
}


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, kind: str) -> str:
        if kind not in INDEX_FIELDS:
            raise OpenSearchError(f'Unknown index kind: {kind}')
        return f'{self.config.index_name}_{kind}'

    def create_index_if_not_exists(self, kind: str) -> str:
        """
        Create the index of one memory kind if it doesn't exist.

        Args:
            kind: One of interpretation, insight, summary, pattern

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(kind)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            properties = dict(INDEX_FIELDS[kind])
            properties['embedding'] = {
                'type': 'knn_vector',
                'dimension': self.config.dimension,
                'method': {
                    'name': 'hnsw',
                    'space_type': 'cosinesimil',
                    'engine': 'nmslib'
                }
            }
            index_body = {
                'mappings': {
                    'properties': properties
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=index_name, body=index_body)
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                logger.info(f'Waiting 15s for index {index_name} sync-up...')
                time.sleep(15)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def create_all_indexes(self) -> Dict[str, str]:
        return {kind: self.create_index_if_not_exists(kind) for kind in INDEX_FIELDS}

    def index_document(self, kind: str, document: Dict[str, Any]) -> bool:
        """
        Index a document, replacing any earlier document with the same ``id`` field.

        Serverless vector collections assign their own ``_id``, so a replace is
        a delete of the previous hit followed by a fresh insert.

        Args:
            kind: Index kind
            document: Document to index; must carry ``id`` and ``user_id``

        Returns:
            True if indexing was successful
        """
        index_name = self.index_name(kind)

        existing = self.get_document(kind, document['user_id'], document['id'])
        if existing is not None:
            self.delete_document(kind, existing['_id'])

        try:
            response = self.client.index(index=index_name, body=document)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed {kind} document {document["id"]}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing document: {e}')
            raise OpenSearchError(f'Unexpected error indexing document: {e}')

    def _search(self, kind: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        index_name = self.index_name(kind)
        try:
            response = self.client.search(index=index_name, body=body)
            return [{'_id': hit['_id'], 'score': hit.get('_score'), 'document': hit['_source']} for hit in response['hits']['hits']]
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error searching {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error in search: {e}')

    def vector_search(self,
                      kind: str,
                      query_vector: List[float],
                      user_id: str,
                      top_k: int = 20,
                      filters: Optional[List[Dict[str, Any]]] = None,
                      must_not: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        """
        Perform k-NN similarity search restricted to one user.

        Args:
            kind: Index kind
            query_vector: Query vector for similarity search
            user_id: User ID to filter results
            top_k: Number of neighbours to fetch
            filters: Extra filter clauses (term, range, exists)
            must_not: Exclusion clauses

        Returns:
            Hits with ``_id``, engine ``score`` and ``document`` (embedding included)
        """
        body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': query_vector,
                                'k': top_k
                            }
                        }
                    }],
                    'filter': [{
                        'term': {
                            'user_id': user_id
                        }
                    }] + list(filters or []),
                    'must_not': list(must_not or [])
                }
            }
        }

        results = self._search(kind, body)
        logger.debug(f'Vector search on {kind} returned {len(results)} results for user {user_id}')
        return results

    def filter_search(self,
                      kind: str,
                      user_id: str,
                      filters: Optional[List[Dict[str, Any]]] = None,
                      must_not: Optional[List[Dict[str, Any]]] = None,
                      should: Optional[List[Dict[str, Any]]] = None,
                      sort_field: Optional[str] = None,
                      descending: bool = True,
                      size: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Structured (non-vector) search restricted to one user.

        Args:
            kind: Index kind
            user_id: User ID to filter results
            filters: Clauses every hit must satisfy
            must_not: Exclusion clauses
            should: Clauses of which at least one must match, when given
            sort_field: Field to order by
            descending: Sort direction
            size: Maximum number of hits

        Returns:
            Hits with ``_id`` and ``document``
        """
        query = {
            'filter': [{
                'term': {
                    'user_id': user_id
                }
            }] + list(filters or []),
            'must_not': list(must_not or [])
        }
        if should:
            query['should'] = should
            query['minimum_should_match'] = 1

        body = {'size': size if size is not None else MAX_RESULT_WINDOW, 'query': {'bool': query}}
        if sort_field:
            body['sort'] = [{sort_field: {'order': 'desc' if descending else 'asc'}}]

        return self._search(kind, body)

    def get_document(self, kind: str, user_id: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a specific document by user_id and document id.

        Args:
            kind: Index kind
            user_id: User ID to filter results
            doc_id: Value of the document's ``id`` field

        Returns:
            Hit if found, None otherwise
        """
        hits = self.filter_search(kind, user_id, filters=[{'term': {'id': doc_id}}], size=1)
        return hits[0] if hits else None

    def delete_document(self, kind: str, internal_id: str) -> bool:
        """
        Delete a document by its engine-assigned ``_id``.

        Args:
            kind: Index kind
            internal_id: The hit's ``_id``

        Returns:
            True if deletion was successful, False if the document was gone
        """
        index_name = self.index_name(kind)

        try:
            response = self.client.delete(index=index_name, id=internal_id)
            return response.get('result') == 'deleted'

        except OpenSearchException as e:
            # OpenSearchException args: (status_code, error_type, error_info)
            if len(e.args) >= 2 and (e.args[0] == 404 or e.args[1] == 'not_found'):
                logger.warning(f'Document {internal_id} not found for deletion')
                return False
            logger.error(f'Error deleting document {internal_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting document {internal_id}: {e}')
            raise OpenSearchError(f'Unexpected error deleting document: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name('pattern'))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
