"""
OpenSearch client wrapper for the similarity search service.
"""

from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConnectionTimeout, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import SimilarityHit
from ..models.errors import UpstreamTimeoutError
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def build_filters(filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Translate {field: value} into term filters; list values become terms filters."""
    clauses = []
    for field_name, value in sorted((filters or {}).items()):
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            clauses.append({'terms': {field_name: sorted(value)}})
        else:
            clauses.append({'term': {field_name: value}})
    return clauses


def hit_from_response(hit: Dict[str, Any]) -> SimilarityHit:
    source = dict(hit.get('_source') or {})
    content = source.pop('content', '')
    source.pop('id', None)
    return SimilarityHit(id=hit['_id'], content=content, similarity_score=float(hit.get('_score') or 0.0), metadata=source)


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config
        self.index_name = config.index_name

        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 timeout=config.timeout,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self) -> str:
        """
        Create the knowledge index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            index_body = {
                'mappings': {
                    'properties': {
                        'id': {
                            'type': 'keyword'
                        },
                        'entity_id': {
                            'type': 'keyword'
                        },
                        'user_id': {
                            'type': 'keyword'
                        },
                        'source': {
                            'type': 'keyword'
                        },
                        'content': {
                            'type': 'text'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                        'created_at': {
                            'type': 'date'
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=self.index_name, body=index_body)
            logger.info(f'Created index {self.index_name}')
            return 'created' if response.get('acknowledged', False) else 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def index_document(self, document: Dict[str, Any]) -> bool:
        """
        Index a knowledge document.

        Args:
            document: Document with id, content, embedding and optional entity_id/user_id/source

        Returns:
            True if indexing was successful, False otherwise
        """
        try:
            response = self.client.index(index=self.index_name, body=document, id=document.get('id'))

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document {document.get("id")} in {self.index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def search(self,
               query_embedding: List[float],
               limit: int = 20,
               threshold: float = 0.0,
               filters: Optional[Dict[str, Any]] = None) -> List[SimilarityHit]:
        """
        k-NN similarity search.

        Args:
            query_embedding: Query vector
            limit: Maximum number of hits
            threshold: Minimum similarity score to keep
            filters: Optional {field: value} term filters

        Returns:
            Hits ranked by similarity score, highest first

        Raises:
            UpstreamTimeoutError: The search exceeded the configured timeout
            OpenSearchError: Any other search failure
        """
        search_body = {
            'size': limit,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': query_embedding,
                                'k': limit
                            }
                        }
                    }],
                    'filter': build_filters(filters)
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except ConnectionTimeout as e:
            logger.warning(f'Similarity search timed out after {self.config.timeout}s')
            raise UpstreamTimeoutError(f'Similarity search timed out: {e}')
        except OpenSearchException as e:
            logger.error(f'Error performing similarity search: {e}')
            raise OpenSearchError(f'Similarity search failed: {e}')

        hits = [hit_from_response(hit) for hit in response['hits']['hits']]
        hits = [hit for hit in hits if hit.similarity_score >= threshold]
        hits.sort(key=lambda hit: hit.similarity_score, reverse=True)

        logger.debug(f'Similarity search returned {len(hits)} hits above {threshold}')
        return hits[:limit]

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch cluster.

        Returns:
            True if cluster is healthy, False otherwise
        """
        try:
            return bool(self.client.indices.exists(index=self.index_name))
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
