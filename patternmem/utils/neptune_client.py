"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.

The graph is the system of record for events and pattern versions:

    (Pattern) -[SUPPORTED_BY]-> (Event)
    (Pattern) -[SUPERSEDES]->   (Pattern)

Timestamps are stored as whole Unix seconds, pattern embeddings as a JSON
encoded list property.
"""

import json
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Order, P

from .config import NeptuneConfig
from .logging_config import get_logger

logger = get_logger(__name__)

EVENT_LABEL = 'Event'
PATTERN_LABEL = 'Pattern'
SUPPORTED_BY = 'SUPPORTED_BY'
SUPERSEDES = 'SUPERSEDES'


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except NeptuneError:
            raise
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def flatten_value_map(data: Dict[Any, Any]) -> Dict[str, Any]:
    """Unwrap the single-element lists of a ``value_map`` result.

    Token keys (T.id, T.label) are dropped; our own ``id`` property is used.
    """
    flat = {}
    for key, value in data.items():
        if not isinstance(key, str):
            continue
        flat[key] = value[0] if isinstance(value, list) and len(value) == 1 else value
    return flat


def encode_embedding(embedding: Optional[Sequence[float]]) -> str:
    return json.dumps(list(embedding)) if embedding else ''


def decode_embedding(value: Optional[str]) -> Optional[List[float]]:
    if not value:
        return None
    return [float(v) for v in json.loads(value)]


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    # Events

    @retry_on_connection_error
    def add_event_vertex(self, event_id: str, user_id: str, content: str, occurred_at: int,
                         category: Optional[str] = None) -> bool:
        """
        Create an event vertex unless it already exists.

        Args:
            event_id: Unique event identifier
            user_id: User ID for isolation
            content: Raw event text
            occurred_at: Unix seconds of the occurrence
            category: Optional event category

        Returns:
            True once the vertex exists
        """
        if self.g.V().has_label(EVENT_LABEL).has('id', event_id).has_next():
            logger.debug(f'Event vertex already exists: {event_id}')
            return True

        t = self.g.addV(EVENT_LABEL).property('id', event_id)\
            .property('user_id', user_id)\
            .property('content', content)\
            .property('occurred_at', occurred_at)
        if category:
            t = t.property('category', category)

        t.next()
        logger.debug(f'Created event vertex: {event_id}')
        return True

    @retry_on_connection_error
    def get_event_vertex(self, event_id: str) -> Optional[Dict[str, Any]]:
        rows = self.g.V().has_label(EVENT_LABEL).has('id', event_id).value_map(True).to_list()
        return flatten_value_map(rows[0]) if rows else None

    @retry_on_connection_error
    def list_event_vertices(self,
                            user_id: str,
                            start: Optional[int] = None,
                            end: Optional[int] = None,
                            category: Optional[str] = None,
                            exclude_ids: Sequence[str] = (),
                            limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        List a user's events, newest first.

        Args:
            user_id: User ID to filter by
            start: Inclusive lower bound in Unix seconds
            end: Exclusive upper bound in Unix seconds
            category: Only events of this category
            exclude_ids: Event ids to leave out
            limit: Maximum number of events

        Returns:
            Flattened vertex property maps
        """
        t = self.g.V().has_label(EVENT_LABEL).has('user_id', user_id)
        if start is not None:
            t = t.has('occurred_at', P.gte(start))
        if end is not None:
            t = t.has('occurred_at', P.lt(end))
        if category is not None:
            t = t.has('category', category)
        if exclude_ids:
            t = t.has('id', P.without(list(exclude_ids)))
        t = t.order().by('occurred_at', Order.desc)
        if limit is not None:
            t = t.limit(limit)
        return [flatten_value_map(row) for row in t.value_map(True).to_list()]

    # Patterns

    @retry_on_connection_error
    def get_pattern_vertex(self, pattern_id: str) -> Optional[Dict[str, Any]]:
        return self.read_pattern(self.g, pattern_id)

    @retry_on_connection_error
    def list_pattern_vertices(self,
                              user_id: Optional[str] = None,
                              status: Optional[str] = None,
                              lineage_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List pattern vertices matching every given filter.

        Args:
            user_id: Owner of the patterns
            status: ACTIVE or SUPERSEDED
            lineage_id: Restrict to one lineage

        Returns:
            Flattened vertex property maps
        """
        t = self.g.V().has_label(PATTERN_LABEL)
        if user_id is not None:
            t = t.has('user_id', user_id)
        if status is not None:
            t = t.has('status', status)
        if lineage_id is not None:
            t = t.has('lineage_id', lineage_id)
        return [flatten_value_map(row) for row in t.value_map(True).to_list()]

    @retry_on_connection_error
    def list_pattern_vertices_in_window(self, user_id: str, start: int, end: int) -> List[Dict[str, Any]]:
        """Patterns first detected or reinforced in ``[start, end)``, or currently ACTIVE."""
        rows = self.g.V().has_label(PATTERN_LABEL).has('user_id', user_id)\
            .or_(__.has('status', 'ACTIVE'),
                 __.has('last_reinforced_at', P.between(start, end)),
                 __.has('first_detected_at', P.between(start, end)))\
            .value_map(True).to_list()
        return [flatten_value_map(row) for row in rows]

    @retry_on_connection_error
    def get_linked_event_ids(self, pattern_id: str) -> List[str]:
        return self.read_linked_event_ids(self.g, pattern_id)

    # Transactional primitives; ``g`` is either the plain source or the one of a transaction

    @staticmethod
    def read_pattern(g, pattern_id: str) -> Optional[Dict[str, Any]]:
        rows = g.V().has_label(PATTERN_LABEL).has('id', pattern_id).value_map(True).to_list()
        return flatten_value_map(rows[0]) if rows else None

    @staticmethod
    def read_active_head(g, lineage_id: str) -> Optional[Dict[str, Any]]:
        rows = g.V().has_label(PATTERN_LABEL).has('lineage_id', lineage_id).has('status', 'ACTIVE')\
            .value_map(True).to_list()
        return flatten_value_map(rows[0]) if rows else None

    @staticmethod
    def read_linked_event_ids(g, pattern_id: str) -> List[str]:
        return g.V().has_label(PATTERN_LABEL).has('id', pattern_id)\
            .out(SUPPORTED_BY).values('id').dedup().to_list()

    @staticmethod
    def write_pattern(g, properties: Dict[str, Any]) -> None:
        """Insert a pattern vertex; ``None`` values are not written."""
        t = g.addV(PATTERN_LABEL)
        for key, value in properties.items():
            if value is not None:
                t = t.property(key, value)
        t.next()

    @staticmethod
    def write_superseded(g, pattern_id: str, superseded_by_id: str) -> None:
        updated = g.V().has_label(PATTERN_LABEL).has('id', pattern_id)\
            .property('status', 'SUPERSEDED')\
            .property('superseded_by_id', superseded_by_id)\
            .count().next()
        if updated == 0:
            raise NeptuneError(f'Pattern vertex {pattern_id} not found')

    @staticmethod
    def write_supersedes_edge(g, new_pattern_id: str, old_pattern_id: str) -> None:
        g.V().has_label(PATTERN_LABEL).has('id', new_pattern_id)\
            .addE(SUPERSEDES).to(__.V().has_label(PATTERN_LABEL).has('id', old_pattern_id))\
            .iterate()

    @staticmethod
    def write_supported_by_edges(g, pattern_id: str, event_ids: Iterable[str]) -> int:
        """Link a pattern to events it is not linked to yet; returns the number of new edges."""
        already = set(NeptuneClient.read_linked_event_ids(g, pattern_id))
        added = 0
        for event_id in event_ids:
            if event_id in already:
                continue
            if not g.V().has_label(EVENT_LABEL).has('id', event_id).has_next():
                raise NeptuneError(f'Event vertex {event_id} not found')
            g.V().has_label(PATTERN_LABEL).has('id', pattern_id)\
                .addE(SUPPORTED_BY).to(__.V().has_label(EVENT_LABEL).has('id', event_id))\
                .iterate()
            already.add(event_id)
            added += 1
        return added

    def begin_transaction(self) -> Tuple[Any, Any]:
        """
        Open a Gremlin session transaction.

        Returns:
            Tuple of (transaction, transactional traversal source)

        Raises:
            NeptuneError: If the transaction cannot be opened
        """
        try:
            tx = self.g.tx()
            return tx, tx.begin()
        except Exception as e:
            logger.error(f'Error opening Neptune transaction: {e}')
            raise NeptuneError(f'Failed to open transaction: {e}')

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy
        """
        self.g.V().limit(1).count().next()
        return True
