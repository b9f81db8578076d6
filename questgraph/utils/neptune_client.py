"""
Amazon Neptune graph store using the Gremlin Python driver and AWS SigV4 authentication.

Entities, resolution records and episodes are vertices; every fact is a
'Fact' edge from its subject entity to its object entity, carrying the fact
attributes as edge properties. Timestamps are stored as Unix seconds so that
interval comparisons can run server-side.
"""

import json
from dataclasses import replace
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Set

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality

from ..models.core import Entity, EntityResolution, Episode, Fact
from ..models.errors import GraphStoreError
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import from_epoch, to_epoch

logger = get_logger(__name__)

FACT_LABEL = 'Fact'
ENTITY_LABEL = 'Entity'
EPISODE_LABEL = 'Episode'
RESOLUTION_LABEL = 'EntityResolution'

# Bound on conditional-write retries when appending to a contended episode
MAX_APPEND_ATTEMPTS = 16


class NeptuneError(GraphStoreError):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
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


def _first(data: Dict[Any, Any], key: str, default: Any = None) -> Any:
    """Read a property from a value_map result, unwrapping vertex property lists."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


def fact_from_properties(data: Dict[Any, Any]) -> Fact:
    """Build a Fact from the value_map of a Fact edge."""
    valid_to = _first(data, 'valid_to')
    return Fact(id=_first(data, 'fact_id', ''),
                subject=_first(data, 'subject', ''),
                predicate=_first(data, 'predicate', ''),
                object=_first(data, 'object', ''),
                confidence=float(_first(data, 'confidence', 0.0)),
                valid_from=from_epoch(_first(data, 'valid_from', 0)),
                valid_to=from_epoch(valid_to) if valid_to is not None else None,
                source=_first(data, 'source', ''),
                episode_id=_first(data, 'episode_id') or None)


def episode_from_properties(data: Dict[Any, Any]) -> Episode:
    """Build an Episode from the value_map of an Episode vertex."""
    return Episode(id=_first(data, 'episode_id', ''),
                   user_id=_first(data, 'user_id', ''),
                   query=_first(data, 'query', ''),
                   timestamp=from_epoch(_first(data, 'timestamp', 0)),
                   context=json.loads(_first(data, 'context', '{}') or '{}'),
                   fact_ids=tuple(json.loads(_first(data, 'fact_ids', '[]') or '[]')),
                   outcome=_first(data, 'outcome') or None)


def resolution_from_properties(data: Dict[Any, Any]) -> EntityResolution:
    """Build an EntityResolution from the value_map of a resolution vertex."""
    return EntityResolution(canonical_id=_first(data, 'canonical_id', ''),
                            aliases=frozenset(json.loads(_first(data, 'aliases', '[]') or '[]')),
                            merged_from=frozenset(json.loads(_first(data, 'merged_from', '[]') or '[]')),
                            last_updated=from_epoch(_first(data, 'last_updated', 0)))


class NeptuneClient:
    """Graph store backed by Amazon Neptune through the Gremlin Python driver."""

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

    # Entities

    def _entity_vertex(self, entity_id: str):
        return self.g.V().has(ENTITY_LABEL, 'entity_id', entity_id)

    def _entity_from_properties(self, data: Dict[Any, Any]) -> Entity:
        entity_id = _first(data, 'entity_id', '')
        return Entity(id=entity_id,
                      last_updated=from_epoch(_first(data, 'last_updated', 0)),
                      canonical_id=_first(data, 'canonical_id') or None,
                      aliases=frozenset(self.aliases_of(entity_id)))

    @retry_on_connection_error
    def ensure_entity(self, entity_id: str, now: datetime) -> Entity:
        data = self._entity_vertex(entity_id).fold().coalesce(
            __.unfold(),
            __.add_v(ENTITY_LABEL).property('entity_id', entity_id).property('last_updated', to_epoch(now))).value_map().next()
        return self._entity_from_properties(data)

    @retry_on_connection_error
    def get_entity(self, entity_id: str) -> Optional[Entity]:
        rows = self._entity_vertex(entity_id).value_map().to_list()
        return self._entity_from_properties(rows[0]) if rows else None

    @retry_on_connection_error
    def set_canonical(self, entity_id: str, canonical_id: Optional[str], now: datetime) -> bool:
        rows = self._entity_vertex(entity_id).value_map().to_list()
        current = (_first(rows[0], 'canonical_id') or None) if rows else None
        if rows and current == canonical_id:
            return False
        if not rows:
            self.g.add_v(ENTITY_LABEL).property('entity_id', entity_id).property('last_updated', to_epoch(now)).iterate()
        if canonical_id:
            self._entity_vertex(entity_id).property(Cardinality.single, 'canonical_id', canonical_id)\
                .property(Cardinality.single, 'last_updated', to_epoch(now)).iterate()
        else:
            self._entity_vertex(entity_id).properties('canonical_id').drop().iterate()
            self._entity_vertex(entity_id).property(Cardinality.single, 'last_updated', to_epoch(now)).iterate()
        logger.debug(f'Entity {entity_id} canonical -> {canonical_id}')
        return True

    @retry_on_connection_error
    def aliases_of(self, canonical_id: str) -> Set[str]:
        return set(self.g.V().has(ENTITY_LABEL, 'canonical_id', canonical_id).values('entity_id').to_list())

    # Facts

    def _fact_edge(self, fact_id: str):
        return self.g.E().has_label(FACT_LABEL).has('fact_id', fact_id)

    def _add_fact_edge(self, start, fact: Fact):
        """Extend start with a new Fact edge between the fact's subject and object vertices."""
        edge = start.V().has(ENTITY_LABEL, 'entity_id', fact.subject).as_('s')\
            .V().has(ENTITY_LABEL, 'entity_id', fact.object)\
            .add_e(FACT_LABEL).from_('s')\
            .property('fact_id', fact.id)\
            .property('subject', fact.subject)\
            .property('predicate', fact.predicate)\
            .property('object', fact.object)\
            .property('confidence', fact.confidence)\
            .property('valid_from', to_epoch(fact.valid_from))\
            .property('source', fact.source)

        if fact.valid_to is not None:
            edge = edge.property('valid_to', to_epoch(fact.valid_to))

        if fact.episode_id:
            edge = edge.property('episode_id', fact.episode_id)

        return edge

    @retry_on_connection_error
    def put_fact(self, fact: Fact) -> None:
        self._add_fact_edge(self.g, fact).next()
        logger.debug(f'Created fact edge: {fact.id}')

    @retry_on_connection_error
    def get_fact(self, fact_id: str) -> Optional[Fact]:
        rows = self._fact_edge(fact_id).value_map().to_list()
        return fact_from_properties(rows[0]) if rows else None

    @retry_on_connection_error
    def facts_for_entity(self, entity_id: str) -> List[Fact]:
        rows = self._entity_vertex(entity_id).both_e(FACT_LABEL).dedup().value_map().to_list()
        return [fact_from_properties(row) for row in rows]

    @retry_on_connection_error
    def open_facts(self) -> List[Fact]:
        rows = self.g.E().has_label(FACT_LABEL).not_(__.has('valid_to')).value_map().to_list()
        return [fact_from_properties(row) for row in rows]

    @retry_on_connection_error
    def close_fact_if_open(self, fact_id: str, valid_to: datetime) -> bool:
        updated = self._fact_edge(fact_id).not_(__.has('valid_to')).property('valid_to', to_epoch(valid_to)).count().next()
        return int(updated) > 0

    @retry_on_connection_error
    def swap_confidence(self, fact_id: str, expected: float, new: float) -> bool:
        updated = self._fact_edge(fact_id).has('confidence', expected).property('confidence', new).count().next()
        return int(updated) > 0

    @retry_on_connection_error
    def claim_fact_episode(self, fact_id: str, episode_id: str) -> bool:
        updated = self._fact_edge(fact_id).not_(__.has('episode_id')).property('episode_id', episode_id).count().next()
        return int(updated) > 0

    @retry_on_connection_error
    def repoint_facts(self, old_id: str, new_id: str) -> int:
        # Edges cannot change endpoints. The replacement edge is added and the
        # old edge dropped in one traversal, so a failure leaves the old edge.
        moved = 0
        for fact in self.facts_for_entity(old_id):
            repointed = replace(fact,
                                subject=new_id if fact.subject == old_id else fact.subject,
                                object=new_id if fact.object == old_id else fact.object)
            old_edge = self._fact_edge(fact.id).has('subject', fact.subject).has('object', fact.object).as_('old')
            self._add_fact_edge(old_edge, repointed).select('old').drop().iterate()
            moved += 1
        logger.debug(f'Repointed {moved} facts from {old_id} to {new_id}')
        return moved

    # Resolution records

    @retry_on_connection_error
    def put_resolution(self, record: EntityResolution) -> None:
        self.g.V().has(RESOLUTION_LABEL, 'canonical_id', record.canonical_id).fold().coalesce(
            __.unfold(),
            __.add_v(RESOLUTION_LABEL).property('canonical_id', record.canonical_id))\
            .property(Cardinality.single, 'aliases', json.dumps(sorted(record.aliases)))\
            .property(Cardinality.single, 'merged_from', json.dumps(sorted(record.merged_from)))\
            .property(Cardinality.single, 'last_updated', to_epoch(record.last_updated)).iterate()

    @retry_on_connection_error
    def get_resolution(self, canonical_id: str) -> Optional[EntityResolution]:
        rows = self.g.V().has(RESOLUTION_LABEL, 'canonical_id', canonical_id).value_map().to_list()
        return resolution_from_properties(rows[0]) if rows else None

    @retry_on_connection_error
    def delete_resolution(self, canonical_id: str) -> None:
        self.g.V().has(RESOLUTION_LABEL, 'canonical_id', canonical_id).drop().iterate()

    # Episodes

    def _episode_vertex(self, episode_id: str):
        return self.g.V().has(EPISODE_LABEL, 'episode_id', episode_id)

    @retry_on_connection_error
    def put_episode(self, episode: Episode) -> None:
        traversal = self.g.add_v(EPISODE_LABEL)\
            .property('episode_id', episode.id)\
            .property('user_id', episode.user_id)\
            .property('query', episode.query)\
            .property('timestamp', to_epoch(episode.timestamp))\
            .property('context', json.dumps(episode.context, default=str))\
            .property('fact_ids', json.dumps(list(episode.fact_ids)))

        if episode.outcome:
            traversal = traversal.property('outcome', episode.outcome)

        traversal.iterate()
        logger.debug(f'Created episode vertex: {episode.id}')

    @retry_on_connection_error
    def get_episode(self, episode_id: str) -> Optional[Episode]:
        rows = self._episode_vertex(episode_id).value_map().to_list()
        return episode_from_properties(rows[0]) if rows else None

    @retry_on_connection_error
    def append_episode_facts(self, episode_id: str, fact_ids: Iterable[str]) -> Optional[Episode]:
        # Conditional write on the stored blob; a concurrent append forces a re-read
        fact_ids = list(fact_ids)
        for _ in range(MAX_APPEND_ATTEMPTS):
            rows = self._episode_vertex(episode_id).value_map().to_list()
            if not rows:
                return None
            stored = _first(rows[0], 'fact_ids', '[]')
            episode = episode_from_properties(rows[0])
            listed = list(episode.fact_ids)
            for fid in fact_ids:
                if fid not in listed:
                    listed.append(fid)
            if len(listed) == len(episode.fact_ids):
                return episode

            updated = self._episode_vertex(episode_id).has('fact_ids', stored)\
                .property(Cardinality.single, 'fact_ids', json.dumps(listed)).count().next()
            if int(updated) > 0:
                return replace(episode, fact_ids=tuple(listed))
            logger.debug(f'Episode {episode_id} changed during append, retrying')

        raise NeptuneError(f'Episode {episode_id} is under heavy contention; facts not appended')

    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            self.g.V().limit(1).count().next()
            return True
        except Exception as e:
            logger.error(f'Neptune health check failed: {e}')
            return False
