"""
Episode Recorder: provenance envelopes for the facts discovered while answering a query.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..models.core import Episode
from ..models.errors import NotFoundError, ValidationError
from ..utils.graph_store import GraphStore
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_utc

logger = get_logger(__name__)

OUTCOMES = ('success', 'partial', 'failure')


class EpisodeRecorder:
    """Append-only episode persistence with first-writer-wins fact back-links."""

    def __init__(self, graph: GraphStore):
        self.graph = graph

    def _require_facts(self, fact_ids: Iterable[str]) -> List[str]:
        ordered = []
        for fact_id in fact_ids or []:
            if fact_id in ordered:
                continue
            if self.graph.get_fact(fact_id) is None:
                raise NotFoundError(f'Fact not found: {fact_id}')
            ordered.append(fact_id)
        return ordered

    def _link(self, episode_id: str, fact_ids: List[str]) -> None:
        for fact_id in fact_ids:
            if not self.graph.claim_fact_episode(fact_id, episode_id):
                logger.debug(f'Fact {fact_id} already belongs to an episode; keeping the first claim')

    def create_episode(self,
                       user_id: str,
                       query: str,
                       timestamp: datetime,
                       context: Optional[Dict[str, Any]] = None,
                       fact_ids: Iterable[str] = (),
                       outcome: Optional[str] = None) -> str:
        """Persist an episode and back-link the given facts.

        Raises:
            ValidationError: missing timestamp or unknown outcome tag
            NotFoundError: one of fact_ids does not exist (nothing is persisted)
        """
        if not isinstance(timestamp, datetime):
            raise ValidationError('episode timestamp must be a datetime')
        if outcome is not None and outcome not in OUTCOMES:
            raise ValidationError(f'Unknown episode outcome: {outcome}')

        facts = self._require_facts(fact_ids)
        episode = Episode(id=str(uuid.uuid4()),
                          user_id=user_id or 'anonymous',
                          query=query or '',
                          timestamp=ensure_utc(timestamp),
                          context=dict(context or {}),
                          fact_ids=tuple(facts),
                          outcome=outcome)
        self.graph.put_episode(episode)
        self._link(episode.id, facts)

        logger.debug(f'Created episode {episode.id} with {len(facts)} facts')
        return episode.id

    def append_facts(self, episode_id: str, fact_ids: Iterable[str]) -> Episode:
        """Add late-discovered facts to an existing episode."""
        if self.graph.get_episode(episode_id) is None:
            raise NotFoundError(f'Episode not found: {episode_id}')
        facts = self._require_facts(fact_ids)
        episode = self.graph.append_episode_facts(episode_id, facts)
        if episode is None:
            raise NotFoundError(f'Episode not found: {episode_id}')
        self._link(episode_id, facts)
        return episode

    def get_episode(self, episode_id: str) -> Episode:
        episode = self.graph.get_episode(episode_id)
        if episode is None:
            raise NotFoundError(f'Episode not found: {episode_id}')
        return episode
