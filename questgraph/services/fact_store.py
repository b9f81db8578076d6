"""
Fact Store: bitemporal, append-only storage of subject-predicate-object facts.
"""

import math
import uuid
from datetime import datetime, timedelta
from numbers import Real
from typing import Dict, List, Optional

from ..models.core import EntityHistory, Fact, RelatedEntity
from ..models.errors import AlreadyClosedError, GraphStoreError, NotFoundError, ValidationError
from ..utils.config import FactStoreConfig
from ..utils.graph_store import GraphStore
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_utc, utc_now
from .confidence import clamp
from .entity_resolver import EntityResolver

logger = get_logger(__name__)

# Bound on compare-and-set retries when concurrent writers keep winning
MAX_CAS_ATTEMPTS = 16


def _require_text(value, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{name} must be a non-empty string')
    return value.strip()


def _require_confidence(value) -> float:
    if isinstance(value, bool) or not isinstance(value, Real) or math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(f'confidence must be a number in [0, 1], got {value!r}')
    return float(value)


def _require_timestamp(value, name: str) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f'{name} must be a datetime, got {value!r}')
    return ensure_utc(value)


def current_order(facts: List[Fact]) -> List[Fact]:
    """Most confident first, most recent first among equals."""
    return sorted(facts, key=lambda f: (-f.confidence, -f.valid_from.timestamp(), f.id))


class FactStore:
    """Durable bitemporal fact records with alias-aware reads and compare-and-set mutation."""

    def __init__(self, graph: GraphStore, resolver: EntityResolver, config: FactStoreConfig):
        self.graph = graph
        self.resolver = resolver
        self.config = config
        logger.info('Initialized FactStore')

    def store_fact(self,
                   subject: str,
                   predicate: str,
                   object: str,
                   confidence: float,
                   valid_from: datetime,
                   source: str,
                   episode_id: Optional[str] = None) -> str:
        """Store a new fact and return its id.

        Subject and object are redirected to their canonical entities at write
        time. Duplicate assertions are stored as independent facts.

        Raises:
            ValidationError: malformed confidence, timestamp or identifiers
            NotFoundError: episode_id names no existing episode
        """
        subject = _require_text(subject, 'subject')
        predicate = _require_text(predicate, 'predicate')
        object = _require_text(object, 'object')
        source = _require_text(source, 'source')
        confidence = _require_confidence(confidence)
        if valid_from is None:
            raise ValidationError('valid_from is required')
        valid_from = _require_timestamp(valid_from, 'valid_from')

        if episode_id is not None and self.graph.get_episode(episode_id) is None:
            raise NotFoundError(f'Episode not found: {episode_id}')

        with self.resolver.pinned(subject, object) as (subject_id, object_id):
            now = utc_now()
            self.graph.ensure_entity(subject_id, now)
            self.graph.ensure_entity(object_id, now)
            fact = Fact(id=str(uuid.uuid4()),
                        subject=subject_id,
                        predicate=predicate,
                        object=object_id,
                        confidence=confidence,
                        valid_from=valid_from,
                        source=source,
                        episode_id=episode_id)
            self.graph.put_fact(fact)

        if subject_id != subject or object_id != object:
            logger.debug(f'Redirected fact {fact.id} from ({subject}, {object}) to ({subject_id}, {object_id})')
        logger.debug(f'Stored fact {fact.id}: {subject_id} {predicate} {object_id} ({confidence:.2f})')
        return fact.id

    def get_fact(self, fact_id: str) -> Fact:
        fact = self.graph.get_fact(_require_text(fact_id, 'fact id'))
        if fact is None:
            raise NotFoundError(f'Fact not found: {fact_id}')
        return fact

    def get_current_facts(self, entity_id: str, as_of: Optional[datetime] = None) -> List[Fact]:
        """Facts the entity participates in that are valid at as_of (default now)."""
        as_of = utc_now() if as_of is None else _require_timestamp(as_of, 'as_of')
        canonical = self.resolver.resolve(entity_id)
        facts = [fact for fact in self.graph.facts_for_entity(canonical) if fact.is_current(as_of)]
        return current_order(facts)

    def close_fact(self, fact_id: str, valid_to: datetime) -> Fact:
        """Close an open fact at valid_to; the only permitted content transition.

        Re-closing with the identical value is a no-op.

        Raises:
            NotFoundError: no such fact
            ValidationError: valid_to precedes valid_from
            AlreadyClosedError: the fact is already closed at a different time
        """
        valid_to = _require_timestamp(valid_to, 'valid_to')
        fact = self.get_fact(fact_id)
        if valid_to < fact.valid_from:
            raise ValidationError(f'valid_to {valid_to.isoformat()} precedes valid_from {fact.valid_from.isoformat()}')

        if fact.valid_to is None and self.graph.close_fact_if_open(fact.id, valid_to):
            logger.debug(f'Closed fact {fact.id} at {valid_to.isoformat()}')
            return self.get_fact(fact.id)

        # Already closed, possibly by a concurrent writer that won the swap
        closed = self.get_fact(fact.id)
        if closed.valid_to == valid_to:
            return closed
        raise AlreadyClosedError(f'Fact {fact.id} already closed at {closed.valid_to.isoformat()}')

    def supersede_fact(self,
                       fact_id: str,
                       new_object: str,
                       confidence: float,
                       valid_from: datetime,
                       source: str,
                       episode_id: Optional[str] = None) -> str:
        """Close fact_id at valid_from and store its replacement with the same subject and predicate.

        The replacement is validated before the old fact is closed, so a
        rejected replacement leaves the old fact open.
        """
        old = self.get_fact(fact_id)
        new_object = _require_text(new_object, 'object')
        source = _require_text(source, 'source')
        confidence = _require_confidence(confidence)
        valid_from = _require_timestamp(valid_from, 'valid_from')
        if episode_id is not None and self.graph.get_episode(episode_id) is None:
            raise NotFoundError(f'Episode not found: {episode_id}')

        self.close_fact(old.id, valid_from)
        return self.store_fact(old.subject, old.predicate, new_object, confidence, valid_from, source, episode_id)

    def decay_confidence(self, fact_id: str, decay_rate: float) -> float:
        """Multiply the fact's confidence by decay_rate in (0, 1]; returns the new confidence."""
        if isinstance(decay_rate, bool) or not isinstance(decay_rate, Real) or math.isnan(decay_rate) \
                or not 0.0 < decay_rate <= 1.0:
            raise ValidationError(f'decay_rate must be in (0, 1], got {decay_rate!r}')

        for _ in range(MAX_CAS_ATTEMPTS):
            fact = self.get_fact(fact_id)
            decayed = clamp(min(fact.confidence, fact.confidence * decay_rate))
            if decayed == fact.confidence or self.graph.swap_confidence(fact.id, fact.confidence, decayed):
                return decayed
        raise GraphStoreError(f'Confidence of fact {fact_id} is under heavy contention; decay not applied')

    def sweep_stale_facts(self, as_of: Optional[datetime] = None, decay_rate: Optional[float] = None) -> int:
        """Scheduled sweep: decay every open fact older than the freshness threshold."""
        as_of = utc_now() if as_of is None else _require_timestamp(as_of, 'as_of')
        rate = self.config.default_decay_rate if decay_rate is None else decay_rate
        cutoff = as_of - timedelta(days=self.config.freshness_days)

        decayed = 0
        for fact in self.graph.open_facts():
            if fact.valid_from < cutoff:
                self.decay_confidence(fact.id, rate)
                decayed += 1

        logger.info(f'Decay sweep touched {decayed} stale facts')
        return decayed

    def get_entity_history(self, entity_id: str) -> EntityHistory:
        """Every fact the entity ever participated in, open or closed, newest first."""
        canonical = self.resolver.resolve(entity_id)
        timeline = sorted(self.graph.facts_for_entity(canonical), key=lambda f: (f.valid_from, f.id), reverse=True)
        return EntityHistory(entity_id=canonical, timeline=timeline)

    def find_related_entities(self,
                              entity_id: str,
                              min_confidence: float = 0.7,
                              as_of: Optional[datetime] = None,
                              limit: int = 20,
                              include_closed: bool = False) -> List[RelatedEntity]:
        """Entities connected to entity_id through qualifying facts.

        Ordered by number of connecting facts, then average confidence.
        """
        as_of = utc_now() if as_of is None else _require_timestamp(as_of, 'as_of')
        canonical = self.resolver.resolve(entity_id)

        grouped: Dict[str, List[Fact]] = {}
        for fact in self.graph.facts_for_entity(canonical):
            if fact.confidence < min_confidence:
                continue
            if not include_closed and not fact.is_current(as_of):
                continue
            other = fact.counterpart(canonical)
            if other == canonical:
                continue
            grouped.setdefault(other, []).append(fact)

        related = [
            RelatedEntity(entity_id=other,
                          connections=len(facts),
                          avg_confidence=sum(f.confidence for f in facts) / len(facts),
                          facts=current_order(facts)) for other, facts in grouped.items()
        ]
        related.sort(key=lambda r: (-r.connections, -r.avg_confidence, r.entity_id))
        return related[:max(0, int(limit))]
