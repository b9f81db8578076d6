"""
Graph store contract and the in-process implementation.

The fact store, entity resolver and episode recorder only talk to the graph
through the methods of GraphStore. Mutations of an existing fact go through
the compare-and-set primitives (close_fact_if_open, swap_confidence,
claim_fact_episode) so that concurrent writers on one fact serialize.
"""

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Set

from ..models.core import Entity, EntityResolution, Episode, Fact
from .logging_config import get_logger

logger = get_logger(__name__)


class GraphStore(Protocol):
    """Persistence operations required from a graph-capable store."""

    def ensure_entity(self, entity_id: str, now: datetime) -> Entity:
        ...

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        ...

    def set_canonical(self, entity_id: str, canonical_id: Optional[str], now: datetime) -> bool:
        ...

    def aliases_of(self, canonical_id: str) -> Set[str]:
        ...

    def put_fact(self, fact: Fact) -> None:
        ...

    def get_fact(self, fact_id: str) -> Optional[Fact]:
        ...

    def facts_for_entity(self, entity_id: str) -> List[Fact]:
        ...

    def open_facts(self) -> List[Fact]:
        ...

    def close_fact_if_open(self, fact_id: str, valid_to: datetime) -> bool:
        ...

    def swap_confidence(self, fact_id: str, expected: float, new: float) -> bool:
        ...

    def claim_fact_episode(self, fact_id: str, episode_id: str) -> bool:
        ...

    def repoint_facts(self, old_id: str, new_id: str) -> int:
        ...

    def put_resolution(self, record: EntityResolution) -> None:
        ...

    def get_resolution(self, canonical_id: str) -> Optional[EntityResolution]:
        ...

    def delete_resolution(self, canonical_id: str) -> None:
        ...

    def put_episode(self, episode: Episode) -> None:
        ...

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        ...

    def append_episode_facts(self, episode_id: str, fact_ids: Iterable[str]) -> Optional[Episode]:
        ...

    def health_check(self) -> bool:
        ...


class InMemoryGraphStore:
    """Thread-safe in-process graph store.

    Keeps facts indexed by participating entity and a reverse alias index so
    that aliases_of() and facts_for_entity() do not scan.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._entities: Dict[str, Entity] = {}
        self._aliases: Dict[str, Set[str]] = {}
        self._facts: Dict[str, Fact] = {}
        self._by_entity: Dict[str, Set[str]] = {}
        self._resolutions: Dict[str, EntityResolution] = {}
        self._episodes: Dict[str, Episode] = {}
        logger.info('Initialized in-memory graph store')

    # Entities

    def ensure_entity(self, entity_id: str, now: datetime) -> Entity:
        with self._lock:
            entity = self._entities.get(entity_id)
            if entity is None:
                entity = Entity(id=entity_id, last_updated=now)
                self._entities[entity_id] = entity
                logger.debug(f'Created entity: {entity_id}')
            return self._with_aliases(entity)

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        with self._lock:
            entity = self._entities.get(entity_id)
            return self._with_aliases(entity) if entity else None

    def set_canonical(self, entity_id: str, canonical_id: Optional[str], now: datetime) -> bool:
        with self._lock:
            current = self._entities.get(entity_id)
            if current is not None and current.canonical_id == canonical_id:
                return False
            if current is not None and current.canonical_id:
                self._aliases.get(current.canonical_id, set()).discard(entity_id)
            if canonical_id:
                self._aliases.setdefault(canonical_id, set()).add(entity_id)
            self._entities[entity_id] = Entity(id=entity_id, last_updated=now, canonical_id=canonical_id)
            return True

    def aliases_of(self, canonical_id: str) -> Set[str]:
        with self._lock:
            return set(self._aliases.get(canonical_id, ()))

    def _with_aliases(self, entity: Entity) -> Entity:
        return replace(entity, aliases=frozenset(self._aliases.get(entity.id, ())))

    # Facts

    def put_fact(self, fact: Fact) -> None:
        with self._lock:
            self._facts[fact.id] = fact
            self._index(fact)

    def get_fact(self, fact_id: str) -> Optional[Fact]:
        with self._lock:
            return self._facts.get(fact_id)

    def facts_for_entity(self, entity_id: str) -> List[Fact]:
        with self._lock:
            return [self._facts[fid] for fid in self._by_entity.get(entity_id, ())]

    def open_facts(self) -> List[Fact]:
        with self._lock:
            return [fact for fact in self._facts.values() if fact.is_open]

    def close_fact_if_open(self, fact_id: str, valid_to: datetime) -> bool:
        with self._lock:
            fact = self._facts.get(fact_id)
            if fact is None or fact.valid_to is not None:
                return False
            self._facts[fact_id] = replace(fact, valid_to=valid_to)
            return True

    def swap_confidence(self, fact_id: str, expected: float, new: float) -> bool:
        with self._lock:
            fact = self._facts.get(fact_id)
            if fact is None or fact.confidence != expected:
                return False
            self._facts[fact_id] = replace(fact, confidence=new)
            return True

    def claim_fact_episode(self, fact_id: str, episode_id: str) -> bool:
        with self._lock:
            fact = self._facts.get(fact_id)
            if fact is None or fact.episode_id is not None:
                return False
            self._facts[fact_id] = replace(fact, episode_id=episode_id)
            return True

    def repoint_facts(self, old_id: str, new_id: str) -> int:
        with self._lock:
            moved = 0
            for fid in list(self._by_entity.get(old_id, ())):
                fact = self._facts[fid]
                self._unindex(fact)
                fact = replace(fact,
                               subject=new_id if fact.subject == old_id else fact.subject,
                               object=new_id if fact.object == old_id else fact.object)
                self._facts[fid] = fact
                self._index(fact)
                moved += 1
            return moved

    def _index(self, fact: Fact) -> None:
        self._by_entity.setdefault(fact.subject, set()).add(fact.id)
        self._by_entity.setdefault(fact.object, set()).add(fact.id)

    def _unindex(self, fact: Fact) -> None:
        for entity_id in (fact.subject, fact.object):
            self._by_entity.get(entity_id, set()).discard(fact.id)

    # Resolution records

    def put_resolution(self, record: EntityResolution) -> None:
        with self._lock:
            self._resolutions[record.canonical_id] = record

    def get_resolution(self, canonical_id: str) -> Optional[EntityResolution]:
        with self._lock:
            return self._resolutions.get(canonical_id)

    def delete_resolution(self, canonical_id: str) -> None:
        with self._lock:
            self._resolutions.pop(canonical_id, None)

    # Episodes

    def put_episode(self, episode: Episode) -> None:
        with self._lock:
            self._episodes[episode.id] = episode

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        with self._lock:
            return self._episodes.get(episode_id)

    def append_episode_facts(self, episode_id: str, fact_ids: Iterable[str]) -> Optional[Episode]:
        with self._lock:
            episode = self._episodes.get(episode_id)
            if episode is None:
                return None
            listed = list(episode.fact_ids)
            for fid in fact_ids:
                if fid not in listed:
                    listed.append(fid)
            episode = replace(episode, fact_ids=tuple(listed))
            self._episodes[episode_id] = episode
            return episode

    def health_check(self) -> bool:
        return True
