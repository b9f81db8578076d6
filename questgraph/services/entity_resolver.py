"""
Entity Resolver: lazy canonicalization and retroactive entity merges.
"""

import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from ..models.core import Entity, EntityResolution, MergeResult
from ..models.errors import ValidationError
from ..utils.graph_store import GraphStore
from ..utils.locks import KeyedLocks
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

# Redirect chains are compressed on every merge; a longer chain means a
# corrupted alias table rather than a legitimate history.
MAX_REDIRECT_HOPS = 32


def require_id(value, name: str = 'entity id') -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{name} must be a non-empty string')
    return value.strip()


class EntityResolver:
    """Maps raw identifiers to canonical entity ids through the graph store's alias table."""

    def __init__(self, graph: GraphStore):
        self.graph = graph
        self._locks = KeyedLocks()
        self._merge_lock = threading.Lock()
        logger.info('Initialized EntityResolver')

    def resolve(self, raw_id: str) -> str:
        """Return the canonical id for raw_id; an unknown id is its own canonical id."""
        current = require_id(raw_id)
        seen = {current}
        for _ in range(MAX_REDIRECT_HOPS):
            entity = self.graph.get_entity(current)
            if entity is None or not entity.canonical_id:
                return current
            current = entity.canonical_id
            if current in seen:
                logger.error(f'Alias cycle detected while resolving {raw_id}')
                return current
            seen.add(current)
        logger.warning(f'Redirect chain for {raw_id} exceeded {MAX_REDIRECT_HOPS} hops')
        return current

    @contextmanager
    def pinned(self, *raw_ids: str) -> Iterator[Tuple[str, ...]]:
        """Hold the raw ids against concurrent merges and yield their canonical ids.

        A merge that would redirect any of these ids waits until the block
        exits, so a write made inside the block lands on an id that is
        either fully pre-merge or fully post-merge.
        """
        cleaned = [require_id(raw_id) for raw_id in raw_ids]
        with self._locks.hold(cleaned):
            yield tuple(self.resolve(raw_id) for raw_id in cleaned)

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self.graph.get_entity(require_id(entity_id))

    def get_resolution(self, canonical_id: str) -> Optional[EntityResolution]:
        return self.graph.get_resolution(require_id(canonical_id))

    def _closure(self, ids: Iterable[str]) -> Set[str]:
        """Named ids plus their canonical ids plus every alias of either."""
        members = set()
        for raw_id in ids:
            canonical = self.resolve(raw_id)
            members.update((raw_id, canonical))
            members.update(self.graph.aliases_of(raw_id))
            members.update(self.graph.aliases_of(canonical))
        return members

    def merge(self, ids: List[str], canonical_id: str) -> MergeResult:
        """Merge ids into canonical_id.

        Every id in ids, every id they currently resolve to, and every alias
        of those becomes a direct alias of canonical_id; their fact
        references are re-pointed. Ids that were never seen are
        pre-registered as aliases. Merging an already-merged set is a no-op.
        """
        target = require_id(canonical_id, 'canonical id')
        named = [require_id(raw_id) for raw_id in (ids or [])]

        with self._merge_lock:
            members = self._closure(named + [target])
            absorbed = members - {target}

            with self._locks.hold(members):
                now = utc_now()
                changed = False
                moved = 0

                self.graph.ensure_entity(target, now)
                changed |= self.graph.set_canonical(target, None, now)

                for alias in sorted(absorbed):
                    changed |= self.graph.set_canonical(alias, target, now)
                    moved += self.graph.repoint_facts(alias, target)

                record = self._fold_records(target, absorbed, set(named) - {target}, now)
                changed |= moved > 0

        if changed:
            logger.info(f'Merged {sorted(absorbed)} into {target} ({moved} facts repointed)')
        else:
            logger.debug(f'Merge into {target} was a no-op')

        return MergeResult(canonical_id=target, aliases=record.aliases, facts_repointed=moved, changed=changed)

    def _fold_records(self, target: str, absorbed: Set[str], named: Set[str], now) -> EntityResolution:
        existing = self.graph.get_resolution(target)
        merged_from = set(existing.merged_from) if existing else set()
        merged_from.update(named)
        for alias in absorbed:
            folded = self.graph.get_resolution(alias)
            if folded is not None:
                merged_from.update(folded.merged_from)
                self.graph.delete_resolution(alias)

        aliases = frozenset(self.graph.aliases_of(target))
        merged = frozenset(merged_from - {target})

        if existing is not None and existing.aliases == aliases and existing.merged_from == merged:
            return existing

        record = EntityResolution(canonical_id=target, aliases=aliases, merged_from=merged, last_updated=now)
        self.graph.put_resolution(record)
        return record
