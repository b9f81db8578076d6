"""
Result Fuser: joins the strategy branches into one ranked, deduplicated context.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..models.core import (ContextItem, FusedContext, QueryIntent, RelatedEntity, RelationalHit, SearchStrategy,
                           SimilarityHit)
from ..models.errors import QuestGraphError
from ..utils.config import SearchConfig
from ..utils.logging_config import get_logger
from ..utils.worker_pool import run_branches
from .confidence import ConfidenceScorer, clamp
from .entity_resolver import EntityResolver
from .fact_store import FactStore

logger = get_logger(__name__)

PROVISIONAL_PREDICATE = 'found_relevant'
PROVISIONAL_SOURCE = 'relational-search'

Branch = Callable[[], Sequence[Any]]


@dataclass
class BranchResults:
    """Hits gathered from the strategy branches of one query."""
    similarity: List[SimilarityHit] = field(default_factory=list)
    relational: List[RelationalHit] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    fallback: Optional[str] = None
    failed: List[str] = field(default_factory=list)


class ResultFuser:
    """Single synchronization point of the strategy branches."""

    def __init__(self, resolver: EntityResolver, store: FactStore, scorer: ConfidenceScorer, config: SearchConfig):
        self.resolver = resolver
        self.store = store
        self.scorer = scorer
        self.config = config

    def collect(self, strategy: SearchStrategy, similarity_branch: Branch, relational_branch: Branch) -> BranchResults:
        """Run the branches the strategy needs.

        Fused runs both at once. A single-branch strategy whose branch fails
        or finds nothing falls back to the other branch.
        """
        branches = {'similarity': similarity_branch, 'relational': relational_branch}
        if strategy == SearchStrategy.FUSED:
            names = ['similarity', 'relational']
        elif strategy == SearchStrategy.RELATIONAL:
            names = ['relational']
        else:
            names = ['similarity']

        results = BranchResults()
        self._run(names, branches, results)

        if len(names) == 1 and not getattr(results, names[0]):
            other = 'similarity' if names[0] == 'relational' else 'relational'
            logger.info(f'{names[0]} search returned nothing, falling back to {other}')
            results.fallback = other
            self._run([other], branches, results)

        return results

    def _run(self, names: List[str], branches: Dict[str, Branch], results: BranchResults) -> None:
        outcomes = run_branches({name: branches[name] for name in names},
                                timeout_seconds=self.config.branch_timeout_seconds,
                                max_workers=self.config.max_workers,
                                pool_name='fuser')
        for name in names:
            outcome = outcomes.get(name)
            if isinstance(outcome, BaseException):
                logger.warning(f'{name} search degraded: {type(outcome).__name__}: {outcome}')
                results.warnings.append(f'{name} search unavailable: {outcome}')
                results.failed.append(name)
                continue
            setattr(results, name, list(outcome or []))

    def score_related(self, related: Sequence[RelatedEntity], now: datetime) -> List[RelationalHit]:
        """Score each related entity by its best supporting fact, corroborated by the others."""
        hits = []
        for entity in related:
            best = max((self.scorer.score(fact, now, entity.facts) for fact in entity.facts), default=0.0)
            hits.append(RelationalHit(entity_id=entity.entity_id, score=best, facts=list(entity.facts)))
        hits.sort(key=lambda h: (-h.score, h.entity_id))
        return hits

    def _similarity_key(self, hit: SimilarityHit) -> str:
        entity_id = (hit.metadata or {}).get('entity_id')
        if isinstance(entity_id, str) and entity_id.strip():
            try:
                return self.resolver.resolve(entity_id)
            except QuestGraphError as e:
                logger.warning(f'Could not resolve entity {entity_id} of document {hit.id}: {e}')
        return f'doc:{hit.id}'

    def _absorb(self, items: Dict[str, ContextItem], candidate: ContextItem) -> None:
        existing = items.get(candidate.key)
        if existing is None:
            items[candidate.key] = candidate
            return

        keep, other = (candidate, existing) if candidate.score > existing.score else (existing, candidate)
        keep.corroborations = existing.corroborations + candidate.corroborations + 1
        keep.sources = existing.sources + [source for source in candidate.sources if source not in existing.sources]
        keep.fact_ids = existing.fact_ids + [fact_id for fact_id in candidate.fact_ids if fact_id not in existing.fact_ids]
        logger.debug(f'Merged duplicate {other.kind} hit into {keep.key}')
        items[candidate.key] = keep

    def fuse(self,
             strategy: SearchStrategy,
             intent: QueryIntent,
             similarity_hits: Sequence[SimilarityHit],
             relational_hits: Sequence[RelationalHit],
             started_at: float,
             warnings: Sequence[str] = (),
             fallback: Optional[str] = None) -> FusedContext:
        """Merge both hit lists by canonical entity and rank them.

        Args:
            strategy: Strategy that produced the hits
            intent: Detected query intent
            similarity_hits: Ranked similarity hits
            relational_hits: Scored relational hits
            started_at: time.perf_counter() value taken when the query began
            warnings: Degradation notes collected by the branches
            fallback: Branch that ran as a fallback, if any

        Returns:
            FusedContext ordered by score, then entity key
        """
        items: Dict[str, ContextItem] = {}

        for hit in similarity_hits:
            self._absorb(
                items,
                ContextItem(key=self._similarity_key(hit),
                            kind='similarity',
                            score=clamp(float(hit.similarity_score)),
                            content=hit.content,
                            sources=[f'doc:{hit.id}']))

        for hit in relational_hits:
            summary = '; '.join(f'{f.subject} {f.predicate} {f.object}' for f in hit.facts)
            self._absorb(
                items,
                ContextItem(key=hit.entity_id,
                            kind='relational',
                            score=clamp(hit.score),
                            content=summary or hit.entity_id,
                            sources=[f'entity:{hit.entity_id}'],
                            fact_ids=[f.id for f in hit.facts]))

        ranked = list(items.values())
        for item in ranked:
            item.score = clamp(item.score + self.scorer.corroboration_bonus(item.corroborations))
        ranked.sort(key=lambda item: (-item.score, item.key))

        metadata = {
            'strategy': strategy.value,
            'intent': intent.value,
            'result_count': len(ranked),
            'processing_time': round((time.perf_counter() - started_at) * 1000, 2),
            'similarity_count': len(similarity_hits),
            'relational_count': len(relational_hits),
            'warnings': list(warnings),
            'fallback': fallback,
        }
        return FusedContext(items=ranked, metadata=metadata)

    def extract_facts(self, relational_hits: Sequence[RelationalHit], episode_id: str, now: datetime) -> List[str]:
        """Store one provisional 'found_relevant' fact per relational hit, tagged with the episode."""
        fact_ids = []
        for hit in relational_hits:
            if hit.entity_id == self.config.provisional_subject:
                continue
            try:
                fact_id = self.store.store_fact(self.config.provisional_subject,
                                                PROVISIONAL_PREDICATE,
                                                hit.entity_id,
                                                self.config.provisional_confidence,
                                                now,
                                                PROVISIONAL_SOURCE,
                                                episode_id=episode_id)
                fact_ids.append(fact_id)
            except QuestGraphError as e:
                logger.warning(f'Skipping provisional fact for {hit.entity_id}: {e}')
        logger.debug(f'Extracted {len(fact_ids)} provisional facts for episode {episode_id}')
        return fact_ids
