"""
Memory Management Service: the query orchestrator and the platform-facing fact APIs.
"""

import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import (EntityHistory, Fact, MergeResult, QueryIntent, QueryResult, RelatedEntity, RelationalHit,
                           SimilarityHit)
from ..models.errors import QuestGraphError, UpstreamTimeoutError
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config
from ..utils.graph_store import GraphStore, InMemoryGraphStore
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import utc_now
from ..utils.worker_pool import call_with_timeout
from .confidence import ConfidenceScorer, FactMatcher
from .entity_resolver import EntityResolver
from .episode_recorder import EpisodeRecorder
from .fact_store import FactStore
from .query_analysis import LLMStrategyClassifier, QueryEntityExtractor
from .result_fuser import BranchResults, ResultFuser
from .strategy_selector import StrategyClassifier, StrategySelector

logger = get_logger(__name__)


def build_graph_store(app_config: AppConfig) -> GraphStore:
    """Graph store selected by GRAPH_BACKEND."""
    backend = app_config.graph.backend
    if backend == 'neptune':
        return NeptuneClient(app_config.neptune)
    if backend == 'memory':
        return InMemoryGraphStore()
    raise ValueError(f'Unknown graph backend: {backend}')


def episode_outcome(branches: BranchResults, result_count: int) -> str:
    if branches.failed and result_count == 0:
        return 'failure'
    if branches.failed or branches.warnings:
        return 'partial'
    return 'success'


class MemoryManagementService:
    """Query orchestration over the fact store, the resolver and the similarity index."""

    def __init__(self,
                 graph: Optional[GraphStore] = None,
                 similarity: Optional[Any] = None,
                 embedder: Optional[Any] = None,
                 classifier: Optional[StrategyClassifier] = None,
                 llm: Optional[BedrockLLM] = None,
                 matcher: Optional[FactMatcher] = None,
                 app_config: Optional[AppConfig] = None):
        """Wire the components together.

        Args:
            graph: Graph store; built from GRAPH_BACKEND when None
            similarity: Object with search(query_embedding, limit, threshold, filters)
            embedder: Object with embed(text)
            classifier: Optional advisory strategy classifier
            llm: Optional LLM used for query entity extraction
            matcher: Corroboration predicate for the confidence scorer
            app_config: AppConfig instance, uses default if None
        """
        self.config = app_config or config
        self.graph = graph if graph is not None else build_graph_store(self.config)
        self.similarity = similarity
        self.embedder = embedder

        self.resolver = EntityResolver(self.graph)
        self.facts = FactStore(self.graph, self.resolver, self.config.fact_store)
        self.episodes = EpisodeRecorder(self.graph)
        self.scorer = ConfidenceScorer(self.config.fact_store, matcher=matcher)
        self.fuser = ResultFuser(self.resolver, self.facts, self.scorer, self.config.search)
        self.selector = StrategySelector(classifier)
        self.extractor = QueryEntityExtractor(self.resolver, llm)

        logger.info('Initialized MemoryManagementService')

    @classmethod
    def from_config(cls, app_config: Optional[AppConfig] = None) -> 'MemoryManagementService':
        """Build the service with the AWS clients the configuration enables."""
        app_config = app_config or config
        similarity = embedder = None
        if app_config.opensearch.endpoint:
            similarity = OpenSearchClient(app_config.opensearch)
            embedder = BedrockEmbed(app_config.bedrock_embed)
            try:
                similarity.create_index_if_not_exists()
            except OpenSearchError as e:
                logger.warning(f'Failed to create OpenSearch index: {e}')
        else:
            logger.warning('OPENSEARCH_ENDPOINT not set; similarity search disabled')

        llm = classifier = None
        if app_config.search.llm_analysis:
            llm = BedrockLLM(app_config.bedrock_llm, timeout_seconds=app_config.search.branch_timeout_seconds)
            classifier = LLMStrategyClassifier(llm)

        return cls(graph=build_graph_store(app_config),
                   similarity=similarity,
                   embedder=embedder,
                   classifier=classifier,
                   llm=llm,
                   app_config=app_config)

    def process_query(self, query: str, user_id: str = 'anonymous', filters: Optional[Dict[str, Any]] = None) -> QueryResult:
        """Answer-context pipeline for one query.

        Search failures degrade the result and are reported in the context
        metadata warnings; they are never raised.

        Args:
            query: Natural language query
            user_id: Requesting user, recorded on the episode
            filters: Optional term filters for the similarity search

        Returns:
            QueryResult with strategy, fused context, episode id and confidence
        """
        started_at = time.perf_counter()
        now = utc_now()
        text = query.strip() if isinstance(query, str) else ''
        warnings: List[str] = []

        entities = self._query_entities(text, warnings)
        routing_facts = self._routing_facts(entities, now, warnings)

        selection = self.selector.select(query, routing_facts)
        include_closed = selection.intent == QueryIntent.TEMPORAL
        logger.debug(f'Query routed to {selection.strategy.value} ({selection.intent.value}, via {selection.source})')

        branches = self.fuser.collect(selection.strategy,
                                      lambda: self._similarity_search(text, filters),
                                      lambda: self._relational_search(entities, now, include_closed))
        warnings.extend(branches.warnings)

        context = self.fuser.fuse(selection.strategy, selection.intent, branches.similarity, branches.relational,
                                  started_at, warnings, branches.fallback)
        result_count = context.metadata['result_count']

        episode_id = self.episodes.create_episode(user_id,
                                                  text,
                                                  now,
                                                  context={
                                                      'strategy': selection.strategy.value,
                                                      'intent': selection.intent.value,
                                                      'strategy_source': selection.source,
                                                      'entities': entities,
                                                      'result_count': result_count,
                                                      'warnings': list(warnings),
                                                  },
                                                  outcome=episode_outcome(branches, result_count))

        fact_ids = self.fuser.extract_facts(branches.relational, episode_id, now)
        if fact_ids:
            try:
                self.episodes.append_facts(episode_id, fact_ids)
            except QuestGraphError as e:
                logger.warning(f'Failed to link provisional facts to episode {episode_id}: {e}')

        confidence = self.calculate_confidence(routing_facts, result_count, now)
        logger.info(f'Processed query with {selection.strategy.value} strategy: '
                    f'{result_count} results, confidence {confidence:.2f}')
        return QueryResult(strategy=selection.strategy, context=context, episode_id=episode_id, confidence=confidence)

    def _query_entities(self, query: str, warnings: List[str]) -> List[str]:
        try:
            entities = self.extractor.extract(query)
        except QuestGraphError as e:
            logger.warning(f'Entity extraction degraded: {e}')
            warnings.append(f'entity extraction unavailable: {e}')
            return []
        return [entity for entity in entities if entity != self.config.search.provisional_subject]

    def _routing_facts(self, entities: Sequence[str], now: datetime, warnings: List[str]) -> List[Fact]:
        if not entities:
            return []

        def load() -> List[Fact]:
            seen = {}
            for entity_id in entities:
                for fact in self.facts.get_current_facts(entity_id, now):
                    seen.setdefault(fact.id, fact)
            return list(seen.values())

        try:
            return call_with_timeout(load,
                                     self.config.search.branch_timeout_seconds,
                                     name='routing',
                                     max_workers=self.config.search.max_workers)
        except (UpstreamTimeoutError, QuestGraphError) as e:
            logger.warning(f'Routing facts unavailable: {e}')
            warnings.append(f'routing facts unavailable: {e}')
            return []

    def _similarity_search(self, query: str, filters: Optional[Dict[str, Any]]) -> List[SimilarityHit]:
        if self.similarity is None or self.embedder is None:
            logger.debug('Similarity search not configured')
            return []
        if not query.strip():
            return []
        embedding = self.embedder.embed(query)
        return self.similarity.search(embedding,
                                      self.config.search.similarity_limit,
                                      self.config.search.similarity_threshold,
                                      filters)

    def _relational_search(self, entities: Sequence[str], now: datetime, include_closed: bool) -> List[RelationalHit]:
        merged: Dict[str, RelatedEntity] = {}
        for entity_id in entities:
            related_entities = self.facts.find_related_entities(entity_id,
                                                                min_confidence=self.config.search.related_min_confidence,
                                                                as_of=now,
                                                                limit=self.config.search.related_limit,
                                                                include_closed=include_closed)
            for related in related_entities:
                if related.entity_id == self.config.search.provisional_subject:
                    continue
                existing = merged.get(related.entity_id)
                if existing is None:
                    merged[related.entity_id] = related
                    continue
                known = {fact.id for fact in existing.facts}
                facts = existing.facts + [fact for fact in related.facts if fact.id not in known]
                merged[related.entity_id] = RelatedEntity(entity_id=related.entity_id,
                                                          connections=len(facts),
                                                          avg_confidence=sum(f.confidence for f in facts) / len(facts),
                                                          facts=facts)

        hits = self.fuser.score_related(list(merged.values()), now)
        return hits[:self.config.search.related_limit]

    def calculate_confidence(self, routing_facts: Sequence[Fact], result_count: int, now: datetime) -> float:
        """Overall answer confidence from routing-fact freshness and quality and result volume."""
        confidence = 0.5

        cutoff = now - timedelta(days=self.config.search.recent_fact_days)
        recent = [fact for fact in routing_facts if fact.valid_from >= cutoff]
        confidence += min(0.3, len(recent) * 0.1)

        if routing_facts:
            confidence += 0.2 * (sum(fact.confidence for fact in routing_facts) / len(routing_facts))

        confidence += min(0.2, result_count * 0.05)
        return min(1.0, confidence)

    def get_entity_history(self, entity_id: str) -> EntityHistory:
        return self.facts.get_entity_history(entity_id)

    def merge_entities(self, ids: List[str], canonical_id: str) -> MergeResult:
        return self.resolver.merge(ids, canonical_id)

    def store_fact(self,
                   subject: str,
                   predicate: str,
                   object: str,
                   confidence: float,
                   valid_from: datetime,
                   source: str,
                   episode_id: Optional[str] = None) -> str:
        return self.facts.store_fact(subject, predicate, object, confidence, valid_from, source, episode_id)

    def close_fact(self, fact_id: str, valid_to: datetime) -> Fact:
        return self.facts.close_fact(fact_id, valid_to)

    def decay_confidence(self, fact_id: str, decay_rate: float) -> float:
        return self.facts.decay_confidence(fact_id, decay_rate)

    def sweep_stale_facts(self, as_of: Optional[datetime] = None, decay_rate: Optional[float] = None) -> int:
        return self.facts.sweep_stale_facts(as_of, decay_rate)

    def get_current_facts(self, entity_id: str, as_of: Optional[datetime] = None) -> List[Fact]:
        return self.facts.get_current_facts(entity_id, as_of)

    def health_check(self) -> bool:
        return bool(self.graph.health_check())
