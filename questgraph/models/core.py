"""
Core data models for the temporal fact store and query orchestration.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class SearchStrategy(str, Enum):
    """Search approach chosen per query."""
    SIMILARITY = 'similarity'
    RELATIONAL = 'relational'
    FUSED = 'fused'

    @classmethod
    def parse(cls, token: Any) -> Optional['SearchStrategy']:
        """Map a raw token (including legacy vector/graph/hybrid names) to a strategy, or None."""
        if not isinstance(token, str):
            return None
        return _STRATEGY_TOKENS.get(token.strip().strip('.').lower())


_STRATEGY_TOKENS = {
    'similarity': SearchStrategy.SIMILARITY,
    'vector': SearchStrategy.SIMILARITY,
    'relational': SearchStrategy.RELATIONAL,
    'graph': SearchStrategy.RELATIONAL,
    'fused': SearchStrategy.FUSED,
    'hybrid': SearchStrategy.FUSED,
    # time-sensitive questions need both the fact graph and the document index
    'temporal': SearchStrategy.FUSED,
}


class QueryIntent(str, Enum):
    """Closed vocabulary of query intents."""
    DECISION_MAKER = 'decision_maker'
    INTRODUCTION = 'introduction'
    SALES = 'sales'
    COMPANY = 'company'
    TEMPORAL = 'temporal'
    RELATIONSHIP = 'relationship'
    SIMILARITY = 'similarity'
    GENERAL = 'general'


@dataclass(frozen=True)
class Entity:
    """Canonical identity for a real-world thing; an alias when canonical_id is set."""
    id: str
    last_updated: datetime
    canonical_id: Optional[str] = None
    aliases: FrozenSet[str] = frozenset()

    @property
    def is_alias(self) -> bool:
        return self.canonical_id is not None


@dataclass(frozen=True)
class Fact:
    """A timestamped, confidence-weighted subject-predicate-object assertion.

    Facts are immutable records. The only state transition is open -> closed
    (valid_to set once), plus the store-managed confidence decay and
    episode back-link.
    """
    id: str
    subject: str
    predicate: str
    object: str
    confidence: float
    valid_from: datetime
    source: str
    valid_to: Optional[datetime] = None
    episode_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.valid_to is None

    def is_current(self, as_of: datetime) -> bool:
        """True iff valid_from <= as_of < valid_to (open-ended when valid_to is None)."""
        return self.valid_from <= as_of and (self.valid_to is None or self.valid_to > as_of)

    def involves(self, entity_id: str) -> bool:
        return self.subject == entity_id or self.object == entity_id

    def counterpart(self, entity_id: str) -> str:
        """The other endpoint of the fact as seen from entity_id."""
        return self.object if self.subject == entity_id else self.subject


@dataclass(frozen=True)
class Episode:
    """Provenance envelope grouping the facts discovered while answering one query."""
    id: str
    user_id: str
    query: str
    timestamp: datetime
    context: Dict[str, Any] = field(default_factory=dict)
    fact_ids: Tuple[str, ...] = ()
    outcome: Optional[str] = None  # success | partial | failure


@dataclass(frozen=True)
class EntityResolution:
    """Audit record of the ids redirected to one canonical entity."""
    canonical_id: str
    aliases: FrozenSet[str]
    merged_from: FrozenSet[str]
    last_updated: datetime


@dataclass(frozen=True)
class MergeResult:
    canonical_id: str
    aliases: FrozenSet[str]
    facts_repointed: int
    changed: bool


@dataclass
class EntityHistory:
    """All facts an entity ever participated in, newest first."""
    entity_id: str
    timeline: List[Fact]

    @property
    def total_facts(self) -> int:
        return len(self.timeline)


@dataclass
class RelatedEntity:
    entity_id: str
    connections: int
    avg_confidence: float
    facts: List[Fact] = field(default_factory=list)


@dataclass
class SimilarityHit:
    """One ranked hit from the similarity search service."""
    id: str
    content: str
    similarity_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RelationalHit:
    """An entity reached through the fact graph, scored from its supporting facts."""
    entity_id: str
    score: float
    facts: List[Fact] = field(default_factory=list)


@dataclass
class ContextItem:
    """One deduplicated entry of the fused answer context."""
    key: str
    kind: str  # similarity | relational
    score: float
    content: str
    sources: List[str] = field(default_factory=list)
    corroborations: int = 0
    fact_ids: List[str] = field(default_factory=list)


@dataclass
class FusedContext:
    """Ranked, deduplicated context handed to the answer generation service."""
    items: List[ContextItem]
    metadata: Dict[str, Any]

    def as_dict(self) -> Dict[str, Any]:
        return {'items': [asdict(item) for item in self.items], 'metadata': dict(self.metadata)}


@dataclass(frozen=True)
class StrategySelection:
    strategy: SearchStrategy
    intent: QueryIntent
    source: str  # classifier | keywords | default


@dataclass
class QueryResult:
    """Result of processing one query through the orchestrator."""
    strategy: SearchStrategy
    context: FusedContext
    episode_id: str
    confidence: float

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.context.metadata
