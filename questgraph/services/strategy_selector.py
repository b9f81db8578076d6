"""
Search Strategy Selector: per-query choice between similarity, relational and fused search.

Keyword intent detection is the default path. An external classifier (for
example an LLM) may supply a strategy token; the token is only trusted when
it maps onto a known strategy.
"""

import re
from typing import Any, Callable, Optional, Sequence, Tuple

from ..models.core import Fact, QueryIntent, SearchStrategy, StrategySelection
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

StrategyClassifier = Callable[[str, QueryIntent, Sequence[Fact]], Optional[str]]

# Checked in order; first match wins. Keywords match whole words only.
INTENT_PATTERNS: Tuple[Tuple[QueryIntent, Tuple[str, ...]], ...] = (
    (QueryIntent.DECISION_MAKER, ('decision maker', 'decision-maker', 'cto', 'buyer', 'buyers')),
    (QueryIntent.INTRODUCTION, ('introduce', 'introduced', 'introduction', 'connection', 'connections', 'warm intro')),
    (QueryIntent.SALES, ('sales', 'opportunity', 'opportunities', 'buying signal')),
    (QueryIntent.COMPANY, ('company', 'organization', 'organisation', 'about')),
    (QueryIntent.TEMPORAL, ('changed', 'history', 'timeline', 'used to', 'previously')),
    (QueryIntent.RELATIONSHIP, ('relationship', 'relationships', 'worked with', 'works with', 'reports to')),
    (QueryIntent.SIMILARITY, ('similar', 'like', 'resemble', 'resembles', 'resembling', 'comparable')),
)

_COMPILED = tuple((intent, tuple(re.compile(r'\b' + re.escape(keyword) + r'\b') for keyword in keywords))
                  for intent, keywords in INTENT_PATTERNS)

INTENT_STRATEGY = {
    QueryIntent.RELATIONSHIP: SearchStrategy.RELATIONAL,
    QueryIntent.INTRODUCTION: SearchStrategy.RELATIONAL,
    QueryIntent.TEMPORAL: SearchStrategy.RELATIONAL,
    QueryIntent.SIMILARITY: SearchStrategy.SIMILARITY,
    QueryIntent.GENERAL: SearchStrategy.SIMILARITY,
    QueryIntent.DECISION_MAKER: SearchStrategy.FUSED,
    QueryIntent.SALES: SearchStrategy.FUSED,
    QueryIntent.COMPANY: SearchStrategy.FUSED,
}

DEFAULT_SELECTION = StrategySelection(strategy=SearchStrategy.SIMILARITY, intent=QueryIntent.GENERAL, source='default')


def detect_intent(query: Any) -> QueryIntent:
    """Keyword intent detection; anything unrecognized is GENERAL."""
    if not isinstance(query, str) or not query.strip():
        return QueryIntent.GENERAL
    text = query.lower()
    for intent, patterns in _COMPILED:
        if any(pattern.search(text) for pattern in patterns):
            return intent
    return QueryIntent.GENERAL


class StrategySelector:
    """Stateless classifier; select() never raises."""

    def __init__(self, classifier: Optional[StrategyClassifier] = None):
        self.classifier = classifier

    def select(self, query: Any, routing_facts: Sequence[Fact] = ()) -> StrategySelection:
        if not isinstance(query, str) or not query.strip():
            return DEFAULT_SELECTION

        intent = detect_intent(query)
        table_strategy = INTENT_STRATEGY.get(intent, SearchStrategy.SIMILARITY)

        signal = self._external_signal(query, intent, routing_facts)
        if signal is not None:
            if signal != table_strategy:
                logger.debug(f'Classifier overrides {table_strategy.value} with {signal.value} for intent {intent.value}')
            return StrategySelection(strategy=signal, intent=intent, source='classifier')

        return StrategySelection(strategy=table_strategy, intent=intent, source='keywords')

    def _external_signal(self, query: str, intent: QueryIntent, routing_facts: Sequence[Fact]) -> Optional[SearchStrategy]:
        if self.classifier is None:
            return None
        try:
            raw = self.classifier(query, intent, list(routing_facts or ()))
        except Exception as e:
            logger.warning(f'Strategy classifier failed, using keyword table: {e}')
            return None
        if raw is None:
            return None
        strategy = SearchStrategy.parse(raw)
        if strategy is None:
            logger.warning(f'Ignoring invalid classifier strategy token: {raw!r}')
        return strategy
