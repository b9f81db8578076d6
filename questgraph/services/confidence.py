"""
Confidence Scorer: deterministic confidence for a fact at a point in time.

score(fact, now) = base * reliability(source) * decay_factor(age, half_life)
                   + corroboration_bonus(independent sources), clamped to [0, 1]
"""

import math
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ..models.core import Fact
from ..utils.config import FactStoreConfig
from ..utils.timestamp_utils import age_in_days

FactMatcher = Callable[[Fact, Fact], bool]


def _normalize(value: str) -> str:
    return ' '.join(value.split()).casefold()


def same_claim(a: Fact, b: Fact) -> bool:
    """Default agreement predicate: same subject, predicate and object ignoring case and spacing."""
    return (_normalize(a.subject) == _normalize(b.subject) and _normalize(a.predicate) == _normalize(b.predicate)
            and _normalize(a.object) == _normalize(b.object))


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def decay_factor(age_days: float, half_life_days: float) -> float:
    """Exponential decay: 1.0 at age 0, 0.5 after one half-life. Future-dated facts do not decay."""
    if age_days <= 0:
        return 1.0
    if half_life_days <= 0:
        return 0.0
    return 0.5**(age_days / half_life_days)


class ConfidenceScorer:
    """Pure scoring over facts; holds configuration only."""

    def __init__(self,
                 config: FactStoreConfig,
                 matcher: Optional[FactMatcher] = None,
                 reliability: Optional[Dict[str, float]] = None):
        self.config = config
        self.matcher = matcher or same_claim
        self.reliability = dict(config.source_reliability if reliability is None else reliability)

    def source_reliability(self, source: str) -> float:
        return clamp(self.reliability.get(source, 1.0))

    def half_life(self, fact: Fact) -> float:
        return self.config.open_half_life_days if fact.is_open else self.config.closed_half_life_days

    def corroboration_bonus(self, independent_sources: int) -> float:
        if independent_sources <= 0:
            return 0.0
        return min(self.config.corroboration_cap, self.config.corroboration_step * independent_sources)

    def corroborators(self, fact: Fact, candidates: Iterable[Fact]) -> List[Fact]:
        """Facts agreeing with fact that come from a different source."""
        return [
            other for other in candidates
            if other.id != fact.id and other.source != fact.source and self.matcher(fact, other)
        ]

    def score(self, fact: Fact, now: datetime, corroborating: Iterable[Fact] = ()) -> float:
        agreeing = self.corroborators(fact, corroborating)
        # The freshest agreeing evidence restarts the decay clock
        reference = max([fact.valid_from] + [other.valid_from for other in agreeing])
        decayed = fact.confidence * self.source_reliability(fact.source) * decay_factor(
            age_in_days(reference, now), self.half_life(fact))
        independent = len({other.source for other in agreeing})
        return clamp(decayed + self.corroboration_bonus(independent))
