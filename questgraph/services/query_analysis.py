"""
Query analysis: entity mentions and an optional LLM strategy signal.
"""

import re
from typing import List, Optional, Sequence

from ..models.core import Fact, QueryIntent, SearchStrategy
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger
from .entity_resolver import EntityResolver

logger = get_logger(__name__)

MAX_NGRAM = 3
_TOKEN = re.compile(r"[A-Za-z0-9][A-Za-z0-9'’&.]*")
_POSSESSIVE = re.compile(r"['’]s$", re.IGNORECASE)


def _tokens(query: str) -> List[str]:
    tokens = []
    for token in _TOKEN.findall(query or ''):
        token = _POSSESSIVE.sub('', token).strip(".'’")
        if token:
            tokens.append(token)
    return tokens


def candidate_ids(query: str) -> List[str]:
    """1..3-grams of the query in the spellings entity ids commonly use.

    Each n-gram is offered lower-cased first, then as written in the query.
    """
    tokens = _tokens(query)
    seen = []
    for size in range(MAX_NGRAM, 0, -1):
        for start in range(len(tokens) - size + 1):
            words = tokens[start:start + size]
            for case in (str.lower, str):
                for joiner in ('-', ' ', '_', ''):
                    candidate = case(joiner.join(words))
                    if candidate not in seen:
                        seen.append(candidate)
    return seen


class QueryEntityExtractor:
    """Find the known entities a query mentions.

    The lexical pass only returns ids already present in the graph. An LLM,
    when configured, may add names the lexical pass misses; those are also
    checked against the graph.
    """

    def __init__(self, resolver: EntityResolver, llm: Optional[BedrockLLM] = None):
        self.resolver = resolver
        self.llm = llm

    def extract(self, query: str) -> List[str]:
        if not isinstance(query, str) or not query.strip():
            return []

        names = candidate_ids(query)
        if self.llm is not None:
            names.extend(name for name in self._llm_names(query) if name not in names)

        found = []
        for name in names:
            try:
                if self.resolver.get_entity(name) is None:
                    continue
                canonical = self.resolver.resolve(name)
            except Exception as e:
                logger.warning(f"Entity lookup failed for '{name}': {e}")
                continue
            if canonical not in found:
                found.append(canonical)

        logger.debug(f'Query mentions {len(found)} known entities')
        return found

    def _llm_names(self, query: str) -> List[str]:
        system_prompt = """
You are an entity extraction system. List the people, companies and products named in the question.

Return a JSON array of lower-case names:
```json
["acme corp", "jane doe"]
```

Return empty array [] if no entities are named."""
        try:
            response = self.llm.generate_json(f'Question:\n{query}', system_prompt)
        except BedrockLLMError as e:
            logger.warning(f'LLM entity extraction failed: {e}')
            return []

        data = parse_json_response(response)
        if not isinstance(data, list):
            logger.warning(f'Expected list from entity extraction, got {type(data)}')
            return []

        names = []
        for item in data:
            if not isinstance(item, str) or not item.strip():
                continue
            written = ' '.join(item.split())
            name = written.lower()
            names.extend([name, name.replace(' ', '-'), written])
        return names


class LLMStrategyClassifier:
    """Strategy classifier backed by a Bedrock model; returns a raw strategy token or None."""

    def __init__(self, llm: BedrockLLM):
        self.llm = llm

    def __call__(self, query: str, intent: QueryIntent, routing_facts: Sequence[Fact]) -> Optional[str]:
        known = '\n'.join(f'- {f.subject} {f.predicate} {f.object}' for f in list(routing_facts)[:10]) or '- none'
        options = ', '.join(strategy.value for strategy in SearchStrategy)
        system_prompt = f"""
You route questions to a search backend. Choose one of: {options}.

- similarity: open questions answered by finding similar documents
- relational: questions about how known entities are connected or how that changed over time
- fused: questions that need both

Return a JSON object:
```json
{{"strategy": "similarity"}}
```"""
        message = f'Question:\n{query}\n\nDetected intent: {intent.value}\n\nKnown facts:\n{known}'

        try:
            response = self.llm.generate_json(message, system_prompt)
        except BedrockLLMError as e:
            logger.warning(f'LLM strategy classification failed: {e}')
            return None

        data = parse_json_response(response)
        if not isinstance(data, dict):
            return None
        token = data.get('strategy')
        return token if isinstance(token, str) else None
