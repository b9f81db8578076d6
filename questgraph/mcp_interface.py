"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
import functools
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from questgraph.models.errors import QuestGraphError
from questgraph.services.memory_management import MemoryManagementService
from questgraph.utils.config import config
from questgraph.utils.health_check import get_health_status
from questgraph.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Quest Graph')


@functools.lru_cache(maxsize=1)
def get_service() -> MemoryManagementService:
    return MemoryManagementService.from_config(config)


def _parse_timestamp(value: str, name: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValueError(f'{name} must be an ISO-8601 timestamp, got {value!r}')


def _fact_dict(fact) -> Dict[str, Any]:
    return {
        'id': fact.id,
        'subject': fact.subject,
        'predicate': fact.predicate,
        'object': fact.object,
        'confidence': fact.confidence,
        'valid_from': fact.valid_from.isoformat(),
        'valid_to': fact.valid_to.isoformat() if fact.valid_to else None,
        'source': fact.source,
        'episode_id': fact.episode_id,
    }


@mcp.tool()
def process_query(query: str, user_id: str = 'anonymous') -> Dict[str, Any]:
    """Route a query, gather fused context and record the episode.

    Args:
        query: Natural language query
        user_id: Requesting user

    Returns:
        Dict with strategy, context, episode_id and confidence
    """
    result = get_service().process_query(query, user_id)
    logger.debug(f'MCP process_query returned {result.metadata["result_count"]} items for user {user_id}')
    return {
        'strategy': result.strategy.value,
        'context': result.context.as_dict(),
        'episode_id': result.episode_id,
        'confidence': result.confidence,
    }


@mcp.tool()
def get_entity_history(entity_id: str) -> Dict[str, Any]:
    """Every fact an entity ever participated in, newest first."""
    try:
        history = get_service().get_entity_history(entity_id)
    except QuestGraphError as e:
        logger.error(f'Error reading history of {entity_id}: {e}')
        raise Exception(f'Entity history failed: {e}')
    return {
        'entity_id': history.entity_id,
        'total_facts': history.total_facts,
        'timeline': [_fact_dict(fact) for fact in history.timeline],
    }


@mcp.tool()
def merge_entities(ids: List[str], canonical_id: str) -> Dict[str, Any]:
    """Merge entity ids into canonical_id; repeating a merge changes nothing."""
    try:
        result = get_service().merge_entities(ids, canonical_id)
    except QuestGraphError as e:
        logger.error(f'Error merging {ids} into {canonical_id}: {e}')
        raise Exception(f'Entity merge failed: {e}')
    return {
        'canonical_id': result.canonical_id,
        'aliases': sorted(result.aliases),
        'facts_repointed': result.facts_repointed,
        'changed': result.changed,
    }


@mcp.tool()
def store_fact(subject: str,
               predicate: str,
               object: str,
               confidence: float,
               valid_from: str,
               source: str,
               episode_id: Optional[str] = None) -> str:
    """Store a fact; valid_from is an ISO-8601 timestamp. Returns the fact id."""
    try:
        return get_service().store_fact(subject, predicate, object, confidence,
                                        _parse_timestamp(valid_from, 'valid_from'), source, episode_id)
    except QuestGraphError as e:
        logger.error(f'Error storing fact: {e}')
        raise Exception(f'Store fact failed: {e}')


@mcp.tool()
def close_fact(fact_id: str, valid_to: str) -> Dict[str, Any]:
    """Close an open fact at valid_to (ISO-8601)."""
    try:
        return _fact_dict(get_service().close_fact(fact_id, _parse_timestamp(valid_to, 'valid_to')))
    except QuestGraphError as e:
        logger.error(f'Error closing fact {fact_id}: {e}')
        raise Exception(f'Close fact failed: {e}')


@mcp.tool()
def health() -> Dict[str, Any]:
    """Health of the configured graph store and AWS services."""
    return get_health_status(config, graph=lambda: get_service().graph)


if __name__ == '__main__':
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
