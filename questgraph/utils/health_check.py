"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .graph_store import GraphStore
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _probe(service: str, build: Callable[[], Any], **details) -> Dict[str, Any]:
    try:
        healthy = bool(build().health_check())
        return {'healthy': healthy, 'service': service, **details}
    except Exception as e:
        logger.warning(f'{service} health probe failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(app_config: Optional[AppConfig] = None,
                      graph: Optional[Callable[[], GraphStore]] = None) -> Dict[str, Any]:
    """Get detailed health status of the configured components.

    Args:
        app_config: AppConfig instance, uses default if None
        graph: Returns the graph store the running service uses. Without it
            a Neptune backend is probed through a fresh connection and an
            in-memory backend is not reported.

    Returns:
        Dictionary with health status of each component
    """
    app_config = app_config or config
    health_status = {}

    backend = app_config.graph.backend
    graph_service = 'Amazon Neptune' if backend == 'neptune' else 'In-memory graph store'
    if graph is not None:
        health_status['graph'] = _probe(graph_service, graph, backend=backend)
    elif backend == 'neptune':
        health_status['graph'] = _probe(graph_service,
                                        lambda: NeptuneClient(app_config.neptune),
                                        endpoint=app_config.neptune.endpoint)

    if app_config.opensearch.endpoint:
        health_status['opensearch'] = _probe('Amazon OpenSearch',
                                             lambda: OpenSearchClient(app_config.opensearch),
                                             endpoint=app_config.opensearch.endpoint)
        health_status['bedrock_embed'] = _probe('Amazon Bedrock Embed',
                                                lambda: BedrockEmbed(app_config.bedrock_embed),
                                                model=app_config.bedrock_embed.model_id)

    if app_config.search.llm_analysis:
        health_status['bedrock_llm'] = _probe('Amazon Bedrock LLM',
                                              lambda: BedrockLLM(app_config.bedrock_llm),
                                              model=app_config.bedrock_llm.model_id)

    unhealthy = sorted(name for name, status in health_status.items() if not status['healthy'])
    if unhealthy:
        logger.warning(f'Unhealthy components: {unhealthy}')
    return health_status
