"""
Configuration management for the graph store, AWS services and fact scoring.
"""

import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class GraphConfig:
    """Selects the graph store implementation."""
    backend: str  # memory | neptune


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    timeout: float


@dataclass
class FactStoreConfig:
    """Confidence decay and corroboration settings."""
    open_half_life_days: float
    closed_half_life_days: float
    freshness_days: float
    default_decay_rate: float
    corroboration_step: float
    corroboration_cap: float
    source_reliability: Dict[str, float] = field(default_factory=dict)


@dataclass
class SearchConfig:
    """Settings for strategy execution and result fusion."""
    similarity_limit: int
    similarity_threshold: float
    related_min_confidence: float
    related_limit: int
    branch_timeout_seconds: float
    max_workers: int
    provisional_confidence: float
    provisional_subject: str
    recent_fact_days: int
    llm_analysis: bool


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    graph: GraphConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    fact_store: FactStoreConfig
    search: SearchConfig
    mcp: MCPConfig


def parse_reliability(raw: str) -> Dict[str, float]:
    """Parse 'source:weight,source:weight' into a dict, skipping malformed pairs."""
    weights = {}
    for pair in (raw or '').split(','):
        name, sep, value = pair.partition(':')
        if not sep or not name.strip():
            continue
        try:
            weights[name.strip()] = min(1.0, max(0.0, float(value)))
        except ValueError:
            continue
    return weights


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '512')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '2')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '0.5')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    graph_config = GraphConfig(backend=os.getenv('GRAPH_BACKEND', 'memory').strip().lower())

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', ''),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'quest_knowledge'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         timeout=float(os.getenv('OPENSEARCH_TIMEOUT', '5.0')))

    fact_store_config = FactStoreConfig(
        open_half_life_days=float(os.getenv('FACT_OPEN_HALF_LIFE_DAYS', '180')),
        closed_half_life_days=float(os.getenv('FACT_CLOSED_HALF_LIFE_DAYS', '60')),
        freshness_days=float(os.getenv('FACT_FRESHNESS_DAYS', '30')),
        default_decay_rate=float(os.getenv('FACT_DECAY_RATE', '0.95')),
        corroboration_step=float(os.getenv('FACT_CORROBORATION_STEP', '0.1')),
        corroboration_cap=float(os.getenv('FACT_CORROBORATION_CAP', '0.3')),
        source_reliability=parse_reliability(
            os.getenv('FACT_SOURCE_RELIABILITY', 'user-statement:1.0,graph-search:0.8,relational-search:0.6,vector-search:0.6')))

    search_config = SearchConfig(similarity_limit=int(os.getenv('SEARCH_SIMILARITY_LIMIT', '20')),
                                 similarity_threshold=float(os.getenv('SEARCH_SIMILARITY_THRESHOLD', '0.7')),
                                 related_min_confidence=float(os.getenv('SEARCH_RELATED_MIN_CONFIDENCE', '0.7')),
                                 related_limit=int(os.getenv('SEARCH_RELATED_LIMIT', '20')),
                                 branch_timeout_seconds=float(os.getenv('SEARCH_BRANCH_TIMEOUT_SECONDS', '5.0')),
                                 max_workers=int(os.getenv('SEARCH_MAX_WORKERS', '4')),
                                 provisional_confidence=float(os.getenv('SEARCH_PROVISIONAL_CONFIDENCE', '0.3')),
                                 provisional_subject=os.getenv('SEARCH_PROVISIONAL_SUBJECT', 'user-query'),
                                 recent_fact_days=int(os.getenv('SEARCH_RECENT_FACT_DAYS', '30')),
                                 llm_analysis=os.getenv('SEARCH_LLM_ANALYSIS', 'false').lower() == 'true')

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     graph=graph_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     fact_store=fact_store_config,
                     search=search_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
