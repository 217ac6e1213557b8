"""
Configuration management for AWS services and pattern memory settings.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


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


@dataclass
class PatternConfig:
    """Configuration for event-triggered pattern detection."""
    candidate_similarity_threshold: float = 0.30
    max_candidate_patterns: int = 5
    min_evidence_for_oracle: int = 2
    context_lookback_hours: int = 48
    max_context_events: int = 10
    serialize_per_user: bool = True


@dataclass
class EvidenceConfig:
    """Configuration for representative evidence selection."""
    history_limit: int = 200
    relevance_threshold: float = 0.5
    max_global_similar: int = 8
    max_recent: int = 6
    max_oldest: int = 4
    max_from_existing_patterns: int = 5
    pattern_similarity_threshold: float = 0.6
    max_related_patterns: int = 5
    dedupe_threshold: float = 0.95
    max_total: int = 25
    mandatory_recent_count: int = 5
    recency_decay_days: float = 30.0


@dataclass
class ClusteringConfig:
    """Configuration for the legacy batch clustering mode."""
    similarity_threshold: float = 0.75
    min_cluster_size: int = 3
    pattern_match_threshold: float = 0.8
    lookback_days: int = 30


@dataclass
class HybridWeights:
    """Weights of the hybrid score components for one memory type."""
    recency_weight: float
    similarity_weight: float
    bonus_weight: float


@dataclass
class RetrievalConfig:
    """Configuration for hybrid temporal + semantic retrieval."""
    pattern_weights: HybridWeights = field(default_factory=lambda: HybridWeights(0.4, 0.5, 0.1))
    insight_weights: HybridWeights = field(default_factory=lambda: HybridWeights(0.3, 0.6, 0.1))
    summary_weights: HybridWeights = field(default_factory=lambda: HybridWeights(0.2, 0.8, 0.0))
    min_similarity_threshold: float = 0.4
    no_embedding_penalty: float = 0.7
    temporal_allocation: float = 0.6
    semantic_allocation: float = 0.4
    recency_half_life_days: float = 30.0
    max_patterns: int = 30
    max_insights: int = 20
    max_prior_summaries: int = 7


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
    store_backend: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    pattern: PatternConfig
    evidence: EvidenceConfig
    clustering: ClusteringConfig
    retrieval: RetrievalConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.2')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'pattern_memory'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    # Event-triggered pattern detection
    pattern_config = PatternConfig(
        candidate_similarity_threshold=float(os.getenv('PATTERN_CANDIDATE_SIMILARITY_THRESHOLD', '0.30')),
        max_candidate_patterns=int(os.getenv('PATTERN_MAX_CANDIDATES', '5')),
        min_evidence_for_oracle=int(os.getenv('PATTERN_MIN_EVIDENCE_FOR_ORACLE', '2')),
        context_lookback_hours=int(os.getenv('PATTERN_CONTEXT_LOOKBACK_HOURS', '48')),
        max_context_events=int(os.getenv('PATTERN_MAX_CONTEXT_EVENTS', '10')),
        serialize_per_user=_env_bool('PATTERN_SERIALIZE_PER_USER', 'true'))

    evidence_config = EvidenceConfig(history_limit=int(os.getenv('EVIDENCE_HISTORY_LIMIT', '200')),
                                     max_total=int(os.getenv('EVIDENCE_MAX_TOTAL', '25')),
                                     dedupe_threshold=float(os.getenv('EVIDENCE_DEDUPE_THRESHOLD', '0.95')))

    clustering_config = ClusteringConfig(
        similarity_threshold=float(os.getenv('CLUSTERING_SIMILARITY_THRESHOLD', '0.75')),
        min_cluster_size=int(os.getenv('CLUSTERING_MIN_CLUSTER_SIZE', '3')),
        pattern_match_threshold=float(os.getenv('CLUSTERING_PATTERN_MATCH_THRESHOLD', '0.8')),
        lookback_days=int(os.getenv('CLUSTERING_LOOKBACK_DAYS', '30')))

    # Hybrid retrieval
    retrieval_config = RetrievalConfig(
        min_similarity_threshold=float(os.getenv('RETRIEVAL_MIN_SIMILARITY', '0.4')),
        no_embedding_penalty=float(os.getenv('RETRIEVAL_NO_EMBEDDING_PENALTY', '0.7')),
        temporal_allocation=float(os.getenv('RETRIEVAL_TEMPORAL_ALLOCATION', '0.6')),
        semantic_allocation=float(os.getenv('RETRIEVAL_SEMANTIC_ALLOCATION', '0.4')),
        recency_half_life_days=float(os.getenv('RETRIEVAL_RECENCY_HALF_LIFE_DAYS', '30')),
        max_patterns=int(os.getenv('RETRIEVAL_MAX_PATTERNS', '30')),
        max_insights=int(os.getenv('RETRIEVAL_MAX_INSIGHTS', '20')),
        max_prior_summaries=int(os.getenv('RETRIEVAL_MAX_PRIOR_SUMMARIES', '7')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     store_backend=os.getenv('PATTERN_STORE_BACKEND', 'graph'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     pattern=pattern_config,
                     evidence=evidence_config,
                     clustering=clustering_config,
                     retrieval=retrieval_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
