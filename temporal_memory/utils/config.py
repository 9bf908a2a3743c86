"""
Configuration management for Bedrock services and memory engine settings.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _get_bool(name: str, default: str) -> bool:
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
    cache_size: int = 1000


@dataclass
class BedrockRerankConfig:
    """Configuration for Amazon Bedrock Rerank service."""
    region: str
    model_id: str
    retry_attempts: int
    retry_delay: float


@dataclass
class SearchConfig:
    """Configuration for lexical and vector retrieval."""
    bm25_k1: float = 1.2
    bm25_b: float = 0.75
    default_limit: int = 10
    candidate_multiplier: int = 2
    min_vector_score: float = 0.0


@dataclass
class RerankWeights:
    """Weights of the reranking signals."""
    rrf: float = 0.4
    cross_encoder: float = 0.3
    recency: float = 0.1
    connectivity: float = 0.15
    importance: float = 0.15
    distance: float = 0.1
    mentions: float = 0.1
    path_diversity: float = 0.1


@dataclass
class RerankerConfig:
    """Configuration for rank fusion, feature scoring and diversity."""
    rrf_k: int = 60
    weights: RerankWeights = field(default_factory=RerankWeights)
    min_score: float = 0.1
    max_results: int = 10
    decay_rate: float = 0.1
    connectivity_cap: int = 10
    importance_cap: int = 5
    diversity_lambda: Optional[float] = None
    cross_encoder: str = 'llm'


@dataclass
class IngestionConfig:
    """Configuration for the ingestion pipeline."""
    default_processing_layer: int = 3
    context_window: int = 4
    dedupe_neighbors: int = 5
    resolve_facts: bool = True
    summarize_on_merge: bool = True
    label_propagation_iterations: int = 10
    community_min_size: int = 2
    community_max_size: int = 50


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    bedrock_rerank: BedrockRerankConfig
    search: SearchConfig
    reranker: RerankerConfig
    ingestion: IngestionConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              cache_size=int(os.getenv('BEDROCK_EMBED_CACHE_SIZE', '1000')))

    # Bedrock Rerank configuration
    bedrock_rerank_config = BedrockRerankConfig(region=os.getenv('BEDROCK_RERANK_AWS_REGION', 'us-west-2'),
                                                model_id=os.getenv('BEDROCK_RERANK_MODEL_ID', 'amazon.rerank-v1:0'),
                                                retry_attempts=int(os.getenv('BEDROCK_RERANK_RETRY_ATTEMPTS', '3')),
                                                retry_delay=float(os.getenv('BEDROCK_RERANK_RETRY_DELAY', '1.0')))

    # Retrieval configuration
    search_config = SearchConfig(bm25_k1=float(os.getenv('SEARCH_BM25_K1', '1.2')),
                                 bm25_b=float(os.getenv('SEARCH_BM25_B', '0.75')),
                                 default_limit=int(os.getenv('SEARCH_DEFAULT_LIMIT', '10')),
                                 candidate_multiplier=int(os.getenv('SEARCH_CANDIDATE_MULTIPLIER', '2')),
                                 min_vector_score=float(os.getenv('SEARCH_MIN_VECTOR_SCORE', '0.0')))

    # Reranker configuration
    weights = RerankWeights(rrf=float(os.getenv('RERANK_WEIGHT_RRF', '0.4')),
                            cross_encoder=float(os.getenv('RERANK_WEIGHT_CROSS_ENCODER', '0.3')),
                            recency=float(os.getenv('RERANK_WEIGHT_RECENCY', '0.1')),
                            connectivity=float(os.getenv('RERANK_WEIGHT_CONNECTIVITY', '0.15')),
                            importance=float(os.getenv('RERANK_WEIGHT_IMPORTANCE', '0.15')),
                            distance=float(os.getenv('RERANK_WEIGHT_DISTANCE', '0.1')),
                            mentions=float(os.getenv('RERANK_WEIGHT_MENTIONS', '0.1')),
                            path_diversity=float(os.getenv('RERANK_WEIGHT_PATH_DIVERSITY', '0.1')))
    diversity_lambda = os.getenv('RERANK_DIVERSITY_LAMBDA')
    reranker_config = RerankerConfig(rrf_k=int(os.getenv('RERANK_RRF_K', '60')),
                                     weights=weights,
                                     min_score=float(os.getenv('RERANK_MIN_SCORE', '0.1')),
                                     max_results=int(os.getenv('RERANK_MAX_RESULTS', '10')),
                                     decay_rate=float(os.getenv('RERANK_DECAY_RATE', '0.1')),
                                     connectivity_cap=int(os.getenv('RERANK_CONNECTIVITY_CAP', '10')),
                                     importance_cap=int(os.getenv('RERANK_IMPORTANCE_CAP', '5')),
                                     diversity_lambda=float(diversity_lambda) if diversity_lambda else None,
                                     cross_encoder=os.getenv('RERANK_CROSS_ENCODER', 'llm'))

    # Ingestion configuration
    ingestion_config = IngestionConfig(default_processing_layer=int(os.getenv('INGESTION_PROCESSING_LAYER', '3')),
                                       context_window=int(os.getenv('INGESTION_CONTEXT_WINDOW', '4')),
                                       dedupe_neighbors=int(os.getenv('INGESTION_DEDUPE_NEIGHBORS', '5')),
                                       resolve_facts=_get_bool('INGESTION_RESOLVE_FACTS', 'true'),
                                       summarize_on_merge=_get_bool('INGESTION_SUMMARIZE_ON_MERGE', 'true'),
                                       label_propagation_iterations=int(os.getenv('INGESTION_LPA_ITERATIONS', '10')),
                                       community_min_size=int(os.getenv('INGESTION_COMMUNITY_MIN_SIZE', '2')),
                                       community_max_size=int(os.getenv('INGESTION_COMMUNITY_MAX_SIZE', '50')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     bedrock_rerank=bedrock_rerank_config,
                     search=search_config,
                     reranker=reranker_config,
                     ingestion=ingestion_config)


# Global configuration instance
config = load_config()
