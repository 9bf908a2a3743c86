"""
Health check utilities for the Bedrock collaborators of the memory engine.
"""

from typing import Any, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .bedrock_rerank import BedrockRerank
from .config import AppConfig
from .config import config as default_config
from .logging_config import get_logger

logger = get_logger(__name__)

SERVICE_NAME = 'temporal-graph-memory'
VERSION = '1.0.0'


def check_health(config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(config)

        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            unhealthy = ', '.join(name for name, status in health_status.items() if not status.get('healthy', False))
            logger.warning(f'Unhealthy components: {unhealthy}')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def _probe(service: str, model_id: str, factory) -> Dict[str, Any]:
    try:
        client = factory()
        return {'healthy': client.health_check(), 'service': service, 'model': model_id}
    except Exception as e:
        logger.warning(f'{service} health probe failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        config: AppConfig instance, uses default if None

    Returns:
        Dictionary with health status of each component
    """
    config = config or default_config

    health_status = {
        'bedrock_llm': _probe('Amazon Bedrock LLM', config.bedrock_llm.model_id, lambda: BedrockLLM(config.bedrock_llm)),
        'bedrock_embed': _probe('Amazon Bedrock Embed', config.bedrock_embed.model_id,
                                lambda: BedrockEmbed(config.bedrock_embed)),
    }

    # Only probed when it backs the cross encoder
    if config.reranker.cross_encoder == 'bedrock':
        health_status['bedrock_rerank'] = _probe('Amazon Bedrock Rerank', config.bedrock_rerank.model_id,
                                                 lambda: BedrockRerank(config.bedrock_rerank))

    return health_status


def get_system_info(config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    config = config or default_config
    return {
        'service_name': SERVICE_NAME,
        'version': VERSION,
        'configuration': {
            'environment': config.environment,
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'embedding_dimension': config.bedrock_embed.dimension,
            'cross_encoder': config.reranker.cross_encoder,
            'default_processing_layer': config.ingestion.default_processing_layer,
            'aws_region': config.bedrock_llm.region
        },
        'health_status': get_health_status(config)
    }
