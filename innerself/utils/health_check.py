"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig
from .document_store import DocumentStore
from .logging_config import get_logger
from .memory_store import InMemoryDocumentStore
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config)

        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(app_config: Optional[AppConfig] = None,
                      llm: Optional[BedrockLLM] = None,
                      embed: Optional[BedrockEmbed] = None,
                      store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Clients that are not passed in are built from configuration.

    Returns:
        Dictionary with health status of each component
    """
    if app_config is None:
        from .config import config as default_config
        app_config = default_config

    health_status = {}

    # Check Bedrock LLM
    try:
        llm = llm or BedrockLLM(app_config.bedrock_llm)
        health_status['bedrock_llm'] = {
            'healthy': llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': app_config.bedrock_llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    # Check Bedrock Embed
    try:
        embed = embed or BedrockEmbed(app_config.bedrock_embed)
        health_status['bedrock_embed'] = {
            'healthy': embed.health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': app_config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    # Check document store
    backend = app_config.pipeline.store_backend
    try:
        if store is None:
            store = InMemoryDocumentStore() if backend == 'memory' else OpenSearchClient(app_config.opensearch)
        health_status['document_store'] = {
            'healthy': store.health_check(),
            'service': 'Amazon OpenSearch' if backend == 'opensearch' else 'In-memory store',
            'endpoint': app_config.opensearch.endpoint if backend == 'opensearch' else None
        }
    except Exception as e:
        health_status['document_store'] = {'healthy': False, 'service': backend, 'error': str(e)}

    return health_status


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    if app_config is None:
        from .config import config as default_config
        app_config = default_config

    return {
        'service_name': 'Inner Self',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'store_backend': app_config.pipeline.store_backend,
            'extraction_timeout': app_config.pipeline.extraction_timeout,
            'aws_region': app_config.bedrock_llm.region
        },
        'health_status': get_health_status(app_config)
    }
