"""
Amazon Bedrock Rerank client used as a cross-encoder relevance model.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockRerankConfig
from .logging_config import get_logger

logger = get_logger(__name__)

SUPPORTED_REGIONS = ('us-west-2', 'ap-northeast-1', 'ca-central-1', 'eu-central-1')


class BedrockRerankError(Exception):
    """Custom exception for Bedrock Rerank errors."""
    pass


class BedrockRerank:
    """Amazon Bedrock Rerank client with error handling and retry logic."""

    def __init__(self, config: BedrockRerankConfig, client: Optional[Any] = None):
        """
        Initialize Bedrock Rerank client.

        Args:
            config: BedrockRerankConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (created from config if None)

        Raises:
            BedrockRerankError: If the region has no rerank models
        """
        if config.region not in SUPPORTED_REGIONS:
            raise BedrockRerankError(f'Bedrock rerank is not available in region {config.region}')

        self.config = config
        self.model_id = config.model_id
        self.bedrock_runtime = client or boto3.client('bedrock-runtime', region_name=config.region)
        logger.info(f'Initialized Bedrock Rerank client in region: {config.region}, with model: {config.model_id}')

    def rerank(self, query: str, documents: List[str], top_k: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Score documents against a query.

        Args:
            query: Search query string
            documents: Document texts
            top_k: Number of top results to return (default: all documents)

        Returns:
            List of {'index', 'relevance_score'} dicts ordered by relevance

        Raises:
            BedrockRerankError: If reranking fails
        """
        if not query or not query.strip():
            logger.warning('Empty query provided for reranking')
            return []

        if not documents:
            logger.warning('No documents provided for reranking')
            return []

        top_k = len(documents) if top_k is None else min(top_k, len(documents))
        data = {'query': query.strip(), 'documents': list(documents), 'top_n': top_k}
        if 'cohere' in self.model_id.lower():
            data['api_version'] = 2
        body = json.dumps(data)

        logger.debug(f'Reranking {len(documents)} documents for query: {query[:50]}...')

        for attempt in range(self.config.retry_attempts):
            try:
                response = self.bedrock_runtime.invoke_model(modelId=self.model_id,
                                                             accept='application/json',
                                                             contentType='application/json',
                                                             body=body)
                response_body = json.loads(response.get('body').read())

                if 'results' not in response_body:
                    raise BedrockRerankError('Invalid response format from Bedrock rerank')

                results = [{
                    'index': int(res['index']),
                    'relevance_score': float(res.get('relevance_score', 0.0))
                } for res in response_body['results']]
                logger.debug(f'Reranking returned {len(results)} results')
                return results

            except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
                logger.warning(f'Bedrock Rerank attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockRerankError(f'Bedrock Rerank failed after {self.config.retry_attempts} attempts: {e}')
            except BedrockRerankError:
                raise
            except Exception as e:
                logger.error(f'Unexpected error during reranking: {e}')
                raise BedrockRerankError(f'Unexpected reranking error: {e}')

        raise BedrockRerankError(f'Bedrock Rerank failed after {self.config.retry_attempts} attempts')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock Rerank service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            results = self.rerank('test query', ['Test document 1', 'Test document 2'], top_k=1)
            return len(results) > 0

        except Exception as e:
            logger.error(f'Bedrock Rerank health check failed: {e}')
            return False
