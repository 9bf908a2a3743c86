"""
Cross-encoder relevance scoring for the reranker.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Sequence

from ..models.tasks import EvaluateSearchRequest
from ..utils.bedrock_rerank import BedrockRerank, BedrockRerankError
from ..utils.logging_config import get_logger
from .extraction import ExtractionClient, ExtractionError

logger = get_logger(__name__)


class RelevanceScorer(ABC):
    """Scores how relevant each text is to a query, in [0, 1]."""

    @abstractmethod
    async def score(self, query: str, texts: Sequence[str]) -> List[float]:
        ...


class LLMRelevanceScorer(RelevanceScorer):
    """Asks the extraction capability to judge each query/text pair."""

    def __init__(self, extraction: ExtractionClient):
        self.extraction = extraction

    async def score(self, query: str, texts: Sequence[str]) -> List[float]:
        if not texts:
            return []
        responses = await asyncio.gather(
            *(self.extraction.run(EvaluateSearchRequest(query=query, text=text)) for text in texts))
        return [response.relevance for response in responses]


class BedrockRelevanceScorer(RelevanceScorer):
    """Scores all candidates with one call to a Bedrock rerank model."""

    def __init__(self, rerank: BedrockRerank):
        self.rerank = rerank

    async def score(self, query: str, texts: Sequence[str]) -> List[float]:
        """
        Raises:
            ExtractionError: If the rerank model call fails
        """
        if not texts:
            return []
        try:
            results = await asyncio.to_thread(self.rerank.rerank, query, list(texts))
        except BedrockRerankError as e:
            logger.error(f'Bedrock rerank scoring failed: {e}')
            raise ExtractionError(f'Relevance scoring failed: {e}')

        scores = [0.0] * len(texts)
        for result in results:
            if 0 <= result['index'] < len(texts):
                scores[result['index']] = max(0.0, min(1.0, result['relevance_score']))
        return scores
