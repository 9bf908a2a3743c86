"""
Embedding capability and the Bedrock-backed implementation.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from numbers import Real
from typing import Dict, List, Optional, Sequence, Union

from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class EmbeddingError(Exception):
    """Custom exception for embedding errors."""
    pass


class EmbeddingCapability(ABC):
    """An external service turning texts into fixed-length vectors."""

    @abstractmethod
    async def generate_embeddings(self, texts: Union[str, Sequence[str]]) -> List[List[float]]:
        """
        Embed a batch of texts.

        Args:
            texts: One text or a batch of texts

        Returns:
            One vector per input text, in input order
        """
        ...


async def embed_texts(embedder: EmbeddingCapability, texts: Sequence[str]) -> List[List[float]]:
    """
    Embed texts and check the shape of the answer.

    Args:
        embedder: Embedding capability
        texts: Texts to embed

    Returns:
        One vector per text

    Raises:
        EmbeddingError: If the call fails or returns the wrong number or kind of vectors
    """
    texts = list(texts)
    if not texts:
        return []

    try:
        vectors = await embedder.generate_embeddings(texts)
    except EmbeddingError:
        raise
    except Exception as e:
        logger.error(f'Embedding capability failed: {e}')
        raise EmbeddingError(f'Embedding generation failed: {e}')

    if not isinstance(vectors, (list, tuple)) or len(vectors) != len(texts):
        raise EmbeddingError(f'Expected {len(texts)} embeddings, got {len(vectors) if isinstance(vectors, (list, tuple)) else vectors!r}')
    for vector in vectors:
        if not vector or not all(isinstance(value, Real) for value in vector):
            raise EmbeddingError('Embedding capability returned a non-numeric or empty vector')
    return [[float(value) for value in vector] for vector in vectors]


class EmbeddingCache:
    """Least-recently-used cache of text embeddings with hit/miss counters."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._entries: 'OrderedDict[str, List[float]]' = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, text: str) -> Optional[List[float]]:
        vector = self._entries.get(text)
        if vector is None:
            self.misses += 1
            return None
        self._entries.move_to_end(text)
        self.hits += 1
        return vector

    def put(self, text: str, vector: List[float]) -> None:
        if self.max_size <= 0:
            return
        self._entries[text] = vector
        self._entries.move_to_end(text)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> Dict[str, float]:
        total = self.hits + self.misses
        return {
            'size': len(self._entries),
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': self.hits / total if total else 0.0
        }


class BedrockEmbeddingService(EmbeddingCapability):
    """Embedding capability backed by Amazon Bedrock, with an in-process cache."""

    def __init__(self, embed: BedrockEmbed, cache_size: int = 1000):
        """
        Initialize the embedding service.

        Args:
            embed: Bedrock embedding client
            cache_size: Number of embeddings kept in the LRU cache (0 disables it)
        """
        self.embed = embed
        self.cache = EmbeddingCache(cache_size)
        logger.info(f'Initialized BedrockEmbeddingService (cache size {cache_size})')

    async def generate_embeddings(self, texts: Union[str, Sequence[str]]) -> List[List[float]]:
        """
        Embed texts concurrently, serving repeats from the cache.

        Raises:
            EmbeddingError: If any Bedrock call fails
        """
        if isinstance(texts, str):
            texts = [texts]

        results: List[Optional[List[float]]] = [self.cache.get(text) for text in texts]
        pending = sorted({text for text, vector in zip(texts, results) if vector is None})

        if pending:
            logger.debug(f'Embedding {len(pending)} texts ({len(texts) - len(pending)} cached)')
            try:
                vectors = await asyncio.gather(*(asyncio.to_thread(self.embed.embed_document, text) for text in pending))
            except BedrockEmbedError as e:
                logger.error(f'Bedrock embedding failed: {e}')
                raise EmbeddingError(f'Embedding generation failed: {e}')

            fresh = dict(zip(pending, vectors))
            for text, vector in fresh.items():
                self.cache.put(text, vector)
            results = [vector if vector is not None else fresh[text] for text, vector in zip(texts, results)]

        return results

    def clear_cache(self) -> None:
        self.cache.clear()
