"""
BM25 inverted index over node text.
"""

import math
import re
from collections import Counter, defaultdict
from typing import Dict, List, Tuple

from ..utils.logging_config import get_logger

logger = get_logger(__name__)

_PUNCTUATION = re.compile(r'[^\w\s]')


def tokenize(text: str) -> List[str]:
    """Lower-case, replace punctuation with spaces, split on whitespace."""
    return [token for token in _PUNCTUATION.sub(' ', (text or '').lower()).split() if token]


class LexicalIndex:
    """In-memory BM25 index.

    Keeps a posting list per term (term -> document id -> term frequency), the
    token length of every document and the running total used for the average
    document length.
    """

    def __init__(self, k1: float = 1.2, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self._postings: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._doc_lengths: Dict[str, int] = {}
        self._total_length = 0

    def __len__(self) -> int:
        return len(self._doc_lengths)

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._doc_lengths

    @property
    def average_length(self) -> float:
        return self._total_length / len(self._doc_lengths) if self._doc_lengths else 0.0

    def add_document(self, doc_id: str, text: str) -> None:
        """Index text under doc_id, replacing whatever was indexed for it before."""
        self.remove_document(doc_id)

        tokens = tokenize(text)
        for term, count in Counter(tokens).items():
            self._postings[term][doc_id] = count
        self._doc_lengths[doc_id] = len(tokens)
        self._total_length += len(tokens)

    def remove_document(self, doc_id: str) -> bool:
        if doc_id not in self._doc_lengths:
            return False

        for term in list(self._postings):
            postings = self._postings[term]
            if postings.pop(doc_id, None) is not None and not postings:
                del self._postings[term]
        self._total_length -= self._doc_lengths.pop(doc_id)
        return True

    def idf(self, term: str) -> float:
        total = len(self._doc_lengths)
        df = len(self._postings.get(term, {}))
        return math.log((total - df + 0.5) / (df + 0.5) + 1)

    def search(self, query: str, limit: int = 10) -> List[Tuple[str, float]]:
        """
        Score documents against a query with BM25.

        Args:
            query: Free-text query
            limit: Maximum number of results

        Returns:
            (doc_id, score) pairs sorted by descending score
        """
        terms = tokenize(query)
        if not terms or not self._doc_lengths:
            return []

        avg_length = self.average_length
        scores: Dict[str, float] = defaultdict(float)
        for term in terms:
            postings = self._postings.get(term)
            if not postings:
                continue
            idf = self.idf(term)
            for doc_id, tf in postings.items():
                length_ratio = self._doc_lengths[doc_id] / avg_length if avg_length else 0.0
                norm = tf + self.k1 * (1 - self.b + self.b * length_ratio)
                scores[doc_id] += idf * (tf * (self.k1 + 1)) / norm

        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        logger.debug(f'BM25 matched {len(ranked)} documents for query: {query[:50]}')
        return ranked[:limit]

    def clear(self) -> None:
        self._postings.clear()
        self._doc_lengths.clear()
        self._total_length = 0
