"""Nearest-neighbour FAQ lookup over cached question embeddings."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from support_agent.models import KnowledgeEntry
from support_agent.services.cache import EmbeddingCache

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.8


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Dot product over the product of norms, in [-1, 1].  Zero vectors score 0."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vector dimensions differ: {a.shape} vs {b.shape}")
    denominator = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(a, b) / denominator)


class SemanticMatcher:
    """Return the knowledge entry closest to a query, if it is close enough."""

    def __init__(self, cache: EmbeddingCache, threshold: float = SIMILARITY_THRESHOLD):
        self._cache = cache
        self._threshold = threshold

    @property
    def threshold(self) -> float:
        return self._threshold

    def best_match(self, scenario: str, query: str) -> tuple[KnowledgeEntry | None, float]:
        """Highest-scoring entry and its score, ignoring the threshold.

        Ties keep the entry that comes first in the scenario's FAQ.
        """
        cached = self._cache.entries(scenario)
        if not cached:
            return None, 0.0

        query_vector = self._cache.embed_query(query)
        best_entry: KnowledgeEntry | None = None
        best_score = -np.inf
        for item in cached:
            score = cosine_similarity(query_vector, item.vector)
            if score > best_score:
                best_entry, best_score = item.entry, score
        return best_entry, float(best_score)

    def find_relevant_entry(self, scenario: str, query: str) -> KnowledgeEntry | None:
        """The best entry when its similarity is at least the threshold, else ``None``.

        ``EmbeddingError`` propagates: without vectors no FAQ answer is possible.
        """
        entry, score = self.best_match(scenario, query)
        if entry is None or score < self._threshold:
            logger.debug("No FAQ match in %s (best=%.3f)", scenario, score)
            return None
        logger.debug("FAQ match in %s: %r (%.3f)", scenario, entry.question, score)
        return entry
