"""Embedding caches for FAQ matching.

Two caches live here:

• **EmbeddingCache**: one immutable tuple of ``CachedEmbedding`` per
  scenario, built lazily on first use.  The build is single-flight: a
  per-scenario ``threading.Lock`` with a double check means concurrent
  first requests embed the knowledge base once.  Entry questions are
  embedded concurrently on a small thread pool (they are independent) and
  kept in file order.  A failed build stores nothing, so the next request
  retries it.  Entries live for the life of the process.

• **LRUCache**: query-text → vector memo bounded by total ``nbytes``.
  Customers repeat the same questions, so this saves an embedding call
  per repeated FAQ.  Purely ephemeral.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from support_agent.config import EMBEDDING_BUILD_CONCURRENCY, QUERY_CACHE_MAX_BYTES
from support_agent.models import KnowledgeEntry
from support_agent.scenarios import ScenarioRegistry
from support_agent.services.embeddings import EmbeddingBackend

logger = logging.getLogger(__name__)


def as_vector(values: Sequence[float]) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float64)
    vector.setflags(write=False)
    return vector


@dataclass(frozen=True)
class CachedEmbedding:
    entry: KnowledgeEntry
    vector: np.ndarray


class LRUCache:
    """Least-Recently-Used vector cache bounded by total byte size."""

    def __init__(self, max_bytes: int = QUERY_CACHE_MAX_BYTES) -> None:
        self._max_bytes = max_bytes
        self._current_bytes = 0
        self._store: OrderedDict[str, np.ndarray] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> np.ndarray | None:
        """Return the cached vector (promoting it to MRU) or ``None``."""
        with self._lock:
            vector = self._store.get(key)
            if vector is not None:
                self._store.move_to_end(key)
            return vector

    def put(self, key: str, vector: np.ndarray) -> None:
        """Insert or overwrite *key*.  Evicts LRU entries if needed."""
        size = vector.nbytes
        if size > self._max_bytes:
            logger.debug("Query cache: skipping %r (%d > max %d bytes)", key, size, self._max_bytes)
            return

        with self._lock:
            old = self._store.pop(key, None)
            if old is not None:
                self._current_bytes -= old.nbytes

            while self._current_bytes + size > self._max_bytes and self._store:
                _, evicted = self._store.popitem(last=False)
                self._current_bytes -= evicted.nbytes

            self._store[key] = vector
            self._current_bytes += size

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._current_bytes = 0

    @property
    def current_bytes(self) -> int:
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        return len(self._store)


class EmbeddingCache:
    """Per-scenario knowledge-base vectors plus a query-vector memo."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        scenarios: ScenarioRegistry,
        *,
        build_concurrency: int = EMBEDDING_BUILD_CONCURRENCY,
        query_cache: LRUCache | None = None,
    ) -> None:
        self._backend = backend
        self._scenarios = scenarios
        self._build_concurrency = max(1, build_concurrency)
        self._query_cache = query_cache if query_cache is not None else LRUCache()
        self._entries: dict[str, tuple[CachedEmbedding, ...]] = {}
        self._build_locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _build_lock(self, scenario: str) -> threading.Lock:
        with self._guard:
            lock = self._build_locks.get(scenario)
            if lock is None:
                lock = self._build_locks[scenario] = threading.Lock()
            return lock

    def entries(self, scenario: str) -> tuple[CachedEmbedding, ...]:
        """Return the cached entries for *scenario*, building them on first use.

        Raises ``ScenarioNotFound`` for an unknown scenario and
        ``EmbeddingError`` if the backend fails during the build.
        """
        cached = self._entries.get(scenario)
        if cached is not None:
            return cached

        with self._build_lock(scenario):
            cached = self._entries.get(scenario)
            if cached is None:
                cached = self._build(scenario)
                self._entries[scenario] = cached
        return cached

    def _build(self, scenario: str) -> tuple[CachedEmbedding, ...]:
        knowledge = self._scenarios.get(scenario).entries
        if not knowledge:
            logger.warning("Scenario %s has no FAQ entries; nothing to embed", scenario)
            return ()

        logger.info("Embedding %d FAQ entries for scenario %s", len(knowledge), scenario)
        questions = [entry.question for entry in knowledge]
        workers = min(self._build_concurrency, len(questions))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kb-embed") as pool:
            # map() yields in input order and re-raises the first failure
            vectors = list(pool.map(self._backend.embed, questions))

        return tuple(
            CachedEmbedding(entry=entry, vector=as_vector(vector))
            for entry, vector in zip(knowledge, vectors, strict=True)
        )

    def is_built(self, scenario: str) -> bool:
        return scenario in self._entries

    def embed_query(self, text: str) -> np.ndarray:
        """Embed a user query, reusing the vector of an identical earlier query."""
        vector = self._query_cache.get(text)
        if vector is None:
            vector = as_vector(self._backend.embed(text))
            self._query_cache.put(text, vector)
            logger.debug(
                "Query cache: %d vectors, %d bytes",
                self._query_cache.entry_count, self._query_cache.current_bytes,
            )
        return vector

    def clear(self) -> None:
        """Drop every scenario and query vector (next use rebuilds)."""
        with self._guard:
            self._entries.clear()
        self._query_cache.clear()
