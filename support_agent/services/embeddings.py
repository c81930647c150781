"""Embedding backend: text in, fixed-length float vector out."""

from __future__ import annotations

import logging
import time
from typing import Protocol

from openai import OpenAI

from support_agent.config import (
    EMBEDDING_MODEL_NAME,
    EMBEDDING_TIMEOUT_SECONDS,
    LLM_MAX_RETRIES,
    OPENAI_API_KEY,
)
from support_agent.errors import EmbeddingError
from support_agent.services.metrics import metrics

logger = logging.getLogger(__name__)


class EmbeddingBackend(Protocol):
    def embed(self, text: str) -> list[float]: ...


class OpenAIEmbeddingBackend:
    """``EmbeddingBackend`` backed by the OpenAI embeddings endpoint.

    The SDK client is thread-safe, so a single instance serves the
    concurrent knowledge-base build as well as per-turn query embedding.
    """

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float = EMBEDDING_TIMEOUT_SECONDS,
        max_retries: int = LLM_MAX_RETRIES,
        client: OpenAI | None = None,
    ):
        self._model = model or EMBEDDING_MODEL_NAME
        self._client = client or OpenAI(
            api_key=api_key or OPENAI_API_KEY,
            timeout=timeout,
            max_retries=max_retries,
        )

    def embed(self, text: str) -> list[float]:
        t0 = time.perf_counter()
        try:
            response = self._client.embeddings.create(model=self._model, input=text)
            vector = list(response.data[0].embedding)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "openai", "embed",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning("Embedding call to %s failed: %s", self._model, exc)
            raise EmbeddingError(f"Embedding backend failed: {exc}", cause=exc) from exc

        elapsed = (time.perf_counter() - t0) * 1000
        if not vector:
            raise EmbeddingError("Embedding backend returned an empty vector")
        metrics.record_success("openai", "embed", latency_ms=elapsed)
        return vector
