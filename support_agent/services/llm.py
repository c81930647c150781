"""Generation backend: role-tagged messages in, text out.

The engine and its helpers only see the ``GenerationBackend`` protocol.
``AnthropicGenerationBackend`` implements it on top of LangChain's
``ChatAnthropic``; one client is built per (temperature, max_tokens) pair
and reused, so repeated turns share the underlying HTTP connection pool.

Every call is bounded by ``LLM_TIMEOUT_SECONDS``; a timeout surfaces as a
``GenerationError`` like any other backend failure.  Retries are off by
default (``LLM_MAX_RETRIES=0``).
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from typing import Literal, Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from typing_extensions import TypedDict

from support_agent.config import (
    ANTHROPIC_API_KEY,
    LLM_MAX_RETRIES,
    LLM_TIMEOUT_SECONDS,
    MODEL_NAME,
)
from support_agent.errors import GenerationError
from support_agent.services.metrics import metrics

logger = logging.getLogger(__name__)


class ChatMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


class GenerationBackend(Protocol):
    def generate(
        self,
        messages: Sequence[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> str: ...


def to_langchain_messages(messages: Sequence[ChatMessage]) -> list[BaseMessage]:
    """Convert role-tagged dicts into LangChain message objects.

    Anthropic expects the first conversational turn to come from the user,
    so assistant turns that precede any user turn are dropped.
    """
    converted: list[BaseMessage] = []
    seen_user = False
    for message in messages:
        role, content = message["role"], message["content"]
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "user":
            seen_user = True
            converted.append(HumanMessage(content=content))
        elif role == "assistant":
            if not seen_user:
                logger.debug("Dropping leading assistant turn from prompt")
                continue
            converted.append(AIMessage(content=content))
        else:
            raise ValueError(f"Unsupported message role: {role!r}")
    return converted


def _response_text(response: BaseMessage) -> str:
    """Flatten an AI message's content (plain string or content blocks)."""
    content = response.content
    if isinstance(content, str):
        return content.strip()
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


class AnthropicGenerationBackend:
    """``GenerationBackend`` backed by Claude through ``langchain_anthropic``."""

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float = LLM_TIMEOUT_SECONDS,
        max_retries: int = LLM_MAX_RETRIES,
    ):
        self._model = model or MODEL_NAME
        self._api_key = api_key or ANTHROPIC_API_KEY
        self._timeout = timeout
        self._max_retries = max_retries
        self._clients: dict[tuple[float, int], ChatAnthropic] = {}
        self._lock = threading.Lock()

    @property
    def model(self) -> str:
        return self._model

    def _client(self, temperature: float, max_tokens: int) -> ChatAnthropic:
        key = (temperature, max_tokens)
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = ChatAnthropic(
                    model=self._model,
                    api_key=self._api_key,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    timeout=self._timeout,
                    max_retries=self._max_retries,
                )
                self._clients[key] = client
            return client

    def generate(
        self,
        messages: Sequence[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> str:
        llm = self._client(temperature, max_tokens)
        prompt = to_langchain_messages(messages)
        t0 = time.perf_counter()
        try:
            response = llm.invoke(prompt)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "generate",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning("Generation call to %s failed: %s", self._model, exc)
            raise GenerationError(f"Generation backend failed: {exc}", cause=exc) from exc

        elapsed = (time.perf_counter() - t0) * 1000
        text = _response_text(response)
        if not text:
            metrics.record_failure(
                "anthropic", "generate", error_type="EmptyResponse", latency_ms=elapsed,
            )
            raise GenerationError("Generation backend returned an empty response")

        metrics.record_success("anthropic", "generate", latency_ms=elapsed)
        logger.debug(
            "%s responded in %.0fms (temperature=%.1f, max_tokens=%d)",
            self._model, elapsed, temperature, max_tokens,
        )
        return text
