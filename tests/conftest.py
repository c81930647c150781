"""Shared test fixtures for the support agent test suite."""

from __future__ import annotations

import os
import threading
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key-456")
    os.environ.setdefault("SESSION_DB_PATH", "")


# Unit vectors: questions on separate axes so matching is unambiguous.
WARRANTY_Q = "How long is the warranty on a new watch?"
SHIPPING_Q = "How long does shipping take?"
RETURNS_Q = "What is your return policy?"

VECTORS: dict[str, list[float]] = {
    WARRANTY_Q: [1.0, 0.0, 0.0, 0.0],
    SHIPPING_Q: [0.0, 1.0, 0.0, 0.0],
    RETURNS_Q: [0.0, 0.0, 1.0, 0.0],
}
UNRELATED = [0.0, 0.0, 0.0, 1.0]


class FakeEmbeddingBackend:
    """Looks vectors up in a table; unknown text maps to an unrelated axis."""

    def __init__(self, vectors: dict[str, list[float]] | None = None):
        self.vectors = dict(VECTORS if vectors is None else vectors)
        self.calls: list[str] = []
        self.error: Exception | None = None
        self._lock = threading.Lock()

    def embed(self, text: str) -> list[float]:
        with self._lock:
            self.calls.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vectors.get(text, UNRELATED))


class ScriptedGenerationBackend:
    """Returns queued responses in order and records every call."""

    def __init__(self, *responses: str):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def generate(self, messages, temperature, max_tokens):
        self.calls.append(
            {"messages": list(messages), "temperature": temperature, "max_tokens": max_tokens}
        )
        if not self.responses:
            raise AssertionError("ScriptedGenerationBackend ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def watch_scenario():
    from support_agent.models import KnowledgeEntry, Scenario

    entries = tuple(
        KnowledgeEntry(question=q, answer=a, scenario="luxury_watches")
        for q, a in [
            (WARRANTY_Q, "Two to five years of manufacturer warranty, plus one year from us."),
            (SHIPPING_Q, "Two to three business days within the EU."),
            (RETURNS_Q, "Unworn watches can be returned within 30 days."),
        ]
    )
    return Scenario(
        name="luxury_watches",
        title="Luxury Watches",
        persona="You are Aurelia, a courteous watch concierge.",
        entries=entries,
    )


@pytest.fixture
def registry(watch_scenario):
    from support_agent.scenarios import ScenarioRegistry

    return ScenarioRegistry({watch_scenario.name: watch_scenario})


@pytest.fixture
def embedding_backend():
    return FakeEmbeddingBackend()


@pytest.fixture
def embedding_cache(embedding_backend, registry):
    from support_agent.services.cache import EmbeddingCache

    return EmbeddingCache(embedding_backend, registry, build_concurrency=2)


@pytest.fixture
def matcher(embedding_cache):
    from support_agent.matcher import SemanticMatcher

    return SemanticMatcher(embedding_cache)


@pytest.fixture
def store():
    from support_agent.services.session_store import InMemorySessionStore

    return InMemorySessionStore()


@pytest.fixture
def intent_classifier():
    from support_agent.classifiers import IntentClassifier

    return MagicMock(spec=IntentClassifier)


@pytest.fixture
def sentiment_classifier():
    from support_agent.classifiers import SentimentClassifier
    from support_agent.models import Sentiment

    mock = MagicMock(spec=SentimentClassifier)
    mock.classify.return_value = Sentiment.NEUTRAL
    return mock


@pytest.fixture
def generator():
    from support_agent.generator import ResponseGenerator

    mock = MagicMock(spec=ResponseGenerator)
    mock.summarize.return_value = "Customer reports a faulty watch."
    mock.general_response.return_value = "I can help with orders, shipping and returns."
    mock.grounded_answer.return_value = "Your watch is covered for up to five years."
    return mock


@pytest.fixture
def handoffs():
    """Collects every escalation ticket the engine hands off."""
    return []


@pytest.fixture
def engine(store, registry, matcher, intent_classifier, sentiment_classifier, generator, handoffs):
    from support_agent.engine import DialogueEngine

    return DialogueEngine(
        store=store,
        scenarios=registry,
        matcher=matcher,
        intent_classifier=intent_classifier,
        sentiment_classifier=sentiment_classifier,
        generator=generator,
        handoff=handoffs.append,
    )


@pytest.fixture
def session_id(engine):
    return engine.start_session("luxury_watches")
