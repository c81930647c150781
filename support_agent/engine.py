"""Dialogue engine: the conversation state machine and intent router.

Architecture:
  One turn is one invocation of a LangGraph ``StateGraph``, compiled once
  per engine.  The entry edge branches on the session's dialogue mode:

    IDLE                        → classify → (intent, sentiment) lookup → action
    AWAITING_ORDER_NUMBER       → collect_order_number
    AWAITING_ISSUE_DESCRIPTION  → collect_issue_description (→ escalation)
    unrecognized mode           → start_over

  Actions after ``classify`` are picked by ``decide_route`` from
  ``ROUTING_TABLE``, keyed by the (intent, sentiment) pair with ``None``
  as the wildcard sentiment.  There is no case fallthrough.

  While a slot-filling sub-flow is active the raw utterance fills the
  pending slot; classifiers are not called.

Persistence and recovery (``handle_message``):
  The user message is appended before the graph runs, so the log always
  reflects what was said.  Mode, context and the agent reply are written
  only after the graph finishes.  Any failure once the session is found
  collapses to ``APOLOGY_REPLY``; nothing is rolled back.

Concurrency:
  Turns for the same session are serialised by a per-session lock,
  dropped again once no turn holds or waits on it; different sessions run
  in parallel.  The only cross-session state is the
  embedding cache, which guards its own build.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from support_agent.classifiers import IntentClassifier, SentimentClassifier
from support_agent.config import CLASSIFIER_MODEL_NAME, MODEL_NAME
from support_agent.errors import EmbeddingError, InvalidSession, ScenarioNotFound
from support_agent.generator import ResponseGenerator
from support_agent.matcher import SemanticMatcher
from support_agent.models import (
    DialogueMode,
    Escalation,
    Intent,
    Message,
    OrderTriage,
    Scenario,
    Sender,
    Sentiment,
    Session,
    context_as_dict,
)
from support_agent.scenarios import ScenarioRegistry
from support_agent.services.cache import EmbeddingCache
from support_agent.services.embeddings import OpenAIEmbeddingBackend
from support_agent.services.llm import AnthropicGenerationBackend
from support_agent.services.metrics import metrics
from support_agent.services.session_store import SessionStore, open_session_store

logger = logging.getLogger(__name__)


# ── Fixed replies ────────────────────────────────────────────────────

GREETING_REPLY = "Hello! How can I help you today?"
ESCALATION_REPLY = (
    "I'm sorry, I'm not able to resolve this issue. I am escalating your request "
    "to a human support agent. They will have a summary of our conversation and "
    "will get in touch with you shortly."
)
ORDER_NUMBER_PROMPT = (
    "I'm sorry to hear that. So I can pass this on to the right person, "
    "could you please share your order number?"
)
ISSUE_DESCRIPTION_PROMPT = (
    "Thank you. Could you briefly describe the problem you're having with this order?"
)
START_OVER_REPLY = (
    "I'm sorry, I lost track of our conversation. Let's start over. "
    "How can I help you today?"
)
APOLOGY_REPLY = "I'm sorry, an unexpected error occurred. Please try again in a moment."


# ── Routing ──────────────────────────────────────────────────────────

ROUTING_TABLE: dict[tuple[Intent, Sentiment | None], str] = {
    (Intent.GREETING, None): "greet",
    (Intent.REQUEST_FOR_HUMAN, None): "escalate",
    (Intent.SUMMARIZE_CONVERSATION, None): "summarize",
    (Intent.COMPLAINT, Sentiment.NEGATIVE): "request_order_number",
    (Intent.COMPLAINT, None): "general_response",
    (Intent.FAQ_QUESTION, None): "answer_faq",
    (Intent.CHITCHAT, None): "general_response",
    (Intent.UNKNOWN, None): "general_response",
}
DEFAULT_ROUTE = "general_response"

IDLE_ACTIONS = (
    "greet",
    "escalate",
    "summarize",
    "request_order_number",
    "answer_faq",
    "general_response",
)


def decide_route(intent: Intent, sentiment: Sentiment) -> str:
    """Pick the action for an IDLE turn from the (intent, sentiment) pair."""
    route = ROUTING_TABLE.get((intent, sentiment))
    if route is None:
        route = ROUTING_TABLE.get((intent, None), DEFAULT_ROUTE)
    return route


class TurnState(TypedDict):
    """State flowing through the graph for one turn.

    ``history`` is the full message log, ending with the utterance being
    handled.  ``mode``/``context``/``reply`` are the turn's outputs.
    """

    session: Session
    scenario: Scenario
    utterance: str
    history: list[Message]
    intent: Intent
    sentiment: Sentiment
    reply: str
    mode: DialogueMode
    context: OrderTriage | None


def route_by_mode(state: TurnState) -> str:
    """Entry edge: dispatch on the stored mode, self-healing anything invalid."""
    session = state["session"]
    try:
        mode = DialogueMode(session.mode)
    except ValueError:
        logger.warning("[%s] Unrecognized dialogue mode %r", session.id, session.mode)
        return "start_over"

    if mode is DialogueMode.IDLE:
        return "classify"
    if mode is DialogueMode.AWAITING_ORDER_NUMBER:
        return "collect_order_number"
    return "collect_issue_description"


def route_by_decision(state: TurnState) -> str:
    return decide_route(state["intent"], state["sentiment"])


@dataclass
class _SessionLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


def _log_handoff(ticket: Escalation) -> None:
    logger.info(
        "[%s] Hand-off summary for human agent: %s (details=%s)",
        ticket.session_id, ticket.summary, ticket.context,
    )


# ── Engine ───────────────────────────────────────────────────────────


class DialogueEngine:
    """Computes the next reply and session state for each inbound message."""

    def __init__(
        self,
        store: SessionStore,
        scenarios: ScenarioRegistry,
        matcher: SemanticMatcher,
        intent_classifier: IntentClassifier,
        sentiment_classifier: SentimentClassifier,
        generator: ResponseGenerator,
        *,
        handoff: Callable[[Escalation], None] | None = None,
    ):
        self._store = store
        self._scenarios = scenarios
        self._matcher = matcher
        self._intent = intent_classifier
        self._sentiment = sentiment_classifier
        self._generator = generator
        self._handoff = handoff or _log_handoff
        self._session_locks: dict[str, _SessionLock] = {}
        self._locks_guard = threading.Lock()
        self._graph = self._build_graph()

    # ── Public API ───────────────────────────────────────────────────

    def start_session(self, scenario: str) -> str:
        """Create a session for *scenario*.  Raises ``ScenarioNotFound``."""
        if scenario not in self._scenarios:
            raise ScenarioNotFound(scenario)
        return self._store.create(scenario)

    def scenario_names(self) -> list[str]:
        return self._scenarios.names()

    def session(self, session_id: str) -> Session:
        return self._store.get(session_id)

    def messages(self, session_id: str) -> list[Message]:
        return self._store.list_messages(session_id)

    def handle_message(self, session_id: str, utterance: str) -> str:
        """Process one user message and return the agent's reply.

        Raises ``InvalidSession`` for an unknown session id, before anything
        is written.  Every other failure, a store outage included, is logged
        and answered with ``APOLOGY_REPLY``.
        """
        with self._session_lock(session_id):
            try:
                return self._run_turn(session_id, utterance)
            except InvalidSession:
                raise
            except Exception:
                logger.exception("[%s] Error processing user message", session_id)
                metrics.record_event("FallbackApology")
                self._record_apology(session_id)
                return APOLOGY_REPLY

    # ── Turn execution ───────────────────────────────────────────────

    @contextmanager
    def _session_lock(self, session_id: str):
        """Hold the session's lock for one turn.

        Locks are reference-counted and dropped once no turn holds or waits
        on them, so the table only has entries for sessions in flight.
        """
        with self._locks_guard:
            entry = self._session_locks.get(session_id)
            if entry is None:
                entry = self._session_locks[session_id] = _SessionLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._session_locks[session_id]

    def _run_turn(self, session_id: str, utterance: str) -> str:
        session = self._store.get(session_id)
        self._store.append_message(session_id, Sender.USER, utterance)
        history = self._store.list_messages(session_id)
        scenario = self._scenarios.get(session.scenario)

        result = self._graph.invoke(
            {
                "session": session,
                "scenario": scenario,
                "utterance": utterance,
                "history": history,
                "intent": Intent.UNKNOWN,
                "sentiment": Sentiment.NEUTRAL,
                "reply": "",
                "mode": DialogueMode.IDLE,
                "context": None,
            }
        )

        mode = DialogueMode(result["mode"])
        self._store.update(session_id, mode.value, result["context"])
        reply = result["reply"]
        self._store.append_message(session_id, Sender.AGENT, reply)
        logger.info(
            "[%s] Turn complete: %s → %s", session_id, session.mode, mode.value,
        )
        return reply

    def _record_apology(self, session_id: str) -> None:
        try:
            self._store.append_message(session_id, Sender.AGENT, APOLOGY_REPLY)
        except Exception:
            logger.exception("[%s] Could not persist apology reply", session_id)

    # ── Graph ────────────────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(TurnState)

        graph.add_node("classify", self._classify)
        graph.add_node("greet", self._greet)
        graph.add_node("escalate", self._escalate)
        graph.add_node("summarize", self._summarize)
        graph.add_node("request_order_number", self._request_order_number)
        graph.add_node("answer_faq", self._answer_faq)
        graph.add_node("general_response", self._general_response)
        graph.add_node("collect_order_number", self._collect_order_number)
        graph.add_node("collect_issue_description", self._collect_issue_description)
        graph.add_node("start_over", self._start_over)

        graph.add_conditional_edges(
            START,
            route_by_mode,
            {
                "classify": "classify",
                "collect_order_number": "collect_order_number",
                "collect_issue_description": "collect_issue_description",
                "start_over": "start_over",
            },
        )
        graph.add_conditional_edges(
            "classify", route_by_decision, {action: action for action in IDLE_ACTIONS},
        )
        for action in IDLE_ACTIONS + (
            "collect_order_number",
            "collect_issue_description",
            "start_over",
        ):
            graph.add_edge(action, END)

        return graph.compile()

    # ── Nodes ────────────────────────────────────────────────────────

    def _classify(self, state: TurnState) -> dict:
        prior = state["history"][:-1]
        utterance = state["utterance"]
        intent = self._intent.classify(utterance, prior)
        sentiment = self._sentiment.classify(utterance, prior)
        logger.info(
            "[%s] Message classified: intent=%s sentiment=%s",
            state["session"].id, intent.value, sentiment.value,
        )
        return {"intent": intent, "sentiment": sentiment}

    def _greet(self, state: TurnState) -> dict:
        return {"reply": GREETING_REPLY, "mode": DialogueMode.IDLE, "context": None}

    def _escalate(self, state: TurnState) -> dict:
        return self._hand_off(state, state["session"].context)

    def _summarize(self, state: TurnState) -> dict:
        summary = self._generator.summarize(state["history"][:-1], state["session"].context)
        return {"reply": summary, "mode": DialogueMode.IDLE, "context": None}

    def _request_order_number(self, state: TurnState) -> dict:
        logger.info("[%s] Negative complaint, starting order triage", state["session"].id)
        return {
            "reply": ORDER_NUMBER_PROMPT,
            "mode": DialogueMode.AWAITING_ORDER_NUMBER,
            "context": None,
        }

    def _answer_faq(self, state: TurnState) -> dict:
        scenario = state["scenario"]
        utterance = state["utterance"]
        try:
            entry = self._matcher.find_relevant_entry(scenario.name, utterance)
        except EmbeddingError as exc:
            logger.warning(
                "[%s] FAQ matching unavailable, answering free-form: %s",
                state["session"].id, exc,
            )
            entry = None

        if entry is None:
            metrics.record_event("FaqMiss", scenario=scenario.name)
            return self._general_response(state)

        metrics.record_event("FaqMatch", scenario=scenario.name)
        reply = self._generator.grounded_answer(utterance, entry, scenario.persona)
        return {"reply": reply, "mode": DialogueMode.IDLE, "context": None}

    def _general_response(self, state: TurnState) -> dict:
        reply = self._generator.general_response(
            state["utterance"], state["history"][:-1], state["scenario"].persona,
        )
        return {"reply": reply, "mode": DialogueMode.IDLE, "context": None}

    def _collect_order_number(self, state: TurnState) -> dict:
        return {
            "reply": ISSUE_DESCRIPTION_PROMPT,
            "mode": DialogueMode.AWAITING_ISSUE_DESCRIPTION,
            "context": OrderTriage(order_number=state["utterance"]),
        }

    def _collect_issue_description(self, state: TurnState) -> dict:
        # Escalate with whatever slots exist, even if the order number was lost
        triage = (state["session"].context or OrderTriage()).model_copy(
            update={"issue_description": state["utterance"]},
        )
        return self._hand_off(state, triage)

    def _start_over(self, state: TurnState) -> dict:
        metrics.record_event("ModeReset")
        return {"reply": START_OVER_REPLY, "mode": DialogueMode.IDLE, "context": None}

    def _hand_off(self, state: TurnState, context: OrderTriage | None) -> dict:
        session = state["session"]
        summary = self._generator.summarize(state["history"], context)
        ticket = Escalation(
            session_id=session.id,
            scenario=session.scenario,
            summary=summary,
            context=context_as_dict(context),
            created_at=datetime.now(UTC),
        )
        logger.warning("[%s] Escalation triggered", session.id)
        self._handoff(ticket)
        metrics.record_event("Escalation", scenario=session.scenario)
        return {"reply": ESCALATION_REPLY, "mode": DialogueMode.IDLE, "context": None}


# ── Factory ──────────────────────────────────────────────────────────


def create_dialogue_engine(
    store: SessionStore | None = None,
    scenarios: ScenarioRegistry | None = None,
) -> DialogueEngine:
    """Wire the production engine: Anthropic generation, OpenAI embeddings,
    the configured session store and the packaged scenario files.
    """
    scenarios = scenarios or ScenarioRegistry.from_directory()
    store = store or open_session_store()

    classifier_backend = AnthropicGenerationBackend(CLASSIFIER_MODEL_NAME)
    response_backend = AnthropicGenerationBackend(MODEL_NAME)
    cache = EmbeddingCache(OpenAIEmbeddingBackend(), scenarios)

    engine = DialogueEngine(
        store=store,
        scenarios=scenarios,
        matcher=SemanticMatcher(cache),
        intent_classifier=IntentClassifier(classifier_backend),
        sentiment_classifier=SentimentClassifier(classifier_backend),
        generator=ResponseGenerator(response_backend),
    )
    logger.debug(
        "Dialogue engine ready — scenarios: %s, classifier: %s, responses: %s",
        ", ".join(scenarios.names()), classifier_backend.model, response_backend.model,
    )
    return engine
