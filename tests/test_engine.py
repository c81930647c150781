"""Tests for the dialogue engine: state machine, routing and persistence.

Covers:
  - IDLE routing via the (intent, sentiment) table
  - Order-triage slot filling and escalation
  - Self-healing of unrecognized modes
  - Failure recovery (apology reply, user message kept)
  - Per-session serialisation
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from support_agent.engine import (
    APOLOGY_REPLY,
    ESCALATION_REPLY,
    GREETING_REPLY,
    ISSUE_DESCRIPTION_PROMPT,
    ORDER_NUMBER_PROMPT,
    START_OVER_REPLY,
    DialogueEngine,
    decide_route,
    route_by_mode,
)
from support_agent.errors import EmbeddingError, GenerationError, InvalidSession, ScenarioNotFound
from support_agent.models import (
    DialogueMode,
    Intent,
    OrderTriage,
    Sender,
    Sentiment,
    context_as_dict,
)
from support_agent.services.session_store import SqliteSessionStore
from tests.conftest import SHIPPING_Q, WARRANTY_Q


def _mode(engine, session_id) -> str:
    return engine.session(session_id).mode


# ── decide_route ─────────────────────────────────────────────────────


class TestDecideRoute:
    @pytest.mark.parametrize("sentiment", list(Sentiment))
    def test_greeting_always_greets(self, sentiment):
        assert decide_route(Intent.GREETING, sentiment) == "greet"

    def test_negative_complaint_starts_triage(self):
        assert decide_route(Intent.COMPLAINT, Sentiment.NEGATIVE) == "request_order_number"

    @pytest.mark.parametrize("sentiment", [Sentiment.NEUTRAL, Sentiment.POSITIVE])
    def test_non_negative_complaint_gets_general_response(self, sentiment):
        assert decide_route(Intent.COMPLAINT, sentiment) == "general_response"

    def test_negative_faq_question_is_still_an_faq(self):
        """Sentiment only matters for complaints."""
        assert decide_route(Intent.FAQ_QUESTION, Sentiment.NEGATIVE) == "answer_faq"

    def test_request_for_human_escalates(self):
        assert decide_route(Intent.REQUEST_FOR_HUMAN, Sentiment.NEUTRAL) == "escalate"

    def test_summarize_request(self):
        assert decide_route(Intent.SUMMARIZE_CONVERSATION, Sentiment.NEUTRAL) == "summarize"

    @pytest.mark.parametrize("intent", [Intent.CHITCHAT, Intent.UNKNOWN, "SOMETHING_NEW"])
    def test_everything_else_gets_general_response(self, intent):
        assert decide_route(intent, Sentiment.NEUTRAL) == "general_response"


# ── route_by_mode ────────────────────────────────────────────────────


class TestRouteByMode:
    def _state(self, store, session_id):
        return {"session": store.get(session_id)}

    def test_idle_classifies(self, store):
        sid = store.create("luxury_watches")
        assert route_by_mode(self._state(store, sid)) == "classify"

    def test_awaiting_order_number(self, store):
        sid = store.create("luxury_watches")
        store.update(sid, DialogueMode.AWAITING_ORDER_NUMBER.value, None)
        assert route_by_mode(self._state(store, sid)) == "collect_order_number"

    def test_awaiting_issue_description_with_order(self, store):
        sid = store.create("luxury_watches")
        store.update(
            sid, DialogueMode.AWAITING_ISSUE_DESCRIPTION.value, OrderTriage(order_number="A1"),
        )
        assert route_by_mode(self._state(store, sid)) == "collect_issue_description"

    def test_awaiting_issue_description_without_order(self, store):
        sid = store.create("luxury_watches")
        store.update(sid, DialogueMode.AWAITING_ISSUE_DESCRIPTION.value, None)
        assert route_by_mode(self._state(store, sid)) == "collect_issue_description"

    def test_unknown_mode_starts_over(self, store):
        sid = store.create("luxury_watches")
        store.update(sid, "AWAITING_SHOE_SIZE", None)
        assert route_by_mode(self._state(store, sid)) == "start_over"


# ── IDLE routing ─────────────────────────────────────────────────────


class TestIdleRouting:
    def test_greeting_returns_fixed_greeting(self, engine, session_id, intent_classifier, generator):
        intent_classifier.classify.return_value = Intent.GREETING

        reply = engine.handle_message(session_id, "hi there")

        assert reply == GREETING_REPLY
        assert _mode(engine, session_id) == DialogueMode.IDLE.value
        generator.general_response.assert_not_called()

    def test_request_for_human_escalates_and_stays_idle(
        self, engine, session_id, intent_classifier, generator, handoffs,
    ):
        intent_classifier.classify.return_value = Intent.REQUEST_FOR_HUMAN

        reply = engine.handle_message(session_id, "I want to talk to a human")

        assert reply == ESCALATION_REPLY
        session = engine.session(session_id)
        assert session.mode == DialogueMode.IDLE.value
        assert context_as_dict(session.context) == {}
        generator.summarize.assert_called_once()
        assert len(handoffs) == 1
        assert handoffs[0].session_id == session_id
        assert handoffs[0].scenario == "luxury_watches"
        assert handoffs[0].summary == "Customer reports a faulty watch."

    def test_summarize_request_replies_with_summary(
        self, engine, session_id, intent_classifier, generator,
    ):
        intent_classifier.classify.side_effect = [Intent.GREETING, Intent.SUMMARIZE_CONVERSATION]
        generator.summarize.return_value = "You greeted me and asked for a recap."

        engine.handle_message(session_id, "hello")
        reply = engine.handle_message(session_id, "can you summarize our chat?")

        assert reply == "You greeted me and asked for a recap."
        assert _mode(engine, session_id) == DialogueMode.IDLE.value
        history_arg = generator.summarize.call_args[0][0]
        assert [m.content for m in history_arg] == ["hello", GREETING_REPLY]

    def test_negative_complaint_asks_for_order_number(
        self, engine, session_id, intent_classifier, sentiment_classifier,
    ):
        intent_classifier.classify.return_value = Intent.COMPLAINT
        sentiment_classifier.classify.return_value = Sentiment.NEGATIVE

        reply = engine.handle_message(session_id, "This is broken!")

        assert reply == ORDER_NUMBER_PROMPT
        assert _mode(engine, session_id) == DialogueMode.AWAITING_ORDER_NUMBER.value

    def test_neutral_complaint_gets_general_response(
        self, engine, session_id, intent_classifier, sentiment_classifier, generator,
    ):
        intent_classifier.classify.return_value = Intent.COMPLAINT
        sentiment_classifier.classify.return_value = Sentiment.NEUTRAL

        reply = engine.handle_message(session_id, "The strap is a bit stiff")

        assert reply == generator.general_response.return_value
        assert _mode(engine, session_id) == DialogueMode.IDLE.value

    def test_faq_with_match_gives_grounded_answer(
        self, engine, session_id, intent_classifier, generator, watch_scenario,
    ):
        intent_classifier.classify.return_value = Intent.FAQ_QUESTION

        reply = engine.handle_message(session_id, WARRANTY_Q)

        assert reply == generator.grounded_answer.return_value
        query, entry, persona = generator.grounded_answer.call_args[0]
        assert query == WARRANTY_Q
        assert entry.question == WARRANTY_Q
        assert persona == watch_scenario.persona
        generator.general_response.assert_not_called()

    def test_faq_without_match_falls_back_to_general_response(
        self, engine, session_id, intent_classifier, generator,
    ):
        intent_classifier.classify.return_value = Intent.FAQ_QUESTION

        reply = engine.handle_message(session_id, "Do you sell sunglasses?")

        assert reply == generator.general_response.return_value
        generator.grounded_answer.assert_not_called()

    def test_faq_with_embedding_failure_falls_back_to_general_response(
        self, engine, session_id, intent_classifier, generator, embedding_backend,
    ):
        intent_classifier.classify.return_value = Intent.FAQ_QUESTION
        embedding_backend.error = EmbeddingError("embedding service down")

        reply = engine.handle_message(session_id, SHIPPING_Q)

        assert reply == generator.general_response.return_value
        assert _mode(engine, session_id) == DialogueMode.IDLE.value

    @pytest.mark.parametrize("intent", [Intent.CHITCHAT, Intent.UNKNOWN])
    def test_chitchat_and_unknown_get_general_response(
        self, engine, session_id, intent_classifier, generator, intent,
    ):
        intent_classifier.classify.return_value = intent

        reply = engine.handle_message(session_id, "tell me a joke")

        assert reply == generator.general_response.return_value

    def test_classifiers_see_prior_history_only(
        self, engine, session_id, intent_classifier, sentiment_classifier,
    ):
        intent_classifier.classify.return_value = Intent.GREETING

        engine.handle_message(session_id, "hi")
        engine.handle_message(session_id, "hello again")

        utterance, prior = intent_classifier.classify.call_args[0]
        assert utterance == "hello again"
        assert [m.content for m in prior] == ["hi", GREETING_REPLY]
        assert sentiment_classifier.classify.call_args[0][0] == "hello again"

    def test_general_response_gets_prior_history_and_persona(
        self, engine, session_id, intent_classifier, generator, watch_scenario,
    ):
        intent_classifier.classify.side_effect = [Intent.GREETING, Intent.CHITCHAT]

        engine.handle_message(session_id, "hi")
        engine.handle_message(session_id, "what's the weather?")

        query, history, persona = generator.general_response.call_args[0]
        assert query == "what's the weather?"
        assert [m.content for m in history] == ["hi", GREETING_REPLY]
        assert persona == watch_scenario.persona


# ── Order triage sub-flow ────────────────────────────────────────────


class TestOrderTriage:
    def _start_triage(self, engine, session_id, intent_classifier, sentiment_classifier):
        intent_classifier.classify.return_value = Intent.COMPLAINT
        sentiment_classifier.classify.return_value = Sentiment.NEGATIVE
        engine.handle_message(session_id, "This is broken!")

    def test_full_triage_flow(
        self, engine, session_id, intent_classifier, sentiment_classifier, generator, handoffs,
    ):
        self._start_triage(engine, session_id, intent_classifier, sentiment_classifier)
        assert _mode(engine, session_id) == DialogueMode.AWAITING_ORDER_NUMBER.value

        reply = engine.handle_message(session_id, "ORD-123")
        session = engine.session(session_id)
        assert reply == ISSUE_DESCRIPTION_PROMPT
        assert session.mode == DialogueMode.AWAITING_ISSUE_DESCRIPTION.value
        assert context_as_dict(session.context) == {"orderNumber": "ORD-123"}

        reply = engine.handle_message(session_id, "it won't turn on")
        session = engine.session(session_id)
        assert reply == ESCALATION_REPLY
        assert session.mode == DialogueMode.IDLE.value
        assert session.context is None

        generator.summarize.assert_called_once()
        history, context = generator.summarize.call_args[0]
        assert context.as_dict() == {
            "orderNumber": "ORD-123",
            "issueDescription": "it won't turn on",
        }
        assert history[-1].content == "it won't turn on"
        assert handoffs[0].context == context.as_dict()

    def test_slot_filling_skips_classification(
        self, engine, session_id, intent_classifier, sentiment_classifier,
    ):
        self._start_triage(engine, session_id, intent_classifier, sentiment_classifier)
        intent_classifier.classify.reset_mock()
        sentiment_classifier.classify.reset_mock()

        engine.handle_message(session_id, "ORD-123")
        engine.handle_message(session_id, "hello?")

        intent_classifier.classify.assert_not_called()
        sentiment_classifier.classify.assert_not_called()

    @pytest.mark.parametrize("utterance", ["ORD-123", "  not sure, maybe 42?  ", "hi"])
    def test_order_number_stored_verbatim(
        self, engine, session_id, intent_classifier, sentiment_classifier, utterance,
    ):
        self._start_triage(engine, session_id, intent_classifier, sentiment_classifier)

        engine.handle_message(session_id, utterance)

        session = engine.session(session_id)
        assert session.mode == DialogueMode.AWAITING_ISSUE_DESCRIPTION.value
        assert session.context.order_number == utterance

    def test_issue_description_triggers_exactly_one_summary(self, engine, store, generator):
        sid = engine.start_session("luxury_watches")
        store.update(
            sid, DialogueMode.AWAITING_ISSUE_DESCRIPTION.value, OrderTriage(order_number="A-9"),
        )

        engine.handle_message(sid, "The crown came off")

        generator.summarize.assert_called_once()
        session = engine.session(sid)
        assert session.mode == DialogueMode.IDLE.value
        assert context_as_dict(session.context) == {}


# ── Self-healing ─────────────────────────────────────────────────────


class TestSelfHealing:
    def test_unrecognized_mode_resets_to_idle(self, engine, store, intent_classifier):
        sid = engine.start_session("luxury_watches")
        store.update(sid, "AWAITING_SHOE_SIZE", OrderTriage(order_number="X"))

        reply = engine.handle_message(sid, "hello")

        assert reply == START_OVER_REPLY
        session = engine.session(sid)
        assert session.mode == DialogueMode.IDLE.value
        assert session.context is None
        intent_classifier.classify.assert_not_called()

    def test_issue_description_without_order_number_still_escalates(
        self, engine, store, generator, handoffs,
    ):
        sid = engine.start_session("luxury_watches")
        store.update(sid, DialogueMode.AWAITING_ISSUE_DESCRIPTION.value, None)

        reply = engine.handle_message(sid, "it won't turn on")

        assert reply == ESCALATION_REPLY
        session = engine.session(sid)
        assert session.mode == DialogueMode.IDLE.value
        assert session.context is None
        assert generator.summarize.call_count == 1
        _, context = generator.summarize.call_args[0]
        assert context.as_dict() == {"issueDescription": "it won't turn on"}
        assert handoffs[0].context == {"issueDescription": "it won't turn on"}


# ── Persistence & failure handling ───────────────────────────────────


class TestPersistence:
    def test_user_and_agent_messages_are_logged_in_order(self, engine, session_id, intent_classifier):
        intent_classifier.classify.return_value = Intent.GREETING

        engine.handle_message(session_id, "hi")

        log = engine.messages(session_id)
        assert [(m.sender, m.content) for m in log] == [
            (Sender.USER, "hi"),
            (Sender.AGENT, GREETING_REPLY),
        ]
        assert log[0].timestamp < log[1].timestamp

    def test_unknown_session_raises_and_writes_nothing(self, engine, store):
        with pytest.raises(InvalidSession):
            engine.handle_message("no-such-session", "hello")

    def test_start_session_with_unknown_scenario(self, engine):
        with pytest.raises(ScenarioNotFound):
            engine.start_session("submarines")

    def test_generation_failure_returns_apology_and_keeps_user_message(
        self, engine, session_id, intent_classifier, generator,
    ):
        intent_classifier.classify.return_value = Intent.CHITCHAT
        generator.general_response.side_effect = GenerationError("quota exceeded")

        reply = engine.handle_message(session_id, "anyone there?")

        assert reply == APOLOGY_REPLY
        log = engine.messages(session_id)
        assert log[0].sender is Sender.USER
        assert log[0].content == "anyone there?"
        assert log[-1].content == APOLOGY_REPLY
        assert _mode(engine, session_id) == DialogueMode.IDLE.value

    def test_classifier_failure_returns_apology(self, engine, session_id, intent_classifier):
        intent_classifier.classify.side_effect = GenerationError("timeout")

        reply = engine.handle_message(session_id, "hello")

        assert reply == APOLOGY_REPLY
        assert engine.messages(session_id)[0].content == "hello"

    def test_failure_mid_triage_leaves_state_unchanged(
        self, engine, store, generator,
    ):
        sid = engine.start_session("luxury_watches")
        triage = OrderTriage(order_number="ORD-1")
        store.update(sid, DialogueMode.AWAITING_ISSUE_DESCRIPTION.value, triage)
        generator.summarize.side_effect = GenerationError("backend down")

        reply = engine.handle_message(sid, "scratched glass")

        assert reply == APOLOGY_REPLY
        session = engine.session(sid)
        assert session.mode == DialogueMode.AWAITING_ISSUE_DESCRIPTION.value
        assert session.context == triage

    def test_unknown_scenario_on_stored_session_returns_apology(self, engine, store):
        sid = store.create("discontinued_scenario")

        reply = engine.handle_message(sid, "hello")

        assert reply == APOLOGY_REPLY
        assert engine.messages(sid)[0].content == "hello"

    def test_store_outage_returns_apology(self, engine, store, session_id, monkeypatch):
        monkeypatch.setattr(store, "get", MagicMock(side_effect=RuntimeError("db unavailable")))

        reply = engine.handle_message(session_id, "hello")

        assert reply == APOLOGY_REPLY
        assert store.list_messages(session_id)[-1].content == APOLOGY_REPLY

    def test_session_locks_are_released_after_each_turn(
        self, engine, session_id, intent_classifier, generator,
    ):
        intent_classifier.classify.return_value = Intent.GREETING
        engine.handle_message(session_id, "hi")

        generator.general_response.side_effect = GenerationError("down")
        intent_classifier.classify.return_value = Intent.CHITCHAT
        engine.handle_message(session_id, "still there?")

        with pytest.raises(InvalidSession):
            engine.handle_message("no-such-session", "hello")

        assert engine._session_locks == {}

    def test_triage_resumes_after_store_reopen(
        self, tmp_path, registry, matcher, intent_classifier, sentiment_classifier,
        generator, handoffs,
    ):
        path = tmp_path / "sessions.db"

        def build(store):
            return DialogueEngine(
                store=store,
                scenarios=registry,
                matcher=matcher,
                intent_classifier=intent_classifier,
                sentiment_classifier=sentiment_classifier,
                generator=generator,
                handoff=handoffs.append,
            )

        first_store = SqliteSessionStore(path)
        first = build(first_store)
        sid = first.start_session("luxury_watches")
        intent_classifier.classify.return_value = Intent.COMPLAINT
        sentiment_classifier.classify.return_value = Sentiment.NEGATIVE
        first.handle_message(sid, "My watch arrived scratched!")
        first.handle_message(sid, "ORD-555")
        first_store.close()

        second_store = SqliteSessionStore(path)
        reply = build(second_store).handle_message(sid, "deep scratch on the glass")
        second_store.close()

        assert reply == ESCALATION_REPLY
        assert handoffs[0].context == {
            "orderNumber": "ORD-555",
            "issueDescription": "deep scratch on the glass",
        }
        history, _ = generator.summarize.call_args[0]
        assert [m.content for m in history][:2] == ["My watch arrived scratched!", ORDER_NUMBER_PROMPT]


# ── Concurrency ──────────────────────────────────────────────────────


class TestConcurrency:
    def test_same_session_turns_do_not_overlap(self, engine, session_id, intent_classifier):
        active = 0
        peak = 0
        guard = threading.Lock()

        def slow_classify(utterance, history):
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with guard:
                active -= 1
            return Intent.GREETING

        intent_classifier.classify.side_effect = slow_classify

        threads = [
            threading.Thread(target=engine.handle_message, args=(session_id, f"hi {i}"))
            for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert peak == 1
        assert len(engine.messages(session_id)) == 8

    def test_different_sessions_run_in_parallel(self, engine, intent_classifier):
        barrier = threading.Barrier(2, timeout=5)

        def classify(utterance, history):
            # Only returns if both sessions are inside a turn at the same time
            barrier.wait()
            return Intent.GREETING

        intent_classifier.classify.side_effect = classify
        sessions = [engine.start_session("luxury_watches") for _ in range(2)]
        replies = {}

        def run(sid):
            replies[sid] = engine.handle_message(sid, "hello")

        threads = [threading.Thread(target=run, args=(sid,)) for sid in sessions]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(reply == GREETING_REPLY for reply in replies.values())
