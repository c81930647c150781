"""Natural-language replies: grounded FAQ answers, general replies, summaries."""

from __future__ import annotations

import logging

from support_agent.models import KnowledgeEntry, Message, OrderTriage, context_as_dict, transcript
from support_agent.prompts import (
    GENERAL_RESPONSE_PROMPT,
    GROUNDED_ANSWER_PROMPT,
    NO_DETAILS,
    SUMMARY_PROMPT,
)
from support_agent.services.llm import ChatMessage, GenerationBackend

logger = logging.getLogger(__name__)

EMPTY_HISTORY_SUMMARY = "User initiated a chat but did not provide details."

ANSWER_TEMPERATURE = 0.3
ANSWER_MAX_TOKENS = 200
SUMMARY_TEMPERATURE = 0.5
SUMMARY_MAX_TOKENS = 100
GENERAL_HISTORY_TURNS = 4


class ResponseGenerator:
    """Stateless prompt assembly over a ``GenerationBackend``."""

    def __init__(self, backend: GenerationBackend):
        self._backend = backend

    def grounded_answer(self, query: str, entry: KnowledgeEntry, persona: str) -> str:
        """Answer *query* from *entry* alone, in the persona's voice.

        Grounding is requested by the prompt; it is not verified afterwards.
        """
        system = GROUNDED_ANSWER_PROMPT.format(
            persona=persona, question=entry.question, answer=entry.answer,
        )
        messages: list[ChatMessage] = [
            {"role": "system", "content": system},
            {"role": "user", "content": query},
        ]
        return self._backend.generate(messages, ANSWER_TEMPERATURE, ANSWER_MAX_TOKENS)

    def general_response(self, query: str, history: list[Message], persona: str) -> str:
        """Free-form reply using the last four prior turns plus *query*."""
        messages: list[ChatMessage] = [
            {"role": "system", "content": GENERAL_RESPONSE_PROMPT.format(persona=persona)},
        ]
        for message in history[-GENERAL_HISTORY_TURNS:]:
            messages.append({"role": message.role, "content": message.content})
        messages.append({"role": "user", "content": query})
        return self._backend.generate(messages, ANSWER_TEMPERATURE, ANSWER_MAX_TOKENS)

    def summarize(self, history: list[Message], context: OrderTriage | None = None) -> str:
        """One-sentence hand-off summary.  Empty history never reaches the backend."""
        if not history:
            return EMPTY_HISTORY_SUMMARY

        details = "\n".join(
            f"- {key}: {value}" for key, value in context_as_dict(context).items()
        ) or NO_DETAILS
        prompt = SUMMARY_PROMPT.format(details=details, history=transcript(history))
        summary = self._backend.generate(
            [{"role": "user", "content": prompt}],
            SUMMARY_TEMPERATURE,
            SUMMARY_MAX_TOKENS,
        )
        logger.debug("Generated hand-off summary (%d chars)", len(summary))
        return summary
