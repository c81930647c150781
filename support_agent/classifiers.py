"""Intent and sentiment classification.

Both classifiers are stateless: build an instruction from the last two
prior turns and the utterance, call the generation backend at low
temperature, and parse a single JSON label.  A response that does not
parse to a known label falls back to ``UNKNOWN`` / ``neutral``; parse
failures are logged and counted, never raised.  Backend failures
(``GenerationError``) do propagate: the engine owns that recovery.
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import TypeVar

from support_agent.errors import ClassificationParseError
from support_agent.models import Intent, Message, Sentiment, transcript
from support_agent.prompts import INTENT_PROMPT, NO_HISTORY, SENTIMENT_PROMPT
from support_agent.services.llm import GenerationBackend
from support_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

CLASSIFIER_TEMPERATURE = 0.1
CLASSIFIER_MAX_TOKENS = 50
HISTORY_TURNS = 2

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)

LabelT = TypeVar("LabelT", bound=Enum)


def parse_label(raw: str, key: str, labels: type[LabelT]) -> LabelT:
    """Strictly parse ``{"<key>": "<label>"}`` into a member of *labels*.

    A surrounding markdown code fence is tolerated; anything else that is
    not a JSON object holding a known label raises ``ClassificationParseError``.
    """
    text = raw.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ClassificationParseError(f"Not valid JSON: {exc}", raw=raw) from exc

    if not isinstance(payload, dict):
        raise ClassificationParseError("Expected a JSON object", raw=raw)
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ClassificationParseError(f"Missing {key!r} label", raw=raw)

    value = value.strip()
    for member in labels:
        if member.value.lower() == value.lower():
            return member
    raise ClassificationParseError(f"Unknown {key} label {value!r}", raw=raw)


def _recent_history(history: list[Message]) -> str:
    return transcript(history[-HISTORY_TURNS:]) or NO_HISTORY


class _LabelClassifier:
    key: str
    labels: type[Enum]
    fallback: Enum
    template: str

    def __init__(self, backend: GenerationBackend):
        self._backend = backend

    def _classify(self, utterance: str, history: list[Message]):
        prompt = self.template.format(history=_recent_history(history), utterance=utterance)
        raw = self._backend.generate(
            [{"role": "user", "content": prompt}],
            CLASSIFIER_TEMPERATURE,
            CLASSIFIER_MAX_TOKENS,
        )
        try:
            label = parse_label(raw, self.key, self.labels)
        except ClassificationParseError as exc:
            logger.warning(
                "Failed to parse %s classification (%s); falling back to %s. Raw: %r",
                self.key, exc, self.fallback.value, exc.raw,
            )
            metrics.record_event("ClassificationParseFailure", classifier=self.key)
            return self.fallback
        logger.debug("Classified %s as %s", self.key, label.value)
        return label


class IntentClassifier(_LabelClassifier):
    key = "intent"
    labels = Intent
    fallback = Intent.UNKNOWN
    template = INTENT_PROMPT

    def classify(self, utterance: str, history: list[Message]) -> Intent:
        """Classify *utterance* given the turns that preceded it."""
        return self._classify(utterance, history)


class SentimentClassifier(_LabelClassifier):
    key = "sentiment"
    labels = Sentiment
    fallback = Sentiment.NEUTRAL
    template = SENTIMENT_PROMPT

    def classify(self, utterance: str, history: list[Message] | None = None) -> Sentiment:
        return self._classify(utterance, history or [])
