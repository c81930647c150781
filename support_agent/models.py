"""Domain models shared by the store, the engine and the API layer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class DialogueMode(str, Enum):
    IDLE = "IDLE"
    AWAITING_ORDER_NUMBER = "AWAITING_ORDER_NUMBER"
    AWAITING_ISSUE_DESCRIPTION = "AWAITING_ISSUE_DESCRIPTION"


class Sender(str, Enum):
    USER = "user"
    AGENT = "agent"


class Intent(str, Enum):
    GREETING = "GREETING"
    FAQ_QUESTION = "FAQ_QUESTION"
    REQUEST_FOR_HUMAN = "REQUEST_FOR_HUMAN"
    COMPLAINT = "COMPLAINT"
    SUMMARIZE_CONVERSATION = "SUMMARIZE_CONVERSATION"
    CHITCHAT = "CHITCHAT"
    UNKNOWN = "UNKNOWN"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class OrderTriage(BaseModel):
    """Slots collected by the order-triage sub-flow.

    Either slot may be missing; absent slots are left out of ``as_dict``.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["order_triage"] = "order_triage"
    order_number: str | None = None
    issue_description: str | None = None

    def as_dict(self) -> dict[str, str]:
        """Render the flat string mapping used in prompts and hand-off tickets."""
        data: dict[str, str] = {}
        if self.order_number is not None:
            data["orderNumber"] = self.order_number
        if self.issue_description is not None:
            data["issueDescription"] = self.issue_description
        return data


def context_as_dict(context: OrderTriage | None) -> dict[str, str]:
    return context.as_dict() if context is not None else {}


class Session(BaseModel):
    """Conversation state for one chat.

    ``mode`` is kept as a raw string so that a value written by an older or
    misbehaving writer can still be loaded; the engine resets anything it
    does not recognise.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    scenario: str
    mode: str = DialogueMode.IDLE.value
    context: OrderTriage | None = None
    created_at: datetime


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    sender: Sender
    content: str
    timestamp: datetime

    @property
    def role(self) -> str:
        """Chat-completion role of the sender."""
        return "user" if self.sender is Sender.USER else "assistant"


def transcript(messages: list[Message]) -> str:
    """Render messages as ``role: content`` lines."""
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


class KnowledgeEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    answer: str
    scenario: str


class Scenario(BaseModel):
    """A persona plus its knowledge base."""

    model_config = ConfigDict(frozen=True)

    name: str
    title: str
    persona: str
    entries: tuple[KnowledgeEntry, ...] = Field(default_factory=tuple)


class Escalation(BaseModel):
    """Hand-off ticket produced whenever a conversation goes to a human."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    scenario: str
    summary: str
    context: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
