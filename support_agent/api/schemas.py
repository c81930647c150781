"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from support_agent.models import Sender


class StartSessionRequest(BaseModel):
    """Start a conversation for one scenario (persona + knowledge base)."""

    scenario: str = Field(..., min_length=1, max_length=100, description="Scenario name")


class StartSessionResponse(BaseModel):
    session_id: str = Field(..., description="Identifier to send with every chat message")
    scenario: str


class ChatRequest(BaseModel):
    """Incoming chat message from the frontend."""

    message: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Session identifier returned by POST /sessions",
    )


class ChatResponse(BaseModel):
    """Response from the agent."""

    reply: str = Field(..., description="The agent's response message")
    session_id: str = Field(..., description="The session ID for this conversation")


class MessageOut(BaseModel):
    sender: Sender
    content: str
    timestamp: datetime


class HistoryResponse(BaseModel):
    session_id: str
    scenario: str
    mode: str
    messages: list[MessageOut]


class ScenarioListResponse(BaseModel):
    scenarios: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "support-agent"
