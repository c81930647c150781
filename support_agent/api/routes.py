"""FastAPI route definitions for the support agent API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from support_agent.api.schemas import (
    ChatRequest,
    ChatResponse,
    HealthResponse,
    HistoryResponse,
    MessageOut,
    ScenarioListResponse,
    StartSessionRequest,
    StartSessionResponse,
)
from support_agent.engine import DialogueEngine
from support_agent.errors import InvalidSession, ScenarioNotFound

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_engine(request: Request) -> DialogueEngine:
    """Retrieve the dialogue engine from app state (set by the lifespan)."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return engine


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/scenarios", response_model=ScenarioListResponse)
async def list_scenarios(http_request: Request):
    engine = _get_engine(http_request)
    return ScenarioListResponse(scenarios=engine.scenario_names())


@router.post("/sessions", response_model=StartSessionResponse, status_code=201)
async def start_session(request: StartSessionRequest, http_request: Request):
    """Start a new conversation for the requested scenario."""
    engine = _get_engine(http_request)
    try:
        session_id = engine.start_session(request.scenario)
    except ScenarioNotFound as e:
        raise HTTPException(status_code=404, detail=f"Unknown scenario: {e.scenario}") from e
    return StartSessionResponse(session_id=session_id, scenario=request.scenario)


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Send a message to the agent and get its reply.

    ``handle_message`` blocks on backend calls, so it runs on the default
    thread pool via ``asyncio.to_thread``.  Backend failures never reach
    this layer: the engine already answers them with an apology.
    """
    engine = _get_engine(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        reply = await asyncio.to_thread(
            engine.handle_message, request.session_id, request.message,
        )
    except InvalidSession as e:
        logger.info("[%s] Chat for unknown session %s", request_id, request.session_id)
        raise HTTPException(status_code=404, detail="Unknown session.") from e
    except Exception as e:
        # Log the traceback server-side, never leak it to the client
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(reply=reply, session_id=request.session_id)


@router.get("/sessions/{session_id}/messages", response_model=HistoryResponse)
async def session_messages(session_id: str, http_request: Request):
    """Return the full message log of a session, oldest first."""
    engine = _get_engine(http_request)
    try:
        session = engine.session(session_id)
        messages = engine.messages(session_id)
    except InvalidSession as e:
        raise HTTPException(status_code=404, detail="Unknown session.") from e

    return HistoryResponse(
        session_id=session.id,
        scenario=session.scenario,
        mode=session.mode,
        messages=[
            MessageOut(sender=m.sender, content=m.content, timestamp=m.timestamp)
            for m in messages
        ],
    )
