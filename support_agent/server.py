"""FastAPI server for the support agent.

Run with:
    uv run uvicorn support_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from support_agent.api.routes import router
from support_agent.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from support_agent.engine import create_dialogue_engine
from support_agent.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the dialogue engine once and keep it in app state.

    Scenario files are read here; knowledge-base embeddings are built
    lazily on each scenario's first FAQ question.
    """
    logger.info("Building dialogue engine…")
    application.state.engine = create_dialogue_engine()
    logger.info("Engine ready.")
    yield
    metrics.flush()


app = FastAPI(
    title="Support Agent",
    description=(
        "Customer-support chat agent — answers FAQs, collects order details "
        "for complaints and escalates to a human when needed."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID to every request for log correlation.

    Echoed back in ``X-Request-ID`` so clients can quote it in support
    tickets.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Support Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


def run() -> None:
    logger.info("Starting support agent API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("support_agent.server:app", host=SERVER_HOST, port=SERVER_PORT)


if __name__ == "__main__":
    run()
