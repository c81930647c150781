"""Support Agent — a multi-turn customer-support chat orchestrator.

Architecture Overview
=====================

Every inbound message goes through the **DialogueEngine**, a small state
machine built as a LangGraph ``StateGraph``:

1. **IDLE** — the message is classified (intent + sentiment, cheap Haiku
   calls) and routed through a lookup table: greeting, FAQ answer,
   free-form answer, conversation summary, escalation, or the start of
   the order-triage flow for negative complaints.

2. **AWAITING_ORDER_NUMBER / AWAITING_ISSUE_DESCRIPTION** — slot filling.
   The raw message fills the pending slot; after the issue description
   the conversation is summarised and handed off to a human.

Key Design Decisions
--------------------
- **FAQ retrieval**: each scenario's questions are embedded once (OpenAI
  ``text-embedding-3-small``) and cached per scenario; queries are matched
  by cosine similarity with a fixed 0.8 threshold.  A match produces an
  answer grounded in that single entry.
- **Scenarios**: a persona plus its knowledge base, one markdown file per
  scenario under ``support_agent/knowledge/``.
- **Resilience**: classifier output is parsed strictly with a typed
  fallback; any backend failure during a turn becomes a short apology.
  Backend calls are bounded by timeouts and not retried.
- **Storage**: sessions and message logs live in a SQLite file
  (``SESSION_DB_PATH``) accessed through SQLAlchemy; an empty path keeps
  them in memory.
- **Concurrency**: one in-flight turn per session (per-session lock); the
  embedding cache build is single-flight per scenario.

Package Structure
-----------------
- ``support_agent/engine.py`` — state machine, routing, turn persistence
- ``support_agent/classifiers.py`` — intent and sentiment classifiers
- ``support_agent/generator.py`` — grounded answers, replies, summaries
- ``support_agent/matcher.py`` — cosine-similarity FAQ matching
- ``support_agent/scenarios.py`` — scenario loading
- ``support_agent/config.py`` — configuration from env / SSM
- ``support_agent/prompts.py`` — prompt templates
- ``support_agent/services/`` — backends, caches, session store, metrics
- ``support_agent/api/`` — FastAPI routes and Pydantic schemas
- ``support_agent/server.py`` / ``support_agent/main.py`` — server and CLI
"""
