"""Centralized configuration for the support agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/support-agent/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or cannot be read.
    Lookup errors are logged, never raised, so the env-var path keeps
    working outside AWS.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import keeps boto3 out of test startup

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/support-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    # 1. Env var / .env (always checked first — allows local override)
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    # 2. SSM Parameter Store (only on AWS)
    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /support-agent/{name} (AWS)."
    )


# ── Generation backend ──────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Intent / sentiment labels are one short JSON object: a cheap model is enough
CLASSIFIER_MODEL_NAME: str = os.getenv("CLASSIFIER_MODEL_NAME", "claude-haiku-4-5")

LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
LLM_MAX_RETRIES: int = int(os.getenv("LLM_MAX_RETRIES", "0"))

# ── Embedding backend ───────────────────────────────────────────────
OPENAI_API_KEY: str = _require_env("OPENAI_API_KEY")
EMBEDDING_MODEL_NAME: str = os.getenv("EMBEDDING_MODEL_NAME", "text-embedding-3-small")
EMBEDDING_TIMEOUT_SECONDS: float = float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "15"))
EMBEDDING_BUILD_CONCURRENCY: int = int(os.getenv("EMBEDDING_BUILD_CONCURRENCY", "4"))
QUERY_CACHE_MAX_BYTES: int = int(os.getenv("QUERY_CACHE_MAX_BYTES", str(8 * 1024 * 1024)))

# ── Scenarios ───────────────────────────────────────────────────────
KNOWLEDGE_DIR: Path = Path(
    os.getenv("KNOWLEDGE_DIR", str(Path(__file__).resolve().parent / "knowledge"))
)
DEFAULT_SCENARIO: str = os.getenv("DEFAULT_SCENARIO", "luxury_watches")

# ── Session storage ─────────────────────────────────────────────────
# SQLite file holding sessions and message logs; empty keeps them in memory
SESSION_DB_PATH: str = os.getenv("SESSION_DB_PATH", "support_agent.db")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
