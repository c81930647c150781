"""Session state and message log.

``SessionStore`` is the contract the dialogue engine depends on.  Two
implementations ship:

* ``SqliteSessionStore``: the default, a SQLite file (``SESSION_DB_PATH``)
  accessed through SQLAlchemy; survives restarts.
* ``InMemorySessionStore``: one process, data lost on restart.  Used by
  tests and when ``SESSION_DB_PATH`` is empty.

Both guard writes with a ``threading.Lock`` because the HTTP layer runs
engine turns on worker threads.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol

from sqlalchemy import create_engine, text

from support_agent.config import SESSION_DB_PATH
from support_agent.errors import InvalidSession
from support_agent.models import DialogueMode, Message, OrderTriage, Sender, Session

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def create(self, scenario: str) -> str: ...

    def get(self, session_id: str) -> Session: ...

    def update(self, session_id: str, mode: str, context: OrderTriage | None) -> None: ...

    def append_message(self, session_id: str, sender: Sender, content: str) -> Message: ...

    def list_messages(self, session_id: str) -> list[Message]: ...


class InMemorySessionStore:
    """Thread-safe dict-backed session store with an append-only log."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._messages: dict[str, list[Message]] = {}
        self._lock = threading.Lock()

    def create(self, scenario: str) -> str:
        session_id = str(uuid.uuid4())
        session = Session(
            id=session_id,
            scenario=scenario,
            mode=DialogueMode.IDLE.value,
            context=None,
            created_at=datetime.now(UTC),
        )
        with self._lock:
            self._sessions[session_id] = session
            self._messages[session_id] = []
        logger.info("[%s] New session started (scenario=%s)", session_id, scenario)
        return session_id

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise InvalidSession(session_id)
        return session

    def update(self, session_id: str, mode: str, context: OrderTriage | None) -> None:
        """Replace the mode and context of an existing session."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise InvalidSession(session_id)
            self._sessions[session_id] = session.model_copy(
                update={"mode": mode, "context": context},
            )

    def append_message(self, session_id: str, sender: Sender, content: str) -> Message:
        """Append to the log.  Timestamps are strictly increasing per session."""
        with self._lock:
            log = self._messages.get(session_id)
            if log is None:
                raise InvalidSession(session_id)
            timestamp = datetime.now(UTC)
            if log and timestamp <= log[-1].timestamp:
                timestamp = log[-1].timestamp + timedelta(microseconds=1)
            message = Message(
                session_id=session_id,
                sender=sender,
                content=content,
                timestamp=timestamp,
            )
            log.append(message)
        return message

    def list_messages(self, session_id: str) -> list[Message]:
        with self._lock:
            log = self._messages.get(session_id)
            if log is None:
                raise InvalidSession(session_id)
            return list(log)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        scenario TEXT NOT NULL,
        mode TEXT NOT NULL,
        context TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions (id),
        sender TEXT NOT NULL CHECK (sender IN ('user', 'agent')),
        content TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_messages_session ON messages (session_id, id)",
)


class SqliteSessionStore:
    """Session store persisted to a SQLite file through SQLAlchemy.

    Sessions and their message logs survive restarts.  ``context`` is kept
    as the JSON dump of ``OrderTriage``; timestamps as ISO-8601 UTC strings.
    Writes go through one process-wide lock so the per-session timestamp
    bump reads and writes the log tail atomically.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._engine = create_engine(
            f"sqlite:///{self._path}",
            connect_args={"check_same_thread": False},
            future=True,
        )
        self._lock = threading.Lock()
        with self._engine.begin() as conn:
            for statement in _SCHEMA:
                conn.execute(text(statement))
        logger.info("Session store opened at %s", self._path)

    def close(self) -> None:
        self._engine.dispose()

    def create(self, scenario: str) -> str:
        session_id = str(uuid.uuid4())
        with self._lock, self._engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO sessions (id, scenario, mode, context, created_at) "
                    "VALUES (:id, :scenario, :mode, NULL, :created_at)"
                ),
                {
                    "id": session_id,
                    "scenario": scenario,
                    "mode": DialogueMode.IDLE.value,
                    "created_at": datetime.now(UTC).isoformat(),
                },
            )
        logger.info("[%s] New session started (scenario=%s)", session_id, scenario)
        return session_id

    def get(self, session_id: str) -> Session:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT id, scenario, mode, context, created_at "
                    "FROM sessions WHERE id = :id"
                ),
                {"id": session_id},
            ).mappings().first()
        if row is None:
            raise InvalidSession(session_id)
        return Session(
            id=row["id"],
            scenario=row["scenario"],
            mode=row["mode"],
            context=OrderTriage.model_validate_json(row["context"]) if row["context"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def update(self, session_id: str, mode: str, context: OrderTriage | None) -> None:
        with self._lock, self._engine.begin() as conn:
            result = conn.execute(
                text("UPDATE sessions SET mode = :mode, context = :context WHERE id = :id"),
                {
                    "id": session_id,
                    "mode": mode,
                    "context": context.model_dump_json() if context is not None else None,
                },
            )
            if result.rowcount == 0:
                raise InvalidSession(session_id)

    def append_message(self, session_id: str, sender: Sender, content: str) -> Message:
        with self._lock, self._engine.begin() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM sessions WHERE id = :id"), {"id": session_id},
            ).first()
            if exists is None:
                raise InvalidSession(session_id)

            last = conn.execute(
                text(
                    "SELECT timestamp FROM messages WHERE session_id = :id "
                    "ORDER BY id DESC LIMIT 1"
                ),
                {"id": session_id},
            ).scalar()
            timestamp = datetime.now(UTC)
            if last is not None:
                previous = datetime.fromisoformat(last)
                if timestamp <= previous:
                    timestamp = previous + timedelta(microseconds=1)

            conn.execute(
                text(
                    "INSERT INTO messages (session_id, sender, content, timestamp) "
                    "VALUES (:session_id, :sender, :content, :timestamp)"
                ),
                {
                    "session_id": session_id,
                    "sender": sender.value,
                    "content": content,
                    "timestamp": timestamp.isoformat(),
                },
            )
        return Message(session_id=session_id, sender=sender, content=content, timestamp=timestamp)

    def list_messages(self, session_id: str) -> list[Message]:
        with self._engine.connect() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM sessions WHERE id = :id"), {"id": session_id},
            ).first()
            if exists is None:
                raise InvalidSession(session_id)
            rows = conn.execute(
                text(
                    "SELECT sender, content, timestamp FROM messages "
                    "WHERE session_id = :id ORDER BY id"
                ),
                {"id": session_id},
            ).mappings().all()
        return [
            Message(
                session_id=session_id,
                sender=Sender(row["sender"]),
                content=row["content"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in rows
        ]


def open_session_store(path: str | None = None) -> SessionStore:
    """Store selected by ``SESSION_DB_PATH``: SQLite when set, memory when empty."""
    path = SESSION_DB_PATH if path is None else path
    if not path:
        logger.warning("SESSION_DB_PATH is empty; sessions are kept in memory only")
        return InMemorySessionStore()
    return SqliteSessionStore(path)
