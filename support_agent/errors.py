"""Exception taxonomy for the support agent.

Only ``InvalidSession`` and ``ScenarioNotFound`` are meant to reach callers
of the engine.  Backend and parse errors are recovered inside a turn.
"""

from __future__ import annotations


class SupportAgentError(Exception):
    """Base class for every error raised by this package."""


class InvalidSession(SupportAgentError):
    """Raised when a session id does not reference an existing session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


class ScenarioNotFound(SupportAgentError):
    """Raised when a scenario name is absent from the loaded configuration."""

    def __init__(self, scenario: str):
        self.scenario = scenario
        super().__init__(f"Unknown scenario: {scenario}")


class BackendError(SupportAgentError):
    """A remote backend call failed (transport, auth, quota, timeout, bad payload)."""

    def __init__(self, message: str, cause: BaseException | None = None):
        self.cause = cause
        super().__init__(message)


class GenerationError(BackendError):
    """The generative-text backend failed."""


class EmbeddingError(BackendError):
    """The embedding backend failed."""


class ClassificationParseError(SupportAgentError):
    """The generation backend returned something that is not a valid label."""

    def __init__(self, message: str, raw: str):
        self.raw = raw
        super().__init__(message)
