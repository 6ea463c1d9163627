"""
Coach Error Taxonomy
====================

State-machine errors surface synchronously to the caller.
Backend errors are absorbed at the advice boundary and replaced with
a degraded default.
"""
from typing import Optional


class CoachError(Exception):
    """Base class for all coach errors."""


# =============================================================================
# SESSION STATE MACHINE
# =============================================================================

class ConflictError(CoachError):
    """Raised when a session is started while another one is still open."""

    def __init__(self, user_id: str, session_id: Optional[str] = None):
        self.user_id = user_id
        self.session_id = session_id
        super().__init__(
            f"User '{user_id}' already has an open fasting session"
            + (f" ({session_id})" if session_id else "")
        )


class InvalidStateTransitionError(CoachError):
    """Raised when a command does not match the session's current state."""

    def __init__(self, command: str, current_state: str, expected: tuple):
        self.command = command
        self.current_state = current_state
        self.expected = expected
        super().__init__(
            f"Cannot {command} from state '{current_state}' "
            f"(expected one of: {', '.join(expected)})"
        )


class NotFoundError(CoachError):
    """Raised when a keyed document does not exist."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} '{key}' not found")


# =============================================================================
# STORAGE
# =============================================================================

class PersistenceError(CoachError):
    """Wraps a failure of the document store."""


# =============================================================================
# EXTERNAL BACKENDS
# =============================================================================

class BackendUnavailableError(CoachError):
    """A retrieval or generation backend failed, timed out or is circuit-broken."""


class RetrievalUnavailableError(BackendUnavailableError):
    pass


class GenerationUnavailableError(BackendUnavailableError):
    pass


class GenerationParseError(CoachError):
    """The generation backend returned text that is not a valid advice object."""

    def __init__(self, message: str, raw_text: str = ""):
        self.raw_text = raw_text[:500]
        super().__init__(message)
