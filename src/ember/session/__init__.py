"""Session management and persistence."""

from .manager import (
    Message,
    MessageRole,
    Session,
    SessionManager,
    idle_timeout_predicate,
)

__all__ = [
    "Message",
    "MessageRole",
    "Session",
    "SessionManager",
    "idle_timeout_predicate",
]
