"""docpilot exception hierarchy."""

from __future__ import annotations


class DocpilotError(Exception):
    """Base exception for all docpilot errors."""


class SessionError(DocpilotError):
    """Raised when session management fails."""


class SessionConflictError(SessionError):
    """Raised when an operation is invalid for the session's current state."""


class NoActiveSessionError(SessionConflictError):
    """Raised when an operation needs a current session and there is none."""


class SessionNotFoundError(SessionError):
    """Raised when a session id has no live record and no usable backup."""


class SessionCorruptedError(SessionError):
    """Raised when a session record cannot be decoded."""


class SessionValidationError(SessionError):
    """Raised when a decoded session fails its consistency checks."""
