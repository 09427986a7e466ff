"""
agora.errors — Domain Error Taxonomy
=====================================

Services raise these; the HTTP boundary maps them to a status code and the
uniform envelope, and the real-time gateway turns them into a scoped
``error`` event for the originating connection.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorKind(enum.StrEnum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    STATE = "state"
    LOCKED = "locked"
    UPSTREAM = "upstream"


class AgoraError(Exception):
    """Base class for expected, user-reportable failures."""

    kind: ErrorKind = ErrorKind.STATE
    status_code: int = 400

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} kind={self.kind} message={self.message!r}>"


class ValidationError(AgoraError):
    kind = ErrorKind.VALIDATION
    status_code = 400


class AuthenticationError(AgoraError):
    kind = ErrorKind.AUTHENTICATION
    status_code = 401


class AuthorizationError(AgoraError):
    kind = ErrorKind.AUTHORIZATION
    status_code = 403


class NotFoundError(AgoraError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConflictError(AgoraError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class StateError(AgoraError):
    kind = ErrorKind.STATE
    status_code = 400


class LockedError(AgoraError):
    """Account temporarily locked after repeated failed logins."""

    kind = ErrorKind.LOCKED
    status_code = 423


class UpstreamError(AgoraError):
    kind = ErrorKind.UPSTREAM
    status_code = 502
