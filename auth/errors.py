"""
auth/errors.py -- Typed failures raised by the auth core.

Every failure the core reports to its caller is one of these classes. They are
classifications the caller can act on, not internal faults: the core never
retries, and the HTTP layer alone maps them to status codes (api/main.py).

Store-level failures (sqlalchemy.exc.*) are NOT wrapped. They propagate as
infrastructure errors and end up in the generic 500 handler.

Messages for Unauthorized are fixed strings chosen by the caller so that a
bad email and a bad password (or an unknown and a revoked token) produce the
same text.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all caller-recoverable auth failures."""

    code: str = "auth_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Conflict(AuthError):
    code = "conflict"


class Unauthorized(AuthError):
    code = "unauthorized"


class Forbidden(AuthError):
    code = "forbidden"


class NotFound(AuthError):
    code = "not_found"


class BadRequest(AuthError):
    code = "bad_request"
