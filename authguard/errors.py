"""
Error Taxonomy

Every failure the authentication core reports to its callers is one of the
classes below. Each carries an HTTP-equivalent status code and the terminal
state of the login state machine it corresponds to.

Security considerations:
- Security-sensitive mismatches share one opaque message per flow
- Only lockout and rate-limit errors disclose a wait time
- Internal failures never expose their cause to the caller
"""

import math
from typing import Any, Dict, List, Optional


class AuthGuardError(Exception):
    """Base class for all errors raised by the authentication core."""

    status_code = 500
    status = "REJECTED"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Render the error as a response body."""
        return {'error': self.message}


class ValidationError(AuthGuardError):
    """Malformed or missing input."""

    status_code = 400
    default_message = "Invalid request"

    def __init__(self, message: Optional[str] = None,
                 errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.errors:
            body['details'] = self.errors
        return body


class AuthenticationError(AuthGuardError):
    """Bad credentials, code or token. The message is uniform per flow."""

    status_code = 401
    default_message = "Invalid credentials"


class RateLimitedError(AuthGuardError):
    """Too many attempts against one endpoint for one identity."""

    status_code = 429
    status = "LOCKED"
    default_message = "Too many attempts. Please try again later."

    def __init__(self, retry_after: float, message: Optional[str] = None):
        super().__init__(message)
        self.retry_after = max(0, int(math.ceil(retry_after)))

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body['retry_after'] = self.retry_after
        return body


class LockedError(AuthGuardError):
    """The account is locked out after repeated failed logins."""

    status_code = 423
    status = "LOCKED"
    default_message = "Account temporarily locked"

    def __init__(self, locked_until: float, now: float,
                 message: Optional[str] = None):
        super().__init__(message)
        self.locked_until = locked_until
        self.retry_after = max(0, int(math.ceil(locked_until - now)))

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body['retry_after'] = self.retry_after
        return body


class ConflictError(AuthGuardError):
    """State conflict, e.g. password reuse or an email already registered."""

    status_code = 409
    default_message = "Conflict"


class NotFoundError(AuthGuardError):
    """Raised only where it cannot leak account existence."""

    status_code = 404
    default_message = "Not found"


class InternalError(AuthGuardError):
    """Store or cipher failure. The cause is logged, never returned."""

    status_code = 500
    default_message = "An internal error occurred"
