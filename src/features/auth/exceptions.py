"""Authentication gate exceptions.

These are raised by the gate components and translated into the JSON error
envelope by the exception handler registered in ``src.main``.
"""

from typing import Any

from fastapi import status


class GateError(Exception):
    """Base class for errors surfaced to the client as a structured response."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BAD_REQUEST"
    default_message: str = "Request rejected"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}

    @property
    def headers(self) -> dict[str, str] | None:
        return None


class AuthenticationError(GateError):
    """Raised when the request carries no token, or an invalid or expired one."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_ERROR"
    default_message = "Authentication required"

    def __init__(self, message: str | None = None, reason: str | None = None):
        super().__init__(message)
        self.reason = reason

    @property
    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class InvalidCredentialsError(AuthenticationError):
    """Raised when the e-mail/password pair does not match an account."""

    def __init__(self):
        super().__init__("Invalid email or password")


class AuthorizationError(GateError):
    """Raised on ownership, CSRF or e-mail verification failures."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "AUTHORIZATION_ERROR"
    default_message = "Access denied"


class ValidationError(GateError):
    """Raised when request input fails validation; carries a field -> messages map."""

    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"

    def __init__(self, message: str | None = None, errors: dict[str, list[str]] | None = None):
        super().__init__(message, details=errors)
        self.errors = errors or {}


class RateLimitedError(GateError):
    """Raised while a client is blocked for an action."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"

    def __init__(self, retry_after: int, blocked_until: int):
        super().__init__(f"Too many attempts. Blocked for {retry_after} more seconds.")
        self.retry_after = retry_after
        self.blocked_until = blocked_until

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["error"]["retry_after"] = self.retry_after
        payload["error"]["blocked_until"] = self.blocked_until
        return payload

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}
