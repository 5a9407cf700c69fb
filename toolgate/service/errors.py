from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - unauthorized / token_expired / token_invalid (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - concurrency_limit_exceeded (429)
    - server_error / store_unavailable (500)
    - execution_error (502) and timeout (504) are recorded on executions
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_error(self) -> dict:
        """Structured form stored on executions and sent in events."""
        body = {"code": self.error_code, "message": self.message}
        if self.detail:
            body["details"] = dict(self.detail)
        return body


class ValidationError(ServiceError):
    """Request or tool input validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` tells expired tokens apart from forged or malformed ones so
    callers can decide between a silent refresh and a full re-login.
    """
    status_code = 401
    error_code = "unauthorized"
    reason = "invalid"


class TokenExpiredError(AuthError):
    error_code = "token_expired"
    reason = "expired"


class TokenMalformedError(AuthError):
    error_code = "token_invalid"
    reason = "malformed"


class TokenSignatureError(AuthError):
    error_code = "token_invalid"
    reason = "signature_invalid"


class TokenTypeError(AuthError):
    """A refresh token was presented as an access token or vice versa."""
    error_code = "token_invalid"
    reason = "wrong_type"


class TokenRevokedError(AuthError):
    """Refresh token was rotated out or its session was revoked."""
    error_code = "token_invalid"
    reason = "revoked"


class SessionInactiveError(AuthError):
    reason = "session_inactive"


class PermissionDeniedError(ServiceError):
    """Policy denies the tool or the caller's role is insufficient (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Operation raced with a state change that already happened (409)."""
    status_code = 409
    error_code = "conflict"


class AdmissionError(ServiceError):
    """Concurrency cap reached; the caller may retry later (429)."""
    status_code = 429
    error_code = "concurrency_limit_exceeded"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidTransitionError(ServerError):
    """An execution was asked to move along an edge its state graph lacks."""


class StoreUnavailableError(ServerError):
    """A write-through to the entity store failed; nothing was committed."""
    error_code = "store_unavailable"


class ToolExecutionError(ServiceError):
    """Raised by runners; recorded on the execution rather than returned."""
    status_code = 502
    error_code = "execution_error"


class ExecutionTimeoutError(ServiceError):
    """Execution or approval deadline passed (504)."""
    status_code = 504
    error_code = "timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenSignatureError",
    "TokenTypeError",
    "TokenRevokedError",
    "SessionInactiveError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "AdmissionError",
    "ServerError",
    "InvalidTransitionError",
    "ToolExecutionError",
    "ExecutionTimeoutError",
]
