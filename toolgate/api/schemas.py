from __future__ import annotations

import unicodedata
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Bounds on client supplied tool input
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000
MAX_BATCH_SIZE = 100


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON before it reaches a tool."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_username(value: str) -> str:
    return unicodedata.normalize("NFKC", value).strip()


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "token_expired",
    "token_invalid",
    "forbidden",
    "not_found",
    "conflict",
    "concurrency_limit_exceeded",
    "server_error",
    "store_unavailable",
    "execution_error",
    "timeout",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("username")
    @classmethod
    def _clean_username(cls, value: str) -> str:
        cleaned = _normalize_username(value)
        if not cleaned:
            raise ValueError("username is required")
        return cleaned


class TokenRefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., max_length=4096, alias="refreshToken")


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., min_length=1, max_length=128, alias="currentPassword")
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("password must be at least 8 characters")
        if len(value) > 128:
            raise ValueError("password must be at most 128 characters")
        return value


class ExecutionCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_id: str = Field(..., min_length=1, max_length=128, alias="toolId")
    input: dict = Field(default_factory=dict)
    conversation_id: Optional[str] = Field(default=None, max_length=128, alias="conversationId")
    message_id: Optional[str] = Field(default=None, max_length=128, alias="messageId")

    @field_validator("input")
    @classmethod
    def _validate_input(cls, value: dict) -> dict:
        _validate_json_depth(value)
        return value


class ExecutionCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ApprovalDecisionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class ApprovalRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)

    @field_validator("reason")
    @classmethod
    def _require_reason(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("a rejection reason is required")
        return value.strip()


class BatchApprovalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    approval_ids: List[str] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE, alias="approvalIds")
    decision: Literal["approve", "reject"]
    reason: Optional[str] = Field(default=None, max_length=1000)


class SessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    username: str
    role: str
    session_id: str = Field(..., alias="sessionId")
    access_token: Optional[str] = Field(default=None, alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    expires_in: int = Field(..., alias="expiresIn")
    token_type: str = Field(default="bearer", alias="tokenType")
