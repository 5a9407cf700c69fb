from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class UserRole(str, Enum):
    GUEST = "guest"
    USER = "user"
    ADMIN = "admin"


class ToolCategory(str, Enum):
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    SYSTEM = "system"
    DEVELOPMENT = "development"
    DATABASE = "database"
    MCP = "mcp"
    CUSTOM = "custom"


class PermissionLevel(str, Enum):
    AUTO = "auto"
    USER_APPROVAL = "user_approval"
    ADMIN_APPROVAL = "admin_approval"
    DENIED = "denied"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApproverClass(str, Enum):
    USER = "user"
    ADMIN = "admin"
    BOTH = "both"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


TERMINAL_EXECUTION_STATES = frozenset(
    {
        ExecutionStatus.REJECTED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.ERROR,
        ExecutionStatus.TIMEOUT,
        ExecutionStatus.CANCELLED,
    }
)

# Every edge of the execution state graph; anything else is a bug in the caller
EXECUTION_TRANSITIONS: Dict[ExecutionStatus, frozenset] = {
    ExecutionStatus.PENDING: frozenset(
        {
            ExecutionStatus.APPROVED,
            ExecutionStatus.REJECTED,
            ExecutionStatus.EXECUTING,
            ExecutionStatus.TIMEOUT,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.APPROVED: frozenset(
        {ExecutionStatus.EXECUTING, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.EXECUTING: frozenset(
        {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.ERROR,
            ExecutionStatus.TIMEOUT,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.REJECTED: frozenset(),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.ERROR: frozenset(),
    ExecutionStatus.TIMEOUT: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


@dataclass
class User:
    id: str
    username: str
    role: str = UserRole.USER.value
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    password_hash: Optional[str] = None

    @classmethod
    def new(cls, username: str, role: str = UserRole.USER.value, password_hash: str | None = None) -> "User":
        return cls(id=str(uuid.uuid4()), username=username, role=role, password_hash=password_hash)

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "isActive": self.is_active,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class Session:
    id: str
    user_id: str
    username: str
    role: str
    created_at: datetime
    expires_at: datetime
    updated_at: datetime
    access_token: str = ""
    refresh_token: str = ""
    refresh_jti: Optional[str] = None
    expires_in: int = 0
    remember_me: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user: User,
        ttl: timedelta,
        *,
        remember_me: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user.id,
            username=user.username,
            role=user.role,
            created_at=now,
            expires_at=now + ttl,
            updated_at=now,
            remember_me=remember_me,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())

    def to_payload(self, *, is_current: bool = False, include_tokens: bool = True) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "accessToken": self.access_token if include_tokens else None,
            "refreshToken": self.refresh_token if include_tokens else None,
            "expiresIn": self.expires_in,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "createdAt": _iso(self.created_at),
            "isCurrent": is_current,
        }


@dataclass
class Tool:
    id: str
    name: str
    category: str = ToolCategory.CUSTOM.value
    description: str = ""
    permission_level: Optional[str] = None
    is_enabled: bool = True
    is_sandboxed: bool = True
    timeout_seconds: Optional[float] = None
    input_schema: Optional[dict] = None
    runner: str = "subprocess"
    runner_options: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "permissionLevel": self.permission_level,
            "isEnabled": self.is_enabled,
            "isSandboxed": self.is_sandboxed,
            "timeoutSeconds": self.timeout_seconds,
            "inputSchema": self.input_schema,
        }


@dataclass
class ToolExecution:
    id: str
    tool_id: str
    user_id: str
    input: Dict[str, Any]
    status: ExecutionStatus = ExecutionStatus.PENDING
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    permission_level: Optional[str] = None
    output: Any = None
    error: Optional[Dict[str, Any]] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    requested_at: datetime = field(default_factory=_utcnow)
    approved_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    resource_usage: Dict[str, Any] = field(default_factory=dict)
    transitions: List[Tuple[str, datetime]] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        tool_id: str,
        user_id: str,
        input: Dict[str, Any],
        *,
        conversation_id: str | None = None,
        message_id: str | None = None,
        permission_level: str | None = None,
    ) -> "ToolExecution":
        execution = cls(
            id=str(uuid.uuid4()),
            tool_id=tool_id,
            user_id=user_id,
            input=dict(input),
            conversation_id=conversation_id,
            message_id=message_id,
            permission_level=permission_level,
        )
        execution.transitions.append((ExecutionStatus.PENDING.value, execution.requested_at))
        return execution

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATES

    def to_payload(self) -> dict:
        payload: Dict[str, Any] = {
            "id": self.id,
            "toolId": self.tool_id,
            "userId": self.user_id,
            "conversationId": self.conversation_id,
            "messageId": self.message_id,
            "status": self.status.value,
            "input": self.input,
            "requestedAt": _iso(self.requested_at),
        }
        if self.output is not None:
            payload["output"] = self.output
        if self.error is not None:
            payload["error"] = self.error
        if self.approved_by:
            payload["approvedBy"] = self.approved_by
        if self.started_at:
            payload["startedAt"] = _iso(self.started_at)
        if self.completed_at:
            payload["completedAt"] = _iso(self.completed_at)
        if self.resource_usage:
            payload["resourceUsage"] = self.resource_usage
        return payload


@dataclass
class ApprovalRequest:
    id: str
    tool_execution_id: str
    tool_id: str
    requested_by: str
    risk_level: RiskLevel
    approver_class: ApproverClass
    required_by: datetime
    escalation_level: int = 0
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    reason: Optional[str] = None
    # Deadline length used for the first window and every escalation
    timeout_seconds: float = 300.0

    @classmethod
    def new(
        cls,
        execution: ToolExecution,
        risk_level: RiskLevel,
        approver_class: ApproverClass,
        created_at: datetime,
        timeout: timedelta,
    ) -> "ApprovalRequest":
        return cls(
            id=str(uuid.uuid4()),
            tool_execution_id=execution.id,
            tool_id=execution.tool_id,
            requested_by=execution.user_id,
            risk_level=risk_level,
            approver_class=approver_class,
            required_by=created_at + timeout,
            created_at=created_at,
            timeout_seconds=timeout.total_seconds(),
        )

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "toolExecutionId": self.tool_execution_id,
            "toolId": self.tool_id,
            "requestedBy": self.requested_by,
            "riskLevel": self.risk_level.value,
            "approverClass": self.approver_class.value,
            "requiredBy": _iso(self.required_by),
            "escalationLevel": self.escalation_level,
            "status": self.status.value,
        }


@dataclass
class LifecycleEvent:
    type: str
    payload: Dict[str, Any]
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_payload(self) -> dict:
        return {"type": self.type, "data": self.payload, "timestamp": _iso(self.timestamp)}
