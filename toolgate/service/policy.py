"""Permission classification and risk assessment for tool executions.

Everything here is a pure function of its arguments plus the override table
the policy was built with, so a single instance is shared freely.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional

from toolgate.storage.models import (
    ApproverClass,
    PermissionLevel,
    RiskLevel,
    Tool,
    ToolCategory,
    UserRole,
)

ROLE_RANK: Dict[str, int] = {
    UserRole.GUEST.value: 0,
    UserRole.USER.value: 1,
    UserRole.ADMIN.value: 2,
}

CATEGORY_DEFAULT_PERMISSIONS: Dict[str, PermissionLevel] = {
    ToolCategory.FILESYSTEM.value: PermissionLevel.USER_APPROVAL,
    ToolCategory.NETWORK.value: PermissionLevel.USER_APPROVAL,
    ToolCategory.SYSTEM.value: PermissionLevel.ADMIN_APPROVAL,
    ToolCategory.DEVELOPMENT.value: PermissionLevel.USER_APPROVAL,
    ToolCategory.DATABASE.value: PermissionLevel.ADMIN_APPROVAL,
    ToolCategory.MCP.value: PermissionLevel.USER_APPROVAL,
    ToolCategory.CUSTOM.value: PermissionLevel.USER_APPROVAL,
}

CATEGORY_RISK: Dict[str, RiskLevel] = {
    ToolCategory.FILESYSTEM.value: RiskLevel.HIGH,
    ToolCategory.NETWORK.value: RiskLevel.HIGH,
    ToolCategory.SYSTEM.value: RiskLevel.HIGH,
    ToolCategory.DATABASE.value: RiskLevel.HIGH,
    ToolCategory.DEVELOPMENT.value: RiskLevel.MEDIUM,
    ToolCategory.MCP.value: RiskLevel.MEDIUM,
    ToolCategory.CUSTOM.value: RiskLevel.MEDIUM,
}

_DESTRUCTIVE_INPUT = re.compile(
    r"\b(delete|drop|rm|remove|sudo|admin|format|kill|truncate)\b", re.IGNORECASE
)

_APPROVER_FOR_LEVEL = {
    PermissionLevel.USER_APPROVAL: ApproverClass.USER,
    PermissionLevel.ADMIN_APPROVAL: ApproverClass.ADMIN,
}


def role_allows(role: str, required: str) -> bool:
    """Role hierarchy check: guest < user < admin."""
    return ROLE_RANK.get(role, -1) >= ROLE_RANK.get(required, len(ROLE_RANK))


def widen(approver_class: ApproverClass) -> ApproverClass:
    """Approver class after an escalation.

    A self-approval request opens up to admins as well. Admin-only requests
    stay admin-only: widening must never let a requester sign off on a tool
    that needed someone else.
    """
    if approver_class == ApproverClass.USER:
        return ApproverClass.BOTH
    return approver_class


def _input_text(value: Any) -> str:
    if isinstance(value, Mapping):
        return " ".join(_input_text(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return " ".join(_input_text(v) for v in value)
    return str(value) if value is not None else ""


class PermissionPolicy:
    def __init__(self, overrides: Optional[Mapping[str, str]] = None) -> None:
        self.overrides = {
            tool_id: PermissionLevel(level) for tool_id, level in (overrides or {}).items()
        }

    def base_level(self, tool: Tool, category: Optional[str] = None) -> PermissionLevel:
        if tool.id in self.overrides:
            return self.overrides[tool.id]
        if tool.permission_level:
            return PermissionLevel(tool.permission_level)
        return CATEGORY_DEFAULT_PERMISSIONS.get(
            category or tool.category, PermissionLevel.USER_APPROVAL
        )

    def classify(
        self, tool: Tool, role: str, category: Optional[str] = None
    ) -> PermissionLevel:
        if not tool.is_enabled:
            return PermissionLevel.DENIED
        level = self.base_level(tool, category)
        if level == PermissionLevel.DENIED:
            return level
        if role not in ROLE_RANK:
            return PermissionLevel.DENIED
        if role == UserRole.GUEST.value:
            return level if level == PermissionLevel.AUTO else PermissionLevel.DENIED
        if role == UserRole.ADMIN.value and level == PermissionLevel.ADMIN_APPROVAL:
            # Admins sign off on their own admin-level requests
            return PermissionLevel.USER_APPROVAL
        return level

    def assess_risk(self, tool: Tool, input: Optional[Mapping[str, Any]] = None) -> RiskLevel:
        if _DESTRUCTIVE_INPUT.search(_input_text(input or {})):
            return RiskLevel.HIGH
        if self.base_level(tool) == PermissionLevel.AUTO:
            risk = RiskLevel.LOW
        else:
            risk = CATEGORY_RISK.get(tool.category, RiskLevel.MEDIUM)
        if risk == RiskLevel.LOW and not tool.is_sandboxed:
            return RiskLevel.MEDIUM
        return risk

    @staticmethod
    def approver_class_for(level: PermissionLevel) -> ApproverClass:
        try:
            return _APPROVER_FOR_LEVEL[level]
        except KeyError:
            raise ValueError(f"{level.value} does not require approval") from None
