"""Unit tests for permission classification and risk assessment."""

import pytest

from toolgate.service.policy import PermissionPolicy, role_allows, widen
from toolgate.storage.models import ApproverClass, PermissionLevel, RiskLevel, Tool


def _tool(**overrides):
    data = {"id": "tool", "name": "Tool", "category": "custom"}
    data.update(overrides)
    return Tool(**data)


class TestClassify:
    @pytest.mark.parametrize(
        "category,expected",
        [
            ("filesystem", PermissionLevel.USER_APPROVAL),
            ("network", PermissionLevel.USER_APPROVAL),
            ("system", PermissionLevel.ADMIN_APPROVAL),
            ("database", PermissionLevel.ADMIN_APPROVAL),
            ("development", PermissionLevel.USER_APPROVAL),
            ("custom", PermissionLevel.USER_APPROVAL),
        ],
    )
    def test_category_defaults_for_users(self, category, expected):
        assert PermissionPolicy().classify(_tool(category=category), "user") == expected

    def test_tool_level_beats_category(self):
        tool = _tool(category="system", permission_level="auto")
        assert PermissionPolicy().classify(tool, "user") == PermissionLevel.AUTO

    def test_override_beats_tool_level(self):
        """Configured overrides win over what the catalog declares."""
        tool = _tool(permission_level="auto")
        policy = PermissionPolicy({"tool": "admin_approval"})
        assert policy.classify(tool, "user") == PermissionLevel.ADMIN_APPROVAL

    def test_disabled_tool_is_denied(self):
        tool = _tool(permission_level="auto", is_enabled=False)
        assert PermissionPolicy().classify(tool, "admin") == PermissionLevel.DENIED

    def test_denied_stays_denied_for_admin(self):
        tool = _tool(permission_level="denied")
        assert PermissionPolicy().classify(tool, "admin") == PermissionLevel.DENIED

    def test_guest_only_gets_auto_tools(self):
        """Guests may run auto tools and nothing that needs approval."""
        policy = PermissionPolicy()
        assert policy.classify(_tool(permission_level="auto"), "guest") == PermissionLevel.AUTO
        assert policy.classify(_tool(category="filesystem"), "guest") == PermissionLevel.DENIED

    def test_admin_approval_becomes_self_approval_for_admins(self):
        tool = _tool(category="system")
        assert PermissionPolicy().classify(tool, "admin") == PermissionLevel.USER_APPROVAL

    def test_unknown_role_is_denied(self):
        assert PermissionPolicy().classify(_tool(permission_level="auto"), "robot") == PermissionLevel.DENIED

    def test_category_argument_overrides_tool_category(self):
        tool = _tool(category="custom")
        assert PermissionPolicy().classify(tool, "user", category="database") == PermissionLevel.ADMIN_APPROVAL


class TestRisk:
    def test_destructive_input_is_high_risk(self):
        """Destructive verbs anywhere in the input raise the risk."""
        tool = _tool(permission_level="auto")
        risk = PermissionPolicy().assess_risk(tool, {"args": ["ls", {"cmd": "rm -rf build"}]})
        assert risk == RiskLevel.HIGH

    def test_auto_sandboxed_tool_is_low_risk(self):
        tool = _tool(permission_level="auto", is_sandboxed=True)
        assert PermissionPolicy().assess_risk(tool, {"text": "hello"}) == RiskLevel.LOW

    def test_unsandboxed_low_risk_tool_is_medium(self):
        tool = _tool(permission_level="auto", is_sandboxed=False)
        assert PermissionPolicy().assess_risk(tool, {"text": "hello"}) == RiskLevel.MEDIUM

    def test_category_risk(self):
        policy = PermissionPolicy()
        assert policy.assess_risk(_tool(category="filesystem"), {}) == RiskLevel.HIGH
        assert policy.assess_risk(_tool(category="development"), {}) == RiskLevel.MEDIUM

    def test_words_containing_keywords_do_not_match(self):
        """Matching is on whole words, so 'format' inside 'information' is ignored."""
        tool = _tool(permission_level="auto")
        assert PermissionPolicy().assess_risk(tool, {"q": "information about dropbox"}) == RiskLevel.LOW


class TestApproverClasses:
    def test_approver_class_for_levels(self):
        assert PermissionPolicy.approver_class_for(PermissionLevel.USER_APPROVAL) == ApproverClass.USER
        assert PermissionPolicy.approver_class_for(PermissionLevel.ADMIN_APPROVAL) == ApproverClass.ADMIN

    @pytest.mark.parametrize("level", [PermissionLevel.AUTO, PermissionLevel.DENIED])
    def test_levels_without_approval_raise(self, level):
        with pytest.raises(ValueError):
            PermissionPolicy.approver_class_for(level)

    def test_widen(self):
        """Escalation opens user requests to admins but never narrows or loosens admin ones."""
        assert widen(ApproverClass.USER) == ApproverClass.BOTH
        assert widen(ApproverClass.BOTH) == ApproverClass.BOTH
        assert widen(ApproverClass.ADMIN) == ApproverClass.ADMIN

    def test_role_allows(self):
        assert role_allows("admin", "user")
        assert role_allows("user", "user")
        assert not role_allows("guest", "user")
        assert not role_allows("unknown", "guest")
