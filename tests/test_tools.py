"""Tests for the tool catalog and input validation."""

import json

import pytest

from toolgate.service.errors import ValidationError
from toolgate.service.tools import ToolCatalog, tool_from_dict
from toolgate.storage.models import Tool

SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}, "depth": {"type": "integer", "minimum": 0}},
    "required": ["path"],
}


class TestToolCatalog:
    def test_from_file_accepts_wrapped_list(self, tmp_path):
        path = tmp_path / "tools.json"
        path.write_text(
            json.dumps(
                {
                    "tools": [
                        {"id": "ls", "name": "List", "category": "filesystem", "input_schema": SCHEMA},
                        {"id": "ping", "name": "Ping", "category": "network", "is_enabled": False},
                    ]
                }
            )
        )
        catalog = ToolCatalog.from_file(str(path))

        assert [t.id for t in catalog.list()] == ["ls", "ping"]
        assert [t.id for t in catalog.list(enabled_only=True)] == ["ls"]

    def test_from_file_accepts_bare_list(self, tmp_path):
        path = tmp_path / "tools.json"
        path.write_text(json.dumps([{"id": "ls", "name": "List"}]))

        catalog = ToolCatalog.from_file(str(path))
        assert catalog.get("ls").runner == "subprocess"

    def test_invalid_schema_is_rejected_at_registration(self):
        """Broken JSON schemas fail when the tool is registered, not when it runs."""
        catalog = ToolCatalog()
        with pytest.raises(ValidationError):
            catalog.register(Tool(id="bad", name="Bad", input_schema={"type": "not-a-type"}))
        assert catalog.get("bad") is None

    def test_validate_input_reports_every_error(self):
        catalog = ToolCatalog([Tool(id="ls", name="List", input_schema=SCHEMA)])
        tool = catalog.get("ls")

        with pytest.raises(ValidationError) as exc:
            catalog.validate_input(tool, {"depth": -1})
        assert len(exc.value.detail["errors"]) == 2

    def test_validate_input_accepts_valid_payload(self):
        catalog = ToolCatalog([Tool(id="ls", name="List", input_schema=SCHEMA)])
        catalog.validate_input(catalog.get("ls"), {"path": "/srv", "depth": 2})

    def test_input_must_be_an_object(self):
        catalog = ToolCatalog([Tool(id="ls", name="List")])
        with pytest.raises(ValidationError):
            catalog.validate_input(catalog.get("ls"), ["not", "an", "object"])

    def test_timeout_is_capped(self):
        """Per-tool timeouts never exceed the configured ceiling."""
        catalog = ToolCatalog(default_timeout=10, max_timeout=60)
        assert catalog.timeout_for(Tool(id="a", name="A")) == 10
        assert catalog.timeout_for(Tool(id="b", name="B", timeout_seconds=30)) == 30
        assert catalog.timeout_for(Tool(id="c", name="C", timeout_seconds=3600)) == 60


class TestToolFromDict:
    def test_unknown_fields_are_rejected(self):
        with pytest.raises(ValidationError):
            tool_from_dict({"id": "x", "name": "X", "shell": True})

    def test_unknown_category_is_rejected(self):
        with pytest.raises(ValidationError):
            tool_from_dict({"id": "x", "name": "X", "category": "weather"})

    def test_unknown_permission_level_is_rejected(self):
        with pytest.raises(ValidationError):
            tool_from_dict({"id": "x", "name": "X", "permission_level": "maybe"})

    def test_id_and_name_required(self):
        with pytest.raises(ValidationError):
            tool_from_dict({"name": "X"})
