from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from toolgate.logging import get_logger
from toolgate.service.errors import ValidationError
from toolgate.storage.models import PermissionLevel, Tool, ToolCategory

logger = get_logger(__name__)

_TOOL_FIELDS = {
    "id",
    "name",
    "category",
    "description",
    "permission_level",
    "is_enabled",
    "is_sandboxed",
    "timeout_seconds",
    "input_schema",
    "runner",
    "runner_options",
}


def tool_from_dict(data: Dict[str, Any]) -> Tool:
    unknown = set(data) - _TOOL_FIELDS
    if unknown:
        raise ValidationError("unknown tool fields", detail={"fields": sorted(unknown)})
    if not data.get("id") or not data.get("name"):
        raise ValidationError("tool id and name are required")
    category = data.get("category", ToolCategory.CUSTOM.value)
    if category not in {c.value for c in ToolCategory}:
        raise ValidationError("unknown tool category", detail={"category": category})
    level = data.get("permission_level")
    if level is not None and level not in {p.value for p in PermissionLevel}:
        raise ValidationError("unknown permission level", detail={"permission_level": level})
    return Tool(**data)


class ToolCatalog:
    """Tool definitions the gateway knows how to authorize and run."""

    def __init__(
        self,
        tools: Optional[List[Tool]] = None,
        *,
        default_timeout: float = 30.0,
        max_timeout: float = 30 * 60.0,
    ) -> None:
        self.default_timeout = default_timeout
        self.max_timeout = max_timeout
        self._tools: Dict[str, Tool] = {}
        self._validators: Dict[str, Draft202012Validator] = {}
        self._lock = threading.Lock()
        for tool in tools or []:
            self.register(tool)

    @classmethod
    def from_file(cls, path: str, **kwargs: Any) -> "ToolCatalog":
        raw = json.loads(Path(path).read_text())
        entries = raw.get("tools", []) if isinstance(raw, dict) else raw
        catalog = cls(**kwargs)
        for entry in entries:
            catalog.register(tool_from_dict(entry))
        logger.info("tool_catalog_loaded", path=path, tools=len(catalog.list()))
        return catalog

    def register(self, tool: Tool) -> Tool:
        validator = None
        if tool.input_schema:
            try:
                Draft202012Validator.check_schema(tool.input_schema)
            except SchemaError as exc:
                logger.warning("tool_schema_invalid", tool=tool.id, error=exc.message)
                raise ValidationError(
                    "invalid input schema", detail={"tool_id": tool.id, "error": exc.message}
                ) from exc
            validator = Draft202012Validator(tool.input_schema)
        with self._lock:
            self._tools[tool.id] = tool
            if validator is not None:
                self._validators[tool.id] = validator
            else:
                self._validators.pop(tool.id, None)
        return tool

    def get(self, tool_id: str) -> Optional[Tool]:
        with self._lock:
            return self._tools.get(tool_id)

    def list(self, *, enabled_only: bool = False) -> List[Tool]:
        with self._lock:
            tools = list(self._tools.values())
        if enabled_only:
            tools = [t for t in tools if t.is_enabled]
        return sorted(tools, key=lambda t: t.id)

    def timeout_for(self, tool: Tool) -> float:
        timeout = tool.timeout_seconds or self.default_timeout
        return min(float(timeout), self.max_timeout)

    def validate_input(self, tool: Tool, payload: Any) -> None:
        if not isinstance(payload, dict):
            raise ValidationError("tool input must be an object", detail={"tool_id": tool.id})
        with self._lock:
            validator = self._validators.get(tool.id)
        if validator is None:
            return
        errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
        if errors:
            raise ValidationError(
                "tool input failed validation",
                detail={"tool_id": tool.id, "errors": [e.message for e in errors]},
            )
