"""Storage utilities shared between the memory and redis implementations.

Entities are addressed by ``(kind, id)``; the registries write through to
whichever store they were built with and never assume a technology.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Union

from toolgate.storage.models import (
    ExecutionStatus,
    Session,
    ToolExecution,
    User,
)

Entity = Union[Session, ToolExecution, User]


class ConstraintViolation(Exception):
    """Raised when a store rejects a write (duplicate username, unknown kind)."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


ENTITY_KINDS: Dict[str, type] = {
    "session": Session,
    "execution": ToolExecution,
    "user": User,
}


class EntityStore(Protocol):
    def save(self, entity: Entity) -> None: ...

    def load(self, kind: str, entity_id: str) -> Optional[Entity]: ...

    def load_all(self, kind: str) -> List[Entity]: ...

    def delete(self, kind: str, entity_id: str) -> bool: ...

    def find_user_by_username(self, username: str) -> Optional[User]: ...

    async def asave(self, entity: Entity) -> None: ...

    async def aload_all(self, kind: str) -> List[Entity]: ...

    async def adelete(self, kind: str, entity_id: str) -> bool: ...


def entity_kind(entity: Any) -> str:
    for kind, cls in ENTITY_KINDS.items():
        if isinstance(entity, cls):
            return kind
    raise ConstraintViolation(
        "unsupported entity type", {"type": type(entity).__name__}
    )


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"__dt__": value.isoformat()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    return value


def _from_jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {"__dt__"}:
            return datetime.fromisoformat(value["__dt__"])
        return {key: _from_jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_from_jsonable(item) for item in value]
    return value


def encode_record(entity: Entity) -> str:
    return json.dumps(_to_jsonable(asdict(entity)), separators=(",", ":"))


def decode_record(kind: str, raw: str) -> Entity:
    try:
        cls = ENTITY_KINDS[kind]
    except KeyError:
        raise ConstraintViolation("unknown entity kind", {"kind": kind}) from None
    data = _from_jsonable(json.loads(raw))
    if cls is ToolExecution:
        data["status"] = ExecutionStatus(data["status"])
        data["transitions"] = [tuple(item) for item in data.get("transitions", [])]
    return cls(**data)
