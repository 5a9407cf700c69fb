from __future__ import annotations

import copy
import threading
from typing import Dict, List, Optional

from toolgate.logging import get_logger
from toolgate.storage.common import ConstraintViolation, Entity, entity_kind
from toolgate.storage.models import User


class MemoryStore:
    """In-process entity store.

    Entities are deep-copied on the way in and out so callers can never
    mutate a saved record through a shared reference, mirroring what a
    networked store would give them.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._records: Dict[str, Dict[str, Entity]] = {
            "session": {},
            "execution": {},
            "user": {},
        }
        self._usernames: Dict[str, str] = {}
        # RLock so nested helpers can re-enter while a write is in flight
        self._data_lock = threading.RLock()

    def save(self, entity: Entity) -> None:
        kind = entity_kind(entity)
        with self._data_lock:
            if isinstance(entity, User):
                owner = self._usernames.get(entity.username.lower())
                if owner and owner != entity.id:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                previous = self._records["user"].get(entity.id)
                if previous and previous.username.lower() != entity.username.lower():
                    self._usernames.pop(previous.username.lower(), None)
                self._usernames[entity.username.lower()] = entity.id
            self._records[kind][entity.id] = copy.deepcopy(entity)

    def load(self, kind: str, entity_id: str) -> Optional[Entity]:
        with self._data_lock:
            record = self._records.get(kind, {}).get(entity_id)
            return copy.deepcopy(record) if record is not None else None

    def load_all(self, kind: str) -> List[Entity]:
        with self._data_lock:
            return [copy.deepcopy(record) for record in self._records.get(kind, {}).values()]

    def delete(self, kind: str, entity_id: str) -> bool:
        with self._data_lock:
            record = self._records.get(kind, {}).pop(entity_id, None)
            if record is None:
                return False
            if isinstance(record, User):
                self._usernames.pop(record.username.lower(), None)
            return True

    def find_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._usernames.get(username.lower())
            if not user_id:
                return None
            return self.load("user", user_id)

    # Async signatures so the execution registry can await either store

    async def asave(self, entity: Entity) -> None:
        self.save(entity)

    async def aload_all(self, kind: str) -> List[Entity]:
        return self.load_all(kind)

    async def adelete(self, kind: str, entity_id: str) -> bool:
        return self.delete(kind, entity_id)
