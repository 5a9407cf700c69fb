from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis import Redis

from toolgate.logging import get_logger
from toolgate.storage.common import (
    ConstraintViolation,
    Entity,
    decode_record,
    encode_record,
    entity_kind,
)
from toolgate.storage.models import Session, User

logger = get_logger(__name__)


class RedisStore:
    """Entity store backed by Redis JSON records.

    Two clients share the key layout. The synchronous one serves the session
    and user paths, which run under a thread lock and at startup; the
    ``redis.asyncio`` one serves the ``a*`` methods the execution registry
    awaits on the event loop.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "toolgate",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
        async_client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.async_client = async_client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def close(self) -> None:
        """Close both connection pools. Call when shutting down the runtime."""
        await self.async_client.aclose()
        self.client.close()

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def _ttl_for(self, entity: Entity) -> Optional[int]:
        if isinstance(entity, Session):
            # Expired sessions age out of redis on their own
            return self._ttl_seconds(entity.expires_at)
        return None

    def _key(self, kind: str, entity_id: str) -> str:
        return f"{self.prefix}:{kind}:{entity_id}"

    def _index_key(self, kind: str) -> str:
        return f"{self.prefix}:index:{kind}"

    @property
    def _usernames_key(self) -> str:
        return f"{self.prefix}:usernames"

    def save(self, entity: Entity) -> None:
        kind = entity_kind(entity)
        if isinstance(entity, User):
            name = entity.username.lower()
            owner = self.client.hget(self._usernames_key, name)
            if owner and owner != entity.id:
                raise ConstraintViolation("username already exists", {"field": "username"})
            self.client.hset(self._usernames_key, name, entity.id)
        self.client.set(self._key(kind, entity.id), encode_record(entity), ex=self._ttl_for(entity))
        self.client.sadd(self._index_key(kind), entity.id)

    def load(self, kind: str, entity_id: str) -> Optional[Entity]:
        raw = self.client.get(self._key(kind, entity_id))
        if raw is None:
            return None
        return decode_record(kind, raw)

    def load_all(self, kind: str) -> List[Entity]:
        records: List[Entity] = []
        for entity_id in sorted(self.client.smembers(self._index_key(kind))):
            record = self.load(kind, entity_id)
            if record is None:
                # TTL removed the record; drop the dangling index entry
                self.client.srem(self._index_key(kind), entity_id)
                continue
            records.append(record)
        return records

    def delete(self, kind: str, entity_id: str) -> bool:
        if kind == "user":
            record = self.load(kind, entity_id)
            if record is not None:
                self.client.hdel(self._usernames_key, record.username.lower())
        self.client.srem(self._index_key(kind), entity_id)
        return bool(self.client.delete(self._key(kind, entity_id)))

    def find_user_by_username(self, username: str) -> Optional[User]:
        user_id = self.client.hget(self._usernames_key, username.lower())
        if not user_id:
            return None
        user = self.load("user", user_id)
        if user is None:
            logger.warning("redis_username_index_stale", user_id=user_id)
        return user

    # Async twins used on the event loop

    async def asave(self, entity: Entity) -> None:
        kind = entity_kind(entity)
        if isinstance(entity, User):
            name = entity.username.lower()
            owner = await self.async_client.hget(self._usernames_key, name)
            if owner and owner != entity.id:
                raise ConstraintViolation("username already exists", {"field": "username"})
            await self.async_client.hset(self._usernames_key, name, entity.id)
        await self.async_client.set(
            self._key(kind, entity.id), encode_record(entity), ex=self._ttl_for(entity)
        )
        await self.async_client.sadd(self._index_key(kind), entity.id)

    async def aload_all(self, kind: str) -> List[Entity]:
        records: List[Entity] = []
        for entity_id in sorted(await self.async_client.smembers(self._index_key(kind))):
            raw = await self.async_client.get(self._key(kind, entity_id))
            if raw is None:
                await self.async_client.srem(self._index_key(kind), entity_id)
                continue
            records.append(decode_record(kind, raw))
        return records

    async def adelete(self, kind: str, entity_id: str) -> bool:
        if kind == "user":
            raw = await self.async_client.get(self._key(kind, entity_id))
            if raw is not None:
                record = decode_record(kind, raw)
                await self.async_client.hdel(self._usernames_key, record.username.lower())
        await self.async_client.srem(self._index_key(kind), entity_id)
        return bool(await self.async_client.delete(self._key(kind, entity_id)))
