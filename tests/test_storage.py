"""Tests for the memory and redis entity stores."""

from datetime import timedelta

import pytest

from toolgate.storage.common import ConstraintViolation, decode_record, encode_record
from toolgate.storage.memory import MemoryStore
from toolgate.storage.models import ExecutionStatus, Session, ToolExecution, User
from toolgate.storage.redis_store import RedisStore


class FakeRedis:
    """The handful of redis commands RedisStore uses, kept in dicts."""

    def __init__(self):
        self.values = {}
        self.expiry = {}
        self.sets = {}
        self.hashes = {}
        self.closed = False

    def ping(self):
        return True

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = ex
        else:
            self.expiry.pop(key, None)
        return True

    def delete(self, key):
        existed = key in self.values
        self.values.pop(key, None)
        self.expiry.pop(key, None)
        return int(existed)

    def sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)

    def srem(self, key, member):
        self.sets.get(key, set()).discard(member)

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = value

    def hdel(self, key, field):
        self.hashes.get(key, {}).pop(field, None)

    def close(self):
        self.closed = True


class FakeAsyncRedis:
    """Async signatures over a FakeRedis, shaped like the redis.asyncio client."""

    def __init__(self, sync):
        self._sync = sync
        self.closed = False

    async def get(self, key):
        return self._sync.get(key)

    async def set(self, key, value, ex=None):
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key):
        return self._sync.delete(key)

    async def sadd(self, key, member):
        return self._sync.sadd(key, member)

    async def srem(self, key, member):
        return self._sync.srem(key, member)

    async def smembers(self, key):
        return self._sync.smembers(key)

    async def hget(self, key, field):
        return self._sync.hget(key, field)

    async def hset(self, key, field, value):
        return self._sync.hset(key, field, value)

    async def hdel(self, key, field):
        return self._sync.hdel(key, field)

    async def aclose(self):
        self.closed = True


def _execution():
    execution = ToolExecution.new("echo", "u1", {"text": "hi"}, conversation_id="c1")
    execution.status = ExecutionStatus.COMPLETED
    execution.output = {"text": "hi"}
    execution.resource_usage = {"durationMs": 3}
    return execution


class TestMemoryStore:
    def test_saved_entities_are_copies(self):
        store = MemoryStore()
        execution = _execution()
        store.save(execution)

        execution.output = {"text": "changed"}
        loaded = store.load("execution", execution.id)
        assert loaded.output == {"text": "hi"}

        loaded.output = {"text": "mutated"}
        assert store.load("execution", execution.id).output == {"text": "hi"}

    def test_username_is_unique_case_insensitively(self):
        store = MemoryStore()
        store.save(User.new("Alice"))

        with pytest.raises(ConstraintViolation):
            store.save(User.new("alice"))

    def test_renaming_frees_old_username(self):
        store = MemoryStore()
        user = User.new("alice")
        store.save(user)
        user.username = "alicia"
        store.save(user)

        assert store.find_user_by_username("alice") is None
        assert store.find_user_by_username("ALICIA").id == user.id
        store.save(User.new("alice"))

    def test_delete(self):
        store = MemoryStore()
        user = User.new("alice")
        store.save(user)

        assert store.delete("user", user.id) is True
        assert store.delete("user", user.id) is False
        assert store.find_user_by_username("alice") is None
        assert store.load_all("user") == []

    def test_unknown_kind_loads_nothing(self):
        assert MemoryStore().load("widget", "x") is None


class TestRecordCodec:
    def test_execution_survives_encoding(self):
        execution = _execution()
        decoded = decode_record("execution", encode_record(execution))

        assert decoded == execution
        assert decoded.status is ExecutionStatus.COMPLETED
        assert decoded.transitions[0] == ("pending", execution.requested_at)

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ConstraintViolation):
            decode_record("widget", "{}")


class TestRedisStore:
    def _store(self):
        fake = FakeRedis()
        return RedisStore(client=fake, async_client=FakeAsyncRedis(fake), prefix="t"), fake

    def test_round_trip_and_index(self):
        store, fake = self._store()
        execution = _execution()
        store.save(execution)

        assert store.load("execution", execution.id) == execution
        assert [e.id for e in store.load_all("execution")] == [execution.id]
        assert fake.smembers("t:index:execution") == {execution.id}

    def test_sessions_carry_a_ttl(self):
        """Session records expire in redis with the session itself."""
        store, fake = self._store()
        session = Session.new(User.new("alice"), timedelta(hours=1))
        store.save(session)

        ttl = fake.expiry[f"t:session:{session.id}"]
        assert 3500 <= ttl <= 3600
        assert f"t:execution:{session.id}" not in fake.expiry

    def test_load_all_drops_dangling_index_entries(self):
        store, fake = self._store()
        session = Session.new(User.new("alice"), timedelta(hours=1))
        store.save(session)
        # simulate redis expiring the record
        fake.delete(f"t:session:{session.id}")

        assert store.load_all("session") == []
        assert fake.smembers("t:index:session") == set()

    def test_username_index(self):
        store, _ = self._store()
        user = User.new("Alice", password_hash="hash")
        store.save(user)

        assert store.find_user_by_username("alice").id == user.id
        with pytest.raises(ConstraintViolation):
            store.save(User.new("ALICE"))

        assert store.delete("user", user.id) is True
        assert store.find_user_by_username("alice") is None

    def test_verify_connection_pings(self):
        store, _ = self._store()
        store.verify_connection()

    async def test_async_writes_share_the_key_layout(self):
        """Executions written from the event loop read back through either client."""
        store, fake = self._store()
        execution = _execution()
        await store.asave(execution)

        assert store.load("execution", execution.id) == execution
        assert [e.id for e in await store.aload_all("execution")] == [execution.id]
        assert f"t:execution:{execution.id}" not in fake.expiry

        assert await store.adelete("execution", execution.id) is True
        assert await store.aload_all("execution") == []
        assert fake.smembers("t:index:execution") == set()

    async def test_async_username_index(self):
        store, _ = self._store()
        await store.asave(User.new("Alice"))

        with pytest.raises(ConstraintViolation):
            await store.asave(User.new("alice"))

    async def test_close_releases_both_clients(self):
        store, fake = self._store()
        await store.close()

        assert store.async_client.closed is True
        assert fake.closed is True


class TestMemoryStoreAsync:
    async def test_async_methods_use_the_same_records(self):
        store = MemoryStore()
        execution = _execution()
        await store.asave(execution)

        assert store.load("execution", execution.id) == execution
        assert await store.adelete("execution", execution.id) is True
        assert await store.aload_all("execution") == []
