"""Unit tests for SessionRegistry.

Covers the per-user cap and eviction order, token rotation with replay
detection, revocation helpers and persistence through the store.
"""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import FlakyStore

from toolgate.service.errors import (
    SessionInactiveError,
    StoreUnavailableError,
    TokenRevokedError,
)
from toolgate.service.sessions import SessionRegistry
from toolgate.service.tokens import TokenAuthority
from toolgate.storage.memory import MemoryStore
from toolgate.storage.models import User

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def tokens():
    return TokenAuthority(SECRET)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registry(tokens, store):
    return SessionRegistry(tokens, max_sessions=2, store=store)


@pytest.fixture
def alice():
    return User.new("alice")


@pytest.fixture
def bob():
    return User.new("bob")


class TestSessionCap:
    def test_create_session_issues_tokens(self, registry, alice):
        """New sessions carry both tokens and the access lifetime."""
        session = registry.create_session(alice, ip="10.0.0.1", user_agent="pytest")

        assert session.access_token
        assert session.refresh_token
        assert session.expires_in == 15 * 60
        assert session.ip_address == "10.0.0.1"
        assert registry.authenticate(session.access_token).user_id == alice.id

    def test_oldest_session_is_evicted_at_cap(self, registry, alice):
        """The third login drops the first session and keeps the newest."""
        first = registry.create_session(alice)
        second = registry.create_session(alice)
        third = registry.create_session(alice)

        live = {s.id for s in registry.get_user_sessions(alice.id)}
        assert live == {second.id, third.id}
        assert registry.get_session(first.id) is None
        with pytest.raises(SessionInactiveError):
            registry.authenticate(first.access_token)

    def test_eviction_is_per_user(self, registry, alice, bob):
        """One user's logins never evict another user's sessions."""
        bob_session = registry.create_session(bob)
        for _ in range(3):
            registry.create_session(alice)

        assert registry.get_session(bob_session.id) is not None
        assert len(registry.get_user_sessions(alice.id)) == 2

    def test_remember_me_uses_longer_ttl(self, tokens, alice):
        registry = SessionRegistry(
            tokens, session_ttl=timedelta(hours=1), remember_me_ttl=timedelta(days=30)
        )
        short = registry.create_session(alice)
        long = registry.create_session(alice, remember_me=True)

        assert long.expires_at - long.created_at == timedelta(days=30)
        assert short.expires_at - short.created_at == timedelta(hours=1)


class TestTokenRotation:
    def test_refresh_rotates_both_tokens(self, registry, alice):
        """A refresh returns new access and refresh tokens."""
        session = registry.create_session(alice)
        rotated = registry.refresh_access_token(session.refresh_token)

        assert rotated is not None
        assert rotated.refresh_token != session.refresh_token
        assert rotated.access_token != session.access_token
        assert registry.authenticate(rotated.access_token).session_id == session.id

    def test_replayed_refresh_token_is_revoked(self, registry, alice):
        """Each refresh token works exactly once."""
        session = registry.create_session(alice)
        registry.refresh_access_token(session.refresh_token)

        with pytest.raises(TokenRevokedError):
            registry.refresh_access_token(session.refresh_token)

    def test_refresh_for_destroyed_session_returns_none(self, registry, alice):
        session = registry.create_session(alice)
        registry.destroy_session(session.id)

        assert registry.refresh_access_token(session.refresh_token) is None

    def test_refresh_drops_session_of_deactivated_user(self, tokens, store, alice):
        """The user loader is consulted so disabled accounts lose their sessions."""
        alice.is_active = False
        registry = SessionRegistry(tokens, store=store, user_loader=lambda user_id: alice)
        session = registry.create_session(alice)

        assert registry.refresh_access_token(session.refresh_token) is None
        assert registry.get_session(session.id) is None


class TestRevocation:
    def test_destroy_session_is_idempotent(self, registry, alice):
        session = registry.create_session(alice)
        assert registry.destroy_session(session.id) is True
        assert registry.destroy_session(session.id) is False

    def test_destroy_other_sessions_keeps_current(self, tokens, alice):
        registry = SessionRegistry(tokens, max_sessions=5)
        current = registry.create_session(alice)
        registry.create_session(alice)
        registry.create_session(alice)

        assert registry.destroy_other_sessions(alice.id, current.id) == 2
        assert [s.id for s in registry.get_user_sessions(alice.id)] == [current.id]

    def test_destroy_all_sessions(self, registry, alice, bob):
        registry.create_session(alice)
        registry.create_session(alice)
        bob_session = registry.create_session(bob)

        assert registry.destroy_all_sessions(alice.id) == 2
        assert registry.get_user_sessions(alice.id) == []
        assert registry.get_session(bob_session.id) is not None

    def test_revoked_session_rejects_its_access_token(self, registry, alice):
        """A token that still verifies is refused once its session is gone."""
        session = registry.create_session(alice)
        registry.destroy_session(session.id)

        with pytest.raises(SessionInactiveError):
            registry.authenticate(session.access_token)


class TestMaintenance:
    def test_cleanup_expired_removes_only_expired(self, registry, alice, bob, store):
        expired = registry.create_session(alice)
        fresh = registry.create_session(bob)
        registry._sessions[expired.id].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        assert registry.cleanup_expired() == 1
        assert registry.get_session(fresh.id) is not None
        assert store.load("session", expired.id) is None

    def test_stats(self, registry, alice, bob):
        registry.create_session(alice)
        registry.create_session(bob)

        stats = registry.stats()
        assert stats["totalSessions"] == 2
        assert stats["activeSessions"] == 2
        assert stats["expiredSessions"] == 0
        assert stats["userCount"] == 2

    def test_sessions_survive_restart_through_store(self, tokens, store, alice):
        """A new registry on the same store picks up live sessions."""
        original = SessionRegistry(tokens, store=store)
        session = original.create_session(alice)

        restarted = SessionRegistry(tokens, store=store)
        assert restarted.restore() == 1
        assert restarted.authenticate(session.access_token).user_id == alice.id

    def test_restore_does_not_duplicate_indexed_sessions(self, registry, alice):
        registry.create_session(alice)
        registry.restore()

        assert len(registry.get_user_sessions(alice.id)) == 1


class TestStoreFailures:
    def test_failed_login_leaves_no_session(self, tokens, alice):
        store = FlakyStore()
        store.failing = True
        registry = SessionRegistry(tokens, store=store)

        with pytest.raises(StoreUnavailableError):
            registry.create_session(alice)

        assert registry.get_user_sessions(alice.id) == []
        assert registry.stats()["totalSessions"] == 0

    def test_failed_rotation_keeps_current_tokens(self, tokens, alice):
        """The refresh token survives a rotation the store did not record."""
        store = FlakyStore()
        registry = SessionRegistry(tokens, store=store)
        session = registry.create_session(alice)

        store.failing = True
        with pytest.raises(StoreUnavailableError):
            registry.refresh_access_token(session.refresh_token)
        assert registry.authenticate(session.access_token).session_id == session.id

        store.failing = False
        assert registry.refresh_access_token(session.refresh_token) is not None
