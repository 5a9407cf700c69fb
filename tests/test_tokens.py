"""Unit tests for token issuance and verification."""

from datetime import timedelta

import pytest

from toolgate.config import Settings
from toolgate.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
    TokenTypeError,
)
from toolgate.service.tokens import TokenAuthority

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def authority(clock):
    return TokenAuthority(SECRET, clock=clock)


class TestAccessTokens:
    def test_round_trip_preserves_claims(self, authority):
        """A freshly issued access token verifies back to its claims."""
        token = authority.issue_access_token("user-1", "alice", "user", "session-1")
        payload = authority.verify_access_token(token)

        assert payload.user_id == "user-1"
        assert payload.session_id == "session-1"
        assert payload.username == "alice"
        assert payload.role == "user"
        assert payload.token_type == "access"
        assert payload.jti

    def test_each_token_has_unique_jti(self, authority):
        """Two tokens for the same session carry different identifiers."""
        first = authority.verify_access_token(authority.issue_access_token("u", "a", "user", "s"))
        second = authority.verify_access_token(authority.issue_access_token("u", "a", "user", "s"))
        assert first.jti != second.jti

    def test_expired_token_is_reported_as_expired(self, authority, clock):
        """Expiry is distinguishable from other failures."""
        token = authority.issue_access_token("user-1", "alice", "user", "session-1")
        clock.advance(16 * 60)

        with pytest.raises(TokenExpiredError) as exc:
            authority.verify_access_token(token)
        assert exc.value.reason == "expired"
        assert exc.value.error_code == "token_expired"

    def test_tampered_token_fails_signature(self, authority):
        """Changing the payload invalidates the signature."""
        token = authority.issue_access_token("user-1", "alice", "user", "session-1")
        header, payload, signature = token.split(".")
        forged = authority._encode_segment(b'{"sub":"admin","sid":"x"}')

        with pytest.raises(TokenSignatureError):
            authority.verify_access_token(f"{header}.{forged}.{signature}")

    def test_token_signed_with_other_secret_is_rejected(self, authority, clock):
        """Tokens from a different secret never verify."""
        other = TokenAuthority("another-secret-entirely-0123456789", clock=clock)
        token = other.issue_access_token("user-1", "alice", "user", "session-1")

        with pytest.raises(TokenSignatureError):
            authority.verify_access_token(token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens(self, authority, token):
        """Garbage input raises a malformed-token error, never a crash."""
        with pytest.raises(TokenMalformedError):
            authority.verify_access_token(token)

    def test_issuer_mismatch_is_rejected(self, clock):
        """A token from another issuer is not accepted even with the same secret."""
        issuer_a = TokenAuthority(SECRET, issuer="service-a", clock=clock)
        issuer_b = TokenAuthority(SECRET, issuer="service-b", clock=clock)
        token = issuer_a.issue_access_token("user-1", "alice", "user", "session-1")

        with pytest.raises(TokenMalformedError):
            issuer_b.verify_access_token(token)


class TestRefreshTokens:
    def test_refresh_token_round_trip(self, authority):
        """Refresh tokens verify and report the jti returned at issue time."""
        token, jti = authority.issue_refresh_token("user-1", "session-1")
        payload = authority.verify_refresh_token(token)

        assert payload.jti == jti
        assert payload.token_type == "refresh"

    def test_refresh_token_cannot_be_used_as_access_token(self, authority):
        """Presenting the wrong token type fails with a type error."""
        token, _ = authority.issue_refresh_token("user-1", "session-1")
        with pytest.raises(TokenTypeError):
            authority.verify_access_token(token)

    def test_access_token_cannot_be_used_as_refresh_token(self, authority):
        token = authority.issue_access_token("user-1", "alice", "user", "session-1")
        with pytest.raises(TokenTypeError):
            authority.verify_refresh_token(token)

    def test_separate_refresh_secret(self, clock):
        """With distinct secrets a refresh token fails the access signature check."""
        authority = TokenAuthority(SECRET, refresh_secret="refresh-secret-0123456789abcdef", clock=clock)
        token, _ = authority.issue_refresh_token("user-1", "session-1")

        assert authority.verify_refresh_token(token).user_id == "user-1"
        with pytest.raises(TokenSignatureError):
            authority.verify_access_token(token)


class TestExpiringSoon:
    def test_fresh_token_is_not_expiring(self, authority):
        token = authority.issue_access_token("user-1", "alice", "user", "session-1")
        assert authority.is_expiring_soon(token) is False

    def test_token_inside_threshold_is_expiring(self, authority, clock):
        """Within five minutes of expiry the token is flagged."""
        token = authority.issue_access_token("user-1", "alice", "user", "session-1")
        clock.advance(11 * 60)
        assert authority.is_expiring_soon(token) is True
        assert authority.is_expiring_soon(token, timedelta(minutes=1)) is False

    def test_unreadable_token_counts_as_expiring(self, authority):
        assert authority.is_expiring_soon("not-a-token") is True


class TestFromSettings:
    def test_ttls_come_from_settings(self):
        """Settings control the access and refresh lifetimes."""
        settings = Settings(jwt_secret=SECRET, access_token_ttl_minutes=5, refresh_token_ttl_minutes=60)
        authority = TokenAuthority.from_settings(settings)

        assert authority.access_ttl_seconds == 300
        assert authority.refresh_ttl == timedelta(minutes=60)
        assert authority.issuer == "toolgate"
