from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Tuple

from toolgate.config import Settings
from toolgate.logging import get_logger
from toolgate.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
    TokenTypeError,
)

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
DEFAULT_EXPIRY_THRESHOLD = timedelta(minutes=5)


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    session_id: str
    token_type: str
    jti: str
    expires_at: float
    username: Optional[str] = None
    role: Optional[str] = None


class TokenAuthority:
    """Issues and verifies HS256 access and refresh tokens.

    Holds only configuration, so one instance can be shared by every request
    handler. Access and refresh tokens are signed with different secrets and
    carry a ``token_type`` claim; verification rejects a token presented as
    the wrong type even when the secrets coincide.
    """

    def __init__(
        self,
        secret: str,
        *,
        refresh_secret: Optional[str] = None,
        issuer: str = "toolgate",
        audience: str = "toolgate-clients",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._access_secret = secret.encode()
        self._refresh_secret = (refresh_secret or secret).encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "TokenAuthority":
        return cls(
            settings.jwt_secret,
            refresh_secret=settings.refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            **kwargs,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.access_ttl.total_seconds())

    def issue_access_token(self, user_id: str, username: str, role: str, session_id: str) -> str:
        now = self._clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "username": username,
            "role": role,
            "sid": session_id,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": int(now),
            "exp": int(now + self.access_ttl.total_seconds()),
        }
        return self._encode_jwt(payload, self._access_secret)

    def issue_refresh_token(self, user_id: str, session_id: str) -> Tuple[str, str]:
        """Return the refresh token and its jti; the jti is what rotation tracks."""
        now = self._clock()
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "sid": session_id,
            "token_type": REFRESH_TOKEN_TYPE,
            "jti": jti,
            "iat": int(now),
            "exp": int(now + self.refresh_ttl.total_seconds()),
        }
        return self._encode_jwt(payload, self._refresh_secret), jti

    def verify_access_token(self, token: str) -> TokenPayload:
        payload = self._decode_jwt(token, self._access_secret, ACCESS_TOKEN_TYPE)
        return self._to_payload(payload)

    def verify_refresh_token(self, token: str) -> TokenPayload:
        payload = self._decode_jwt(token, self._refresh_secret, REFRESH_TOKEN_TYPE)
        return self._to_payload(payload)

    def is_expiring_soon(
        self, token: str, threshold: timedelta = DEFAULT_EXPIRY_THRESHOLD
    ) -> bool:
        """Check expiry without verifying the signature.

        A token whose expiry cannot be read is treated as expiring so clients
        fall back to refreshing.
        """
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
            exp = float(payload["exp"])
        except (ValueError, KeyError, TypeError):
            return True
        return exp - self._clock() <= threshold.total_seconds()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: bytes, expected_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenMalformedError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformedError("token is not a JWT") from None

        # Only HS256 is accepted to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformedError("token header unreadable") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise TokenMalformedError("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input, secret), sig_b64):
            raise TokenSignatureError("token signature invalid")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformedError("token payload unreadable") from None
        if not isinstance(payload, dict):
            raise TokenMalformedError("token payload unreadable")

        if payload.get("iss") != self.issuer:
            raise TokenMalformedError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenMalformedError("token audience mismatch")
        if payload.get("token_type") != expected_type:
            raise TokenTypeError(f"expected {expected_type} token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformedError("token expiry missing") from None
        if exp_ts <= self._clock():
            raise TokenExpiredError("token expired")
        if not payload.get("sub") or not payload.get("sid"):
            raise TokenMalformedError("token subject missing")
        return payload

    @staticmethod
    def _to_payload(payload: dict[str, Any]) -> TokenPayload:
        return TokenPayload(
            user_id=payload["sub"],
            session_id=payload["sid"],
            token_type=payload["token_type"],
            jti=payload.get("jti", ""),
            expires_at=float(payload["exp"]),
            username=payload.get("username"),
            role=payload.get("role"),
        )
