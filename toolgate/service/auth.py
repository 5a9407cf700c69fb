from __future__ import annotations

from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from toolgate.logging import get_logger
from toolgate.service.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from toolgate.service.policy import ROLE_RANK, role_allows
from toolgate.service.sessions import AuthContext, SessionRegistry
from toolgate.storage.common import ConstraintViolation, EntityStore
from toolgate.storage.models import Session, User, UserRole

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class AuthService:
    """User directory and credential checks in front of the SessionRegistry."""

    def __init__(self, store: EntityStore, sessions: SessionRegistry) -> None:
        self.store = store
        self.sessions = sessions
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def create_user(self, username: str, password: str, *, role: str = UserRole.USER.value) -> User:
        username = (username or "").strip()
        if not username:
            raise ValidationError("username is required")
        if role not in ROLE_RANK:
            raise ValidationError("unknown role", detail={"role": role})
        self._check_password_strength(password)
        user = User.new(username, role=role, password_hash=self._hash_password(password))
        try:
            self.store.save(user)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("user_created", user_id=user.id, role=role)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.store.load("user", user_id)

    def ensure_bootstrap_admin(self, username: Optional[str], password: Optional[str]) -> Optional[User]:
        if not username or not password:
            return None
        existing = self.store.find_user_by_username(username)
        if existing:
            return existing
        logger.info("bootstrap_admin_created", username=username)
        return self.create_user(username, password, role=UserRole.ADMIN.value)

    def login(
        self,
        username: str,
        password: str,
        *,
        remember_me: bool = False,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, Session]:
        user = self.store.find_user_by_username(username or "")
        if not user or not self.verify_password(user, password):
            logger.info("login_failed", username=username)
            raise AuthError("invalid username or password")
        if not user.is_active:
            raise AuthError("account disabled")
        session = self.sessions.create_session(user, remember_me, ip, user_agent)
        return user, session

    def logout(self, session_id: str) -> bool:
        return self.sessions.destroy_session(session_id)

    def change_password(self, ctx: AuthContext, current_password: str, new_password: str) -> int:
        """Update the password and end every other session of the user."""
        user = self.get_user(ctx.user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not self.verify_password(user, current_password):
            raise AuthError("current password is incorrect")
        self._check_password_strength(new_password)
        user.password_hash = self._hash_password(new_password)
        self.store.save(user)
        revoked = self.sessions.destroy_other_sessions(user.id, ctx.session_id)
        logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return revoked

    def authenticate(self, authorization: Optional[str], *, required_role: Optional[str] = None) -> AuthContext:
        token = self.extract_bearer(authorization)
        if not token:
            raise AuthError("missing bearer token")
        ctx = self.sessions.authenticate(token)
        if required_role and not role_allows(ctx.role, required_role):
            raise PermissionDeniedError(f"{required_role} access required")
        return ctx

    def verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    @staticmethod
    def _check_password_strength(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters"
            )

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
