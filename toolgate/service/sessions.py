from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from toolgate.config import Settings
from toolgate.logging import get_logger
from toolgate.service.errors import (
    SessionInactiveError,
    StoreUnavailableError,
    TokenRevokedError,
)
from toolgate.service.tokens import TokenAuthority
from toolgate.storage.common import EntityStore
from toolgate.storage.models import Session, User

logger = get_logger(__name__)

DEFAULT_MAX_SESSIONS = 5
DEFAULT_SESSION_TTL = timedelta(hours=24)
DEFAULT_REMEMBER_ME_TTL = timedelta(days=30)


@dataclass
class AuthContext:
    user_id: str
    username: str
    role: str
    session_id: str


@dataclass(frozen=True)
class RefreshedTokens:
    access_token: str
    refresh_token: str
    expires_in: int

    def to_payload(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


class SessionRegistry:
    """Active sessions per user, with a hard cap and token rotation.

    All mutations run under one re-entrant lock. When a new session pushes a
    user over the cap, the oldest-created other session is evicted; creation
    order is tracked with a monotonic sequence so ties on ``created_at`` are
    still broken deterministically.
    """

    def __init__(
        self,
        tokens: TokenAuthority,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        remember_me_ttl: timedelta = DEFAULT_REMEMBER_ME_TTL,
        store: Optional[EntityStore] = None,
        user_loader: Optional[Callable[[str], Optional[User]]] = None,
    ) -> None:
        self.tokens = tokens
        self.max_sessions = max_sessions
        self.session_ttl = session_ttl
        self.remember_me_ttl = remember_me_ttl
        self.store = store
        self.user_loader = user_loader
        self._sessions: Dict[str, Session] = {}
        self._user_sessions: Dict[str, List[str]] = {}
        self._created_seq: Dict[str, int] = {}
        self._seq = itertools.count()
        self._state_lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Settings, tokens: TokenAuthority, **kwargs) -> "SessionRegistry":
        return cls(
            tokens,
            max_sessions=settings.max_sessions_per_user,
            session_ttl=timedelta(hours=settings.session_ttl_hours),
            remember_me_ttl=timedelta(days=settings.remember_me_session_ttl_days),
            **kwargs,
        )

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def restore(self) -> int:
        """Load unexpired sessions from the store, e.g. after a restart."""
        if self.store is None:
            return 0
        now = self._now()
        restored = 0
        with self._state_lock:
            for session in sorted(self.store.load_all("session"), key=lambda s: s.created_at):
                if session.id in self._sessions:
                    continue
                if not session.is_active or session.is_expired(now):
                    self.store.delete("session", session.id)
                    continue
                self._index(session)
                restored += 1
        logger.info("sessions_restored", count=restored)
        return restored

    def create_session(
        self,
        user: User,
        remember_me: bool = False,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        ttl = self.remember_me_ttl if remember_me else self.session_ttl
        session = Session.new(
            user, ttl, remember_me=remember_me, ip_address=ip, user_agent=user_agent
        )
        self._issue_tokens(session)
        with self._state_lock:
            self._persist(session)
            self._index(session)
            evicted = self._evict_overflow(user.id, keep_session_id=session.id)
        logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            remember_me=remember_me,
            evicted=evicted,
        )
        return replace(session)

    def destroy_session(self, session_id: str) -> bool:
        with self._state_lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            self._drop(session)
        logger.info("session_destroyed", session_id=session_id, user_id=session.user_id)
        return True

    def destroy_all_sessions(self, user_id: str) -> int:
        with self._state_lock:
            ids = list(self._user_sessions.get(user_id, []))
            for session_id in ids:
                self._drop(self._sessions[session_id])
        if ids:
            logger.info("user_sessions_destroyed", user_id=user_id, count=len(ids))
        return len(ids)

    def destroy_other_sessions(self, user_id: str, except_session_id: str) -> int:
        with self._state_lock:
            ids = [
                session_id
                for session_id in self._user_sessions.get(user_id, [])
                if session_id != except_session_id
            ]
            for session_id in ids:
                self._drop(self._sessions[session_id])
        if ids:
            logger.info(
                "other_sessions_destroyed",
                user_id=user_id,
                kept_session_id=except_session_id,
                count=len(ids),
            )
        return len(ids)

    def refresh_access_token(self, refresh_token: str) -> Optional[RefreshedTokens]:
        """Rotate both tokens for the session the refresh token belongs to.

        Raises ``AuthError`` subclasses for token problems, including replay of
        a refresh token that was already rotated out. Returns None when the
        session no longer exists.
        """
        payload = self.tokens.verify_refresh_token(refresh_token)
        with self._state_lock:
            session = self._live_session(payload.session_id)
            if session is None or session.user_id != payload.user_id:
                logger.info("refresh_session_missing", session_id=payload.session_id)
                return None
            if session.refresh_jti != payload.jti:
                logger.warning(
                    "refresh_token_replayed",
                    session_id=session.id,
                    user_id=session.user_id,
                )
                raise TokenRevokedError("refresh token already used")
            user = None
            if self.user_loader is not None:
                user = self.user_loader(session.user_id)
                if user is None or not user.is_active:
                    self._drop(session)
                    return None
            # Rotate on a copy so a failed write keeps the current tokens valid
            rotated = replace(session)
            if user is not None:
                rotated.username = user.username
                rotated.role = user.role
            self._issue_tokens(rotated)
            self._persist(rotated)
            vars(session).update(vars(rotated))
            result = RefreshedTokens(
                access_token=session.access_token,
                refresh_token=session.refresh_token,
                expires_in=session.expires_in,
            )
        logger.info("session_tokens_rotated", session_id=session.id, user_id=session.user_id)
        return result

    def get_user_sessions(self, user_id: str) -> List[Session]:
        with self._state_lock:
            sessions = [
                self._live_session(session_id)
                for session_id in list(self._user_sessions.get(user_id, []))
            ]
            live = [replace(s) for s in sessions if s is not None]
        return sorted(live, key=lambda s: s.updated_at, reverse=True)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._state_lock:
            session = self._live_session(session_id)
            return replace(session) if session else None

    def authenticate(self, access_token: str) -> AuthContext:
        """Verify an access token and confirm its session is still active."""
        payload = self.tokens.verify_access_token(access_token)
        with self._state_lock:
            session = self._live_session(payload.session_id)
            if session is None or session.user_id != payload.user_id:
                raise SessionInactiveError("session is no longer active")
            session.updated_at = self._now()
            role = session.role
            username = session.username
        return AuthContext(
            user_id=payload.user_id,
            username=username,
            role=role,
            session_id=payload.session_id,
        )

    def cleanup_expired(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [s for s in self._sessions.values() if s.is_expired(now)]
            for session in expired:
                self._drop(session)
        if expired:
            logger.info("expired_sessions_cleaned", count=len(expired))
        return len(expired)

    def stats(self) -> dict:
        now = self._now()
        with self._state_lock:
            total = len(self._sessions)
            expired = sum(1 for s in self._sessions.values() if s.is_expired(now))
            users = sum(1 for ids in self._user_sessions.values() if ids)
        return {
            "totalSessions": total,
            "activeSessions": total - expired,
            "expiredSessions": expired,
            "userCount": users,
        }

    def _issue_tokens(self, session: Session) -> None:
        session.access_token = self.tokens.issue_access_token(
            session.user_id, session.username, session.role, session.id
        )
        session.refresh_token, session.refresh_jti = self.tokens.issue_refresh_token(
            session.user_id, session.id
        )
        session.expires_in = self.tokens.access_ttl_seconds
        session.updated_at = self._now()

    def _index(self, session: Session) -> None:
        self._sessions[session.id] = session
        self._user_sessions.setdefault(session.user_id, []).append(session.id)
        self._created_seq[session.id] = next(self._seq)

    def _live_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if not session.is_active or session.is_expired(self._now()):
            self._drop(session)
            return None
        return session

    def _evict_overflow(self, user_id: str, keep_session_id: str) -> int:
        ids = self._user_sessions.get(user_id, [])
        evicted = 0
        while len(ids) > self.max_sessions:
            candidates = [self._sessions[i] for i in ids if i != keep_session_id]
            oldest = min(
                candidates, key=lambda s: (s.created_at, self._created_seq[s.id])
            )
            logger.info(
                "session_evicted",
                user_id=user_id,
                session_id=oldest.id,
                max_sessions=self.max_sessions,
            )
            self._drop(oldest)
            evicted += 1
        return evicted

    def _drop(self, session: Session) -> None:
        session.is_active = False
        self._sessions.pop(session.id, None)
        self._created_seq.pop(session.id, None)
        ids = self._user_sessions.get(session.user_id)
        if ids is not None:
            if session.id in ids:
                ids.remove(session.id)
            if not ids:
                self._user_sessions.pop(session.user_id, None)
        if self.store is not None:
            self.store.delete("session", session.id)

    def _persist(self, session: Session) -> None:
        if self.store is None:
            return
        try:
            self.store.save(session)
        except Exception as exc:
            logger.error(
                "session_persist_failed",
                session_id=session.id,
                user_id=session.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StoreUnavailableError(
                "session store unavailable", detail={"session_id": session.id}
            ) from exc
