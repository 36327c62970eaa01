from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, Optional, Protocol

from sessionguard.logging import get_logger
from sessionguard.service.errors import SessionExpired, SessionNotFound
from sessionguard.service.passwords import generate_token, hash_token
from sessionguard.storage.models import Session, SessionInfo, SessionUser, User

logger = get_logger(__name__)

DEFAULT_MAX_SESSIONS = 5
SESSION_TOKEN_BYTES = 32


class SessionStore(Protocol):
    def user_session_guard(self, user_id: str) -> ContextManager[None]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session_with_user(self, token_hash: str) -> Optional[tuple[Session, User]]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_session_by_token_hash(self, token_hash: str) -> None: ...

    def delete_user_sessions(self, user_id: str) -> None: ...

    def count_user_sessions(self, user_id: str) -> int: ...

    def get_oldest_user_session(self, user_id: str) -> Optional[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


class SessionService:
    """Issues, validates and revokes server-side sessions.

    Only the SHA-256 of a session token is persisted. The raw token leaves
    ``create_session`` once and is never logged.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        max_age: timedelta,
        idle_timeout: timedelta,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.max_age = max_age
        self.idle_timeout = idle_timeout
        self.max_sessions = max_sessions
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def create_session(
        self,
        user_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[str, Session]:
        with self.store.user_session_guard(user_id):
            self._enforce_session_limit(user_id, make_room=True)
            raw_token = generate_token(SESSION_TOKEN_BYTES)
            session = Session.new(
                user_id,
                hash_token(raw_token),
                self.max_age,
                ip_address=ip,
                user_agent=user_agent,
                now=self._now(),
            )
            session = self.store.create_session(session)
            # Creators outside the guard (another store, a manual insert) can still race
            self._enforce_session_limit(user_id, make_room=False)
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return raw_token, session

    def _enforce_session_limit(self, user_id: str, *, make_room: bool) -> int:
        """Evict oldest sessions until the user is within the cap.

        With ``make_room`` the loop stops one below the cap so an insert fits.
        Every pass deletes one row, so the count strictly decreases and the
        loop runs at most ``count`` times.
        """
        ceiling = self.max_sessions - 1 if make_room else self.max_sessions
        evicted = 0
        count = self.store.count_user_sessions(user_id)
        budget = count
        while count > ceiling and budget > 0:
            oldest = self.store.get_oldest_user_session(user_id)
            if oldest is None:
                break
            self.store.delete_session(oldest.id)
            evicted += 1
            budget -= 1
            count = self.store.count_user_sessions(user_id)
        if evicted:
            logger.info("session_limit_evicted", user_id=user_id, evicted=evicted)
        return evicted

    def validate_token(self, raw_token: Optional[str]) -> SessionInfo:
        if not raw_token:
            raise SessionNotFound()
        found = self.store.get_session_with_user(hash_token(raw_token))
        if not found:
            raise SessionNotFound()
        session, user = found
        now = self._now()
        last_active = session.last_active_at or session.created_at
        if self.idle_timeout.total_seconds() > 0 and now > last_active + self.idle_timeout:
            self.store.delete_session(session.id)
            logger.info("session_expired", session_id=session.id, reason="idle")
            raise SessionExpired()
        if now > session.expires_at:
            self.store.delete_session(session.id)
            logger.info("session_expired", session_id=session.id, reason="max_age")
            raise SessionExpired()
        self.store.touch_session(session.id, now)
        session.last_active_at = now
        return SessionInfo(session=session, user=SessionUser.from_user(user))

    def revoke_by_token_hash(self, token_hash: str) -> None:
        if not token_hash:
            return
        self.store.delete_session_by_token_hash(token_hash)

    def revoke_all_for_user(self, user_id: str) -> None:
        self.store.delete_user_sessions(user_id)

    def purge_expired(self) -> int:
        deleted = self.store.delete_expired_sessions(self._now())
        if deleted:
            logger.info("sessions_purged", deleted=deleted)
        return deleted
