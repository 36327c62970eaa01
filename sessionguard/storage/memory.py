from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    PROVIDER_GOOGLE,
    AuditLogEntry,
    Session,
    User,
    check_identity,
    utcnow,
)


class MemoryStore:
    """In-memory store with the same contract as the Postgres store.

    Used for tests and local development; state does not survive a restart.
    """

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_logs: List[AuditLogEntry] = []
        # RLock for all data operations so helpers can nest acquisitions
        self._data_lock = threading.RLock()
        self._user_guards: Dict[str, threading.Lock] = {}

    @staticmethod
    def _copy(obj):
        return replace(obj) if obj is not None else None

    def _touch_user(self, user: User) -> None:
        user.updated_at = utcnow()

    # users
    def create_user(
        self,
        email: str,
        name: str,
        provider: str,
        *,
        password_hash: Optional[str] = None,
        google_id: Optional[str] = None,
        email_verified: bool = False,
        picture: Optional[str] = None,
    ) -> User:
        check_identity(provider, password_hash, google_id)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if google_id and any(
                existing.google_id == google_id for existing in self.users.values()
            ):
                raise ConstraintViolation("google_id already exists", {"field": "google_id"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                provider=provider,
                email_verified=email_verified,
                picture=picture,
                password_hash=password_hash,
                google_id=google_id,
            )
            self.users[user.id] = user
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            found = next((u for u in self.users.values() if u.email == email), None)
            return self._copy(found)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            found = next(
                (u for u in self.users.values() if u.google_id == google_id), None
            )
            return self._copy(found)

    def upsert_user_by_google_id(
        self,
        google_id: str,
        *,
        email: str,
        email_verified: bool,
        name: str,
        picture: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            existing = next(
                (u for u in self.users.values() if u.google_id == google_id), None
            )
            if existing is None:
                return self.create_user(
                    email,
                    name,
                    PROVIDER_GOOGLE,
                    google_id=google_id,
                    email_verified=email_verified,
                    picture=picture,
                )
            if any(
                u.email == email and u.id != existing.id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            existing.email = email
            existing.email_verified = email_verified
            existing.name = name
            existing.picture = picture
            existing.provider = PROVIDER_GOOGLE
            self._touch_user(existing)
            return self._copy(existing)

    def update_user_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.password_hash = password_hash
            self._touch_user(user)

    def set_email_verification_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.email_verification_token_hash = token_hash
            user.email_verification_expires_at = expires_at
            self._touch_user(user)

    def get_user_by_email_verification_token_hash(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            found = next(
                (
                    u
                    for u in self.users.values()
                    if u.email_verification_token_hash == token_hash
                ),
                None,
            )
            return self._copy(found)

    def verify_user_email(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.email_verification_token_hash = None
            user.email_verification_expires_at = None
            self._touch_user(user)
            return self._copy(user)

    def increment_failed_login_attempts(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            self._touch_user(user)
            return self._copy(user)

    def reset_failed_login_attempts(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.failed_login_attempts = 0
                self._touch_user(user)

    def lock_user(self, user_id: str, locked_until: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.locked_until = locked_until
                self._touch_user(user)

    def unlock_user(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.locked_until = None
                user.failed_login_attempts = 0
                self._touch_user(user)

    # sessions
    @contextmanager
    def user_session_guard(self, user_id: str) -> Iterator[None]:
        """Serialize session creation for one user across threads."""
        with self._data_lock:
            guard = self._user_guards.setdefault(user_id, threading.Lock())
        with guard:
            yield

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if any(s.token_hash == session.token_hash for s in self.sessions.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            self.sessions[session.id] = replace(session)
            return self._copy(session)

    def get_session_with_user(self, token_hash: str) -> Optional[tuple[Session, User]]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.token_hash == token_hash), None
            )
            if not sess:
                return None
            user = self.users.get(sess.user_id)
            if not user:
                return None
            return self._copy(sess), self._copy(user)

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.last_active_at = now

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)

    def delete_session_by_token_hash(self, token_hash: str) -> None:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.token_hash == token_hash]
            for sid in stale:
                self.sessions.pop(sid, None)

    def delete_user_sessions(self, user_id: str) -> None:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)

    def count_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for s in self.sessions.values() if s.user_id == user_id)

    def get_oldest_user_session(self, user_id: str) -> Optional[Session]:
        with self._data_lock:
            owned = [s for s in self.sessions.values() if s.user_id == user_id]
            if not owned:
                return None
            # min() keeps insertion order for equal timestamps
            return self._copy(min(owned, key=lambda s: s.created_at))

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [self._copy(s) for s in self.sessions.values() if s.user_id == user_id]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires_at < now]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # audit logs
    def create_audit_log(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._data_lock:
            if user_id is not None and user_id not in self.users:
                raise ConstraintViolation("audit user missing", {"user_id": user_id})
            self.audit_logs.append(
                AuditLogEntry(
                    id=str(uuid.uuid4()),
                    event_type=event_type,
                    user_id=user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    metadata=dict(metadata) if metadata else None,
                )
            )

    def list_audit_logs(self, event_type: Optional[str] = None) -> List[AuditLogEntry]:
        with self._data_lock:
            return [
                self._copy(entry)
                for entry in self.audit_logs
                if event_type is None or entry.event_type == event_type
            ]

    def purge_audit_logs_before(
        self, cutoff: datetime, *, timeout_seconds: Optional[int] = None
    ) -> int:
        with self._data_lock:
            kept = [entry for entry in self.audit_logs if entry.created_at >= cutoff]
            deleted = len(self.audit_logs) - len(kept)
            self.audit_logs = kept
            return deleted
