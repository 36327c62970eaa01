from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

PROVIDER_CREDENTIALS = "credentials"
PROVIDER_GOOGLE = "google"
PROVIDERS = (PROVIDER_CREDENTIALS, PROVIDER_GOOGLE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_identity(provider: str, password_hash: Optional[str], google_id: Optional[str]) -> None:
    """Password accounts carry a hash; Google accounts carry an external id and no hash."""
    if provider == PROVIDER_CREDENTIALS:
        if not password_hash:
            raise ValueError("credentials users require a password hash")
    elif provider == PROVIDER_GOOGLE:
        if not google_id or password_hash:
            raise ValueError("google users require a google_id and no password hash")
    else:
        raise ValueError(f"unknown provider: {provider}")


@dataclass
class User:
    id: str
    email: str
    name: str
    provider: str
    email_verified: bool = False
    picture: Optional[str] = None
    password_hash: Optional[str] = None
    google_id: Optional[str] = None
    email_verification_token_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    last_active_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        max_age: timedelta,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + max_age,
            last_active_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )


@dataclass
class SessionUser:
    """User fields denormalized onto a validated session."""

    id: str
    email: str
    email_verified: bool
    name: str
    picture: Optional[str]
    provider: str

    @classmethod
    def from_user(cls, user: User) -> "SessionUser":
        return cls(
            id=user.id,
            email=user.email,
            email_verified=user.email_verified,
            name=user.name,
            picture=user.picture,
            provider=user.provider,
        )


@dataclass
class SessionInfo:
    session: Session
    user: SessionUser


@dataclass
class AuditLogEntry:
    id: str
    event_type: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
