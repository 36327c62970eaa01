from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

from sessionguard.logging import email_fingerprint, get_logger

logger = get_logger(__name__)

# Event types recorded in the audit trail
REGISTER_SUCCESS = "register_success"
REGISTER_DUPLICATE = "register_duplicate"
LOGIN_SUCCESS = "login_success"
LOGIN_FAILURE = "login_failure"
ACCOUNT_LOCKOUT = "account_lockout"
LOGOUT = "logout"
SESSION_REVOKED = "session_revoked"
PASSWORD_CHANGE = "password_change"
PASSWORD_CHANGE_FAILURE = "password_change_failure"
EMAIL_VERIFIED = "email_verified"
EMAIL_VERIFICATION_SENT = "email_verification_sent"
EMAIL_SEND_FAILED = "email_send_failed"
EMAIL_VERIFICATION_TOKEN_FAILED = "email_verification_token_failed"
LOCKOUT_EMAIL_SENT = "lockout_email_sent"
OAUTH_LOGIN = "oauth_login"
OAUTH_LOGIN_FAILURE = "oauth_login_failure"


class AuditStore(Protocol):
    def create_audit_log(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def purge_audit_logs_before(
        self, cutoff: datetime, *, timeout_seconds: Optional[int] = None
    ) -> int: ...


def hash_email(email: str) -> str:
    """Stable fingerprint used wherever an address would otherwise be recorded."""
    return email_fingerprint(email)


class AuditLogger:
    """Append-only security event trail.

    Writing an entry never fails the caller: storage errors are logged and
    dropped so a broken audit table cannot block logins.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def log(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self.store.create_audit_log(
                event_type,
                user_id=user_id,
                ip_address=ip,
                user_agent=user_agent,
                metadata=metadata,
            )
        except Exception as exc:
            logger.warning(
                "audit_log_failed",
                event_type=event_type,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )


class AuditCleanupService:
    """Retention job for the audit table."""

    def __init__(self, store: AuditStore, *, timeout_seconds: Optional[int] = None) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds

    def purge_before(self, cutoff: datetime) -> int:
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        deleted = self.store.purge_audit_logs_before(
            cutoff.astimezone(timezone.utc), timeout_seconds=self.timeout_seconds
        )
        logger.info("audit_logs_purged", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted

    def purge_older_than(self, days: int, *, now: Optional[datetime] = None) -> int:
        if days <= 0:
            raise ValueError("retention days must be positive")
        now = now or datetime.now(timezone.utc)
        return self.purge_before(now - timedelta(days=days))
