from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ContextManager, Dict, List, Optional, Protocol
from urllib.parse import quote

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service import audit as events
from sessionguard.service.audit import AuditLogger, hash_email
from sessionguard.service.email import (
    EmailMessage,
    EmailService,
    lockout_message,
    verification_message,
)
from sessionguard.service.errors import (
    AuthenticationError,
    InvalidEmail,
    MalformedHash,
    OAuthError,
    PolicyViolation,
    RateLimitedError,
    ServerError,
    SessionNotFound,
    ValidationError,
)
from sessionguard.service.oauth import (
    INVALID_REQUEST,
    INVALID_RESPONSE,
    INVALID_STATE,
    UNABLE_TO_AUTHENTICATE,
    GoogleOAuthClient,
    OAuthStart,
    states_match,
)
from sessionguard.service.passwords import (
    MAX_PASSWORD_LENGTH,
    PasswordEngine,
    generate_token,
    hash_token,
    normalize_email,
    validate_password,
)
from sessionguard.service.ratelimit import SlidingWindowLimiter
from sessionguard.service.sessions import SessionService
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    PROVIDER_CREDENTIALS,
    PROVIDER_GOOGLE,
    AuditLogEntry,
    Session,
    SessionUser,
    User,
)

logger = get_logger(__name__)

GENERIC_LOGIN_ERROR = "invalid email or password"
INVALID_PASSWORD = "invalid password"
INVALID_CREDENTIALS = "invalid credentials"
INVALID_VERIFICATION_LINK = "Invalid verification link"
EXPIRED_VERIFICATION_LINK = "Verification link expired"
MAX_NAME_LENGTH = 255
VERIFICATION_TOKEN_BYTES = 32

# Login failures that never reach a real password check and so pay for a fake one
_FAKE_HASH_REASONS = frozenset({"not_found", "locked", "invalid_provider"})


class AuthStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def upsert_user_by_google_id(
        self,
        google_id: str,
        *,
        email: str,
        email_verified: bool,
        name: str,
        picture: Optional[str] = None,
    ) -> User: ...

    def update_user_password(self, user_id: str, password_hash: str) -> None: ...

    def set_email_verification_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def get_user_by_email_verification_token_hash(self, token_hash: str) -> Optional[User]: ...

    def verify_user_email(self, user_id: str) -> Optional[User]: ...

    def increment_failed_login_attempts(self, user_id: str) -> Optional[User]: ...

    def reset_failed_login_attempts(self, user_id: str) -> None: ...

    def lock_user(self, user_id: str, locked_until: datetime) -> None: ...

    def unlock_user(self, user_id: str) -> None: ...

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

    def create_audit_log(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def list_audit_logs(self, event_type: Optional[str] = None) -> List[AuditLogEntry]: ...

    def purge_audit_logs_before(
        self, cutoff: datetime, *, timeout_seconds: Optional[int] = None
    ) -> int: ...


@dataclass
class RequestMeta:
    """Caller details attached to every operation.

    ``defer`` schedules work to run after the response is sent; without one,
    deferred work runs inline.
    """

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    defer: Optional[Callable[..., Any]] = None

    def schedule(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if self.defer is None:
            func(*args, **kwargs)
        else:
            self.defer(func, *args, **kwargs)


@dataclass
class RequestContext:
    """Identity resolved from a valid session cookie."""

    user: SessionUser
    session: Session

    @property
    def token_hash(self) -> str:
        return self.session.token_hash


@dataclass
class AuthResult:
    user: Optional[User] = None
    token: Optional[str] = None
    session: Optional[Session] = None

    @property
    def session_started(self) -> bool:
        return self.token is not None


class AuthService:
    """Register, login, logout, password change, email verification and Google login."""

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionService,
        audit: AuditLogger,
        mailer: Optional[EmailService],
        oauth: GoogleOAuthClient,
        settings: Settings,
        *,
        limiter: Optional[SlidingWindowLimiter] = None,
        passwords: Optional[PasswordEngine] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.audit = audit
        self.mailer = mailer
        self.oauth = oauth
        self.settings = settings
        self.limiter = limiter
        self.passwords = passwords or PasswordEngine()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    async def _enforce_rate_limit(self, rule_name: str, key: str, ip: Optional[str]) -> None:
        if not self.settings.rate_limit_enabled or self.limiter is None:
            return
        rule = self.settings.rate_limit_rule(rule_name)
        if not rule.active:
            return
        allowed = await self.limiter.allow(
            f"{key}:{ip or 'unknown'}", rule.limit, rule.window_seconds
        )
        if not allowed:
            raise RateLimitedError("too many requests")

    def _rotate(self, current_token: Optional[str], user_id: str, meta: RequestMeta) -> None:
        """Drop the session the caller arrived with before issuing a new one."""
        if not current_token:
            return
        self.sessions.revoke_by_token_hash(hash_token(current_token))
        self.audit.log(
            events.SESSION_REVOKED,
            user_id=user_id,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={"reason": "rotation"},
        )

    def _verify(self, plaintext: str, encoded: str, user_id: str) -> bool:
        try:
            return self.passwords.verify_password(plaintext, encoded)
        except MalformedHash as exc:
            logger.error("password_hash_malformed", user_id=user_id, error=str(exc))
            raise ServerError("internal server error") from exc

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        meta: RequestMeta,
        current_token: Optional[str] = None,
    ) -> AuthResult:
        await self._enforce_rate_limit("register", "register", meta.ip)
        email = normalize_email(email)
        name = (name or "").strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValidationError("invalid name")
        validate_password(password)

        if self.store.get_user_by_email(email) is not None:
            return self._registration_duplicate(email, meta)

        password_hash = self.passwords.hash_password(password)
        try:
            user = self.store.create_user(
                email, name, PROVIDER_CREDENTIALS, password_hash=password_hash
            )
        except ConstraintViolation:
            return self._registration_duplicate(email, meta)

        self._rotate(current_token, user.id, meta)
        token, session = self.sessions.create_session(
            user.id, ip=meta.ip, user_agent=meta.user_agent
        )
        self.audit.log(
            events.REGISTER_SUCCESS, user_id=user.id, ip=meta.ip, user_agent=meta.user_agent
        )
        self._issue_verification(user, meta)
        logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, token=token, session=session)

    def _registration_duplicate(self, email: str, meta: RequestMeta) -> AuthResult:
        self.audit.log(
            events.REGISTER_DUPLICATE,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={"email_hash": hash_email(email)},
        )
        return AuthResult()

    async def login(
        self,
        email: str,
        password: str,
        *,
        meta: RequestMeta,
        current_token: Optional[str] = None,
    ) -> AuthResult:
        try:
            email = normalize_email(email)
        except InvalidEmail:
            raise AuthenticationError(GENERIC_LOGIN_ERROR) from None
        await self._enforce_rate_limit("login", f"login:{email}", meta.ip)
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(INVALID_PASSWORD)

        user = self.store.get_user_by_email(email)
        if user is None:
            self._reject_login("not_found", email, password, meta)

        now = self._now()
        if user.locked_until is not None:
            if user.locked_until > now:
                self._reject_login("locked", email, password, meta, user_id=user.id)
            self.store.unlock_user(user.id)
            user.locked_until = None
            user.failed_login_attempts = 0
            logger.info("account_unlocked", user_id=user.id)

        if user.provider != PROVIDER_CREDENTIALS or not user.password_hash:
            self._reject_login("invalid_provider", email, password, meta, user_id=user.id)

        if not self._verify(password, user.password_hash, user.id):
            self._record_failed_password(user, email, now, meta)
            self._reject_login("invalid_password", email, password, meta, user_id=user.id)

        self.store.reset_failed_login_attempts(user.id)
        self._rotate(current_token, user.id, meta)
        token, session = self.sessions.create_session(
            user.id, ip=meta.ip, user_agent=meta.user_agent
        )
        self.audit.log(
            events.LOGIN_SUCCESS, user_id=user.id, ip=meta.ip, user_agent=meta.user_agent
        )
        return AuthResult(user=self.store.get_user(user.id) or user, token=token, session=session)

    def _reject_login(
        self,
        reason: str,
        email: str,
        password: str,
        meta: RequestMeta,
        *,
        user_id: Optional[str] = None,
    ) -> None:
        """Raise the one 401 every login failure shares.

        The failure reason is only visible in the audit trail.
        """
        if reason in _FAKE_HASH_REASONS:
            self.passwords.fake_hash(password)
        self.audit.log(
            events.LOGIN_FAILURE,
            user_id=user_id,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={"email_hash": hash_email(email), "reason": reason},
        )
        raise AuthenticationError(GENERIC_LOGIN_ERROR)

    def _record_failed_password(
        self, user: User, email: str, now: datetime, meta: RequestMeta
    ) -> None:
        updated = self.store.increment_failed_login_attempts(user.id)
        attempts = (
            updated.failed_login_attempts if updated else user.failed_login_attempts + 1
        )
        if attempts < self.settings.lockout_threshold:
            return
        locked_until = now + timedelta(seconds=self.settings.lockout_duration_seconds)
        self.store.lock_user(user.id, locked_until)
        self.audit.log(
            events.ACCOUNT_LOCKOUT,
            user_id=user.id,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={
                "email_hash": hash_email(email),
                "failed_attempts": attempts,
                "locked_until": locked_until.isoformat(),
            },
        )
        logger.warning("account_locked", user_id=user.id, failed_attempts=attempts)
        meta.schedule(
            self._send_lockout_email, user.id, user.email, locked_until, meta.ip, meta.user_agent
        )

    async def logout(self, ctx: RequestContext, *, meta: RequestMeta) -> None:
        token_hash = ctx.token_hash
        await self._enforce_rate_limit("logout", f"logout:{token_hash}", meta.ip)
        self.sessions.revoke_by_token_hash(token_hash)
        self.audit.log(
            events.SESSION_REVOKED,
            user_id=ctx.user.id,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={"reason": "logout", "session_token_hash": token_hash},
        )
        self.audit.log(
            events.LOGOUT,
            user_id=ctx.user.id,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={"session_token_hash": token_hash},
        )

    async def change_password(
        self,
        ctx: RequestContext,
        current_password: str,
        new_password: str,
        *,
        meta: RequestMeta,
    ) -> AuthResult:
        user_id = ctx.user.id
        await self._enforce_rate_limit("password", f"password:{user_id}", meta.ip)
        if len(current_password) > MAX_PASSWORD_LENGTH or len(new_password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(INVALID_PASSWORD)

        user = self.store.get_user(user_id)
        if user is None:
            raise SessionNotFound()
        if user.provider != PROVIDER_CREDENTIALS or not user.password_hash:
            self._password_change_failed(user_id, "invalid_provider", meta)
            raise ValidationError(INVALID_CREDENTIALS)
        if not self._verify(current_password, user.password_hash, user_id):
            self._password_change_failed(user_id, "invalid_current_password", meta)
            raise ValidationError(INVALID_CREDENTIALS)
        try:
            validate_password(new_password)
        except PolicyViolation:
            self._password_change_failed(user_id, "invalid_new_password", meta)
            raise

        self.store.update_user_password(user_id, self.passwords.hash_password(new_password))
        self.sessions.revoke_all_for_user(user_id)
        self.audit.log(
            events.SESSION_REVOKED,
            user_id=user_id,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={"reason": "password_change", "scope": "all"},
        )
        token, session = self.sessions.create_session(
            user_id, ip=meta.ip, user_agent=meta.user_agent
        )
        self.audit.log(
            events.PASSWORD_CHANGE, user_id=user_id, ip=meta.ip, user_agent=meta.user_agent
        )
        return AuthResult(user=user, token=token, session=session)

    def _password_change_failed(self, user_id: str, reason: str, meta: RequestMeta) -> None:
        self.audit.log(
            events.PASSWORD_CHANGE_FAILURE,
            user_id=user_id,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={"reason": reason},
        )

    async def verify_email(self, token: Optional[str], *, meta: RequestMeta) -> User:
        token = (token or "").strip()
        if not token:
            raise ValidationError(INVALID_VERIFICATION_LINK)
        user = self.store.get_user_by_email_verification_token_hash(hash_token(token))
        if user is None:
            raise ValidationError(INVALID_VERIFICATION_LINK)
        expires_at = user.email_verification_expires_at
        if expires_at is None or self._now() > expires_at:
            raise ValidationError(EXPIRED_VERIFICATION_LINK)
        if user.email_verified:
            return user
        verified = self.store.verify_user_email(user.id) or user
        self.audit.log(
            events.EMAIL_VERIFIED, user_id=user.id, ip=meta.ip, user_agent=meta.user_agent
        )
        return verified

    async def resend_verification(self, ctx: RequestContext, *, meta: RequestMeta) -> None:
        user_id = ctx.user.id
        await self._enforce_rate_limit(
            "verify_email", f"verify-email-resend:{user_id}", meta.ip
        )
        user = self.store.get_user(user_id)
        if user is None:
            raise SessionNotFound()
        if user.provider != PROVIDER_CREDENTIALS:
            raise ValidationError(INVALID_CREDENTIALS)
        if not user.email_verified:
            self._issue_verification(user, meta)

    def verification_url(self, token: str) -> str:
        return f"{self.settings.app_base_url}/api/auth/verify-email?token={quote(token, safe='')}"

    def _issue_verification(self, user: User, meta: RequestMeta) -> None:
        """Store a fresh token hash now; mail the link after the response."""
        if user.provider != PROVIDER_CREDENTIALS or user.email_verified:
            return
        token = generate_token(VERIFICATION_TOKEN_BYTES)
        expires_at = self._now() + timedelta(seconds=self.settings.email_verification_ttl_seconds)
        try:
            self.store.set_email_verification_token(user.id, hash_token(token), expires_at)
        except Exception as exc:
            self.audit.log(
                events.EMAIL_VERIFICATION_TOKEN_FAILED,
                user_id=user.id,
                ip=meta.ip,
                user_agent=meta.user_agent,
                metadata={"error": str(exc)},
            )
            return
        name = (user.name or "").strip() or user.email
        meta.schedule(
            self._send_verification_email,
            user.id,
            user.email,
            name,
            self.verification_url(token),
            meta.ip,
            meta.user_agent,
        )

    def _deliver(self, to_email: str, message: EmailMessage) -> bool:
        if self.mailer is None:
            return False
        try:
            return self.mailer.send(to_email, message)
        except Exception as exc:
            logger.error("email_delivery_error", error_type=type(exc).__name__, error=str(exc))
            return False

    def _send_verification_email(
        self,
        user_id: str,
        to_email: str,
        name: str,
        url: str,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        if self._deliver(to_email, verification_message(name, url)):
            self.audit.log(
                events.EMAIL_VERIFICATION_SENT, user_id=user_id, ip=ip, user_agent=user_agent
            )
        else:
            self.audit.log(
                events.EMAIL_SEND_FAILED,
                user_id=user_id,
                ip=ip,
                user_agent=user_agent,
                metadata={"type": "verification"},
            )

    def _send_lockout_email(
        self,
        user_id: str,
        to_email: str,
        locked_until: datetime,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        if self._deliver(to_email, lockout_message(locked_until, ip)):
            self.audit.log(
                events.LOCKOUT_EMAIL_SENT, user_id=user_id, ip=ip, user_agent=user_agent
            )
        else:
            self.audit.log(
                events.EMAIL_SEND_FAILED,
                user_id=user_id,
                ip=ip,
                user_agent=user_agent,
                metadata={"type": "lockout"},
            )

    async def authenticate(self, raw_token: Optional[str]) -> RequestContext:
        info = self.sessions.validate_token(raw_token)
        return RequestContext(user=info.user, session=info.session)

    async def start_google_login(self, *, meta: RequestMeta) -> OAuthStart:
        await self._enforce_rate_limit("google", "google", meta.ip)
        if not self.oauth.is_configured:
            logger.warning("oauth_not_configured", provider=PROVIDER_GOOGLE)
            raise ServerError("oauth not configured")
        return self.oauth.begin()

    async def complete_google_login(
        self,
        *,
        state: Optional[str],
        code: Optional[str],
        state_cookie: Optional[str],
        verifier_cookie: Optional[str],
        meta: RequestMeta,
        current_token: Optional[str] = None,
    ) -> AuthResult:
        if not state or not code:
            raise OAuthError(INVALID_REQUEST)
        if not state_cookie or not verifier_cookie or not states_match(state, state_cookie):
            raise OAuthError(INVALID_STATE)

        identity = await self.oauth.exchange(code, verifier_cookie)
        if not identity.subject or not identity.email:
            raise OAuthError(INVALID_RESPONSE)
        try:
            email = normalize_email(identity.email)
        except InvalidEmail:
            raise OAuthError(INVALID_RESPONSE) from None

        existing = self.store.get_user_by_email(email)
        if existing is not None and (
            existing.provider != PROVIDER_GOOGLE or existing.google_id != identity.subject
        ):
            self._oauth_conflict(email, meta)

        try:
            user = self.store.upsert_user_by_google_id(
                identity.subject,
                email=email,
                email_verified=identity.email_verified,
                name=(identity.name or "").strip() or email,
                picture=identity.picture,
            )
        except ConstraintViolation:
            self._oauth_conflict(email, meta)

        self._rotate(current_token, user.id, meta)
        token, session = self.sessions.create_session(
            user.id, ip=meta.ip, user_agent=meta.user_agent
        )
        self.audit.log(
            events.OAUTH_LOGIN,
            user_id=user.id,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={"provider": PROVIDER_GOOGLE},
        )
        return AuthResult(user=user, token=token, session=session)

    def _oauth_conflict(self, email: str, meta: RequestMeta) -> None:
        self.audit.log(
            events.OAUTH_LOGIN_FAILURE,
            ip=meta.ip,
            user_agent=meta.user_agent,
            metadata={"email_hash": hash_email(email), "reason": "email_conflict"},
        )
        raise OAuthError(UNABLE_TO_AUTHENTICATE)
