from __future__ import annotations

from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditCleanupService, AuditLogger
from sessionguard.service.auth import AuthService
from sessionguard.service.email import EmailService
from sessionguard.service.oauth import GoogleOAuthClient
from sessionguard.service.passwords import PasswordEngine
from sessionguard.service.ratelimit import SlidingWindowLimiter
from sessionguard.service.sessions import SessionService
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Explicitly wired service graph owned by one FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        limiter: Optional[SlidingWindowLimiter] = None,
        mailer: Optional[EmailService] = None,
        oauth: Optional[GoogleOAuthClient] = None,
        passwords: Optional[PasswordEngine] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            env=self.settings.env.value,
            use_memory_store=self.settings.use_memory_store,
        )

        if store is None:
            try:
                store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.store = store

        if limiter is None and self.settings.rate_limit_enabled and self.settings.redis_url:
            limiter = SlidingWindowLimiter.from_url(self.settings.redis_url)
            logger.info(
                "runtime_rate_limiter_initialized",
                redis_url=_mask_url_password(self.settings.redis_url),
            )
        self.limiter = limiter if self.settings.rate_limit_enabled else None

        self.mailer = mailer or EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.oauth = oauth or GoogleOAuthClient(
            self.settings.google_client_id,
            self.settings.google_client_secret,
            self.settings.google_redirect_uri,
            timeout=self.settings.oauth_http_timeout_seconds,
        )
        self.sessions = SessionService(
            self.store,
            max_age=timedelta(seconds=self.settings.session_max_age_seconds),
            idle_timeout=timedelta(seconds=self.settings.session_idle_timeout_seconds),
            max_sessions=self.settings.max_sessions_per_user,
        )
        self.audit = AuditLogger(self.store)
        self.audit_cleanup = AuditCleanupService(
            self.store, timeout_seconds=self.settings.audit_cleanup_timeout_seconds
        )
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.audit,
            self.mailer,
            self.oauth,
            self.settings,
            limiter=self.limiter,
            passwords=passwords,
        )
        logger.info(
            "runtime_init_completed",
            rate_limiting=self.limiter is not None,
            oauth_configured=self.oauth.is_configured,
            email_configured=self.mailer.is_configured,
        )

    async def close(self) -> None:
        """Release the Redis client and the database pool."""
        if self.limiter is not None:
            await self.limiter.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()
        logger.info("runtime_closed")
