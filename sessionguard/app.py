from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sessionguard.api.error_handling import register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger, set_correlation_id
from sessionguard.service.audit import AuditCleanupService
from sessionguard.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

MIN_AUDIT_CLEANUP_INTERVAL_SECONDS = 300

_CONTENT_SECURITY_POLICY = (
    "default-src 'self'; base-uri 'self'; frame-ancestors 'none'; object-src 'none'; "
    "form-action 'self'; img-src 'self' data: https:; style-src 'self'; script-src 'self'; "
    "connect-src 'self'; font-src 'self' data:; frame-src 'none'"
)


async def _run_audit_cleanup(
    cleanup: AuditCleanupService,
    retention_days: int,
    interval_seconds: int,
    timeout_seconds: int,
) -> None:
    """Background loop purging audit rows past the retention window."""

    interval = max(interval_seconds, MIN_AUDIT_CLEANUP_INTERVAL_SECONDS)
    try:
        while True:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(cleanup.purge_older_than, retention_days),
                    timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.error("audit_cleanup_timeout", timeout=timeout_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("audit_cleanup_failed", error_type=type(exc).__name__, error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("audit_cleanup_task_cancelled")


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [settings.app_base_url]


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the HTTP app; an injected runtime is used as-is, otherwise one is built at startup."""
    settings = runtime.settings if runtime is not None else (settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime or Runtime(settings)
        app.state.runtime = active
        if active.limiter is not None:
            try:
                await asyncio.to_thread(active.limiter.verify_connection)
            except Exception as exc:
                # The limiter fails open per request, so startup continues
                logger.warning("rate_limiter_unreachable", error=str(exc))
        cleanup_task: asyncio.Task | None = None
        if settings.audit_cleanup_enabled:
            cleanup_task = asyncio.create_task(
                _run_audit_cleanup(
                    active.audit_cleanup,
                    settings.audit_retention_days,
                    settings.audit_cleanup_interval_seconds,
                    settings.audit_cleanup_timeout_seconds,
                )
            )
        logger.info("app_started", env=settings.env.value)

        yield

        if cleanup_task:
            cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup_task
        try:
            await active.close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))
        app.state.runtime = None

    app = FastAPI(title="Sessionguard", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "X-Requested-With"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Echo X-Request-ID, generating one when the client sends none."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Content-Security-Policy", _CONTENT_SECURITY_POLICY)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault(
            "Permissions-Policy", "camera=(), microphone=(), geolocation=()"
        )
        if settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok"}

    return app


app = create_app()
