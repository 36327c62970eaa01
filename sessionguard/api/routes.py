from __future__ import annotations

import html
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from sessionguard.api.cookies import (
    clear_oauth_cookies,
    clear_session_cookie,
    set_oauth_cookies,
    set_session_cookie,
)
from sessionguard.api.error_handling import error_response
from sessionguard.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    GoogleStartResponse,
    LoginRequest,
    MeResponse,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from sessionguard.logging import get_logger
from sessionguard.service.auth import (
    EXPIRED_VERIFICATION_LINK,
    RequestContext,
    RequestMeta,
)
from sessionguard.service.errors import (
    AuthenticationError,
    ServiceError,
    UnavailableError,
    ValidationError,
)
from sessionguard.service.oauth import STATE_COOKIE, VERIFIER_COOKIE
from sessionguard.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

_VERIFY_PAGE = (
    '<!doctype html><html><head><meta charset="utf-8"><title>{title}</title></head>'
    '<body><main style="font-family:Arial, sans-serif; max-width:640px; margin:48px auto; padding:0 24px;">'
    '<h1>{title}</h1><p>{message}</p><p><a href="{link}">Continue</a></p></main></body></html>'
)


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise UnavailableError("service unavailable")
    return runtime


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def get_request_meta(request: Request, background_tasks: BackgroundTasks) -> RequestMeta:
    return RequestMeta(
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        defer=background_tasks.add_task,
    )


def _session_token(request: Request, runtime: Runtime) -> Optional[str]:
    return request.cookies.get(runtime.settings.session_cookie_name) or None


async def get_request_context(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> RequestContext:
    """Authentication gate; a missing or dead session answers 401 and clears the cookie."""
    return await runtime.auth.authenticate(_session_token(request, runtime))


def wants_json(request: Request) -> bool:
    if "application/json" in request.headers.get("accept", "").lower():
        return True
    if request.headers.get("sec-fetch-mode", "").lower() == "cors":
        return True
    return "x-requested-with" in request.headers


def _post_login_url(runtime: Runtime) -> str:
    return runtime.settings.post_login_redirect_url or "/"


def _verification_page(status_code: int, title: str, message: str, link: str) -> HTMLResponse:
    body = _VERIFY_PAGE.format(
        title=html.escape(title), message=html.escape(message), link=html.escape(link)
    )
    return HTMLResponse(body, status_code=status_code)


@router.post("/register", response_model=Envelope)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    meta: RequestMeta = Depends(get_request_meta),
):
    """Create a password account.

    New and already-registered emails get the same response body so the
    endpoint cannot be used to enumerate accounts.
    """
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.name,
        meta=meta,
        current_token=_session_token(request, runtime),
    )
    if result.token:
        set_session_cookie(response, runtime.settings, result.token)
    return Envelope(status="ok")


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    runtime: Runtime = Depends(get_runtime),
    meta: RequestMeta = Depends(get_request_meta),
):
    try:
        result = await runtime.auth.login(
            body.email,
            body.password,
            meta=meta,
            current_token=_session_token(request, runtime),
        )
    except AuthenticationError as exc:
        if not background_tasks.tasks:
            raise
        # A lockout notice is queued; keep it attached to the error response
        logger.warning("service_error", path=request.url.path, status_code=exc.status_code)
        failed = error_response(exc.status_code, exc.message, code=exc.error_code)
        failed.background = background_tasks
        return failed
    set_session_cookie(response, runtime.settings, result.token)
    return Envelope(status="ok", data=UserResponse.from_user(result.user))


@router.post("/logout", response_model=Envelope)
async def logout(
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
    meta: RequestMeta = Depends(get_request_meta),
):
    await runtime.auth.logout(ctx, meta=meta)
    clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok")


@router.post("/password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
    meta: RequestMeta = Depends(get_request_meta),
):
    result = await runtime.auth.change_password(
        ctx, body.current_password, body.new_password, meta=meta
    )
    set_session_cookie(response, runtime.settings, result.token)
    return Envelope(status="ok")


@router.get("/verify-email")
async def verify_email(
    request: Request,
    token: Optional[str] = Query(default=None),
    runtime: Runtime = Depends(get_runtime),
    meta: RequestMeta = Depends(get_request_meta),
):
    as_json = wants_json(request)
    link = _post_login_url(runtime)
    try:
        await runtime.auth.verify_email(token, meta=meta)
    except ValidationError as exc:
        if as_json:
            raise
        if exc.message == EXPIRED_VERIFICATION_LINK:
            detail = "Your verification link has expired. Please request a new one."
        else:
            detail = "The verification token is missing or invalid."
        return _verification_page(400, exc.message, detail, link)
    if as_json:
        return JSONResponse(Envelope(status="ok").model_dump())
    return _verification_page(
        200, "Email verified", "Your email has been verified successfully.", link
    )


@router.post("/verify-email/resend", response_model=Envelope)
async def resend_verification(
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
    meta: RequestMeta = Depends(get_request_meta),
):
    await runtime.auth.resend_verification(ctx, meta=meta)
    return Envelope(status="ok")


@router.get("/me", response_model=Envelope)
async def me(ctx: RequestContext = Depends(get_request_context)):
    return Envelope(
        status="ok",
        data=MeResponse(
            user=UserResponse.from_user(ctx.user),
            session=SessionResponse(
                expires_at=ctx.session.expires_at,
                last_active_at=ctx.session.last_active_at,
            ),
        ),
    )


@router.get("/google")
async def google_start(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    meta: RequestMeta = Depends(get_request_meta),
):
    start = await runtime.auth.start_google_login(meta=meta)
    if wants_json(request):
        response = JSONResponse(
            Envelope(
                status="ok", data=GoogleStartResponse(url=start.authorization_url)
            ).model_dump()
        )
    else:
        response = RedirectResponse(start.authorization_url, status_code=302)
    set_oauth_cookies(response, runtime.settings, start.state, start.verifier)
    return response


@router.get("/google/callback")
async def google_callback(
    request: Request,
    state: Optional[str] = Query(default=None),
    code: Optional[str] = Query(default=None),
    runtime: Runtime = Depends(get_runtime),
    meta: RequestMeta = Depends(get_request_meta),
):
    try:
        result = await runtime.auth.complete_google_login(
            state=state,
            code=code,
            state_cookie=request.cookies.get(STATE_COOKIE),
            verifier_cookie=request.cookies.get(VERIFIER_COOKIE),
            meta=meta,
            current_token=_session_token(request, runtime),
        )
    except ServiceError as exc:
        logger.warning(
            "oauth_callback_failed", status_code=exc.status_code, message=exc.message
        )
        failed = error_response(exc.status_code, exc.message, code=exc.error_code)
        clear_oauth_cookies(failed, runtime.settings)
        return failed
    response = RedirectResponse(_post_login_url(runtime), status_code=302)
    clear_oauth_cookies(response, runtime.settings)
    set_session_cookie(response, runtime.settings, result.token)
    return response
