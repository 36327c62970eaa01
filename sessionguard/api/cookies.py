from __future__ import annotations

from fastapi import Response

from sessionguard.config import Settings
from sessionguard.service.oauth import (
    CALLBACK_PATH,
    HELPER_COOKIE_MAX_AGE,
    STATE_COOKIE,
    VERIFIER_COOKIE,
)


def set_session_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_max_age_seconds,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite=settings.session_cookie_samesite,
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        "",
        max_age=0,
        expires=0,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite=settings.session_cookie_samesite,
    )


def set_oauth_cookies(response: Response, settings: Settings, state: str, verifier: str) -> None:
    """Short-lived helpers scoped to the callback path only."""
    for name, value in ((STATE_COOKIE, state), (VERIFIER_COOKIE, verifier)):
        response.set_cookie(
            name,
            value,
            max_age=HELPER_COOKIE_MAX_AGE,
            path=CALLBACK_PATH,
            secure=settings.session_cookie_secure,
            httponly=True,
            samesite="lax",
        )


def clear_oauth_cookies(response: Response, settings: Settings) -> None:
    for name in (STATE_COOKIE, VERIFIER_COOKIE):
        response.set_cookie(
            name,
            "",
            max_age=0,
            expires=0,
            path=CALLBACK_PATH,
            secure=settings.session_cookie_secure,
            httponly=True,
            samesite="lax",
        )
