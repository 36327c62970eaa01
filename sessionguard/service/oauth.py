from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx

from sessionguard.logging import get_logger
from sessionguard.service.errors import OAuthError
from sessionguard.service.passwords import generate_token

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_SCOPES = ("openid", "email", "profile")

STATE_BYTES = 32
VERIFIER_BYTES = 64

STATE_COOKIE = "oauth_state"
VERIFIER_COOKIE = "oauth_verifier"
CALLBACK_PATH = "/api/auth/google/callback"
HELPER_COOKIE_MAX_AGE = 300

# Fixed messages surfaced to clients; nothing provider-specific leaks
INVALID_REQUEST = "invalid request"
INVALID_STATE = "invalid state"
INVALID_CODE = "invalid oauth code"
INVALID_RESPONSE = "invalid oauth response"
UNABLE_TO_AUTHENTICATE = "unable to authenticate"


@dataclass
class OAuthStart:
    state: str
    verifier: str
    authorization_url: str


@dataclass
class GoogleIdentity:
    subject: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    picture: Optional[str] = None


def code_challenge(verifier: str) -> str:
    """PKCE S256 challenge: unpadded base64url of sha256(verifier)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def states_match(received: str, expected: str) -> bool:
    if not received or not expected:
        return False
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


class GoogleOAuthClient:
    """Authorization-code flow with PKCE against Google's OpenID endpoints."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def begin(self) -> OAuthStart:
        state = generate_token(STATE_BYTES)
        verifier = generate_token(VERIFIER_BYTES)
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(GOOGLE_SCOPES),
            "state": state,
            "access_type": "online",
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
        }
        return OAuthStart(
            state=state,
            verifier=verifier,
            authorization_url=f"{GOOGLE_AUTH_URL}?{urlencode(params)}",
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    async def exchange(self, code: str, verifier: str) -> GoogleIdentity:
        async with self._client() as client:
            access_token = await self._fetch_access_token(client, code, verifier)
            return await self._fetch_identity(client, access_token)

    async def _fetch_access_token(
        self, client: httpx.AsyncClient, code: str, verifier: str
    ) -> str:
        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code_verifier": verifier,
        }
        try:
            response = await client.post(
                GOOGLE_TOKEN_URL, data=token_data, headers={"Accept": "application/json"}
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "oauth_token_exchange_failed", status_code=exc.response.status_code
            )
            raise OAuthError(INVALID_CODE) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "oauth_token_exchange_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise OAuthError(INVALID_CODE) from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            logger.warning("oauth_no_access_token")
            raise OAuthError(INVALID_CODE)
        return access_token

    async def _fetch_identity(self, client: httpx.AsyncClient, access_token: str) -> GoogleIdentity:
        try:
            response = await client.get(
                GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "oauth_userinfo_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise OAuthError(INVALID_RESPONSE) from exc
        if response.status_code != 200:
            logger.warning("oauth_userinfo_failed", status_code=response.status_code)
            raise OAuthError(INVALID_RESPONSE)
        try:
            userinfo = response.json()
        except ValueError as exc:
            logger.warning("oauth_userinfo_parse_error", error=str(exc))
            raise OAuthError(INVALID_RESPONSE) from exc
        if not isinstance(userinfo, dict):
            logger.warning("oauth_userinfo_invalid_format", type=type(userinfo).__name__)
            raise OAuthError(INVALID_RESPONSE)
        return GoogleIdentity(
            subject=str(userinfo.get("sub") or ""),
            email=str(userinfo.get("email") or ""),
            email_verified=_as_bool(userinfo.get("email_verified")),
            name=userinfo.get("name") or None,
            picture=userinfo.get("picture") or None,
        )
