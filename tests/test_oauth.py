import base64
import hashlib
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from sessionguard.service.errors import OAuthError
from sessionguard.service.oauth import (
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    GoogleOAuthClient,
    code_challenge,
    states_match,
)


def make_client(handler=None):
    transport = httpx.MockTransport(handler) if handler else None
    return GoogleOAuthClient(
        "client-id",
        "client-secret",
        "https://app.example.com/api/auth/google/callback",
        transport=transport,
    )


def google_handler(token_response=None, userinfo_response=None, seen=None):
    """Build a MockTransport handler answering the token and userinfo endpoints."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if str(request.url) == GOOGLE_TOKEN_URL:
            return token_response or httpx.Response(200, json={"access_token": "at-123"})
        if str(request.url) == GOOGLE_USERINFO_URL:
            return userinfo_response or httpx.Response(
                200,
                json={
                    "sub": "g-1",
                    "email": "Alice@Example.com",
                    "email_verified": True,
                    "name": "Alice",
                    "picture": "https://example.com/a.png",
                },
            )
        return httpx.Response(404)

    return handler


class TestBegin:
    def test_authorization_url_carries_pkce(self):
        """The redirect names the client, scopes, state and an S256 challenge."""
        start = make_client().begin()
        parsed = urlparse(start.authorization_url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert parsed.netloc == "accounts.google.com"
        assert params["response_type"] == "code"
        assert params["client_id"] == "client-id"
        assert params["scope"] == "openid email profile"
        assert params["state"] == start.state
        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"] == code_challenge(start.verifier)

    def test_state_and_verifier_are_random(self):
        """Each start yields fresh values of the expected length."""
        client = make_client()
        first, second = client.begin(), client.begin()
        assert first.state != second.state
        assert first.verifier != second.verifier
        assert len(first.state) == 43
        assert len(first.verifier) == 86

    def test_is_configured(self):
        """All three settings are needed."""
        assert make_client().is_configured
        assert not GoogleOAuthClient("id", None, "https://x").is_configured


class TestHelpers:
    def test_code_challenge_matches_rfc7636_example(self):
        """The appendix B vector from RFC 7636."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_code_challenge_is_unpadded(self):
        """No base64 padding survives."""
        digest = hashlib.sha256(b"abc").digest()
        assert code_challenge("abc") == base64.urlsafe_b64encode(digest).decode().rstrip("=")

    @pytest.mark.parametrize(
        "received, expected, result",
        [("abc", "abc", True), ("abc", "abd", False), ("", "", False), ("abc", "", False)],
    )
    def test_states_match(self, received, expected, result):
        """Empty values never match."""
        assert states_match(received, expected) is result


class TestExchange:
    @pytest.mark.asyncio
    async def test_success(self):
        """The code and verifier are posted and the identity parsed."""
        seen = []
        identity = await make_client(google_handler(seen=seen)).exchange("code-1", "verifier-1")

        assert identity.subject == "g-1"
        assert identity.email == "Alice@Example.com"
        assert identity.email_verified is True
        assert identity.name == "Alice"

        token_request, userinfo_request = seen
        form = parse_qs(token_request.content.decode())
        assert form["code"] == ["code-1"]
        assert form["code_verifier"] == ["verifier-1"]
        assert form["grant_type"] == ["authorization_code"]
        assert userinfo_request.headers["Authorization"] == "Bearer at-123"

    @pytest.mark.asyncio
    async def test_string_email_verified(self):
        """A string "true" counts as verified; anything else does not."""
        handler = google_handler(
            userinfo_response=httpx.Response(
                200, json={"sub": "g-1", "email": "a@example.com", "email_verified": "false"}
            )
        )
        identity = await make_client(handler).exchange("c", "v")
        assert identity.email_verified is False

    @pytest.mark.parametrize(
        "token_response",
        [
            httpx.Response(400, json={"error": "invalid_grant"}),
            httpx.Response(200, json={"token_type": "Bearer"}),
            httpx.Response(200, content=b"not json"),
            httpx.Response(200, content=json.dumps(["a"]).encode()),
        ],
    )
    @pytest.mark.asyncio
    async def test_token_failures(self, token_response):
        """Any token endpoint failure is "invalid oauth code"."""
        client = make_client(google_handler(token_response=token_response))
        with pytest.raises(OAuthError) as excinfo:
            await client.exchange("c", "v")
        assert excinfo.value.message == "invalid oauth code"

    @pytest.mark.parametrize(
        "userinfo_response",
        [
            httpx.Response(401),
            httpx.Response(200, content=b"<html>"),
            httpx.Response(200, json="just a string"),
        ],
    )
    @pytest.mark.asyncio
    async def test_userinfo_failures(self, userinfo_response):
        """Any userinfo failure is "invalid oauth response"."""
        client = make_client(google_handler(userinfo_response=userinfo_response))
        with pytest.raises(OAuthError) as excinfo:
            await client.exchange("c", "v")
        assert excinfo.value.message == "invalid oauth response"

    @pytest.mark.asyncio
    async def test_network_error(self):
        """A transport failure during the token call is "invalid oauth code"."""

        def handler(request):
            raise httpx.ConnectError("boom", request=request)

        with pytest.raises(OAuthError) as excinfo:
            await make_client(handler).exchange("c", "v")
        assert excinfo.value.message == "invalid oauth code"
