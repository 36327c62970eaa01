"""Integration tests for the HTTP authentication flow.

Covers:
- Registration and the session cookie
- Login, /me and logout
- Error envelopes and cookie clearing
- Email verification pages
- Google sign-in redirect and callback
- Security and correlation headers
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from sessionguard.app import create_app
from sessionguard.config import Settings
from sessionguard.service import audit as events
from sessionguard.service.oauth import GOOGLE_TOKEN_URL, GoogleOAuthClient
from sessionguard.service.runtime import Runtime
from sessionguard.storage.memory import MemoryStore

PASSWORD = "TestPassword123!"


def _google_handler(request):
    if str(request.url) == GOOGLE_TOKEN_URL:
        return httpx.Response(200, json={"access_token": "at"})
    return httpx.Response(
        200,
        json={"sub": "g-42", "email": "gina@example.com", "email_verified": True, "name": "Gina"},
    )


@pytest.fixture
def runtime(passwords, mailer):
    settings = Settings(
        env="test",
        use_memory_store=True,
        rate_limit_enabled=False,
        google_client_id="client-id",
        google_client_secret="client-secret",
        google_redirect_uri="http://testserver/api/auth/google/callback",
        post_login_redirect_url="/dashboard",
    )
    oauth = GoogleOAuthClient(
        settings.google_client_id,
        settings.google_client_secret,
        settings.google_redirect_uri,
        transport=httpx.MockTransport(_google_handler),
    )
    return Runtime(
        settings, store=MemoryStore(), mailer=mailer, oauth=oauth, passwords=passwords
    )


@pytest.fixture
def client(runtime):
    """Create a test client with the app lifespan running."""
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def register(client, email="testuser@example.com", password=PASSWORD, name="Test User"):
    return client.post(
        "/api/auth/register", json={"email": email, "password": password, "name": name}
    )


def verification_token(mailer):
    url = mailer.sent[-1][1].text_body.split("\n")[3]
    return parse_qs(urlparse(url).query)["token"][0]


class TestRegisterFlow:
    def test_register_sets_session_cookie(self, client):
        """A new account is signed straight in."""
        response = register(client)

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert client.cookies.get("session")
        cookie_header = response.headers["set-cookie"]
        assert "HttpOnly" in cookie_header
        assert "SameSite=lax" in cookie_header

        me = client.get("/api/auth/me")
        assert me.status_code == 200
        assert me.json()["data"]["user"]["email"] == "testuser@example.com"
        assert me.json()["data"]["user"]["email_verified"] is False

    def test_register_records_user_audit_and_email(self, client, runtime, mailer):
        """One credentials user, one success audit row and one queued email."""
        response = register(client, email="alice@example.com", password="Str0ng!Pass", name="Alice")

        assert response.status_code == 200
        user = runtime.store.get_user_by_email("alice@example.com")
        assert user.provider == "credentials"
        assert user.email_verified is False
        assert len(runtime.store.list_audit_logs(events.REGISTER_SUCCESS)) == 1
        assert len(mailer.sent) == 1

    def test_duplicate_looks_the_same(self, client):
        """A second registration gets the same body but no cookie."""
        register(client)
        client.cookies.clear()

        response = register(client)

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "set-cookie" not in response.headers

    def test_weak_password(self, client):
        """Policy failures come back as validation errors."""
        response = register(client, password="weakpassword")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "password must include an uppercase letter"

    def test_missing_field(self, client):
        """Malformed bodies are a generic invalid request."""
        response = client.post("/api/auth/register", json={"email": "a@example.com"})

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid request"


class TestLoginFlow:
    def test_login_me_logout(self, client):
        """The cookie authenticates /me until logout clears it."""
        register(client)
        client.cookies.clear()

        login = client.post(
            "/api/auth/login", json={"email": "TestUser@example.com", "password": PASSWORD}
        )
        assert login.status_code == 200
        assert login.json()["data"]["email"] == "testuser@example.com"
        assert client.get("/api/auth/me").status_code == 200

        logout = client.post("/api/auth/logout")
        assert logout.status_code == 200
        assert "Max-Age=0" in logout.headers["set-cookie"]
        assert client.get("/api/auth/me").status_code == 401

    def test_wrong_password_is_generic(self, client):
        """Unknown users and wrong passwords read the same."""
        register(client)
        client.cookies.clear()

        wrong = client.post(
            "/api/auth/login", json={"email": "testuser@example.com", "password": "Nope-123!"}
        )
        unknown = client.post(
            "/api/auth/login", json={"email": "nobody@example.com", "password": "Nope-123!"}
        )

        for response in (wrong, unknown):
            assert response.status_code == 401
            assert response.json()["error"] == {
                "code": "unauthorized",
                "message": "invalid email or password",
                "details": None,
            }

    def test_lockout_email_is_sent_with_the_error(self, client, mailer, runtime):
        """The tenth failure answers 401 and still delivers the lockout notice."""
        register(client)
        client.cookies.clear()
        mailer.sent.clear()

        for _ in range(10):
            response = client.post(
                "/api/auth/login",
                json={"email": "testuser@example.com", "password": "Nope-123!"},
            )
            assert response.status_code == 401

        assert [message.subject for _, message in mailer.sent] == ["Your account has been locked"]
        assert runtime.store.list_audit_logs(events.LOCKOUT_EMAIL_SENT)

        locked = client.post(
            "/api/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        assert locked.status_code == 401

    def test_me_without_cookie(self, client):
        """Unauthenticated requests get 401 and a cleared cookie."""
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert "Max-Age=0" in response.headers["set-cookie"]

    def test_change_password_replaces_cookie(self, client):
        """The old cookie stops working and the new one is set."""
        register(client)
        old = client.cookies.get("session")

        response = client.post(
            "/api/auth/password",
            json={"current_password": PASSWORD, "new_password": "Another-Pass9"},
        )

        assert response.status_code == 200
        assert client.cookies.get("session") != old
        assert client.get("/api/auth/me").status_code == 200


class TestEmailVerification:
    def test_html_page(self, client, mailer):
        """Browsers get an HTML confirmation page."""
        register(client)

        response = client.get(
            "/api/auth/verify-email", params={"token": verification_token(mailer)}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "<title>Email verified</title>" in response.text
        assert 'href="/dashboard"' in response.text
        assert client.get("/api/auth/me").json()["data"]["user"]["email_verified"] is True

    def test_json_response(self, client, mailer):
        """API callers get the envelope."""
        register(client)

        response = client.get(
            "/api/auth/verify-email",
            params={"token": verification_token(mailer)},
            headers={"Accept": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_invalid_token_page(self, client):
        """A bad link renders a 400 page."""
        response = client.get("/api/auth/verify-email", params={"token": "bogus"})

        assert response.status_code == 400
        assert "<title>Invalid verification link</title>" in response.text

    def test_invalid_token_json(self, client):
        """The JSON variant is a validation error."""
        response = client.get(
            "/api/auth/verify-email", headers={"X-Requested-With": "XMLHttpRequest"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid verification link"

    def test_resend(self, client, mailer):
        """Resend mails a fresh link to a signed-in, unverified user."""
        register(client)

        response = client.post("/api/auth/verify-email/resend")

        assert response.status_code == 200
        assert len(mailer.sent) == 2


class TestGoogleFlow:
    def test_start_redirects_and_sets_helper_cookies(self, client):
        """State and verifier cookies are scoped to the callback path."""
        response = client.get("/api/auth/google", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://accounts.google.com/")
        cookies = response.headers.get_list("set-cookie")
        assert any(c.startswith("oauth_state=") for c in cookies)
        assert any(c.startswith("oauth_verifier=") for c in cookies)
        assert all("Path=/api/auth/google/callback" in c for c in cookies)

    def test_start_json(self, client):
        """API callers receive the authorization URL in the envelope."""
        response = client.get("/api/auth/google", headers={"Accept": "application/json"})

        assert response.status_code == 200
        assert response.json()["data"]["url"].startswith("https://accounts.google.com/")

    def test_full_round_trip(self, client):
        """A matching state completes sign-in and redirects to the app."""
        start = client.get("/api/auth/google", follow_redirects=False)
        state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

        callback = client.get(
            "/api/auth/google/callback",
            params={"state": state, "code": "auth-code"},
            follow_redirects=False,
        )

        assert callback.status_code == 302
        assert callback.headers["location"] == "/dashboard"
        me = client.get("/api/auth/me")
        assert me.json()["data"]["user"]["provider"] == "google"

    def test_state_mismatch(self, client):
        """A forged state is rejected and the helper cookies cleared."""
        client.get("/api/auth/google", follow_redirects=False)

        response = client.get(
            "/api/auth/google/callback",
            params={"state": "forged", "code": "auth-code"},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid state"
        assert all("Max-Age=0" in c for c in response.headers.get_list("set-cookie"))


class TestHeaders:
    def test_security_headers(self, client):
        """Every response carries the hardening headers."""
        response = client.get("/api/health")

        assert response.json() == {"status": "ok"}
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "frame-ancestors 'none'" in response.headers["Content-Security-Policy"]
        assert "Strict-Transport-Security" not in response.headers

    def test_request_id_is_echoed(self, client):
        """A supplied X-Request-ID comes back in the header and envelope."""
        response = client.get("/api/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_unknown_route_uses_envelope(self, client):
        """Framework 404s are rendered in the error envelope."""
        response = client.get("/api/nope")

        assert response.status_code == 404
        assert response.json()["status"] == "error"
