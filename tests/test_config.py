import pytest
from pydantic import ValidationError

from sessionguard.config import Settings, get_settings


class TestCookiePolicy:
    def test_production_defaults(self):
        """Production uses a secure, strict, __Host- prefixed cookie."""
        settings = Settings(env="production", app_base_url="https://app.example.com")
        assert settings.session_cookie_secure is True
        assert settings.session_cookie_name == "__Host-session"
        assert settings.session_cookie_samesite == "strict"

    def test_development_defaults(self):
        """Local development works over plain http."""
        settings = Settings(env="development")
        assert settings.session_cookie_secure is False
        assert settings.session_cookie_name == "session"
        assert settings.session_cookie_samesite == "lax"

    def test_explicit_insecure_production_drops_prefix(self):
        """Without Secure the __Host- prefix would be ignored by browsers."""
        settings = Settings(env="production", auth_cookie_secure=False)
        assert settings.session_cookie_name == "session"

    def test_secure_override_outside_production(self):
        """AUTH_COOKIE_SECURE forces the flag on."""
        assert Settings(env="development", auth_cookie_secure=True).session_cookie_secure


class TestPostLoginRedirect:
    @pytest.mark.parametrize("target", ["/", "/dashboard?tab=1", "https://app.example.com/home"])
    def test_accepts_same_origin(self, target):
        """Relative paths and same-origin URLs are allowed."""
        Settings(app_base_url="https://app.example.com", post_login_redirect_url=target)

    @pytest.mark.parametrize(
        "target",
        [
            "//evil.example.com/",
            "https://evil.example.com/",
            "http://app.example.com/",
            "/\\evil.example.com",
            "/\\/evil.example.com",
            "/\t/evil.example.com",
            "/\n/evil.example.com",
        ],
    )
    def test_rejects_other_origins(self, target):
        """Open redirects are refused at startup."""
        with pytest.raises(ValidationError):
            Settings(app_base_url="https://app.example.com", post_login_redirect_url=target)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        """Values come from the process environment."""
        monkeypatch.setenv("ENV", "production")
        monkeypatch.setenv("APP_BASE_URL", "https://app.example.com/")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")

        settings = get_settings()

        assert settings.is_production
        assert settings.app_base_url == "https://app.example.com"
        assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
        assert settings.lockout_threshold == 7

    def test_rate_limit_overrides(self, monkeypatch):
        """Per-action limits are configurable; bad integers fall back to defaults."""
        monkeypatch.setenv("RATE_LIMIT_LOGIN_LIMIT", "20")
        monkeypatch.setenv("RATE_LIMIT_LOGIN_WINDOW_SECONDS", "60")
        monkeypatch.setenv("RATE_LIMIT_REGISTER_LIMIT", "many")

        settings = Settings.from_env()

        assert settings.rate_limit_rule("login").limit == 20
        assert settings.rate_limit_rule("login").window_seconds == 60
        assert settings.rate_limit_rule("register").limit == 3
        assert settings.rate_limit_rule("google").limit == 10

    def test_settings_are_cached(self):
        """get_settings returns the same object until the cache is reset."""
        assert get_settings() is get_settings()

    def test_defaults_fill_missing_rules(self):
        """Direct construction still knows every action."""
        settings = Settings()
        assert settings.rate_limit_rule("logout").limit == 10
        assert settings.rate_limit_rule("logout").window_seconds == 60
        assert settings.lockout_threshold == 10
        assert settings.session_idle_timeout_seconds == 1800
