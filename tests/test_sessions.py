"""Session issuance, validation and the per-user cap."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.service.errors import SessionExpired, SessionNotFound
from sessionguard.service.passwords import hash_token
from sessionguard.service.sessions import SessionService


class Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def user(store, passwords):
    return store.create_user(
        "alice@example.com",
        "Alice",
        "credentials",
        password_hash=passwords.hash_password("Abcdef1!"),
    )


@pytest.fixture
def sessions(store, clock):
    return SessionService(
        store,
        max_age=timedelta(days=7),
        idle_timeout=timedelta(minutes=30),
        clock=clock,
    )


class TestCreateSession:
    def test_only_the_hash_is_stored(self, sessions, store, user):
        """The raw token is returned once and only its digest is persisted."""
        raw, session = sessions.create_session(user.id, ip="10.0.0.1", user_agent="pytest")
        stored = store.sessions[session.id]
        assert stored.token_hash == hash_token(raw)
        assert raw not in {s.token_hash for s in store.sessions.values()}
        assert stored.ip_address == "10.0.0.1"
        assert stored.user_agent == "pytest"

    def test_expiry_is_creation_plus_max_age(self, sessions, user, clock):
        """expires_at is fixed at creation."""
        _, session = sessions.create_session(user.id)
        assert session.expires_at == clock.now + timedelta(days=7)
        assert session.last_active_at == clock.now

    def test_sixth_session_evicts_the_oldest(self, sessions, store, user, clock):
        """With five live sessions, a new one replaces the earliest."""
        created = []
        for _ in range(5):
            created.append(sessions.create_session(user.id)[1])
            clock.advance(seconds=1)

        _, newest = sessions.create_session(user.id)

        remaining = {s.id for s in store.list_user_sessions(user.id)}
        assert len(remaining) == 5
        assert created[0].id not in remaining
        assert newest.id in remaining

    def test_cap_trims_sessions_inserted_elsewhere(self, sessions, store, user, clock):
        """Rows beyond the cap from any source are trimmed on the next create."""
        from sessionguard.storage.models import Session

        for i in range(8):
            store.create_session(
                Session.new(user.id, f"external-{i}", timedelta(days=1), now=clock.now)
            )
            clock.advance(seconds=1)

        sessions.create_session(user.id)

        assert store.count_user_sessions(user.id) == 5

    def test_cap_holds_under_concurrency(self, sessions, store, user):
        """Parallel logins for one user never leave more than five sessions."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: sessions.create_session(user.id), range(20)))
        assert store.count_user_sessions(user.id) == 5

    def test_cap_is_per_user(self, sessions, store, user, passwords):
        """Another user's sessions are unaffected."""
        bob = store.create_user(
            "bob@example.com", "Bob", "credentials", password_hash=passwords.hash_password("Abcdef1!")
        )
        sessions.create_session(bob.id)
        for _ in range(6):
            sessions.create_session(user.id)
        assert store.count_user_sessions(bob.id) == 1


class TestValidateToken:
    def test_valid_token_returns_session_and_user(self, sessions, user, clock):
        """A live token resolves and its activity timestamp moves forward."""
        raw, session = sessions.create_session(user.id)
        clock.advance(minutes=10)

        info = sessions.validate_token(raw)

        assert info.session.id == session.id
        assert info.session.last_active_at == clock.now
        assert info.user.email == "alice@example.com"
        assert info.user.provider == "credentials"

    @pytest.mark.parametrize("raw", [None, "", "not-a-real-token"])
    def test_unknown_token(self, sessions, raw):
        """Missing and unknown tokens are both SessionNotFound."""
        with pytest.raises(SessionNotFound):
            sessions.validate_token(raw)

    def test_idle_timeout_deletes_session(self, sessions, store, user, clock):
        """Thirty-one idle minutes expire the session and remove it."""
        raw, session = sessions.create_session(user.id)
        clock.advance(minutes=31)

        with pytest.raises(SessionExpired):
            sessions.validate_token(raw)
        assert session.id not in store.sessions

    def test_activity_keeps_session_alive(self, sessions, user, clock):
        """Regular use within the idle window keeps the session valid."""
        raw, _ = sessions.create_session(user.id)
        for _ in range(4):
            clock.advance(minutes=20)
            sessions.validate_token(raw)

    def test_absolute_lifetime(self, store, user, clock):
        """Activity cannot extend a session past max_age."""
        service = SessionService(
            store, max_age=timedelta(hours=1), idle_timeout=timedelta(minutes=30), clock=clock
        )
        raw, session = service.create_session(user.id)
        for _ in range(3):
            clock.advance(minutes=20)
            service.validate_token(raw)
        clock.advance(minutes=1)

        with pytest.raises(SessionExpired):
            service.validate_token(raw)
        assert session.id not in store.sessions

    def test_zero_idle_timeout_disables_idle_check(self, store, user, clock):
        """An idle timeout of zero leaves only the absolute lifetime."""
        service = SessionService(
            store, max_age=timedelta(days=1), idle_timeout=timedelta(0), clock=clock
        )
        raw, _ = service.create_session(user.id)
        clock.advance(hours=12)
        assert service.validate_token(raw).user.id == user.id

    def test_expired_error_clears_cookie(self, sessions, user, clock):
        """Expiry errors ask the HTTP layer to drop the cookie."""
        raw, _ = sessions.create_session(user.id)
        clock.advance(hours=1)
        with pytest.raises(SessionExpired) as excinfo:
            sessions.validate_token(raw)
        assert excinfo.value.clear_session_cookie is True
        assert excinfo.value.status_code == 401


class TestRevocation:
    def test_revoke_by_token_hash_is_idempotent(self, sessions, store, user):
        """Revoking twice, or revoking nothing, does not raise."""
        raw, _ = sessions.create_session(user.id)
        sessions.revoke_by_token_hash(hash_token(raw))
        sessions.revoke_by_token_hash(hash_token(raw))
        sessions.revoke_by_token_hash("")
        assert store.count_user_sessions(user.id) == 0

    def test_revoke_all_for_user(self, sessions, store, user):
        """Every session for the user is removed."""
        tokens = [sessions.create_session(user.id)[0] for _ in range(3)]
        sessions.revoke_all_for_user(user.id)
        for raw in tokens:
            with pytest.raises(SessionNotFound):
                sessions.validate_token(raw)

    def test_purge_expired(self, sessions, store, user, clock):
        """Only sessions past their absolute expiry are purged."""
        sessions.create_session(user.id)
        clock.advance(days=6)
        sessions.create_session(user.id)
        clock.advance(days=2)

        assert sessions.purge_expired() == 1
        assert store.count_user_sessions(user.id) == 1
