"""Session issuing/validation and the password flows built on it."""

from datetime import timedelta

import pytest
from argon2 import PasswordHasher

from pggarden.service.auth import AuthService
from pggarden.service.errors import (
    AuthenticationError,
    DuplicateAccountError,
    IdentityError,
    SessionUserMissing,
)
from pggarden.service.identity import IdentityService
from pggarden.service.sessions import SessionService
from pggarden.storage.memory import MemoryStore
from pggarden.storage.models import new_id, utcnow
from pggarden.storage.redis_cache import MemorySessionCache

PASSWORD = "correct horse battery"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemorySessionCache()


@pytest.fixture
def identity(store):
    return IdentityService(store, hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture
def sessions(store, cache, identity):
    return SessionService(store, cache, identity)


@pytest.fixture
def auth(identity, sessions):
    return AuthService(identity, sessions)


@pytest.fixture
def alice(identity):
    return identity.really_create_user("alice", "alice@example.com", password=PASSWORD)


class TestSessionService:
    async def test_created_session_validates(self, sessions, store, alice):
        issued = await sessions.create_session(alice.id)

        cookie_id, secret = issued.token.split(".")
        assert cookie_id == issued.id
        assert len(cookie_id) == 64 and len(secret) == 64
        assert issued.session_id in store.sessions

        result = await sessions.validate_session_token(issued.token)
        assert result.user.id == alice.id
        assert result.user.username == "alice"
        assert result.user.role == "user"
        assert result.user.is_verified is False
        assert result.session.id == issued.session_id
        assert result.session.cookie_id == issued.id

    async def test_secret_is_not_stored_in_clear(self, sessions, cache, alice):
        issued = await sessions.create_session(alice.id)
        secret = issued.token.split(".")[1]

        fields = await cache.get_session(issued.id)

        assert secret not in fields.values()

    async def test_unknown_user(self, sessions):
        with pytest.raises(SessionUserMissing):
            await sessions.create_session(new_id())

    @pytest.mark.parametrize("token", [None, "", "nodot", "a.b.c", ".secret", "cookie.", "x.y"])
    async def test_malformed_tokens_are_anonymous(self, sessions, token):
        result = await sessions.validate_session_token(token)
        assert result.user is None and result.session is None

    async def test_tampered_secret_is_rejected(self, sessions, alice):
        issued = await sessions.create_session(alice.id)
        forged = f"{issued.id}.{'0' * 64}"

        result = await sessions.validate_session_token(forged)

        assert result.user is None

    async def test_expired_entry_is_rejected(self, sessions, cache, alice):
        issued = await sessions.create_session(alice.id)
        fields, expires_at = cache._sessions[issued.id]
        fields["expires_at"] = (utcnow() - timedelta(seconds=1)).isoformat()

        result = await sessions.validate_session_token(issued.token)

        assert result.session is None

    async def test_evicted_cache_entry_invalidates_despite_ledger_row(
        self, sessions, cache, store, alice
    ):
        issued = await sessions.create_session(alice.id)

        await cache.delete_session(issued.id)

        assert (await sessions.validate_session_token(issued.token)).user is None
        assert issued.session_id in store.sessions

    async def test_missing_role_defaults_to_visitor(self, sessions, cache, alice):
        issued = await sessions.create_session(alice.id)
        fields, _ = cache._sessions[issued.id]
        fields["role"] = ""

        result = await sessions.validate_session_token(issued.token)

        assert result.user.role == "visitor"

    async def test_delete_session_removes_cache_and_ledger(self, sessions, store, alice):
        issued = await sessions.create_session(alice.id)

        await sessions.delete_session(issued.id)

        assert issued.session_id not in store.sessions
        assert (await sessions.validate_session_token(issued.token)).user is None
        # Deleting twice is harmless
        await sessions.delete_session(issued.id)

    async def test_revoke_keeps_named_session(self, sessions, alice):
        keep = await sessions.create_session(alice.id)
        drop = await sessions.create_session(alice.id)

        revoked = await sessions.revoke_user_sessions(alice.id, except_cookie_id=keep.id)

        assert revoked == 1
        assert (await sessions.validate_session_token(keep.token)).user is not None
        assert (await sessions.validate_session_token(drop.token)).user is None

    async def test_configured_ttl_is_applied(self, store, cache, identity, alice):
        sessions = SessionService(store, cache, identity, ttl=timedelta(days=1))

        issued = await sessions.create_session(alice.id)

        remaining = issued.expires_at - utcnow()
        assert timedelta(hours=23) < remaining <= timedelta(days=1)


class TestAuthService:
    async def test_register_signs_in(self, auth, sessions):
        result = await auth.register("bob", "bob@example.com", PASSWORD)

        assert result.user.username == "bob"
        validated = await sessions.validate_session_token(result.session.token)
        assert validated.user.id == result.user.id

    async def test_register_duplicate_username(self, auth, alice):
        with pytest.raises(DuplicateAccountError):
            await auth.register("ALICE", "someone@example.com", PASSWORD)

    async def test_register_weak_password(self, auth):
        with pytest.raises(IdentityError) as excinfo:
            await auth.register("bob", "bob@example.com", "short")
        assert excinfo.value.code == "WEAKP"

    async def test_login_issues_session(self, auth, alice):
        result = await auth.login("alice@example.com", PASSWORD)
        assert result.user.id == alice.id
        assert result.session.token

    async def test_login_failure_is_generic(self, auth, alice):
        with pytest.raises(AuthenticationError) as excinfo:
            await auth.login("alice", "wrong password")
        assert excinfo.value.message == "Invalid username or password"

        with pytest.raises(AuthenticationError):
            await auth.login("nobody", PASSWORD)

    async def test_login_lockout(self, auth, alice):
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await auth.login("alice", "wrong password")

        with pytest.raises(IdentityError) as excinfo:
            await auth.login("alice", PASSWORD)
        assert excinfo.value.code == "LOCKD"

    async def test_logout(self, auth, sessions, alice):
        result = await auth.login("alice", PASSWORD)

        await auth.logout(result.session.id)
        await auth.logout(None)

        assert (await sessions.validate_session_token(result.session.token)).user is None

    async def test_change_password_keeps_current_session_only(self, auth, sessions, alice):
        current = (await auth.login("alice", PASSWORD)).session
        other = (await auth.login("alice", PASSWORD)).session

        ok = await auth.change_password(
            alice.id, current.session_id, current.id, PASSWORD, "new password 1"
        )

        assert ok is True
        assert (await sessions.validate_session_token(current.token)).user is not None
        assert (await sessions.validate_session_token(other.token)).user is None

    async def test_reset_password_signs_out_everywhere(self, auth, sessions, store, alice):
        issued = (await auth.login("alice", PASSWORD)).session
        await auth.forgot_password("  alice@example.com ")
        token = store.list_jobs("user__forgot_password")[0].payload["token"]

        assert await auth.reset_password(alice.id, "wrong", "new password 1") is False
        assert await auth.reset_password(alice.id, token, "new password 1") is True

        assert (await sessions.validate_session_token(issued.token)).user is None
        assert issued.session_id not in store.sessions

    async def test_account_deletion_revokes_sessions(self, auth, sessions, store, alice):
        issued = (await auth.login("alice", PASSWORD)).session
        assert await auth.request_account_deletion(alice.id) is True
        token = store.list_jobs("user__send_delete_account_email")[0].payload["token"]

        assert await auth.confirm_account_deletion(alice.id, token) is True

        assert (await sessions.validate_session_token(issued.token)).user is None
        assert alice.id not in store.users
