"""Unit tests for the identity functions.

Covers:
- Login lockout window and failure tracking
- Forgot/reset password flows and their rate limits
- Password change and account deletion
- Account creation, username derivation and provider linking
- Email verification and management
"""

from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher

from pggarden.service.errors import IdentityError, ValidationError
from pggarden.service.identity import (
    MSG_BAD_DELETE_TOKEN,
    MSG_LOGIN_LOCKED,
    IdentityService,
    InvalidCredentials,
    LoginLocked,
    LoginSuccess,
    derive_username_base,
)
from pggarden.storage.errors import ConstraintViolation
from pggarden.storage.memory import MemoryStore
from pggarden.storage.models import LedgerSession, new_id

PASSWORD = "correct horse battery"

# Cheap parameters keep the suite fast; production uses argon2id defaults
FAST_HASHER = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


class Clock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def identity(store, clock):
    service = IdentityService(store, hasher=FAST_HASHER)
    service._now = clock
    return service


@pytest.fixture
def alice(identity):
    return identity.really_create_user("alice", "alice@example.com", password=PASSWORD)


def _secret(store, user_id):
    with store.transaction() as tx:
        return tx.get_user_secret(user_id)


def _jobs(store, task):
    return [job.payload for job in store.list_jobs(task)]


def _add_ledger_session(store, user_id):
    session_id = new_id()
    with store.transaction() as tx:
        tx.insert_session(LedgerSession(id=session_id, user_id=user_id))
    return session_id


class TestLogin:
    def test_login_by_username_is_case_insensitive(self, identity, alice):
        result = identity.login("ALICE", PASSWORD)
        assert isinstance(result, LoginSuccess)
        assert result.user.id == alice.id

    def test_login_by_email(self, identity, alice):
        result = identity.login("alice@example.com", PASSWORD)
        assert isinstance(result, LoginSuccess)

    def test_success_records_last_login(self, identity, store, alice, clock):
        identity.login("alice", PASSWORD)
        assert _secret(store, alice.id).last_login_at == clock.now

    def test_unknown_user_is_invalid_credentials(self, identity):
        assert isinstance(identity.login("nobody", PASSWORD), InvalidCredentials)

    def test_wrong_password_counts_failure(self, identity, store, alice, clock):
        assert isinstance(identity.login("alice", "wrong password"), InvalidCredentials)
        secret = _secret(store, alice.id)
        assert secret.failed_password_attempts == 1
        assert secret.first_failed_password_attempt == clock.now

    def test_three_failures_lock_even_correct_password(self, identity, store, alice):
        for _ in range(3):
            identity.login("alice", "wrong password")

        result = identity.login("alice", PASSWORD)

        assert isinstance(result, LoginLocked)
        assert result.message == MSG_LOGIN_LOCKED
        # The lock check does not touch the counters
        assert _secret(store, alice.id).failed_password_attempts == 3

    def test_lock_expires_after_window(self, identity, store, alice, clock):
        for _ in range(3):
            identity.login("alice", "wrong password")
        clock.advance(minutes=5, seconds=1)

        result = identity.login("alice", PASSWORD)

        assert isinstance(result, LoginSuccess)
        secret = _secret(store, alice.id)
        assert secret.failed_password_attempts == 0
        assert secret.first_failed_password_attempt is None

    def test_failure_after_lapsed_window_restarts_streak(self, identity, store, alice, clock):
        identity.login("alice", "wrong password")
        identity.login("alice", "wrong password")
        clock.advance(minutes=6)

        identity.login("alice", "wrong password")

        secret = _secret(store, alice.id)
        assert secret.failed_password_attempts == 1
        assert secret.first_failed_password_attempt == clock.now

    def test_failure_survives_caller_rollback(self, identity, store, alice):
        with pytest.raises(RuntimeError):
            with store.transaction():
                identity.login("alice", "wrong password")
                raise RuntimeError("caller aborted")

        assert _secret(store, alice.id).failed_password_attempts == 1

    def test_account_without_password_never_matches(self, identity):
        user = identity.register_user(
            "github", "octocat", {"login": "octocat", "email": "octo@example.com"}, {}, True
        )
        assert isinstance(identity.login(user.username, ""), InvalidCredentials)
        assert not identity.has_password(user.id)

    def test_logout_deletes_ledger_row(self, identity, store, alice):
        session_id = _add_ledger_session(store, alice.id)

        removed = identity.logout(session_id)

        assert removed.id == session_id
        assert session_id not in store.sessions
        assert identity.logout(session_id) is None
        assert identity.logout(None) is None


class TestForgotPassword:
    def test_unregistered_address_is_rate_limited(self, identity, store, clock):
        identity.forgot_password("ghost@example.com")
        identity.forgot_password("ghost@example.com")
        assert len(_jobs(store, "user__forgot_password_unregistered_email")) == 1

        clock.advance(minutes=16)
        identity.forgot_password("ghost@example.com")

        assert len(_jobs(store, "user__forgot_password_unregistered_email")) == 2
        assert store.unregistered_resets["ghost@example.com"].attempts == 2

    def test_stale_unregistered_rows_are_pruned(self, identity, store, clock):
        identity.forgot_password("old@example.com")
        clock.advance(hours=25)

        identity.forgot_password("new@example.com")

        assert "old@example.com" not in store.unregistered_resets
        assert "new@example.com" in store.unregistered_resets

    def test_registered_address_queues_reset_email(self, identity, store, alice):
        assert identity.forgot_password("alice@example.com") is None

        jobs = _jobs(store, "user__forgot_password")
        assert len(jobs) == 1
        assert jobs[0]["id"] == alice.id
        assert jobs[0]["email"] == "alice@example.com"
        assert jobs[0]["token"] == _secret(store, alice.id).reset_password_token
        assert len(jobs[0]["token"]) == 14

    def test_reset_email_rate_limit_and_token_reuse(self, identity, store, alice, clock):
        identity.forgot_password("alice@example.com")
        identity.forgot_password("alice@example.com")
        assert len(_jobs(store, "user__forgot_password")) == 1

        clock.advance(minutes=4)
        identity.forgot_password("alice@example.com")

        first, second = _jobs(store, "user__forgot_password")
        assert first["token"] == second["token"]

    def test_expired_token_is_regenerated(self, identity, store, alice, clock):
        identity.forgot_password("alice@example.com")
        clock.advance(days=3, minutes=1)
        identity.forgot_password("alice@example.com")

        first, second = _jobs(store, "user__forgot_password")
        assert first["token"] != second["token"]


class TestResetPassword:
    @pytest.fixture
    def token(self, identity, store, alice):
        identity.forgot_password("alice@example.com")
        return _jobs(store, "user__forgot_password")[0]["token"]

    def test_wrong_token_returns_none_and_counts(self, identity, store, alice, token):
        assert identity.reset_password(alice.id, "0" * 14, "new password 1") is None
        assert _secret(store, alice.id).failed_reset_password_attempts == 1

    def test_unknown_user_returns_none(self, identity):
        assert identity.reset_password(new_id(), "whatever", "new password 1") is None

    def test_success_replaces_password_and_revokes_sessions(self, identity, store, alice, token):
        session_id = _add_ledger_session(store, alice.id)

        assert identity.reset_password(alice.id, token, "brand new password") is True

        assert session_id not in store.sessions
        assert isinstance(identity.login("alice", "brand new password"), LoginSuccess)
        secret = _secret(store, alice.id)
        assert secret.reset_password_token is None
        assert secret.failed_reset_password_attempts == 0
        audits = _jobs(store, "user__audit")
        assert any(a["type"] == "reset_password" for a in audits)
        # The token is single use
        assert identity.reset_password(alice.id, token, "another password") is None

    def test_weak_password_is_rejected_after_token_check(self, identity, store, alice, token):
        with pytest.raises(IdentityError) as excinfo:
            identity.reset_password(alice.id, token, "short")
        assert excinfo.value.code == "WEAKP"
        # Nothing was consumed
        assert _secret(store, alice.id).reset_password_token == token

    def test_expired_token_is_refused(self, identity, alice, token, clock):
        clock.advance(days=3, seconds=1)
        assert identity.reset_password(alice.id, token, "brand new password") is None

    def test_twenty_failures_lock_resets(self, identity, alice, token):
        for _ in range(20):
            identity.reset_password(alice.id, "bad", "brand new password")

        with pytest.raises(IdentityError) as excinfo:
            identity.reset_password(alice.id, token, "brand new password")

        assert excinfo.value.code == "LOCKD"
        assert excinfo.value.message == "Password reset locked - too many reset attempts"


class TestChangePassword:
    def test_anonymous_caller_must_log_in(self, identity):
        with pytest.raises(IdentityError) as excinfo:
            identity.change_password(None, None, PASSWORD, "new password 1")
        assert excinfo.value.code == "LOGIN"
        assert excinfo.value.message == "You must log in to change your password"

    def test_wrong_old_password(self, identity, alice):
        with pytest.raises(IdentityError) as excinfo:
            identity.change_password(alice.id, None, "not it", "new password 1")
        assert excinfo.value.code == "CREDS"

    def test_weak_new_password(self, identity, alice):
        with pytest.raises(IdentityError) as excinfo:
            identity.change_password(alice.id, None, PASSWORD, "weak")
        assert excinfo.value.code == "WEAKP"

    def test_success_revokes_other_sessions(self, identity, store, alice):
        current = _add_ledger_session(store, alice.id)
        other = _add_ledger_session(store, alice.id)

        assert identity.change_password(alice.id, current, PASSWORD, "new password 1") is True

        assert current in store.sessions
        assert other not in store.sessions
        assert isinstance(identity.login("alice", "new password 1"), LoginSuccess)
        assert any(a["type"] == "change_password" for a in _jobs(store, "user__audit"))


class TestAccountDeletion:
    def test_request_requires_login(self, identity):
        with pytest.raises(IdentityError) as excinfo:
            identity.request_account_deletion(None)
        assert excinfo.value.code == "LOGIN"

    def test_request_queues_email_and_reuses_token(self, identity, store, alice):
        identity.request_account_deletion(alice.id)
        identity.request_account_deletion(alice.id)

        first, second = _jobs(store, "user__send_delete_account_email")
        assert first["email"] == "alice@example.com"
        assert first["token"] == second["token"]

    def test_confirm_with_wrong_token(self, identity, alice):
        identity.request_account_deletion(alice.id)
        with pytest.raises(IdentityError) as excinfo:
            identity.confirm_account_deletion(alice.id, "nope")
        assert excinfo.value.code == "DNIED"
        assert excinfo.value.message == MSG_BAD_DELETE_TOKEN

    def test_confirm_deletes_user_and_cascades(self, identity, store, alice):
        _add_ledger_session(store, alice.id)
        identity.request_account_deletion(alice.id)
        token = _jobs(store, "user__send_delete_account_email")[0]["token"]

        assert identity.confirm_account_deletion(alice.id, token) is True

        assert alice.id not in store.users
        assert not [e for e in store.emails.values() if e.user_id == alice.id]
        assert not [s for s in store.sessions.values() if s.user_id == alice.id]
        # Confirming again is a no-op success
        assert identity.confirm_account_deletion(alice.id, token) is True


class TestCreateUser:
    def test_weak_password_is_reported_before_missing_email(self, identity):
        with pytest.raises(IdentityError) as excinfo:
            identity.really_create_user("bob", None, password="short")
        assert excinfo.value.code == "WEAKP"

    def test_missing_email(self, identity):
        with pytest.raises(IdentityError) as excinfo:
            identity.really_create_user("bob", "", password=PASSWORD)
        assert excinfo.value.code == "MODAT"
        assert excinfo.value.message == "Email is required"

    def test_unverified_account_needs_password(self, identity):
        with pytest.raises(IdentityError) as excinfo:
            identity.really_create_user("bob", "bob@example.com")
        assert excinfo.value.code == "MODAT"
        assert excinfo.value.message == "Password is required"

    def test_invalid_username_format(self, identity):
        with pytest.raises(ValidationError):
            identity.really_create_user("9lives", "cat@example.com", password=PASSWORD)

    def test_duplicate_username_is_a_constraint_violation(self, identity, alice):
        with pytest.raises(ConstraintViolation) as excinfo:
            identity.really_create_user("Alice", "other@example.com", password=PASSWORD)
        assert excinfo.value.constraint == "username_unique"

    def test_email_verified_elsewhere_is_taken(self, identity):
        identity.really_create_user(
            "carol", "carol@example.com", email_is_verified=True, password=PASSWORD
        )
        with pytest.raises(IdentityError) as excinfo:
            identity.really_create_user("carol2", "CAROL@example.com", password=PASSWORD)
        assert excinfo.value.code == "EMTKN"

    def test_new_unverified_email_queues_verification(self, identity, store, alice):
        emails = identity.list_emails(alice.id)
        assert len(emails) == 1
        assert not emails[0].is_verified
        assert not emails[0].is_primary
        assert _jobs(store, "user_emails__send_verification") == [{"id": emails[0].id}]
        assert store.email_secrets[emails[0].id].verification_token
        assert any(a["type"] == "added_email" for a in _jobs(store, "user__audit"))


class TestUsernameDerivation:
    @pytest.mark.parametrize(
        "candidate, expected",
        [
            ("octocat", "octocat"),
            ("42 Cool Dev!", "Cool_Dev_"),
            ("x", "user"),
            ("ab", "user"),
            (None, "user"),
            ("--", "user"),
        ],
    )
    def test_derive_username_base(self, candidate, expected):
        assert derive_username_base(candidate) == expected

    def test_taken_names_get_numeric_suffix(self, identity):
        first = identity.register_user(
            "github", "1", {"login": "octocat", "email": "one@example.com"}, {}, True
        )
        second = identity.register_user(
            "github", "2", {"login": "octocat", "email": "two@example.com"}, {}, True
        )
        assert first.username == "octocat"
        assert second.username == "octocat1"

    def test_suffixed_name_stays_within_limit(self, identity):
        long_name = "a" * 70
        first = identity.register_user(
            "github", "1", {"login": long_name, "email": "one@example.com"}, {}, True
        )
        second = identity.register_user(
            "github", "2", {"login": long_name, "email": "two@example.com"}, {}, True
        )
        assert first.username == "a" * 64
        assert second.username == "a" * 63 + "1"


class TestLinkOrRegister:
    profile = {"login": "octocat", "email": "octo@example.com", "avatar_url": "https://a/1.png"}

    def test_unknown_identity_registers_verified_user(self, identity):
        user = identity.link_or_register_user(None, "github", "octocat", dict(self.profile), {"access_token": "t"})

        assert user.username == "octocat"
        assert user.is_verified
        emails = identity.list_emails(user.id)
        assert emails[0].is_verified and emails[0].is_primary
        auths = identity.list_authentications(user.id)
        assert [(a.service, a.identifier) for a in auths] == [("github", "octocat")]

    def test_known_identity_returns_same_user_and_fills_gaps(self, identity):
        user = identity.link_or_register_user(None, "github", "octocat", dict(self.profile), {})
        again = identity.link_or_register_user(
            None, "github", "octocat", {**self.profile, "name": "The Octocat"}, {}
        )
        assert again.id == user.id
        assert again.name == "The Octocat"

        renamed = identity.link_or_register_user(
            None, "github", "octocat", {**self.profile, "name": "Someone Else"}, {}
        )
        assert renamed.name == "The Octocat"

    def test_role_only_changes_when_profile_carries_one(self, identity):
        identity.link_or_register_user(None, "github", "octocat", {**self.profile, "role": "sponsor"}, {})
        unchanged = identity.link_or_register_user(None, "github", "octocat", dict(self.profile), {})
        assert unchanged.role == "sponsor"

        promoted = identity.link_or_register_user(
            None, "github", "octocat", {**self.profile, "role": "admin"}, {}
        )
        assert promoted.role == "admin"

    def test_identity_of_another_user_is_taken(self, identity, alice):
        identity.link_or_register_user(None, "github", "octocat", dict(self.profile), {})
        with pytest.raises(IdentityError) as excinfo:
            identity.link_or_register_user(alice.id, "github", "octocat", dict(self.profile), {})
        assert excinfo.value.code == "TAKEN"
        assert excinfo.value.message == "A different user already has this account linked."

    def test_logged_in_user_links_new_identity(self, identity, store, alice):
        user = identity.link_or_register_user(alice.id, "github", "octocat", dict(self.profile), {})

        assert user.id == alice.id
        assert identity.list_authentications(alice.id)[0].identifier == "octocat"
        audits = [a for a in _jobs(store, "user__audit") if a["type"] == "linked_account"]
        assert audits[0]["user_id"] == alice.id
        assert audits[0]["extra1"] == "github"

    def test_anonymous_caller_matching_verified_email_is_linked(self, identity, store):
        dave = identity.really_create_user(
            "dave", "octo@example.com", email_is_verified=True, password=PASSWORD
        )

        user = identity.link_or_register_user(None, "github", "octocat", dict(self.profile), {})

        assert user.id == dave.id
        audits = [a for a in _jobs(store, "user__audit") if a["type"] == "linked_account"]
        assert audits[0]["user_id"] == dave.id
        assert audits[0]["current_user_id"] is None

    def test_unlink_authentication(self, identity, store, alice):
        identity.link_or_register_user(alice.id, "github", "octocat", dict(self.profile), {})
        auth = identity.list_authentications(alice.id)[0]

        with pytest.raises(IdentityError) as excinfo:
            identity.unlink_authentication(new_id(), auth.id)
        assert excinfo.value.code == "NTFND"

        assert identity.unlink_authentication(alice.id, auth.id) is True
        assert identity.list_authentications(alice.id) == []
        assert any(a["type"] == "unlinked_account" for a in _jobs(store, "user__audit"))


class TestEmails:
    def _token(self, store, email_id):
        return store.email_secrets[email_id].verification_token

    def test_verify_email(self, identity, store, alice):
        email = identity.list_emails(alice.id)[0]

        assert identity.verify_email(email.id, "wrong") is False
        assert identity.verify_email(email.id, self._token(store, email.id)) is True

        verified = identity.list_emails(alice.id)[0]
        assert verified.is_verified and verified.is_primary
        assert store.email_secrets[email.id].verification_token is None
        assert identity.get_user(alice.id).is_verified

    def test_verifying_address_claimed_meanwhile_is_taken(self, identity, store, alice):
        bob = identity.really_create_user("bob", "bob@example.com", password=PASSWORD)
        mine = identity.add_email(alice.id, "shared@example.com")
        theirs = identity.add_email(bob.id, "shared@example.com")
        identity.verify_email(mine.id, self._token(store, mine.id))

        with pytest.raises(IdentityError) as excinfo:
            identity.verify_email(theirs.id, self._token(store, theirs.id))
        assert excinfo.value.code == "EMTKN"

    def test_add_email_rejects_verified_elsewhere(self, identity, alice):
        identity.really_create_user(
            "erin", "erin@example.com", email_is_verified=True, password=PASSWORD
        )
        with pytest.raises(IdentityError) as excinfo:
            identity.add_email(alice.id, "erin@example.com")
        assert excinfo.value.code == "EMTKN"

    def test_make_email_primary(self, identity, store, alice):
        first = identity.list_emails(alice.id)[0]
        identity.verify_email(first.id, self._token(store, first.id))
        second = identity.add_email(alice.id, "alice2@example.com")

        with pytest.raises(IdentityError) as excinfo:
            identity.make_email_primary(alice.id, second.id)
        assert excinfo.value.code == "VRFY1"

        identity.verify_email(second.id, self._token(store, second.id))
        promoted = identity.make_email_primary(alice.id, second.id)

        assert promoted.is_primary
        assert not identity.list_emails(alice.id)[0].is_primary

    def test_make_someone_elses_email_primary(self, identity, alice):
        bob = identity.really_create_user("bob", "bob@example.com", password=PASSWORD)
        bobs = identity.list_emails(bob.id)[0]
        with pytest.raises(IdentityError) as excinfo:
            identity.make_email_primary(alice.id, bobs.id)
        assert excinfo.value.code == "DNIED"
        assert excinfo.value.message == "That's not your email"

    def test_cannot_delete_last_email(self, identity, alice):
        only = identity.list_emails(alice.id)[0]
        with pytest.raises(IdentityError) as excinfo:
            identity.delete_email(alice.id, only.id)
        assert excinfo.value.code == "CDLEA"

    def test_cannot_delete_last_verified_email(self, identity, store, alice):
        first = identity.list_emails(alice.id)[0]
        identity.verify_email(first.id, self._token(store, first.id))
        identity.add_email(alice.id, "unverified@example.com")

        with pytest.raises(IdentityError) as excinfo:
            identity.delete_email(alice.id, first.id)
        assert excinfo.value.code == "CDLEA"

    def test_delete_one_of_two_verified_emails(self, identity, store, alice):
        first = identity.list_emails(alice.id)[0]
        identity.verify_email(first.id, self._token(store, first.id))
        second = identity.add_email(alice.id, "alice2@example.com")
        identity.verify_email(second.id, self._token(store, second.id))

        assert identity.delete_email(alice.id, first.id) is True
        assert [e.id for e in identity.list_emails(alice.id)] == [second.id]

    def test_delete_unverified_email(self, identity, store, alice):
        extra = identity.add_email(alice.id, "extra@example.com")

        assert identity.delete_email(alice.id, extra.id) is True

        assert [e.email for e in identity.list_emails(alice.id)] == ["alice@example.com"]
        assert any(a["type"] == "removed_email" for a in _jobs(store, "user__audit"))

    def test_delete_unknown_email(self, identity, alice):
        with pytest.raises(IdentityError) as excinfo:
            identity.delete_email(alice.id, new_id())
        assert excinfo.value.code == "NTFND"

    def test_resend_verification_code(self, identity, store, alice):
        email = identity.list_emails(alice.id)[0]
        assert identity.resend_email_verification_code(alice.id, email.id) is True
        assert len(_jobs(store, "user_emails__send_verification")) == 2

        identity.verify_email(email.id, self._token(store, email.id))
        assert identity.resend_email_verification_code(alice.id, email.id) is False

    def test_prepare_verification_email(self, identity, store, alice, clock):
        email = identity.list_emails(alice.id)[0]

        details = identity.prepare_verification_email(email.id)

        assert details["email"] == "alice@example.com"
        assert details["username"] == "alice"
        assert details["token"] == self._token(store, email.id)
        assert store.email_secrets[email.id].verification_email_sent_at == clock.now

        identity.verify_email(email.id, details["token"])
        assert identity.prepare_verification_email(email.id) is None

    def test_email_management_requires_login(self, identity):
        with pytest.raises(IdentityError) as excinfo:
            identity.list_emails(None)
        assert excinfo.value.message == "You must log in to manage your emails"
