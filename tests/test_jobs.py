"""Notification worker dispatch and retry behaviour."""

import pytest
from argon2 import PasswordHasher

from pggarden.service.email import EmailService
from pggarden.service.identity import IdentityService
from pggarden.service.jobs import JobWorker
from pggarden.storage.memory import MemoryStore

PASSWORD = "correct horse battery"


class RecordingEmail:
    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    def send_password_reset(self, to_email, user_id, token):
        self.sent.append(("reset", to_email, user_id, token))
        return self.succeed

    def send_unregistered_reset_notice(self, to_email):
        self.sent.append(("unregistered", to_email))
        return self.succeed

    def send_email_verification(self, to_email, email_id, token):
        self.sent.append(("verify", to_email, email_id, token))
        return self.succeed

    def send_delete_account(self, to_email, token):
        self.sent.append(("delete", to_email, token))
        return self.succeed


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identity(store):
    return IdentityService(store, hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture
def mailer():
    return RecordingEmail()


@pytest.fixture
def worker(store, identity, mailer):
    return JobWorker(store, identity, mailer, max_attempts=2)


def _add_job(store, task, payload):
    with store.transaction() as tx:
        return tx.add_job(task, payload)


class TestJobWorker:
    async def test_new_account_jobs_are_delivered(self, worker, store, identity, mailer):
        user = identity.really_create_user("alice", "alice@example.com", password=PASSWORD)
        email = identity.list_emails(user.id)[0]

        handled = await worker.run_once()

        assert handled == 2
        assert store.list_jobs() == []
        token = store.email_secrets[email.id].verification_token
        assert mailer.sent == [("verify", "alice@example.com", email.id, token)]
        assert store.email_secrets[email.id].verification_email_sent_at is not None

    async def test_password_reset_and_deletion_emails(self, worker, store, identity, mailer):
        user = identity.really_create_user("alice", "alice@example.com", password=PASSWORD)
        await worker.run_once()
        mailer.sent.clear()

        identity.forgot_password("alice@example.com")
        identity.forgot_password("nobody@example.com")
        identity.request_account_deletion(user.id)
        await worker.run_once()

        kinds = sorted(entry[0] for entry in mailer.sent)
        assert kinds == ["delete", "reset", "unregistered"]
        reset = next(entry for entry in mailer.sent if entry[0] == "reset")
        assert reset[2] == user.id

    async def test_verification_for_verified_address_is_skipped(self, worker, store, identity, mailer):
        user = identity.really_create_user("alice", "alice@example.com", password=PASSWORD)
        email = identity.list_emails(user.id)[0]
        identity.verify_email(email.id, store.email_secrets[email.id].verification_token)

        await worker.run_once()

        assert mailer.sent == []
        assert store.list_jobs() == []

    async def test_failed_delivery_is_retried_then_dropped(self, worker, store, mailer):
        mailer.succeed = False
        job = _add_job(store, "user__forgot_password_unregistered_email", {"email": "x@example.com"})

        await worker.run_once()
        retried = store.list_jobs()[0]
        assert retried.id == job.id
        assert retried.attempts == 1
        assert retried.last_error == "delivery failed"
        assert retried.locked_at is None

        await worker.run_once()
        assert store.list_jobs() == []
        assert len(mailer.sent) == 2

    async def test_unknown_task_is_discarded(self, worker, store):
        _add_job(store, "user__mystery", {})

        assert await worker.run_once() == 1
        assert store.list_jobs() == []

    async def test_malformed_payload_is_discarded(self, worker, store, mailer):
        _add_job(store, "user__forgot_password", {"email": "a@example.com"})

        await worker.run_once()

        assert store.list_jobs() == []
        assert mailer.sent == []

    async def test_start_and_stop(self, worker):
        await worker.start()
        await worker.start()
        await worker.stop()
        assert worker._task is None


class TestEmailService:
    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService(base_url="http://app.test/")
        assert not service.is_configured
        assert service.send_password_reset("a@example.com", "user-1", "abc123") is True

    def test_links_point_at_app(self):
        service = EmailService(base_url="http://app.test/")
        html_body, text_body = service._render(
            "Title", "Intro", "Outro", service._link("/verify", id="e1", token="t1"), "Go"
        )
        assert "http://app.test/verify?id=e1&token=t1" in text_body
        assert 'href="http://app.test/verify?id=e1&token=t1"' in html_body
