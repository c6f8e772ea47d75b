from __future__ import annotations

import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from pggarden.logging import get_logger
from pggarden.storage.errors import ConstraintViolation
from pggarden.storage.models import (
    USER_ROLES,
    Job,
    LedgerSession,
    UnregisteredEmailPasswordReset,
    User,
    UserAuthentication,
    UserAuthenticationSecret,
    UserEmail,
    UserEmailSecret,
    UserSecret,
    utcnow,
)

USERNAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]+$")
EMAIL_PATTERN = re.compile(r"^[^@]+@[^@]+\.[^@]+$")

_MISSING = object()


def _ci(value: Optional[str]) -> str:
    return (value or "").lower()


class MemoryTransaction:
    """Unit of work over :class:`MemoryStore` tables.

    Every write records the previous row in an undo log so that a rollback
    restores the exact state seen when the unit of work began. Rows are
    replaced, never mutated in place, and reads hand out copies.
    """

    def __init__(self, store: "MemoryStore", session_id: Optional[str] = None) -> None:
        self._store = store
        self.session_id = session_id
        self._undo: List[tuple[Dict[Any, Any], Any, Any]] = []

    # undo log
    def _put(self, table: Dict[Any, Any], key: Any, value: Any) -> None:
        self._undo.append((table, key, table.get(key, _MISSING)))
        table[key] = value

    def _drop(self, table: Dict[Any, Any], key: Any) -> Any:
        if key not in table:
            return None
        previous = table[key]
        self._undo.append((table, key, previous))
        del table[key]
        return previous

    def rollback(self) -> None:
        for table, key, previous in reversed(self._undo):
            if previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous
        self._undo.clear()

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        user = self._store.users.get(user_id)
        return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        wanted = _ci(username)
        for user in self._store.users.values():
            if _ci(user.username) == wanted:
                return replace(user)
        return None

    def username_exists(self, username: str) -> bool:
        return self.get_user_by_username(username) is not None

    def insert_user(self, user: User) -> User:
        if not (2 <= len(user.username) <= 64) or not USERNAME_PATTERN.match(user.username):
            raise ConstraintViolation(
                "invalid username", {"constraint": "username_format", "field": "username"}
            )
        if user.role not in USER_ROLES:
            raise ConstraintViolation("invalid role", {"constraint": "user_role", "field": "role"})
        if len(user.bio or "") > 2000:
            raise ConstraintViolation("bio too long", {"constraint": "bio_length", "field": "bio"})
        if self.username_exists(user.username):
            raise ConstraintViolation(
                "username already exists", {"constraint": "username_unique", "field": "username"}
            )
        self._put(self._store.users, user.id, replace(user))
        self._put(self._store.user_secrets, user.id, UserSecret(user_id=user.id))
        return replace(user)

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        current = self._store.users.get(user_id)
        if not current:
            return None
        if "role" in changes and changes["role"] not in USER_ROLES:
            raise ConstraintViolation("invalid role", {"constraint": "user_role", "field": "role"})
        updated = replace(current, **changes, updated_at=utcnow())
        self._put(self._store.users, user_id, updated)
        return replace(updated)

    def delete_user(self, user_id: str) -> bool:
        if user_id not in self._store.users:
            return False
        store = self._store
        for email_id, email in list(store.emails.items()):
            if email.user_id == user_id:
                self._drop(store.email_secrets, email_id)
                self._drop(store.emails, email_id)
        for auth_id, auth in list(store.authentications.items()):
            if auth.user_id == user_id:
                self._drop(store.authentication_secrets, auth_id)
                self._drop(store.authentications, auth_id)
        for session_id, session in list(store.sessions.items()):
            if session.user_id == user_id:
                self._drop(store.sessions, session_id)
        self._drop(store.user_secrets, user_id)
        self._drop(store.users, user_id)
        return True

    # user secrets
    def get_user_secret(self, user_id: str, *, for_update: bool = False) -> Optional[UserSecret]:
        secret = self._store.user_secrets.get(user_id)
        return replace(secret) if secret else None

    def update_user_secret(self, user_id: str, **changes: Any) -> Optional[UserSecret]:
        current = self._store.user_secrets.get(user_id)
        if not current:
            return None
        updated = replace(current, **changes)
        self._put(self._store.user_secrets, user_id, updated)
        return replace(updated)

    # emails
    def get_email(self, email_id: str) -> Optional[UserEmail]:
        email = self._store.emails.get(email_id)
        return replace(email) if email else None

    def list_user_emails(self, user_id: str, *, for_update: bool = False) -> List[UserEmail]:
        rows = [replace(e) for e in self._store.emails.values() if e.user_id == user_id]
        return sorted(rows, key=lambda e: (e.created_at, e.id))

    def _matching_emails(self, address: str) -> List[UserEmail]:
        wanted = _ci(address)
        return [replace(e) for e in self._store.emails.values() if _ci(e.email) == wanted]

    def find_login_email(self, address: str) -> Optional[UserEmail]:
        rows = self._matching_emails(address)
        rows.sort(key=lambda e: (not e.is_verified, e.created_at))
        return rows[0] if rows else None

    def find_reset_email(self, address: str) -> Optional[UserEmail]:
        rows = self._matching_emails(address)
        rows.sort(key=lambda e: (e.is_verified, e.created_at), reverse=True)
        return rows[0] if rows else None

    def find_verified_email(self, address: str) -> Optional[UserEmail]:
        return next((e for e in self._matching_emails(address) if e.is_verified), None)

    def find_deletion_email(self, user_id: str) -> Optional[UserEmail]:
        rows = self.list_user_emails(user_id)
        rows.sort(key=lambda e: (e.is_primary, e.is_verified, e.created_at), reverse=True)
        return rows[0] if rows else None

    def _check_email_row(self, email: UserEmail) -> None:
        if email.user_id not in self._store.users:
            raise ConstraintViolation("user does not exist", {"constraint": "user_missing"})
        if not EMAIL_PATTERN.match(email.email):
            raise ConstraintViolation("invalid email address", {"constraint": "email_format"})
        if email.is_primary and not email.is_verified:
            raise ConstraintViolation(
                "primary email must be verified", {"constraint": "primary_requires_verified"}
            )
        for other in self._store.emails.values():
            if other.id == email.id:
                continue
            same_address = _ci(other.email) == _ci(email.email)
            if same_address and other.user_id == email.user_id:
                raise ConstraintViolation(
                    "email already added", {"constraint": "user_email_unique", "field": "email"}
                )
            if same_address and other.is_verified and email.is_verified:
                raise ConstraintViolation(
                    "email already verified by another account",
                    {"constraint": "verified_email_unique", "field": "email"},
                )
            if email.is_primary and other.is_primary and other.user_id == email.user_id:
                raise ConstraintViolation(
                    "user already has a primary email", {"constraint": "one_primary"}
                )

    def insert_email(self, email: UserEmail, secret: UserEmailSecret) -> UserEmail:
        self._check_email_row(email)
        self._put(self._store.emails, email.id, replace(email))
        self._put(self._store.email_secrets, email.id, replace(secret, user_email_id=email.id))
        return replace(email)

    def update_email(self, email_id: str, **changes: Any) -> Optional[UserEmail]:
        current = self._store.emails.get(email_id)
        if not current:
            return None
        updated = replace(current, **changes, updated_at=utcnow())
        self._check_email_row(updated)
        self._put(self._store.emails, email_id, updated)
        return replace(updated)

    def clear_primary_emails(self, user_id: str) -> int:
        cleared = 0
        for email in list(self._store.emails.values()):
            if email.user_id == user_id and email.is_primary:
                self._put(
                    self._store.emails,
                    email.id,
                    replace(email, is_primary=False, updated_at=utcnow()),
                )
                cleared += 1
        return cleared

    def delete_email(self, email_id: str) -> bool:
        if email_id not in self._store.emails:
            return False
        self._drop(self._store.email_secrets, email_id)
        self._drop(self._store.emails, email_id)
        return True

    def get_email_secret(self, email_id: str) -> Optional[UserEmailSecret]:
        secret = self._store.email_secrets.get(email_id)
        return replace(secret) if secret else None

    def update_email_secret(self, email_id: str, **changes: Any) -> Optional[UserEmailSecret]:
        current = self._store.email_secrets.get(email_id)
        if not current:
            return None
        updated = replace(current, **changes)
        self._put(self._store.email_secrets, email_id, updated)
        return replace(updated)

    # linked provider identities
    def get_authentication(self, auth_id: str) -> Optional[UserAuthentication]:
        auth = self._store.authentications.get(auth_id)
        return replace(auth) if auth else None

    def find_authentication(self, service: str, identifier: str) -> Optional[UserAuthentication]:
        for auth in self._store.authentications.values():
            if auth.service == service and auth.identifier == identifier:
                return replace(auth)
        return None

    def list_authentications(self, user_id: str) -> List[UserAuthentication]:
        rows = [replace(a) for a in self._store.authentications.values() if a.user_id == user_id]
        return sorted(rows, key=lambda a: a.created_at)

    def insert_authentication(
        self, auth: UserAuthentication, secret: UserAuthenticationSecret
    ) -> UserAuthentication:
        if auth.user_id not in self._store.users:
            raise ConstraintViolation("user does not exist", {"constraint": "user_missing"})
        if self.find_authentication(auth.service, auth.identifier):
            raise ConstraintViolation(
                "account already linked", {"constraint": "authentication_unique"}
            )
        self._put(self._store.authentications, auth.id, replace(auth))
        self._put(
            self._store.authentication_secrets,
            auth.id,
            replace(secret, user_authentication_id=auth.id),
        )
        return replace(auth)

    def update_authentication(self, auth_id: str, **changes: Any) -> Optional[UserAuthentication]:
        current = self._store.authentications.get(auth_id)
        if not current:
            return None
        updated = replace(current, **changes, updated_at=utcnow())
        self._put(self._store.authentications, auth_id, updated)
        return replace(updated)

    def update_authentication_secret(self, auth_id: str, details: Dict[str, Any]) -> None:
        if auth_id not in self._store.authentication_secrets:
            return
        self._put(
            self._store.authentication_secrets,
            auth_id,
            UserAuthenticationSecret(user_authentication_id=auth_id, details=dict(details)),
        )

    def delete_authentication(self, auth_id: str) -> bool:
        if auth_id not in self._store.authentications:
            return False
        self._drop(self._store.authentication_secrets, auth_id)
        self._drop(self._store.authentications, auth_id)
        return True

    # session ledger
    def insert_session(self, session: LedgerSession) -> LedgerSession:
        if session.user_id not in self._store.users:
            raise ConstraintViolation("user does not exist", {"constraint": "user_missing"})
        self._put(self._store.sessions, session.id, replace(session))
        return replace(session)

    def get_session(self, session_id: str) -> Optional[LedgerSession]:
        session = self._store.sessions.get(session_id)
        return replace(session) if session else None

    def delete_session(self, session_id: str) -> Optional[LedgerSession]:
        return self._drop(self._store.sessions, session_id)

    def delete_user_sessions(
        self, user_id: str, *, except_id: Optional[str] = None
    ) -> List[LedgerSession]:
        removed: List[LedgerSession] = []
        for session_id, session in list(self._store.sessions.items()):
            if session.user_id == user_id and session_id != except_id:
                removed.append(self._drop(self._store.sessions, session_id))
        return removed

    # forgot-password counters for unknown addresses
    def get_unregistered_reset(self, email: str) -> Optional[UnregisteredEmailPasswordReset]:
        row = self._store.unregistered_resets.get(_ci(email))
        return replace(row) if row else None

    def upsert_unregistered_reset(
        self, row: UnregisteredEmailPasswordReset
    ) -> UnregisteredEmailPasswordReset:
        self._put(self._store.unregistered_resets, _ci(row.email), replace(row))
        return replace(row)

    def prune_unregistered_resets(self, older_than: datetime) -> int:
        stale = [
            key
            for key, row in self._store.unregistered_resets.items()
            if row.latest_attempt < older_than
        ]
        for key in stale:
            self._drop(self._store.unregistered_resets, key)
        return len(stale)

    # outbound jobs
    def add_job(self, task: str, payload: Dict[str, Any]) -> Job:
        job = Job(id=str(uuid.uuid4()), task=task, payload=dict(payload))
        self._put(self._store.jobs, job.id, job)
        return replace(job)


class MemoryStore:
    """In-memory backing store used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.user_secrets: Dict[str, UserSecret] = {}
        self.emails: Dict[str, UserEmail] = {}
        self.email_secrets: Dict[str, UserEmailSecret] = {}
        self.authentications: Dict[str, UserAuthentication] = {}
        self.authentication_secrets: Dict[str, UserAuthenticationSecret] = {}
        self.sessions: Dict[str, LedgerSession] = {}
        self.unregistered_resets: Dict[str, UnregisteredEmailPasswordReset] = {}
        self.jobs: Dict[str, Job] = {}
        # Held for the whole unit of work; reentrant so nested units can run
        self._data_lock = threading.RLock()

    @contextmanager
    def transaction(self, session_id: Optional[str] = None) -> Iterator[MemoryTransaction]:
        with self._data_lock:
            tx = MemoryTransaction(self, session_id)
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # job queue access for the worker
    def claim_jobs(self, limit: int = 10) -> List[Job]:
        claimed: List[Job] = []
        with self._data_lock:
            for job in list(self.jobs.values()):
                if len(claimed) >= limit:
                    break
                if job.locked_at is not None:
                    continue
                locked = replace(job, locked_at=utcnow(), attempts=job.attempts + 1)
                self.jobs[job.id] = locked
                claimed.append(replace(locked))
        return claimed

    def complete_job(self, job_id: str) -> None:
        with self._data_lock:
            self.jobs.pop(job_id, None)

    def fail_job(self, job_id: str, error: str) -> None:
        with self._data_lock:
            job = self.jobs.get(job_id)
            if job:
                self.jobs[job_id] = replace(job, last_error=error, locked_at=None)

    def list_jobs(self, task: Optional[str] = None) -> List[Job]:
        with self._data_lock:
            return [replace(j) for j in self.jobs.values() if task is None or j.task == task]
