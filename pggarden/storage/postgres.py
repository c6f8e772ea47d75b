from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from pggarden.logging import get_logger
from pggarden.storage.errors import ConstraintViolation
from pggarden.storage.models import (
    Job,
    LedgerSession,
    UnregisteredEmailPasswordReset,
    User,
    UserAuthentication,
    UserAuthenticationSecret,
    UserEmail,
    UserEmailSecret,
    UserSecret,
)

# Columns callers may change through the generic update helpers
_USER_COLUMNS = ("username", "name", "avatar_url", "bio", "role", "is_verified")
_USER_SECRET_COLUMNS = (
    "password_hash",
    "last_login_at",
    "failed_password_attempts",
    "first_failed_password_attempt",
    "reset_password_token",
    "reset_password_token_generated",
    "failed_reset_password_attempts",
    "first_failed_reset_password_attempt",
    "delete_account_token",
    "delete_account_token_generated",
)
_EMAIL_COLUMNS = ("email", "is_verified", "is_primary")
_EMAIL_SECRET_COLUMNS = (
    "verification_token",
    "verification_email_sent_at",
    "password_reset_email_sent_at",
)
_AUTHENTICATION_COLUMNS = ("details",)

_REQUIRED_TABLES = (
    "app_user",
    "user_secret",
    "user_email",
    "user_email_secret",
    "user_authentication",
    "user_authentication_secret",
    "ledger_session",
    "unregistered_email_password_reset",
    "job",
)


def _set_clause(allowed: Iterable[str], changes: Dict[str, Any]) -> tuple[str, list]:
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValueError(f"unsupported columns: {', '.join(sorted(unknown))}")
    columns = list(changes)
    values = [
        json.dumps(changes[c]) if isinstance(changes[c], dict) else changes[c]
        for c in columns
    ]
    return ", ".join(f"{c} = %s" for c in columns), values


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        username=row["username"],
        name=row.get("name"),
        avatar_url=row.get("avatar_url"),
        bio=row.get("bio") or "",
        role=row.get("role", "user"),
        is_verified=bool(row.get("is_verified")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _user_secret_from_row(row: Dict[str, Any]) -> UserSecret:
    values = {c: row.get(c) for c in _USER_SECRET_COLUMNS}
    values["failed_password_attempts"] = values["failed_password_attempts"] or 0
    values["failed_reset_password_attempts"] = values["failed_reset_password_attempts"] or 0
    return UserSecret(user_id=str(row["user_id"]), **values)


def _email_from_row(row: Dict[str, Any]) -> UserEmail:
    return UserEmail(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        email=row["email"],
        is_verified=bool(row["is_verified"]),
        is_primary=bool(row["is_primary"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _email_secret_from_row(row: Dict[str, Any]) -> UserEmailSecret:
    return UserEmailSecret(
        user_email_id=str(row["user_email_id"]),
        verification_token=row.get("verification_token"),
        verification_email_sent_at=row.get("verification_email_sent_at"),
        password_reset_email_sent_at=row.get("password_reset_email_sent_at"),
    )


def _authentication_from_row(row: Dict[str, Any]) -> UserAuthentication:
    return UserAuthentication(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        service=row["service"],
        identifier=row["identifier"],
        details=row.get("details") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _session_from_row(row: Dict[str, Any]) -> LedgerSession:
    return LedgerSession(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        session_data=row.get("session_data") or {},
        secret_hash=row.get("secret_hash"),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
    )


def _job_from_row(row: Dict[str, Any]) -> Job:
    return Job(
        id=str(row["id"]),
        task=row["task"],
        payload=row.get("payload") or {},
        created_at=row["created_at"],
        attempts=row.get("attempts", 0),
        last_error=row.get("last_error"),
        locked_at=row.get("locked_at"),
    )


class PostgresTransaction:
    """Unit of work bound to one pooled connection."""

    def __init__(self, conn, session_id: Optional[str] = None) -> None:
        self.conn = conn
        self.session_id = session_id

    def _execute(self, query: str, params: Iterable[Any] = ()):
        try:
            return self.conn.execute(query, tuple(params))
        except (errors.UniqueViolation, errors.CheckViolation) as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            raise ConstraintViolation(str(exc).strip(), {"constraint": constraint}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced row does not exist", {"constraint": "user_missing"}
            ) from exc

    def _one(self, query: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        return self._execute(query, params).fetchone()

    def _all(self, query: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        return self._execute(query, params).fetchall()

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        row = self._one("SELECT * FROM app_user WHERE id = %s", (user_id,))
        return _user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        row = self._one("SELECT * FROM app_user WHERE username = %s", (username,))
        return _user_from_row(row) if row else None

    def username_exists(self, username: str) -> bool:
        row = self._one("SELECT 1 AS found FROM app_user WHERE username = %s", (username,))
        return row is not None

    def insert_user(self, user: User) -> User:
        row = self._one(
            """
            INSERT INTO app_user (id, username, name, avatar_url, bio, role, is_verified)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                user.id,
                user.username,
                user.name,
                user.avatar_url,
                user.bio or "",
                user.role,
                user.is_verified,
            ),
        )
        self._execute("INSERT INTO user_secret (user_id) VALUES (%s)", (user.id,))
        return _user_from_row(row)

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        clause, values = _set_clause(_USER_COLUMNS, changes)
        row = self._one(
            f"UPDATE app_user SET {clause}, updated_at = now() WHERE id = %s RETURNING *",
            [*values, user_id],
        )
        return _user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        row = self._one("DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,))
        return row is not None

    # user secrets
    def get_user_secret(self, user_id: str, *, for_update: bool = False) -> Optional[UserSecret]:
        query = "SELECT * FROM user_secret WHERE user_id = %s"
        if for_update:
            query += " FOR UPDATE"
        row = self._one(query, (user_id,))
        return _user_secret_from_row(row) if row else None

    def update_user_secret(self, user_id: str, **changes: Any) -> Optional[UserSecret]:
        clause, values = _set_clause(_USER_SECRET_COLUMNS, changes)
        row = self._one(
            f"UPDATE user_secret SET {clause} WHERE user_id = %s RETURNING *",
            [*values, user_id],
        )
        return _user_secret_from_row(row) if row else None

    # emails
    def get_email(self, email_id: str) -> Optional[UserEmail]:
        row = self._one("SELECT * FROM user_email WHERE id = %s", (email_id,))
        return _email_from_row(row) if row else None

    def list_user_emails(self, user_id: str, *, for_update: bool = False) -> List[UserEmail]:
        query = "SELECT * FROM user_email WHERE user_id = %s ORDER BY created_at, id"
        if for_update:
            query += " FOR UPDATE"
        return [_email_from_row(r) for r in self._all(query, (user_id,))]

    def find_login_email(self, address: str) -> Optional[UserEmail]:
        row = self._one(
            """
            SELECT * FROM user_email WHERE email = %s
            ORDER BY is_verified DESC, created_at ASC LIMIT 1
            """,
            (address,),
        )
        return _email_from_row(row) if row else None

    def find_reset_email(self, address: str) -> Optional[UserEmail]:
        row = self._one(
            """
            SELECT * FROM user_email WHERE email = %s
            ORDER BY is_verified DESC, created_at DESC LIMIT 1
            """,
            (address,),
        )
        return _email_from_row(row) if row else None

    def find_verified_email(self, address: str) -> Optional[UserEmail]:
        row = self._one(
            "SELECT * FROM user_email WHERE email = %s AND is_verified LIMIT 1", (address,)
        )
        return _email_from_row(row) if row else None

    def find_deletion_email(self, user_id: str) -> Optional[UserEmail]:
        row = self._one(
            """
            SELECT * FROM user_email WHERE user_id = %s
            ORDER BY is_primary DESC, is_verified DESC, created_at DESC LIMIT 1
            """,
            (user_id,),
        )
        return _email_from_row(row) if row else None

    def insert_email(self, email: UserEmail, secret: UserEmailSecret) -> UserEmail:
        row = self._one(
            """
            INSERT INTO user_email (id, user_id, email, is_verified, is_primary)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (email.id, email.user_id, email.email, email.is_verified, email.is_primary),
        )
        self._execute(
            """
            INSERT INTO user_email_secret (user_email_id, verification_token, verification_email_sent_at)
            VALUES (%s, %s, %s)
            """,
            (email.id, secret.verification_token, secret.verification_email_sent_at),
        )
        return _email_from_row(row)

    def update_email(self, email_id: str, **changes: Any) -> Optional[UserEmail]:
        clause, values = _set_clause(_EMAIL_COLUMNS, changes)
        row = self._one(
            f"UPDATE user_email SET {clause}, updated_at = now() WHERE id = %s RETURNING *",
            [*values, email_id],
        )
        return _email_from_row(row) if row else None

    def clear_primary_emails(self, user_id: str) -> int:
        rows = self._all(
            """
            UPDATE user_email SET is_primary = false, updated_at = now()
            WHERE user_id = %s AND is_primary RETURNING id
            """,
            (user_id,),
        )
        return len(rows)

    def delete_email(self, email_id: str) -> bool:
        row = self._one("DELETE FROM user_email WHERE id = %s RETURNING id", (email_id,))
        return row is not None

    def get_email_secret(self, email_id: str) -> Optional[UserEmailSecret]:
        row = self._one("SELECT * FROM user_email_secret WHERE user_email_id = %s", (email_id,))
        return _email_secret_from_row(row) if row else None

    def update_email_secret(self, email_id: str, **changes: Any) -> Optional[UserEmailSecret]:
        clause, values = _set_clause(_EMAIL_SECRET_COLUMNS, changes)
        row = self._one(
            f"UPDATE user_email_secret SET {clause} WHERE user_email_id = %s RETURNING *",
            [*values, email_id],
        )
        return _email_secret_from_row(row) if row else None

    # linked provider identities
    def get_authentication(self, auth_id: str) -> Optional[UserAuthentication]:
        row = self._one("SELECT * FROM user_authentication WHERE id = %s", (auth_id,))
        return _authentication_from_row(row) if row else None

    def find_authentication(self, service: str, identifier: str) -> Optional[UserAuthentication]:
        row = self._one(
            "SELECT * FROM user_authentication WHERE service = %s AND identifier = %s",
            (service, identifier),
        )
        return _authentication_from_row(row) if row else None

    def list_authentications(self, user_id: str) -> List[UserAuthentication]:
        rows = self._all(
            "SELECT * FROM user_authentication WHERE user_id = %s ORDER BY created_at",
            (user_id,),
        )
        return [_authentication_from_row(r) for r in rows]

    def insert_authentication(
        self, auth: UserAuthentication, secret: UserAuthenticationSecret
    ) -> UserAuthentication:
        row = self._one(
            """
            INSERT INTO user_authentication (id, user_id, service, identifier, details)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (auth.id, auth.user_id, auth.service, auth.identifier, json.dumps(auth.details)),
        )
        self._execute(
            "INSERT INTO user_authentication_secret (user_authentication_id, details) VALUES (%s, %s)",
            (auth.id, json.dumps(secret.details)),
        )
        return _authentication_from_row(row)

    def update_authentication(self, auth_id: str, **changes: Any) -> Optional[UserAuthentication]:
        clause, values = _set_clause(_AUTHENTICATION_COLUMNS, changes)
        row = self._one(
            f"UPDATE user_authentication SET {clause}, updated_at = now() WHERE id = %s RETURNING *",
            [*values, auth_id],
        )
        return _authentication_from_row(row) if row else None

    def update_authentication_secret(self, auth_id: str, details: Dict[str, Any]) -> None:
        self._execute(
            "UPDATE user_authentication_secret SET details = %s WHERE user_authentication_id = %s",
            (json.dumps(details), auth_id),
        )

    def delete_authentication(self, auth_id: str) -> bool:
        row = self._one(
            "DELETE FROM user_authentication WHERE id = %s RETURNING id", (auth_id,)
        )
        return row is not None

    # session ledger
    def insert_session(self, session: LedgerSession) -> LedgerSession:
        row = self._one(
            """
            INSERT INTO ledger_session (id, user_id, session_data, secret_hash, created_at, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                session.id,
                session.user_id,
                json.dumps(session.session_data),
                session.secret_hash,
                session.created_at,
                session.expires_at,
            ),
        )
        return _session_from_row(row)

    def get_session(self, session_id: str) -> Optional[LedgerSession]:
        row = self._one("SELECT * FROM ledger_session WHERE id = %s", (session_id,))
        return _session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> Optional[LedgerSession]:
        row = self._one("DELETE FROM ledger_session WHERE id = %s RETURNING *", (session_id,))
        return _session_from_row(row) if row else None

    def delete_user_sessions(
        self, user_id: str, *, except_id: Optional[str] = None
    ) -> List[LedgerSession]:
        if except_id:
            rows = self._all(
                "DELETE FROM ledger_session WHERE user_id = %s AND id <> %s RETURNING *",
                (user_id, except_id),
            )
        else:
            rows = self._all(
                "DELETE FROM ledger_session WHERE user_id = %s RETURNING *", (user_id,)
            )
        return [_session_from_row(r) for r in rows]

    # forgot-password counters for unknown addresses
    def get_unregistered_reset(self, email: str) -> Optional[UnregisteredEmailPasswordReset]:
        row = self._one(
            "SELECT * FROM unregistered_email_password_reset WHERE email = %s", (email,)
        )
        if not row:
            return None
        return UnregisteredEmailPasswordReset(
            email=row["email"], attempts=row["attempts"], latest_attempt=row["latest_attempt"]
        )

    def upsert_unregistered_reset(
        self, row: UnregisteredEmailPasswordReset
    ) -> UnregisteredEmailPasswordReset:
        self._execute(
            """
            INSERT INTO unregistered_email_password_reset (email, attempts, latest_attempt)
            VALUES (%s, %s, %s)
            ON CONFLICT (email) DO UPDATE
            SET attempts = EXCLUDED.attempts, latest_attempt = EXCLUDED.latest_attempt
            """,
            (row.email, row.attempts, row.latest_attempt),
        )
        return row

    def prune_unregistered_resets(self, older_than: datetime) -> int:
        rows = self._all(
            "DELETE FROM unregistered_email_password_reset WHERE latest_attempt < %s RETURNING email",
            (older_than,),
        )
        return len(rows)

    # outbound jobs
    def add_job(self, task: str, payload: Dict[str, Any]) -> Job:
        row = self._one(
            "INSERT INTO job (task, payload) VALUES (%s, %s) RETURNING *",
            (task, json.dumps(payload)),
        )
        return _job_from_row(row)


class PostgresStore:
    """Postgres-backed store for identities, credentials and the session ledger."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the identity tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply pggarden/storage/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    "citext extension is missing. Install it and apply pggarden/storage/schema.sql."
                )

    @contextmanager
    def transaction(self, session_id: Optional[str] = None) -> Iterator[PostgresTransaction]:
        """Run one unit of work; the pooled connection commits on success and rolls back on error."""

        with self._connect() as conn:
            # Lets triggers and policies see which session is acting
            conn.execute(
                "SELECT set_config('my.session_id', %s, true)", (session_id or "",)
            )
            yield PostgresTransaction(conn, session_id)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # job queue access for the worker
    def claim_jobs(self, limit: int = 10) -> List[Job]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE job SET locked_at = now(), attempts = attempts + 1
                WHERE id IN (
                    SELECT id FROM job
                    WHERE locked_at IS NULL
                    ORDER BY created_at
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (limit,),
            ).fetchall()
        return [_job_from_row(r) for r in rows]

    def complete_job(self, job_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM job WHERE id = %s", (job_id,))

    def fail_job(self, job_id: str, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE job SET last_error = %s, locked_at = NULL WHERE id = %s",
                (error, job_id),
            )

    def list_jobs(self, task: Optional[str] = None) -> List[Job]:
        with self._connect() as conn:
            if task:
                rows = conn.execute(
                    "SELECT * FROM job WHERE task = %s ORDER BY created_at", (task,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM job ORDER BY created_at").fetchall()
        return [_job_from_row(r) for r in rows]
