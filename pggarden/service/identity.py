from __future__ import annotations

import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, ContextManager, Dict, List, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from pggarden.logging import get_logger
from pggarden.service.errors import ConflictError, IdentityError, ValidationError
from pggarden.storage.models import (
    USER_ROLES,
    UnregisteredEmailPasswordReset,
    User,
    UserAuthentication,
    UserAuthenticationSecret,
    UserEmail,
    UserEmailSecret,
    LedgerSession,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

LOGIN_MAX_ATTEMPTS = 3
LOGIN_ATTEMPT_WINDOW = timedelta(minutes=5)
RESET_MAX_ATTEMPTS = 20
TOKEN_MAX_DURATION = timedelta(days=3)
RESET_EMAIL_MIN_INTERVAL = timedelta(minutes=3)
UNREGISTERED_EMAIL_MIN_INTERVAL = timedelta(minutes=15)
UNREGISTERED_RESET_RETENTION = timedelta(hours=24)
MIN_PASSWORD_LENGTH = 8
MAX_USERNAME_LENGTH = 64
MAX_USERNAME_SUFFIX = 1000

USERNAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]+$")
EMAIL_PATTERN = re.compile(r"^[^@]+@[^@]+\.[^@]+$")

MSG_LOGIN_LOCKED = "User account locked - too many login attempts. Try again after 5 minutes."
MSG_RESET_LOCKED = "Password reset locked - too many reset attempts"
MSG_WEAK_PASSWORD = "Password is too weak"
MSG_LOGIN_TO_DELETE = "You must log in to delete your account"
MSG_LOGIN_TO_CHANGE_PASSWORD = "You must log in to change your password"
MSG_LOGIN_TO_MANAGE_EMAILS = "You must log in to manage your emails"
MSG_LOGIN_TO_MANAGE_AUTHS = "You must log in to manage your linked accounts"
MSG_NOT_YOUR_EMAIL = "That's not your email"
MSG_BAD_DELETE_TOKEN = (
    "The supplied token was incorrect - perhaps you're logged in to the wrong account, "
    "or the token has expired?"
)
MSG_INCORRECT_PASSWORD = "Incorrect password"
MSG_EMAIL_REQUIRED = "Email is required"
MSG_PASSWORD_REQUIRED = "Password is required"
MSG_ACCOUNT_TAKEN = "A different user already has this account linked."
MSG_EMAIL_TAKEN = "An account using that email address has already been created."
MSG_LAST_EMAIL = "You must have at least one (verified) email address"
MSG_UNVERIFIED_PRIMARY = "You may not make an unverified email primary"
MSG_EMAIL_NOT_FOUND = "Email not found"
MSG_AUTHENTICATION_NOT_FOUND = "Linked account not found"


class IdentityTransaction(Protocol):
    session_id: Optional[str]

    def get_user(self, user_id: str) -> Optional[User]: ...

    def username_exists(self, username: str) -> bool: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def insert_user(self, user: User) -> User: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def get_user_secret(self, user_id: str, *, for_update: bool = False) -> Any: ...

    def update_user_secret(self, user_id: str, **changes: Any) -> Any: ...

    def get_email(self, email_id: str) -> Optional[UserEmail]: ...

    def list_user_emails(self, user_id: str, *, for_update: bool = False) -> List[UserEmail]: ...

    def find_login_email(self, address: str) -> Optional[UserEmail]: ...

    def find_reset_email(self, address: str) -> Optional[UserEmail]: ...

    def find_verified_email(self, address: str) -> Optional[UserEmail]: ...

    def find_deletion_email(self, user_id: str) -> Optional[UserEmail]: ...

    def insert_email(self, email: UserEmail, secret: UserEmailSecret) -> UserEmail: ...

    def update_email(self, email_id: str, **changes: Any) -> Optional[UserEmail]: ...

    def clear_primary_emails(self, user_id: str) -> int: ...

    def delete_email(self, email_id: str) -> bool: ...

    def get_email_secret(self, email_id: str) -> Optional[UserEmailSecret]: ...

    def update_email_secret(self, email_id: str, **changes: Any) -> Optional[UserEmailSecret]: ...

    def find_authentication(self, service: str, identifier: str) -> Optional[UserAuthentication]: ...

    def get_authentication(self, auth_id: str) -> Optional[UserAuthentication]: ...

    def list_authentications(self, user_id: str) -> List[UserAuthentication]: ...

    def insert_authentication(
        self, auth: UserAuthentication, secret: UserAuthenticationSecret
    ) -> UserAuthentication: ...

    def update_authentication(self, auth_id: str, **changes: Any) -> Optional[UserAuthentication]: ...

    def update_authentication_secret(self, auth_id: str, details: Dict[str, Any]) -> None: ...

    def delete_authentication(self, auth_id: str) -> bool: ...

    def delete_session(self, session_id: str) -> Optional[LedgerSession]: ...

    def delete_user_sessions(
        self, user_id: str, *, except_id: Optional[str] = None
    ) -> List[LedgerSession]: ...

    def get_unregistered_reset(self, email: str) -> Optional[UnregisteredEmailPasswordReset]: ...

    def upsert_unregistered_reset(
        self, row: UnregisteredEmailPasswordReset
    ) -> UnregisteredEmailPasswordReset: ...

    def prune_unregistered_resets(self, older_than: datetime) -> int: ...

    def add_job(self, task: str, payload: Dict[str, Any]) -> Any: ...


class IdentityStore(Protocol):
    def transaction(self, session_id: Optional[str] = None) -> ContextManager[IdentityTransaction]: ...


@dataclass
class LoginSuccess:
    user: User


@dataclass
class LoginLocked:
    message: str = MSG_LOGIN_LOCKED


@dataclass
class InvalidCredentials:
    pass


LoginResult = Union[LoginSuccess, LoginLocked, InvalidCredentials]


def _tokens_match(expected: Optional[str], supplied: Optional[str]) -> bool:
    if not expected or supplied is None:
        return False
    return hmac.compare_digest(expected.encode(), supplied.encode())


def _window_open(first_failure: Optional[datetime], window: timedelta, now: datetime) -> bool:
    return first_failure is not None and first_failure > now - window


def _bump_failures(
    attempts: int, first_failure: Optional[datetime], window: timedelta, now: datetime
) -> tuple[int, datetime]:
    """Increment a sliding failure streak, restarting it when the window has lapsed."""
    if not _window_open(first_failure, window, now):
        return 1, now
    return attempts + 1, first_failure


def derive_username_base(candidate: Optional[str]) -> str:
    """Sanitise a provider-supplied name into the username alphabet."""
    value = re.sub(r"^[^a-zA-Z]+", "", candidate or "")
    value = re.sub(r"[^a-zA-Z0-9]+", "_", value)
    if len(value) < 3:
        value = "user"
    return value


class IdentityService:
    """The only code path allowed to mutate credential rows.

    Every public operation opens its own unit of work on the store, so side
    effects that must survive a caller's rollback (failed login and reset
    counters) are committed independently of any enclosing transaction.
    """

    def __init__(self, store: IdentityStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    # helpers
    def _now(self) -> datetime:
        return utcnow()

    def _new_token(self) -> str:
        return secrets.token_hex(7)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, stored_hash: Optional[str], password: Optional[str]) -> bool:
        # A missing hash never matches
        if not stored_hash or password is None:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _assert_valid_password(self, password: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise IdentityError("WEAKP", MSG_WEAK_PASSWORD)

    def _audit(
        self,
        tx: IdentityTransaction,
        event_type: str,
        user_id: str,
        *,
        current_user_id: Optional[str] = None,
        extra1: Optional[str] = None,
        extra2: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "type": event_type,
            "user_id": user_id,
            "current_user_id": current_user_id,
        }
        if extra1 is not None:
            payload["extra1"] = extra1
        if extra2 is not None:
            payload["extra2"] = extra2
        tx.add_job("user__audit", payload)

    # login / logout
    def login(self, identifier: str, password: str) -> LoginResult:
        """Check credentials, tracking failures in a sliding lockout window.

        Expected failures are returned, never raised, so the counter update
        commits with this unit of work.
        """
        now = self._now()
        with self.store.transaction() as tx:
            if "@" in identifier:
                email = tx.find_login_email(identifier)
                user = tx.get_user(email.user_id) if email else None
            else:
                user = tx.get_user_by_username(identifier)
            if user is None:
                return InvalidCredentials()

            secret = tx.get_user_secret(user.id, for_update=True)
            if secret is None:
                return InvalidCredentials()

            if (
                _window_open(secret.first_failed_password_attempt, LOGIN_ATTEMPT_WINDOW, now)
                and secret.failed_password_attempts >= LOGIN_MAX_ATTEMPTS
            ):
                logger.warning("login_locked", user_id=user.id)
                return LoginLocked()

            if self._password_matches(secret.password_hash, password):
                tx.update_user_secret(
                    user.id,
                    failed_password_attempts=0,
                    first_failed_password_attempt=None,
                    last_login_at=now,
                )
                return LoginSuccess(user)

            attempts, first_failure = _bump_failures(
                secret.failed_password_attempts,
                secret.first_failed_password_attempt,
                LOGIN_ATTEMPT_WINDOW,
                now,
            )
            tx.update_user_secret(
                user.id,
                failed_password_attempts=attempts,
                first_failed_password_attempt=first_failure,
            )
            logger.info("login_failed", user_id=user.id, failed_attempts=attempts)
            return InvalidCredentials()

    def logout(self, session_id: Optional[str]) -> Optional[LedgerSession]:
        """Delete the ledger row of the caller's session; idempotent."""
        if not session_id:
            return None
        with self.store.transaction(session_id=session_id) as tx:
            return tx.delete_session(session_id)

    # password reset
    def forgot_password(self, email: str) -> None:
        """Queue a reset email without revealing whether the address is registered."""
        now = self._now()
        with self.store.transaction() as tx:
            tx.prune_unregistered_resets(now - UNREGISTERED_RESET_RETENTION)
            match = tx.find_reset_email(email)

            if match is None:
                row = tx.get_unregistered_reset(email)
                if row is None:
                    row = UnregisteredEmailPasswordReset(email=email, attempts=1, latest_attempt=now)
                elif row.latest_attempt < now - UNREGISTERED_EMAIL_MIN_INTERVAL:
                    row = UnregisteredEmailPasswordReset(
                        email=row.email, attempts=row.attempts + 1, latest_attempt=now
                    )
                else:
                    return None
                tx.upsert_unregistered_reset(row)
                tx.add_job("user__forgot_password_unregistered_email", {"email": email})
                return None

            email_secret = tx.get_email_secret(match.id)
            sent_at = email_secret.password_reset_email_sent_at if email_secret else None
            if sent_at is not None and sent_at > now - RESET_EMAIL_MIN_INTERVAL:
                logger.info("forgot_password_rate_limited", user_id=match.user_id)
                return None

            secret = tx.get_user_secret(match.user_id, for_update=True)
            token = secret.reset_password_token
            generated = secret.reset_password_token_generated
            if token is None or generated is None or generated < now - TOKEN_MAX_DURATION:
                token = self._new_token()
                tx.update_user_secret(
                    match.user_id,
                    reset_password_token=token,
                    reset_password_token_generated=now,
                )
            tx.update_email_secret(match.id, password_reset_email_sent_at=now)
            tx.add_job(
                "user__forgot_password",
                {"id": match.user_id, "email": match.email, "token": token},
            )
        return None

    def reset_password(self, user_id: str, token: str, new_password: str) -> Optional[bool]:
        """Set a new password from an emailed token.

        Returns None for an unknown user or a wrong or expired token; the
        failed attempt is committed before returning.
        """
        now = self._now()
        with self.store.transaction() as tx:
            user = tx.get_user(user_id)
            if user is None:
                return None
            secret = tx.get_user_secret(user_id, for_update=True)
            if secret is None:
                return None

            if (
                _window_open(secret.first_failed_reset_password_attempt, TOKEN_MAX_DURATION, now)
                and secret.failed_reset_password_attempts >= RESET_MAX_ATTEMPTS
            ):
                raise IdentityError("LOCKD", MSG_RESET_LOCKED)

            generated = secret.reset_password_token_generated
            token_fresh = generated is not None and generated > now - TOKEN_MAX_DURATION
            if not (token_fresh and _tokens_match(secret.reset_password_token, token)):
                attempts, first_failure = _bump_failures(
                    secret.failed_reset_password_attempts,
                    secret.first_failed_reset_password_attempt,
                    TOKEN_MAX_DURATION,
                    now,
                )
                tx.update_user_secret(
                    user_id,
                    failed_reset_password_attempts=attempts,
                    first_failed_reset_password_attempt=first_failure,
                )
                logger.warning("reset_password_failed", user_id=user_id, failed_attempts=attempts)
                return None

            self._assert_valid_password(new_password)
            tx.update_user_secret(
                user_id,
                password_hash=self._hash_password(new_password),
                failed_password_attempts=0,
                first_failed_password_attempt=None,
                reset_password_token=None,
                reset_password_token_generated=None,
                failed_reset_password_attempts=0,
                first_failed_reset_password_attempt=None,
            )
            revoked = tx.delete_user_sessions(user_id)
            self._audit(tx, "reset_password", user_id)
        logger.info("password_reset_completed", user_id=user_id, revoked_sessions=len(revoked))
        return True

    def change_password(
        self,
        user_id: Optional[str],
        session_id: Optional[str],
        old_password: str,
        new_password: str,
    ) -> bool:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_CHANGE_PASSWORD)
        with self.store.transaction(session_id=session_id) as tx:
            user = tx.get_user(user_id)
            if user is None:
                raise IdentityError("LOGIN", MSG_LOGIN_TO_CHANGE_PASSWORD)
            secret = tx.get_user_secret(user_id, for_update=True)
            if secret is None or not self._password_matches(secret.password_hash, old_password):
                raise IdentityError("CREDS", MSG_INCORRECT_PASSWORD)
            self._assert_valid_password(new_password)
            tx.update_user_secret(user_id, password_hash=self._hash_password(new_password))
            # Revoke all other sessions
            tx.delete_user_sessions(user_id, except_id=session_id)
            self._audit(tx, "change_password", user_id, current_user_id=user_id)
        return True

    # account deletion
    def request_account_deletion(self, user_id: Optional[str]) -> bool:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_DELETE)
        now = self._now()
        with self.store.transaction() as tx:
            secret = tx.get_user_secret(user_id, for_update=True)
            if secret is None:
                raise IdentityError("LOGIN", MSG_LOGIN_TO_DELETE)
            email = tx.find_deletion_email(user_id)
            token = secret.delete_account_token
            generated = secret.delete_account_token_generated
            if token is None or generated is None or generated < now - TOKEN_MAX_DURATION:
                token = self._new_token()
                tx.update_user_secret(
                    user_id,
                    delete_account_token=token,
                    delete_account_token_generated=now,
                )
            if email is None:
                logger.warning("account_deletion_no_email", user_id=user_id)
            else:
                tx.add_job(
                    "user__send_delete_account_email", {"email": email.email, "token": token}
                )
        return True

    def confirm_account_deletion(self, user_id: Optional[str], token: str) -> bool:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_DELETE)
        now = self._now()
        with self.store.transaction() as tx:
            secret = tx.get_user_secret(user_id, for_update=True)
            if secret is None:
                # Already deleted
                return True
            generated = secret.delete_account_token_generated
            if (
                generated is not None
                and generated > now - TOKEN_MAX_DURATION
                and _tokens_match(secret.delete_account_token, token)
            ):
                tx.delete_user(user_id)
                logger.info("account_deleted", user_id=user_id)
                return True
        raise IdentityError("DNIED", MSG_BAD_DELETE_TOKEN)

    # registration
    def _insert_email(
        self, tx: IdentityTransaction, user_id: str, address: str, *, verified: bool
    ) -> UserEmail:
        if tx.find_verified_email(address):
            raise IdentityError("EMTKN", MSG_EMAIL_TAKEN)
        email_id = new_id()
        email = tx.insert_email(
            UserEmail(
                id=email_id,
                user_id=user_id,
                email=address,
                is_verified=verified,
                is_primary=verified,
            ),
            UserEmailSecret(
                user_email_id=email_id,
                verification_token=None if verified else self._new_token(),
            ),
        )
        if verified:
            tx.update_user(user_id, is_verified=True)
        else:
            tx.add_job("user_emails__send_verification", {"id": email.id})
        self._audit(
            tx, "added_email", user_id, current_user_id=user_id, extra1=email.id, extra2=email.email
        )
        return email

    def _really_create_user(
        self,
        tx: IdentityTransaction,
        *,
        username: str,
        email: Optional[str],
        email_is_verified: bool = False,
        name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        role: str = "user",
        password: Optional[str] = None,
    ) -> User:
        if password is not None:
            self._assert_valid_password(password)
        if not email:
            raise IdentityError("MODAT", MSG_EMAIL_REQUIRED)
        if not email_is_verified and password is None:
            raise IdentityError("MODAT", MSG_PASSWORD_REQUIRED)
        if not (2 <= len(username) <= MAX_USERNAME_LENGTH) or not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "Username must be 2-64 characters, start with a letter and contain only letters, numbers, '_' or '-'",
                detail={"field": "username"},
            )
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address", detail={"field": "email"})

        user = tx.insert_user(
            User(id=new_id(), username=username, name=name, avatar_url=avatar_url, role=role)
        )
        self._insert_email(tx, user.id, email, verified=email_is_verified)
        if password is not None:
            tx.update_user_secret(user.id, password_hash=self._hash_password(password))
        return tx.get_user(user.id)

    def really_create_user(
        self,
        username: str,
        email: Optional[str],
        *,
        email_is_verified: bool = False,
        name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        role: str = "user",
        password: Optional[str] = None,
    ) -> User:
        """Single choke point for account creation.

        Duplicate usernames surface as ``ConstraintViolation`` from the store.
        """
        with self.store.transaction() as tx:
            user = self._really_create_user(
                tx,
                username=username,
                email=email,
                email_is_verified=email_is_verified,
                name=name,
                avatar_url=avatar_url,
                role=role,
                password=password,
            )
        logger.info("user_created", user_id=user.id, username=user.username)
        return user

    def _free_username(self, tx: IdentityTransaction, candidate: Optional[str]) -> str:
        base = derive_username_base(candidate)
        for i in range(0, MAX_USERNAME_SUFFIX + 1):
            suffix = str(i) if i else ""
            username = base[: MAX_USERNAME_LENGTH - len(suffix)] + suffix
            if not tx.username_exists(username):
                return username
        raise ConflictError("Could not find a free username", detail={"candidate": base})

    def _attach_authentication(
        self,
        tx: IdentityTransaction,
        user_id: str,
        service: str,
        identifier: str,
        profile: Dict[str, Any],
        auth_details: Dict[str, Any],
    ) -> UserAuthentication:
        auth_id = new_id()
        return tx.insert_authentication(
            UserAuthentication(
                id=auth_id,
                user_id=user_id,
                service=service,
                identifier=identifier,
                details=dict(profile),
            ),
            UserAuthenticationSecret(user_authentication_id=auth_id, details=dict(auth_details)),
        )

    def _register_user(
        self,
        tx: IdentityTransaction,
        service: str,
        identifier: str,
        profile: Dict[str, Any],
        auth_details: Dict[str, Any],
        email_is_verified: bool,
    ) -> User:
        name = profile.get("name")
        candidate = profile.get("username") or profile.get("login") or name or "user"
        role = profile.get("role") if profile.get("role") in USER_ROLES else "user"
        user = self._really_create_user(
            tx,
            username=self._free_username(tx, candidate),
            email=profile.get("email"),
            email_is_verified=email_is_verified,
            name=name,
            avatar_url=profile.get("avatar_url"),
            role=role,
        )
        self._attach_authentication(tx, user.id, service, identifier, profile, auth_details)
        return user

    def register_user(
        self,
        service: str,
        identifier: str,
        profile: Dict[str, Any],
        auth_details: Dict[str, Any],
        email_is_verified: bool = False,
    ) -> User:
        """Create an account from a provider profile."""
        with self.store.transaction() as tx:
            user = self._register_user(
                tx, service, identifier, profile, auth_details, email_is_verified
            )
        logger.info("user_registered", user_id=user.id, service=service)
        return user

    def link_or_register_user(
        self,
        current_user_id: Optional[str],
        service: str,
        identifier: str,
        profile: Dict[str, Any],
        auth_details: Dict[str, Any],
    ) -> User:
        """Attach a provider identity to an account, or register a new one.

        1. An existing link is reused (rejected with TAKEN when it belongs to
           someone other than a logged-in caller).
        2. A logged-in caller gets the identity linked to their account.
        3. An anonymous caller whose provider email matches a verified email
           is linked to that account.
        4. Otherwise a new account is registered with the email pre-verified.
        """
        with self.store.transaction() as tx:
            existing = tx.find_authentication(service, identifier)
            if existing and current_user_id and existing.user_id != current_user_id:
                raise IdentityError("TAKEN", MSG_ACCOUNT_TAKEN)

            email = profile.get("email")
            auth = existing
            if auth is None:
                target_user_id: Optional[str] = None
                if current_user_id:
                    target_user_id = current_user_id
                elif email:
                    verified = tx.find_verified_email(email)
                    if verified:
                        target_user_id = verified.user_id
                if target_user_id:
                    auth = self._attach_authentication(
                        tx, target_user_id, service, identifier, profile, auth_details
                    )
                    self._audit(
                        tx,
                        "linked_account",
                        target_user_id,
                        current_user_id=current_user_id,
                        extra1=service,
                        extra2=identifier,
                    )
                    logger.info("account_linked", user_id=target_user_id, service=service)

            if auth is None:
                user = self._register_user(tx, service, identifier, profile, auth_details, True)
                logger.info("user_registered", user_id=user.id, service=service)
                return user

            # Keep stored details in sync with the provider
            tx.update_authentication(auth.id, details=dict(profile))
            tx.update_authentication_secret(auth.id, dict(auth_details))
            user = tx.get_user(auth.user_id)
            changes: Dict[str, Any] = {}
            if user.name is None and profile.get("name"):
                changes["name"] = profile["name"]
            if user.avatar_url is None and profile.get("avatar_url"):
                changes["avatar_url"] = profile["avatar_url"]
            if profile.get("role") in USER_ROLES:
                changes["role"] = profile["role"]
            if changes:
                user = tx.update_user(user.id, **changes)
            return user

    # emails
    def verify_email(self, email_id: str, token: str) -> bool:
        with self.store.transaction() as tx:
            email = tx.get_email(email_id)
            if email is None:
                return False
            secret = tx.get_email_secret(email_id)
            if secret is None or not _tokens_match(secret.verification_token, token):
                return False
            if not email.is_verified:
                taken = tx.find_verified_email(email.email)
                if taken and taken.id != email.id:
                    raise IdentityError("EMTKN", MSG_EMAIL_TAKEN)
            has_primary = any(
                other.is_primary
                for other in tx.list_user_emails(email.user_id)
                if other.id != email.id
            )
            tx.update_email(
                email_id, is_verified=True, is_primary=email.is_primary or not has_primary
            )
            tx.update_email_secret(email_id, verification_token=None)
            user = tx.get_user(email.user_id)
            if user and not user.is_verified:
                tx.update_user(user.id, is_verified=True)
        logger.info("email_verified", user_id=email.user_id)
        return True

    def make_email_primary(self, user_id: Optional[str], email_id: str) -> UserEmail:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_MANAGE_EMAILS)
        with self.store.transaction() as tx:
            email = tx.get_email(email_id)
            if email is None or email.user_id != user_id:
                raise IdentityError("DNIED", MSG_NOT_YOUR_EMAIL)
            if not email.is_verified:
                raise IdentityError("VRFY1", MSG_UNVERIFIED_PRIMARY)
            tx.clear_primary_emails(user_id)
            return tx.update_email(email_id, is_primary=True)

    def add_email(self, user_id: Optional[str], address: str) -> UserEmail:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_MANAGE_EMAILS)
        address = address.strip()
        if not EMAIL_PATTERN.match(address):
            raise ValidationError("Invalid email address", detail={"field": "email"})
        with self.store.transaction() as tx:
            return self._insert_email(tx, user_id, address, verified=False)

    def delete_email(self, user_id: Optional[str], email_id: str) -> bool:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_MANAGE_EMAILS)
        with self.store.transaction() as tx:
            email = tx.get_email(email_id)
            if email is None or email.user_id != user_id:
                raise IdentityError("NTFND", MSG_EMAIL_NOT_FOUND)
            # Locks the remaining rows so two concurrent deletions cannot both pass
            remaining = [
                other
                for other in tx.list_user_emails(user_id, for_update=True)
                if other.id != email_id
            ]
            if email.is_verified:
                allowed = any(other.is_verified for other in remaining)
            else:
                allowed = bool(remaining)
            if not allowed:
                raise IdentityError("CDLEA", MSG_LAST_EMAIL)
            tx.delete_email(email_id)
            self._audit(
                tx, "removed_email", user_id, current_user_id=user_id, extra1=email.id, extra2=email.email
            )
        return True

    def resend_email_verification_code(self, user_id: Optional[str], email_id: str) -> bool:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_MANAGE_EMAILS)
        with self.store.transaction() as tx:
            email = tx.get_email(email_id)
            if email is None or email.user_id != user_id or email.is_verified:
                return False
            tx.add_job("user_emails__send_verification", {"id": email_id})
        return True

    def prepare_verification_email(self, email_id: str) -> Optional[Dict[str, Any]]:
        """Load what a verification email needs and stamp the send time.

        Returns None once the address is verified or gone.
        """
        with self.store.transaction() as tx:
            email = tx.get_email(email_id)
            if email is None or email.is_verified:
                return None
            secret = tx.get_email_secret(email_id)
            if secret is None or not secret.verification_token:
                return None
            user = tx.get_user(email.user_id)
            tx.update_email_secret(email_id, verification_email_sent_at=self._now())
            return {
                "email_id": email.id,
                "email": email.email,
                "token": secret.verification_token,
                "username": user.username if user else None,
            }

    def list_emails(self, user_id: Optional[str]) -> List[UserEmail]:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_MANAGE_EMAILS)
        with self.store.transaction() as tx:
            return tx.list_user_emails(user_id)

    # linked accounts
    def list_authentications(self, user_id: Optional[str]) -> List[UserAuthentication]:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_MANAGE_AUTHS)
        with self.store.transaction() as tx:
            return tx.list_authentications(user_id)

    def unlink_authentication(self, user_id: Optional[str], auth_id: str) -> bool:
        if not user_id:
            raise IdentityError("LOGIN", MSG_LOGIN_TO_MANAGE_AUTHS)
        with self.store.transaction() as tx:
            auth = tx.get_authentication(auth_id)
            if auth is None or auth.user_id != user_id:
                raise IdentityError("NTFND", MSG_AUTHENTICATION_NOT_FOUND)
            tx.delete_authentication(auth_id)
            self._audit(
                tx,
                "unlinked_account",
                user_id,
                current_user_id=user_id,
                extra1=auth.service,
                extra2=auth.identifier,
            )
        return True

    # profile reads
    def get_user(self, user_id: str) -> Optional[User]:
        with self.store.transaction() as tx:
            return tx.get_user(user_id)

    def has_password(self, user_id: str) -> bool:
        with self.store.transaction() as tx:
            secret = tx.get_user_secret(user_id)
            return bool(secret and secret.password_hash)
