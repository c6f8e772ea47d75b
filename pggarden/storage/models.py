from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

USER_ROLES = ("user", "sponsor", "pro", "admin")
SESSION_TTL = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    username: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: str = ""
    role: str = "user"
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_profile(self) -> Dict[str, Any]:
        """Public profile as returned by the HTTP API."""
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "avatar_url": self.avatar_url,
            "bio": self.bio or "",
            "role": self.role,
            "is_verified": self.is_verified,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class UserSecret:
    """Credential record, never exposed through the API."""

    user_id: str
    password_hash: Optional[str] = None
    last_login_at: Optional[datetime] = None
    failed_password_attempts: int = 0
    first_failed_password_attempt: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_token_generated: Optional[datetime] = None
    failed_reset_password_attempts: int = 0
    first_failed_reset_password_attempt: Optional[datetime] = None
    delete_account_token: Optional[str] = None
    delete_account_token_generated: Optional[datetime] = None


@dataclass
class UserEmail:
    id: str
    user_id: str
    email: str
    is_verified: bool = False
    is_primary: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "is_verified": self.is_verified,
            "is_primary": self.is_primary,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class UserEmailSecret:
    user_email_id: str
    verification_token: Optional[str] = None
    verification_email_sent_at: Optional[datetime] = None
    password_reset_email_sent_at: Optional[datetime] = None


@dataclass
class UserAuthentication:
    id: str
    user_id: str
    service: str
    identifier: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service": self.service,
            "identifier": self.identifier,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class UserAuthenticationSecret:
    user_authentication_id: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LedgerSession:
    """Durable record that a session was issued."""

    id: str
    user_id: str
    session_data: Dict[str, Any] = field(default_factory=dict)
    secret_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=lambda: utcnow() + SESSION_TTL)


@dataclass
class UnregisteredEmailPasswordReset:
    email: str
    attempts: int = 1
    latest_attempt: datetime = field(default_factory=utcnow)


@dataclass
class Job:
    id: str
    task: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    last_error: Optional[str] = None
    locked_at: Optional[datetime] = None
