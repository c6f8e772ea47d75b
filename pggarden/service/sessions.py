from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

from pggarden.logging import get_logger
from pggarden.service.errors import SessionUserMissing
from pggarden.service.identity import IdentityService, IdentityStore
from pggarden.storage.models import SESSION_TTL, LedgerSession, new_id, utcnow

logger = get_logger(__name__)


class SessionCache(Protocol):
    async def set_session(
        self, cookie_id: str, fields: Dict[str, str], expires_at: datetime
    ) -> None: ...

    async def get_session(self, cookie_id: str) -> Optional[Dict[str, str]]: ...

    async def delete_session(self, cookie_id: str) -> None: ...

    async def revoke_user_sessions(
        self, user_id: str, except_cookie_id: Optional[str] = None
    ) -> int: ...


@dataclass
class SessionUser:
    id: str
    username: str
    role: str
    is_verified: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "is_verified": self.is_verified,
        }


@dataclass
class SessionInfo:
    id: str
    cookie_id: str
    user_id: str
    expires_at: datetime


@dataclass
class SessionValidation:
    user: Optional[SessionUser] = None
    session: Optional[SessionInfo] = None


@dataclass
class IssuedSession:
    token: str
    id: str
    session_id: str
    expires_at: datetime


def _hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()


class SessionService:
    """Issues, validates and deletes sessions.

    The cache entry is authoritative for validity; the ledger row records
    that the session was issued so it can be revoked administratively.
    The raw secret is only ever returned to the caller inside the token.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: SessionCache,
        identity: IdentityService,
        *,
        ttl: timedelta = SESSION_TTL,
    ) -> None:
        self.store = store
        self.cache = cache
        self.identity = identity
        self.ttl = ttl

    def _write_ledger(self, row: LedgerSession) -> None:
        with self.store.transaction(session_id=row.id) as tx:
            tx.insert_session(row)

    async def create_session(self, user_id: str) -> IssuedSession:
        user = await asyncio.to_thread(self.identity.get_user, user_id)
        if user is None:
            raise SessionUserMissing(f"cannot create a session for unknown user {user_id}")

        cookie_id = secrets.token_hex(32)
        secret = secrets.token_hex(32)
        session_uuid = new_id()
        now = utcnow()
        expires_at = now + self.ttl
        secret_hash = _hash_secret(secret)

        await asyncio.to_thread(
            self._write_ledger,
            LedgerSession(
                id=session_uuid,
                user_id=user.id,
                secret_hash=secret_hash,
                created_at=now,
                expires_at=expires_at,
            ),
        )
        await self.cache.set_session(
            cookie_id,
            {
                "secret_hash": secret_hash,
                "session_uuid": session_uuid,
                "user_id": user.id,
                "username": user.username,
                "role": user.role,
                "is_verified": "1" if user.is_verified else "0",
                "expires_at": expires_at.isoformat(),
            },
            expires_at,
        )
        logger.info("session_created", user_id=user.id, session_id=session_uuid)
        return IssuedSession(
            token=f"{cookie_id}.{secret}",
            id=cookie_id,
            session_id=session_uuid,
            expires_at=expires_at,
        )

    async def validate_session_token(self, token: Optional[str]) -> SessionValidation:
        """Resolve a bearer token; any malformed or unknown token yields the null pair."""
        if not token or token.count(".") != 1:
            return SessionValidation()
        cookie_id, secret = token.split(".")
        if not cookie_id or not secret:
            return SessionValidation()

        data = await self.cache.get_session(cookie_id)
        if not data:
            return SessionValidation()

        expected = data.get("secret_hash", "")
        if not hmac.compare_digest(expected.encode(), _hash_secret(secret).encode()):
            return SessionValidation()

        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= utcnow():
            return SessionValidation()

        user = SessionUser(
            id=data["user_id"],
            username=data.get("username", ""),
            role=data.get("role") or "visitor",
            is_verified=data.get("is_verified") == "1",
        )
        session = SessionInfo(
            id=data.get("session_uuid", ""),
            cookie_id=cookie_id,
            user_id=data["user_id"],
            expires_at=expires_at,
        )
        return SessionValidation(user=user, session=session)

    async def delete_session(self, cookie_id: str) -> None:
        """Drop the cache entry, then the ledger row it points at; idempotent."""
        data = await self.cache.get_session(cookie_id)
        await self.cache.delete_session(cookie_id)
        session_uuid = data.get("session_uuid") if data else None
        if session_uuid:
            await asyncio.to_thread(self.identity.logout, session_uuid)
        logger.info("session_deleted", session_id=session_uuid)

    async def revoke_user_sessions(
        self, user_id: str, except_cookie_id: Optional[str] = None
    ) -> int:
        """Evict a user's cache entries after their ledger rows were removed."""
        revoked = await self.cache.revoke_user_sessions(user_id, except_cookie_id)
        logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked
