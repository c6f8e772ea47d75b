from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from pggarden.logging import get_logger
from pggarden.service.errors import AuthenticationError, DuplicateAccountError, IdentityError
from pggarden.service.identity import IdentityService, LoginLocked, LoginSuccess
from pggarden.service.sessions import IssuedSession, SessionService
from pggarden.storage.errors import ConstraintViolation
from pggarden.storage.models import User

logger = get_logger(__name__)

_DUPLICATE_CONSTRAINTS = {"username_unique", "user_email_unique", "verified_email_unique"}


@dataclass
class AuthResult:
    user: User
    session: IssuedSession


class AuthService:
    """Password-based account flows on top of identity and sessions.

    Identity calls are synchronous store work and run in a worker thread.
    Whenever identity removes ledger rows in bulk, the matching cache
    entries are evicted here so the two never disagree for long.
    """

    def __init__(self, identity: IdentityService, sessions: SessionService) -> None:
        self.identity = identity
        self.sessions = sessions

    async def register(self, username: str, email: str, password: str) -> AuthResult:
        try:
            user = await asyncio.to_thread(
                self.identity.really_create_user, username, email, password=password
            )
        except ConstraintViolation as exc:
            if exc.constraint in _DUPLICATE_CONSTRAINTS:
                logger.info("register_duplicate", constraint=exc.constraint)
                raise DuplicateAccountError() from exc
            raise
        issued = await self.sessions.create_session(user.id)
        return AuthResult(user=user, session=issued)

    async def login(self, identifier: str, password: str) -> AuthResult:
        result = await asyncio.to_thread(self.identity.login, identifier, password)
        if isinstance(result, LoginLocked):
            raise IdentityError("LOCKD", result.message)
        if not isinstance(result, LoginSuccess):
            raise AuthenticationError("Invalid username or password")
        issued = await self.sessions.create_session(result.user.id)
        logger.info("login_success", user_id=result.user.id)
        return AuthResult(user=result.user, session=issued)

    async def logout(self, cookie_id: Optional[str]) -> None:
        if cookie_id:
            await self.sessions.delete_session(cookie_id)

    async def forgot_password(self, email: str) -> None:
        await asyncio.to_thread(self.identity.forgot_password, email.strip())

    async def reset_password(self, user_id: str, token: str, new_password: str) -> bool:
        result = await asyncio.to_thread(
            self.identity.reset_password, user_id, token, new_password
        )
        if not result:
            return False
        await self.sessions.revoke_user_sessions(user_id)
        return True

    async def change_password(
        self,
        user_id: Optional[str],
        session_id: Optional[str],
        cookie_id: Optional[str],
        old_password: str,
        new_password: str,
    ) -> bool:
        changed = await asyncio.to_thread(
            self.identity.change_password, user_id, session_id, old_password, new_password
        )
        if changed and user_id:
            await self.sessions.revoke_user_sessions(user_id, except_cookie_id=cookie_id)
        return changed

    async def request_account_deletion(self, user_id: Optional[str]) -> bool:
        return await asyncio.to_thread(self.identity.request_account_deletion, user_id)

    async def confirm_account_deletion(self, user_id: Optional[str], token: str) -> bool:
        deleted = await asyncio.to_thread(self.identity.confirm_account_deletion, user_id, token)
        if deleted and user_id:
            await self.sessions.revoke_user_sessions(user_id)
        return deleted
