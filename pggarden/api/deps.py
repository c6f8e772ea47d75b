from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException, Request, Response

from pggarden.config import get_settings
from pggarden.logging import get_logger
from pggarden.service.runtime import get_runtime
from pggarden.service.sessions import SessionInfo, SessionUser

logger = get_logger(__name__)

SESSION_COOKIE = "session"
STATE_COOKIE = "github_oauth_state"
REDIRECT_COOKIE = "github_oauth_redirect"
STATE_COOKIE_MAX_AGE = 600


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class RequestContext:
    """Who is calling, resolved once per request and passed to services explicitly."""

    user: Optional[SessionUser] = None
    session: Optional[SessionInfo] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def session_id(self) -> Optional[str]:
        return self.session.id if self.session else None

    @property
    def cookie_id(self) -> Optional[str]:
        return self.session.cookie_id if self.session else None


async def get_session_data(request: Request) -> RequestContext:
    cached = getattr(request.state, "auth_context", None)
    if cached is not None:
        return cached

    ctx = RequestContext()
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        try:
            validation = await get_runtime().sessions.validate_session_token(token)
        except Exception as exc:
            # An unreadable session is treated as no session
            logger.warning(
                "session_validation_failed",
                path=request.url.path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            ctx = RequestContext(user=validation.user, session=validation.session)
    request.state.auth_context = ctx
    return ctx


async def get_current_user(ctx: RequestContext = Depends(get_session_data)) -> RequestContext:
    if ctx.user is None:
        raise _http_error("unauthorized", "You must be logged in", status_code=401)
    return ctx


def _secure_cookies() -> bool:
    return get_settings().is_production


def set_session_cookie(response: Response, token: str, expires_at: datetime) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        secure=_secure_cookies(),
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def expire_session_cookie(response: Response) -> None:
    response.delete_cookie(
        SESSION_COOKIE, path="/", secure=_secure_cookies(), httponly=True, samesite="lax"
    )


def set_state_cookie(response: Response, name: str, value: str) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=_secure_cookies(),
        samesite="lax",
        max_age=STATE_COOKIE_MAX_AGE,
        path="/",
    )


def expire_state_cookie(response: Response, name: str) -> None:
    response.delete_cookie(name, path="/", secure=_secure_cookies(), httponly=True, samesite="lax")
