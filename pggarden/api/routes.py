from __future__ import annotations

import asyncio
import hmac
import json
from html import escape
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response
from fastapi.responses import HTMLResponse, RedirectResponse

from pggarden.api.deps import (
    REDIRECT_COOKIE,
    STATE_COOKIE,
    RequestContext,
    _http_error,
    expire_session_cookie,
    expire_state_cookie,
    get_current_user,
    get_session_data,
    set_session_cookie,
    set_state_cookie,
)
from pggarden.api.schemas import (
    AddEmailRequest,
    ChangePasswordRequest,
    EmailIdRequest,
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    VerifyEmailRequest,
)
from pggarden.logging import get_logger
from pggarden.service.errors import OAuthCallbackError
from pggarden.service.runtime import get_runtime
from pggarden.storage.models import User

logger = get_logger(__name__)

router = APIRouter()

_BRIDGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Signing in...</title>
</head>
<body>
  <h1>Authentication Successful!</h1>
  <p id="status">Returning to the application...</p>
  <script>
    (function () {
      var authData = __AUTH_DATA__;
      var redirectTo = __REDIRECT_TO__;
      var message = { type: "github-auth-success", user: authData };
      try {
        localStorage.setItem(
          "github-auth-result",
          JSON.stringify({ type: message.type, user: authData, timestamp: Date.now() })
        );
        if (typeof BroadcastChannel !== "undefined") {
          var channel = new BroadcastChannel("github-auth");
          channel.postMessage(message);
          channel.close();
        }
        if (window.opener && !window.opener.closed) {
          window.opener.postMessage(message, window.location.origin);
          document.getElementById("status").textContent = "Authentication successful! Closing window...";
          setTimeout(function () { window.close(); }, 500);
        } else {
          window.location.replace(redirectTo);
        }
      } catch (error) {
        document.getElementById("status").textContent = "Authentication successful! Please close this window.";
      }
    })();
  </script>
  <noscript><a href="__REDIRECT_HREF__">Continue</a></noscript>
</body>
</html>
"""


def _script_json(value: Any) -> str:
    # A "</script>" inside a display name must not close the inline block
    return (
        json.dumps(value)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


def _safe_redirect(value: Optional[str]) -> str:
    """Only same-origin absolute paths are accepted as post-login targets."""
    if value and value.startswith("/") and not value.startswith("//") and "\\" not in value:
        return value
    return "/"


def render_bridge_page(user: User, redirect_to: str = "/") -> str:
    auth_data = {"id": user.id, "username": user.username, "role": user.role}
    return (
        _BRIDGE_TEMPLATE.replace("__AUTH_DATA__", _script_json(auth_data))
        .replace("__REDIRECT_TO__", _script_json(redirect_to))
        .replace("__REDIRECT_HREF__", escape(redirect_to, quote=True))
    )


# password auth


@router.post("/register", tags=["auth"])
async def register(body: RegisterRequest, response: Response) -> Dict[str, Any]:
    """Create an account with a password and sign it in."""
    runtime = get_runtime()
    result = await runtime.auth.register(body.username, body.email, body.password)
    set_session_cookie(response, result.session.token, result.session.expires_at)
    return result.user.to_profile()


@router.post("/login", tags=["auth"])
async def login(body: LoginRequest, response: Response) -> Dict[str, Any]:
    """Sign in with a username or email address.

    Raises:
        401: unknown account or wrong password
        400: LOCKD after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.id, body.password)
    set_session_cookie(response, result.session.token, result.session.expires_at)
    return result.user.to_profile()


@router.post("/logout", tags=["auth"])
async def logout(
    response: Response, ctx: RequestContext = Depends(get_session_data)
) -> Dict[str, Any]:
    runtime = get_runtime()
    await runtime.auth.logout(ctx.cookie_id)
    expire_session_cookie(response)
    return {"success": True}


@router.get("/me", tags=["auth"])
async def session_me(ctx: RequestContext = Depends(get_session_data)) -> Dict[str, Any]:
    return {"user": ctx.user.to_dict() if ctx.user else None}


# account


@router.get("/api/me", tags=["account"])
async def current_user(ctx: RequestContext = Depends(get_session_data)) -> Dict[str, Any]:
    if ctx.user_id is None:
        return {"user": None}
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.identity.get_user, ctx.user_id)
    return {"user": user.to_profile() if user else None}


@router.delete("/api/me", tags=["account"])
async def delete_account(
    response: Response,
    token: Optional[str] = Query(None, max_length=256),
    ctx: RequestContext = Depends(get_session_data),
) -> Dict[str, Any]:
    """Without a token, email a confirmation link; with one, delete the account."""
    runtime = get_runtime()
    if not token:
        ok = await runtime.auth.request_account_deletion(ctx.user_id)
        return {"success": ok}
    ok = await runtime.auth.confirm_account_deletion(ctx.user_id, token)
    if ok:
        expire_session_cookie(response)
    return {"success": ok}


@router.get("/api/me/has-password", tags=["account"])
async def has_password(ctx: RequestContext = Depends(get_current_user)) -> Dict[str, Any]:
    runtime = get_runtime()
    value = await asyncio.to_thread(runtime.identity.has_password, ctx.user_id)
    return {"hasPassword": value}


@router.get("/api/me/emails", tags=["account"])
async def list_emails(ctx: RequestContext = Depends(get_session_data)) -> Dict[str, Any]:
    runtime = get_runtime()
    emails = await asyncio.to_thread(runtime.identity.list_emails, ctx.user_id)
    return {"emails": [email.to_dict() for email in emails]}


@router.post("/api/me/emails", tags=["account"])
async def add_email(
    body: AddEmailRequest, ctx: RequestContext = Depends(get_session_data)
) -> Dict[str, Any]:
    runtime = get_runtime()
    email = await asyncio.to_thread(runtime.identity.add_email, ctx.user_id, body.email)
    return {"email": email.to_dict()}


@router.delete("/api/me/emails/{email_id}", tags=["account"])
async def delete_email(
    email_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(get_session_data),
) -> Dict[str, Any]:
    runtime = get_runtime()
    ok = await asyncio.to_thread(runtime.identity.delete_email, ctx.user_id, email_id)
    return {"success": ok}


@router.get("/api/me/authentications", tags=["account"])
async def list_authentications(
    ctx: RequestContext = Depends(get_session_data),
) -> Dict[str, Any]:
    runtime = get_runtime()
    auths = await asyncio.to_thread(runtime.identity.list_authentications, ctx.user_id)
    return {"authentications": [auth.to_dict() for auth in auths]}


@router.delete("/api/me/authentications/{auth_id}", tags=["account"])
async def unlink_authentication(
    auth_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(get_session_data),
) -> Dict[str, Any]:
    runtime = get_runtime()
    ok = await asyncio.to_thread(runtime.identity.unlink_authentication, ctx.user_id, auth_id)
    return {"success": ok}


@router.post("/api/forgotPassword", tags=["account"])
async def forgot_password(body: ForgotPasswordRequest) -> Dict[str, Any]:
    # Same answer whether or not the address is registered
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return {"success": True}


@router.post("/api/resetPassword", tags=["account"])
async def reset_password(body: ResetPasswordRequest) -> Dict[str, Any]:
    runtime = get_runtime()
    ok = await runtime.auth.reset_password(body.user_id, body.token, body.password)
    return {"success": ok}


@router.post("/api/changePassword", tags=["account"])
async def change_password(
    body: ChangePasswordRequest, ctx: RequestContext = Depends(get_current_user)
) -> Dict[str, Any]:
    runtime = get_runtime()
    ok = await runtime.auth.change_password(
        ctx.user_id, ctx.session_id, ctx.cookie_id, body.old_password, body.new_password
    )
    return {"success": ok}


@router.post("/api/verifyEmail", tags=["account"])
async def verify_email(body: VerifyEmailRequest) -> Dict[str, Any]:
    runtime = get_runtime()
    ok = await asyncio.to_thread(runtime.identity.verify_email, body.email_id, body.token)
    return {"success": ok}


@router.post("/api/makeEmailPrimary", tags=["account"])
async def make_email_primary(
    body: EmailIdRequest, ctx: RequestContext = Depends(get_session_data)
) -> Dict[str, Any]:
    runtime = get_runtime()
    await asyncio.to_thread(runtime.identity.make_email_primary, ctx.user_id, body.email_id)
    return {"success": True}


@router.post("/api/resendEmailVerificationCode", tags=["account"])
async def resend_email_verification_code(
    body: EmailIdRequest, ctx: RequestContext = Depends(get_session_data)
) -> Dict[str, Any]:
    runtime = get_runtime()
    ok = await asyncio.to_thread(
        runtime.identity.resend_email_verification_code, ctx.user_id, body.email_id
    )
    return {"success": ok}


# oauth


@router.get("/auth/{provider}", tags=["oauth"])
async def oauth_start(
    provider: str = Path(..., max_length=32),
    redirect_to: Optional[str] = Query(None, alias="redirectTo", max_length=2048),
) -> RedirectResponse:
    """Redirect to the provider; the state is pinned in a short-lived cookie."""
    runtime = get_runtime()
    url, state = runtime.oauth.create_authorization_url(provider)
    response = RedirectResponse(url, status_code=302)
    set_state_cookie(response, STATE_COOKIE, state)
    set_state_cookie(response, REDIRECT_COOKIE, _safe_redirect(redirect_to))
    return response


@router.get("/auth/{provider}/callback", tags=["oauth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128),
    ctx: RequestContext = Depends(get_session_data),
) -> HTMLResponse:
    stored_state = request.cookies.get(STATE_COOKIE)
    if not state or not stored_state or not hmac.compare_digest(state, stored_state):
        logger.warning("oauth_state_mismatch", provider=provider)
        raise _http_error("validation_error", "Invalid state parameter", status_code=400)
    if not code:
        raise _http_error("validation_error", "Missing authorization code", status_code=400)

    runtime = get_runtime()
    try:
        result = await runtime.oauth.handle_callback(provider, code, ctx.user_id)
    except OAuthCallbackError as exc:
        if exc.is_bad_code:
            logger.warning("oauth_bad_verification_code", provider=provider)
            raise _http_error(
                "validation_error", "Bad verification code", status_code=400
            ) from exc
        raise

    redirect_to = _safe_redirect(request.cookies.get(REDIRECT_COOKIE))
    response = HTMLResponse(render_bridge_page(result.user, redirect_to))
    if result.token and result.expires_at:
        set_session_cookie(response, result.token, result.expires_at)
    expire_state_cookie(response, STATE_COOKIE)
    expire_state_cookie(response, REDIRECT_COOKIE)
    return response
