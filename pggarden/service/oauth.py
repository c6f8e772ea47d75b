from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from pggarden.config import Settings
from pggarden.logging import get_logger
from pggarden.service.errors import (
    MissingVerifiedEmailError,
    NotFoundError,
    OAuthCallbackError,
    OAuthNotConfiguredError,
)
from pggarden.service.identity import IdentityService
from pggarden.service.sessions import SessionService
from pggarden.storage.models import User

logger = get_logger(__name__)

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"
GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"

SUPPORTED_PROVIDERS = ("github",)

SPONSOR_QUERY = """
  query ($user: String!, $repo: String!, $owner: String!) {
    repository(owner: $owner, name: $repo) {
      collaborators(query: $user) {
        totalCount
      }
    }
    user(login: $user) {
      isSponsoringViewer
      isViewer
    }
  }
"""


class GitHubUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    login: str
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    name: Optional[str] = None


class GitHubEmail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    primary: bool
    verified: bool


class _Collaborators(BaseModel):
    total_count: int = Field(alias="totalCount")


class _SponsorRepository(BaseModel):
    collaborators: _Collaborators


class _SponsorUser(BaseModel):
    is_sponsoring_viewer: bool = Field(alias="isSponsoringViewer")
    is_viewer: bool = Field(alias="isViewer")


class _SponsorData(BaseModel):
    repository: _SponsorRepository
    user: _SponsorUser


class SponsorInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: Optional[_SponsorData] = None


class OAuthProvider(Protocol):
    name: str

    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> Dict[str, Any]: ...

    async def fetch_profile(self, access_token: str) -> Dict[str, Any]: ...

    async def fetch_emails(self, access_token: str) -> List[Dict[str, Any]]: ...


class RoleResolver(Protocol):
    async def resolve_role(self, login: str) -> Optional[str]: ...


class GitHubProvider:
    """Authorization-code flow against github.com."""

    name = "github"
    scopes = ("user:email",)

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, follow_redirects=False
        )

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{GITHUB_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Trade the authorization code for tokens.

        GitHub reports a forged, replayed or expired code either as a 4xx or
        as a 200 carrying ``error=bad_verification_code``.
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    GITHUB_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                    },
                    headers={"Accept": "application/json"},
                )
                if response.status_code in (400, 401):
                    logger.warning("oauth_code_rejected", status_code=response.status_code)
                    raise OAuthCallbackError("bad_verification_code", is_bad_code=True)
                response.raise_for_status()
                tokens = response.json()
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_http_error", provider=self.name, error=str(exc))
            raise OAuthCallbackError(f"Failed to exchange code: {exc}") from exc
        except ValueError as exc:
            raise OAuthCallbackError("Invalid token response") from exc

        if not isinstance(tokens, dict):
            raise OAuthCallbackError("Invalid token response")
        error = tokens.get("error")
        if error:
            raise OAuthCallbackError(
                str(error), is_bad_code=error == "bad_verification_code"
            )
        if not tokens.get("access_token"):
            logger.error("oauth_no_access_token", provider=self.name)
            raise OAuthCallbackError("Missing access token")
        return tokens

    async def _get_json(self, path: str, access_token: str, error_prefix: str) -> Any:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }
        try:
            async with self._client() as client:
                response = await client.get(f"{GITHUB_API_URL}{path}", headers=headers)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise OAuthCallbackError(f"{error_prefix}: {exc}") from exc

    async def fetch_profile(self, access_token: str) -> Dict[str, Any]:
        payload = await self._get_json("/user", access_token, "Failed to fetch GitHub user")
        try:
            user = GitHubUser.model_validate(payload)
        except PydanticValidationError as exc:
            raise OAuthCallbackError("Invalid GitHub user profile response") from exc
        return user.model_dump()

    async def fetch_emails(self, access_token: str) -> List[Dict[str, Any]]:
        payload = await self._get_json(
            "/user/emails", access_token, "Failed to fetch GitHub emails"
        )
        if not isinstance(payload, list):
            raise OAuthCallbackError("Invalid GitHub emails response")
        try:
            return [GitHubEmail.model_validate(item).model_dump() for item in payload]
        except PydanticValidationError as exc:
            raise OAuthCallbackError("Invalid GitHub emails response") from exc


class GitHubSponsorRoleResolver:
    """Derive a role from sponsorship and collaborator status.

    Returns None when the lookup is unavailable so the stored role is kept.
    """

    def __init__(
        self,
        pat: Optional[str],
        owner: str,
        repo: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self.pat = pat
        self.owner = owner
        self.repo = repo
        self._transport = transport
        self._timeout = timeout

    async def resolve_role(self, login: str) -> Optional[str]:
        if not self.pat:
            return None
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    GITHUB_GRAPHQL_URL,
                    json={
                        "query": SPONSOR_QUERY,
                        "variables": {"user": login, "owner": self.owner, "repo": self.repo},
                    },
                    headers={"Authorization": f"Bearer {self.pat}"},
                )
                response.raise_for_status()
                info = SponsorInfo.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            # pydantic's ValidationError is a ValueError too
            logger.warning("sponsor_lookup_failed", login=login, error=str(exc))
            return None

        if info.data is None:
            return "user"
        if info.data.user.is_viewer:
            return "admin"
        if info.data.user.is_sponsoring_viewer or info.data.repository.collaborators.total_count > 0:
            return "sponsor"
        return "user"


def pick_github_email(emails: List[Dict[str, Any]]) -> str:
    """Primary verified address first, then any verified one."""
    for candidate in emails:
        if candidate.get("primary") and candidate.get("verified"):
            return candidate["email"]
    for candidate in emails:
        if candidate.get("verified"):
            return candidate["email"]
    raise MissingVerifiedEmailError()


@dataclass
class OAuthResult:
    user: User
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_new_session: bool = False


class OAuthService:
    def __init__(
        self,
        identity: IdentityService,
        sessions: SessionService,
        settings: Settings,
        *,
        role_resolver: Optional[RoleResolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.identity = identity
        self.sessions = sessions
        self.settings = settings
        self._transport = transport
        self.role_resolver = role_resolver or GitHubSponsorRoleResolver(
            settings.github_pat,
            settings.github_sponsor_owner,
            settings.github_sponsor_repo,
            transport=transport,
        )

    def _provider(self, name: str) -> OAuthProvider:
        if name not in SUPPORTED_PROVIDERS:
            raise NotFoundError(f"Unknown OAuth provider: {name}", detail={"provider": name})
        if not self.settings.github_configured:
            logger.warning("oauth_not_configured", provider=name)
            raise OAuthNotConfiguredError("GitHub OAuth is not configured")
        return GitHubProvider(
            self.settings.github_client_id,
            self.settings.github_client_secret,
            f"{self.settings.app_base_url.rstrip('/')}/auth/{name}/callback",
            transport=self._transport,
        )

    def create_authorization_url(self, provider: str = "github") -> Tuple[str, str]:
        """Return the provider redirect URL and the state the caller must pin in a cookie."""
        oauth = self._provider(provider)
        state = secrets.token_urlsafe(32)
        return oauth.authorization_url(state), state

    async def handle_callback(
        self, provider: str, code: str, current_user_id: Optional[str]
    ) -> OAuthResult:
        oauth = self._provider(provider)
        tokens = await oauth.exchange_code(code)
        access_token = tokens["access_token"]

        profile = await oauth.fetch_profile(access_token)
        email = profile.get("email")
        if not email:
            email = pick_github_email(await oauth.fetch_emails(access_token))

        role = await self.role_resolver.resolve_role(profile["login"])
        merged: Dict[str, Any] = {**profile, "email": email}
        if role is not None:
            merged["role"] = role

        user = await asyncio.to_thread(
            self.identity.link_or_register_user,
            current_user_id,
            oauth.name,
            profile["login"],
            merged,
            tokens,
        )
        logger.info(
            "oauth_callback_complete",
            provider=oauth.name,
            user_id=user.id,
            linked=bool(current_user_id),
        )

        if current_user_id:
            return OAuthResult(user=user)
        issued = await self.sessions.create_session(user.id)
        return OAuthResult(
            user=user, token=issued.token, expires_at=issued.expires_at, is_new_session=True
        )
