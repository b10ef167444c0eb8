"""Google OAuth — authorization code → verified external identity.

Learn: The login dance has two legs:
1. begin() mints a random anti-forgery `state`, stores it with a TTL,
   and returns Google's consent URL carrying that state.
2. exchange_code() checks the state was issued by us, trades the code
   at the token endpoint, reads the userinfo endpoint, and consumes the
   state exactly once.

Failures are split by retryability: network trouble, 5xx/429 and
responses that are not a JSON object are ProviderUnavailableError (retry
later, the state survives), while a rejected code or an unusable profile
is InvalidGrantError (start over, the state is burned).
"""

import secrets
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.config import settings
from tessera.db.models import LoginState, utcnow
from tessera.errors import (
    InvalidGrantError,
    InvalidStateError,
    ProviderUnavailableError,
)

logger = structlog.get_logger()

GOOGLE_SCOPES = ("openid", "email", "profile")


@dataclass(frozen=True)
class ExternalIdentity:
    """A provider-verified identity. Trusted as-is by the resolver."""

    provider: str
    subject: str
    email: str
    name: str = ""
    picture: str = ""


@dataclass(frozen=True)
class LoginRedirect:
    auth_url: str
    state: str


class GoogleCredentialVerifier:
    """Exchanges Google authorization codes for verified identities."""

    provider = "google"

    def __init__(self, db: AsyncSession, http: Optional[httpx.AsyncClient] = None):
        self.db = db
        self._http = http

    # ─── Login URL ──────────────────────────────────────

    async def begin(self) -> LoginRedirect:
        """Issue a fresh state and build the consent URL."""
        now = utcnow()
        # Housekeeping: states nobody came back for
        await self.db.execute(delete(LoginState).where(LoginState.expires_at <= now))

        state = secrets.token_urlsafe(32)
        self.db.add(
            LoginState(
                state=state,
                created_at=now,
                expires_at=now + timedelta(seconds=settings.oauth_state_ttl_seconds),
            )
        )
        await self.db.commit()

        params = {
            "client_id": settings.google_client_id,
            "redirect_uri": settings.google_redirect_url,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        auth_url = str(httpx.URL(settings.google_auth_url, params=params))
        return LoginRedirect(auth_url=auth_url, state=state)

    # ─── Code exchange ──────────────────────────────────

    async def exchange_code(self, code: str, state: str) -> ExternalIdentity:
        """Trade an authorization code for a verified identity.

        Raises InvalidStateError, ProviderUnavailableError or InvalidGrantError.
        """
        await self._check_state(state)
        try:
            if not code:
                raise InvalidGrantError("Authorization code is required")
            async with self._client() as client:
                tokens = await self._fetch_tokens(client, code)
                info = await self._fetch_userinfo(client, tokens["access_token"])
            identity = self._to_identity(info)
        except InvalidGrantError:
            await self._discard_state(state)
            raise

        await self._consume_state(state)
        return identity

    async def _check_state(self, state: str) -> None:
        if not state:
            raise InvalidStateError("Missing OAuth state")
        result = await self.db.execute(
            select(LoginState.state).where(
                LoginState.state == state,
                LoginState.expires_at > utcnow(),
            )
        )
        if result.scalar_one_or_none() is None:
            raise InvalidStateError("OAuth state was not issued or has expired")

    async def _consume_state(self, state: str) -> None:
        """Delete the state; only one concurrent exchange may consume it."""
        result = await self.db.execute(
            delete(LoginState).where(
                LoginState.state == state,
                LoginState.expires_at > utcnow(),
            )
        )
        await self.db.commit()
        if result.rowcount != 1:
            raise InvalidStateError("OAuth state already used")

    async def _discard_state(self, state: str) -> None:
        await self.db.execute(delete(LoginState).where(LoginState.state == state))
        await self.db.commit()

    def _client(self):
        if self._http is not None:
            return nullcontext(self._http)
        return httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    async def _fetch_tokens(self, client: httpx.AsyncClient, code: str) -> dict:
        data = {
            "code": code,
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "redirect_uri": settings.google_redirect_url,
            "grant_type": "authorization_code",
        }
        try:
            resp = await client.post(settings.google_token_url, data=data)
        except httpx.HTTPError as e:
            logger.warning("oauth.provider_unreachable", step="token", error=str(e))
            raise ProviderUnavailableError(f"Token endpoint unreachable: {e}") from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise ProviderUnavailableError(
                f"Token endpoint returned {resp.status_code}"
            )
        if resp.status_code >= 400:
            raise InvalidGrantError(_provider_error(resp))

        body = _json_object(resp, step="token")
        if not body.get("access_token"):
            raise InvalidGrantError("Token response carried no access token")
        return body

    async def _fetch_userinfo(self, client: httpx.AsyncClient, access_token: str) -> dict:
        try:
            resp = await client.get(
                settings.google_userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("oauth.provider_unreachable", step="userinfo", error=str(e))
            raise ProviderUnavailableError(f"Userinfo endpoint unreachable: {e}") from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise ProviderUnavailableError(
                f"Userinfo endpoint returned {resp.status_code}"
            )
        if resp.status_code >= 400:
            raise InvalidGrantError(_provider_error(resp))
        return _json_object(resp, step="userinfo")

    def _to_identity(self, info: dict) -> ExternalIdentity:
        subject = info.get("sub") or info.get("id")
        email = info.get("email")
        if not subject or not email:
            raise InvalidGrantError("Provider returned an incomplete profile")
        verified = info.get("email_verified", info.get("verified_email", False))
        if verified not in (True, "true"):
            raise InvalidGrantError("Provider email is not verified")
        return ExternalIdentity(
            provider=self.provider,
            subject=str(subject),
            email=email.lower(),
            name=info.get("name") or "",
            picture=info.get("picture") or "",
        )


def _json_object(resp: httpx.Response, step: str) -> dict:
    """Decode a 2xx body. Anything but a JSON object is a provider fault."""
    try:
        body = resp.json()
    except ValueError as e:
        logger.warning("oauth.provider_bad_body", step=step, status=resp.status_code)
        raise ProviderUnavailableError(f"{step} endpoint returned a non-JSON body") from e
    if not isinstance(body, dict):
        logger.warning("oauth.provider_bad_body", step=step, status=resp.status_code)
        raise ProviderUnavailableError(f"{step} endpoint returned a non-object body")
    return body


def _provider_error(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return f"Provider rejected request ({resp.status_code})"
    error = body.get("error", "invalid_grant")
    description = body.get("error_description")
    return f"{error}: {description}" if description else str(error)
