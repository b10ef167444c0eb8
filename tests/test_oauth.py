"""Google credential verifier tests — state handling and provider failures.

Learn: The provider is an httpx.MockTransport (see conftest.FakeGoogle),
so every failure mode (bad code, 5xx, dropped connection) is scripted
without touching the network.
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import select

from tessera.auth.oauth import GoogleCredentialVerifier
from tessera.config import settings
from tessera.db.models import LoginState
from tessera.errors import InvalidGrantError, InvalidStateError, ProviderUnavailableError


async def _state_exists(db, state: str) -> bool:
    result = await db.execute(select(LoginState.state).where(LoginState.state == state))
    return result.scalar_one_or_none() is not None


# ═══════════════════════════════════════════════════════════
# begin()
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_begin_builds_consent_url_and_stores_state(db_session, http):
    redirect = await GoogleCredentialVerifier(db_session, http).begin()

    url = urlparse(redirect.auth_url)
    params = parse_qs(url.query)
    assert redirect.auth_url.startswith(settings.google_auth_url)
    assert params["state"] == [redirect.state]
    assert params["client_id"] == [settings.google_client_id]
    assert params["response_type"] == ["code"]
    assert params["scope"] == ["openid email profile"]

    stored = await db_session.get(LoginState, redirect.state)
    assert stored is not None


@pytest.mark.asyncio
async def test_begin_clears_expired_states(db_session, http, issue_state):
    stale = await issue_state("stale", ttl=timedelta(seconds=-5))

    await GoogleCredentialVerifier(db_session, http).begin()

    result = await db_session.execute(select(LoginState).where(LoginState.state == stale))
    assert result.scalars().first() is None


# ═══════════════════════════════════════════════════════════
# exchange_code()
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_exchange_returns_verified_identity(db_session, http, google, issue_state):
    state = await issue_state()
    google.add_code("abc", sub="g-1", email="Ada@Example.com", name="Ada")

    identity = await GoogleCredentialVerifier(db_session, http).exchange_code("abc", state)

    assert identity.provider == "google"
    assert identity.subject == "g-1"
    assert identity.email == "ada@example.com"
    assert identity.name == "Ada"


@pytest.mark.asyncio
async def test_state_is_single_use(db_session, http, google, issue_state):
    state = await issue_state()
    google.add_code("abc", sub="g-1", email="ada@example.com")
    verifier = GoogleCredentialVerifier(db_session, http)
    await verifier.exchange_code("abc", state)

    with pytest.raises(InvalidStateError):
        await verifier.exchange_code("abc", state)


@pytest.mark.asyncio
async def test_unknown_state_is_rejected_before_calling_provider(db_session, http, google):
    google.add_code("abc", sub="g-1", email="ada@example.com")

    with pytest.raises(InvalidStateError):
        await GoogleCredentialVerifier(db_session, http).exchange_code("abc", "never-issued")

    assert google.token_calls == 0


@pytest.mark.asyncio
async def test_expired_state_is_rejected(db_session, http, google, issue_state):
    state = await issue_state(ttl=timedelta(seconds=-1))
    google.add_code("abc", sub="g-1", email="ada@example.com")

    with pytest.raises(InvalidStateError):
        await GoogleCredentialVerifier(db_session, http).exchange_code("abc", state)


@pytest.mark.asyncio
async def test_rejected_code_is_invalid_grant(db_session, http, issue_state):
    state = await issue_state()

    with pytest.raises(InvalidGrantError):
        await GoogleCredentialVerifier(db_session, http).exchange_code("bogus", state)

    # Terminal: the state is burned, a retry must start over
    assert not await _state_exists(db_session, state)


@pytest.mark.asyncio
async def test_empty_code_is_invalid_grant(db_session, http, google, issue_state):
    state = await issue_state()

    with pytest.raises(InvalidGrantError):
        await GoogleCredentialVerifier(db_session, http).exchange_code("", state)
    assert google.token_calls == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [500, 503, 429])
async def test_provider_error_status_is_unavailable_and_state_survives(
    db_session, http, google, issue_state, status
):
    """Transient provider failure: retry with the same state succeeds."""
    state = await issue_state()
    google.add_code("abc", sub="g-1", email="ada@example.com")
    google.token_status = status
    verifier = GoogleCredentialVerifier(db_session, http)

    with pytest.raises(ProviderUnavailableError):
        await verifier.exchange_code("abc", state)

    google.token_status = None
    identity = await verifier.exchange_code("abc", state)
    assert identity.subject == "g-1"


@pytest.mark.asyncio
async def test_unreachable_provider_is_unavailable(db_session, http, google, issue_state):
    state = await issue_state()
    google.unreachable = True

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await GoogleCredentialVerifier(db_session, http).exchange_code("abc", state)

    assert exc_info.value.retryable is True
    assert await _state_exists(db_session, state)


@pytest.mark.asyncio
async def test_unverified_email_is_invalid_grant(db_session, http, google, issue_state):
    state = await issue_state()
    google.add_code("abc", sub="g-1", email="ada@example.com", email_verified=False)

    with pytest.raises(InvalidGrantError):
        await GoogleCredentialVerifier(db_session, http).exchange_code("abc", state)
    assert not await _state_exists(db_session, state)


@pytest.mark.asyncio
async def test_incomplete_profile_burns_state(db_session, http, google, issue_state):
    state = await issue_state()
    google.codes["abc"] = {"sub": "g-1", "email_verified": True}

    with pytest.raises(InvalidGrantError):
        await GoogleCredentialVerifier(db_session, http).exchange_code("abc", state)

    with pytest.raises(InvalidStateError):
        await GoogleCredentialVerifier(db_session, http).exchange_code("abc", state)


# ═══════════════════════════════════════════════════════════
# Malformed provider responses
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_html_body_on_success_is_unavailable(db_session, http, google, issue_state):
    """A proxy error page with a 200 is a provider fault, and retryable."""
    state = await issue_state()
    google.add_code("abc", sub="g-1", email="ada@example.com")
    google.token_response = httpx.Response(
        200, text="<html>upstream proxy error</html>", headers={"Content-Type": "text/html"}
    )
    verifier = GoogleCredentialVerifier(db_session, http)

    with pytest.raises(ProviderUnavailableError):
        await verifier.exchange_code("abc", state)
    assert await _state_exists(db_session, state)

    google.token_response = None
    assert (await verifier.exchange_code("abc", state)).subject == "g-1"


@pytest.mark.asyncio
async def test_non_object_json_on_success_is_unavailable(db_session, http, google, issue_state):
    state = await issue_state()
    google.token_response = httpx.Response(200, json=["access_token"])

    with pytest.raises(ProviderUnavailableError):
        await GoogleCredentialVerifier(db_session, http).exchange_code("abc", state)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json=["invalid_grant"]),
        httpx.Response(400, text="<html>bad request</html>"),
    ],
)
async def test_unparseable_rejection_is_still_invalid_grant(
    db_session, http, google, issue_state, response
):
    state = await issue_state()
    google.token_response = response

    with pytest.raises(InvalidGrantError) as exc_info:
        await GoogleCredentialVerifier(db_session, http).exchange_code("abc", state)

    assert "400" in exc_info.value.message
