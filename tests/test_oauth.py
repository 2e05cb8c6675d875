from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from services.auth.oauth import AuthFlowUnavailable, TokenLease
from services.kick.auth import KickTokenProvider
from services.twitch.auth import TwitchTokenProvider
from shared.config.relay import KickSettings, TwitchSettings


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _twitch(handler, **overrides) -> TwitchTokenProvider:
    settings = TwitchSettings(
        bot_username="bot",
        oauth_token=overrides.get("oauth_token", "oauth:abc"),
        client_id="cid",
        client_secret="secret",
        refresh_token=overrides.get("refresh_token", "r1"),
    )
    return TwitchTokenProvider.from_settings(settings, client=_http(handler))


@pytest.mark.asyncio
async def test_twitch_validate_uses_oauth_scheme() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"login": "bot"})

    provider = _twitch(handler)

    assert await provider.validate_token("oauth:abc") is True
    assert seen["url"] == "https://id.twitch.tv/oauth2/validate"
    assert seen["auth"] == "OAuth abc"


@pytest.mark.asyncio
async def test_validate_rejects_401() -> None:
    provider = _twitch(lambda request: httpx.Response(401))

    assert await provider.validate_token("abc") is False
    assert await provider.validate_token("") is False


@pytest.mark.asyncio
async def test_env_token_is_returned_without_network() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    provider = _twitch(handler)

    assert await provider.get_valid_token() == "abc"


@pytest.mark.asyncio
async def test_refresh_posts_grant_and_rotates_refresh_token() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(parse_qs(request.content.decode()))
        return httpx.Response(
            200,
            json={"access_token": "new", "refresh_token": "r2", "expires_in": 3600},
        )

    provider = _twitch(handler)

    assert await provider.refresh() == "new"
    assert bodies[0]["grant_type"] == ["refresh_token"]
    assert bodies[0]["refresh_token"] == ["r1"]
    assert provider.lease.expires_at is not None

    await provider.refresh()
    assert bodies[1]["refresh_token"] == ["r2"]


@pytest.mark.asyncio
async def test_expired_lease_triggers_refresh() -> None:
    provider = _twitch(
        lambda request: httpx.Response(200, json={"access_token": "fresh"})
    )
    provider.lease = TokenLease(
        access_token="old",
        expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
    )

    assert await provider.get_valid_token() == "fresh"


@pytest.mark.asyncio
async def test_refresh_failure_returns_none() -> None:
    provider = _twitch(lambda request: httpx.Response(400, json={"message": "bad"}))

    assert await provider.refresh() is None
    assert provider.lease.access_token == "abc"


@pytest.mark.asyncio
async def test_refresh_response_without_token_returns_none() -> None:
    provider = _twitch(lambda request: httpx.Response(200, json={}))

    assert await provider.refresh() is None


@pytest.mark.asyncio
async def test_refresh_without_credentials_returns_none() -> None:
    provider = _twitch(
        lambda request: httpx.Response(500), refresh_token=""
    )

    assert provider.can_refresh is False
    assert await provider.refresh() is None


@pytest.mark.asyncio
async def test_interactive_flow_is_unavailable() -> None:
    provider = _twitch(lambda request: httpx.Response(200))

    with pytest.raises(AuthFlowUnavailable):
        await provider.perform_interactive_auth_flow()


@pytest.mark.asyncio
async def test_kick_provider_uses_bearer_and_kick_endpoints() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url), request.headers.get("Authorization")))
        if request.method == "POST":
            return httpx.Response(200, json={"access_token": "k2"})
        return httpx.Response(200, json={"data": {}})

    provider = KickTokenProvider.from_settings(
        KickSettings(
            channel_id=1,
            access_token="k1",
            refresh_token="kr",
            client_id="cid",
            client_secret="secret",
        ),
        client=_http(handler),
    )

    assert await provider.validate_token("k1") is True
    assert await provider.refresh() == "k2"
    assert seen[0] == ("GET", "https://api.kick.com/public/v1/public-key", "Bearer k1")
    assert seen[1][:2] == ("POST", "https://id.kick.com/oauth/token")


def test_lease_without_expiry_never_expires() -> None:
    assert TokenLease(access_token="x").expired() is False
