import json

import httpx
import pytest

from services.kick.api.chat import KickChatClient


def _client(handler) -> KickChatClient:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url=KickChatClient.BASE_URL
    )
    return KickChatClient(access_token="kick-token", channel_id=42, client=http)


@pytest.mark.asyncio
async def test_send_message_posts_payload() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"message_id": "m-1", "is_sent": True}})

    client = _client(handler)

    assert await client.send_message("hello") is True
    assert seen["url"] == "https://api.kick.com/public/v1/chat"
    assert seen["auth"] == "Bearer kick-token"
    assert seen["body"] == {
        "broadcaster_user_id": 42,
        "content": "hello",
        "reply_to_message_id": None,
        "type": "user",
    }


@pytest.mark.asyncio
async def test_top_level_id_is_accepted() -> None:
    client = _client(lambda request: httpx.Response(200, json={"id": 7}))

    assert await client.send_message("hello") is True


@pytest.mark.asyncio
async def test_http_error_returns_false() -> None:
    client = _client(lambda request: httpx.Response(401, text="unauthorized"))

    assert await client.send_message("hello") is False


@pytest.mark.asyncio
async def test_missing_message_id_returns_false() -> None:
    client = _client(lambda request: httpx.Response(200, json={"data": {}}))

    assert await client.send_message("hello") is False


@pytest.mark.asyncio
async def test_network_error_returns_false() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    client = _client(handler)

    assert await client.send_message("hello") is False


@pytest.mark.asyncio
async def test_blank_message_is_not_sent() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"id": 1})

    client = _client(handler)

    assert await client.send_message("   ") is False
    assert calls == []


def test_credentials_required() -> None:
    with pytest.raises(RuntimeError):
        KickChatClient(access_token="", channel_id=1)
