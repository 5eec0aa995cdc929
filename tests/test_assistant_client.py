"""Tests for the assistant HTTP client using httpx.MockTransport."""
import json

import httpx
import pytest

from app.services.assistant_client import AssistantClient
from app.services.exceptions import NotFound, UpstreamUnavailable
from app.utils.parsing import Parsed, Unparseable


def _client(handler) -> AssistantClient:
    return AssistantClient(
        base_url="http://assistant.test/",
        api_key="secret",
        timeout=5,
        max_concurrent=2,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_chat_posts_to_workspace_route():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"textResponse": "hello", "id": "abc"})

    reply = await _client(handler).chat("acme", "Hi there")

    assert reply == "hello"
    request = seen[0]
    assert str(request.url) == "http://assistant.test/api/v1/workspace/acme/chat"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {"message": "Hi there", "mode": "query"}


@pytest.mark.asyncio
async def test_chat_falls_back_to_legacy_prefix():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path.startswith("/api/v1/"):
            return httpx.Response(404, json={"error": "no route"})
        return httpx.Response(200, json={"message": "legacy reply"})

    assert await _client(handler).chat("acme", "Hi") == "legacy reply"
    assert paths == ["/api/v1/workspace/acme/chat", "/api/workspace/acme/chat"]


@pytest.mark.asyncio
async def test_unknown_workspace_is_not_found():
    client = _client(lambda request: httpx.Response(404))
    with pytest.raises(NotFound):
        await client.chat("missing", "Hi")


@pytest.mark.asyncio
async def test_server_error_is_upstream_unavailable():
    client = _client(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(UpstreamUnavailable, match="HTTP 500"):
        await client.chat("acme", "Hi")


@pytest.mark.asyncio
async def test_connection_error_is_upstream_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamUnavailable) as excinfo:
        await _client(handler).chat("acme", "Hi")
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_timeout_is_upstream_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(UpstreamUnavailable, match="timed out"):
        await _client(handler).chat("acme", "Hi")


@pytest.mark.asyncio
async def test_query_json_parses_reply():
    body = {"textResponse": 'Here you go:\n```json\n[{"templateSlug": "a", "score": 6}]\n```'}
    client = _client(lambda request: httpx.Response(200, json=body))
    assert await client.query_json("acme", "score it") == Parsed([{"templateSlug": "a", "score": 6}])


@pytest.mark.asyncio
async def test_query_json_empty_reply_is_unparseable():
    client = _client(lambda request: httpx.Response(200, json={"textResponse": ""}))
    assert await client.query_json("acme", "score it") == Unparseable("")


@pytest.mark.asyncio
async def test_check_health():
    def healthy(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/auth"
        return httpx.Response(200, json={"authenticated": True})

    assert await _client(healthy).check_health() is True
    assert await _client(lambda request: httpx.Response(403)).check_health() is False


@pytest.mark.asyncio
async def test_check_health_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    assert await _client(handler).check_health() is False
