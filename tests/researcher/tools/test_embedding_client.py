"""
Tests for the embeddings client.

HTTP is served by ``httpx.MockTransport``; no network access.
"""

import json

import httpx
import pytest

from libs.common.settings import Settings
from researcher.errors import EmbeddingError
from researcher.tools.embedding_client import MAX_INPUT_CHARS, EmbeddingClient


def _client(handler, api_key="sk-test"):
    settings = Settings(app_env="test", openai_api_key=api_key)
    http_client = httpx.AsyncClient(
        base_url=settings.embedding_base_url,
        transport=httpx.MockTransport(handler),
    )
    return EmbeddingClient(settings=settings, http_client=http_client)


@pytest.mark.asyncio
async def test_embed_returns_vector():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

    client = _client(handler)
    vector = await client.embed("database choice")
    await client.aclose()

    assert vector == [0.1, 0.2, 0.3]
    assert seen["path"].endswith("/embeddings")
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "text-embedding-3-small"
    assert seen["body"]["input"] == "database choice"


@pytest.mark.asyncio
async def test_long_input_truncated():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"embedding": [1.0]}]})

    client = _client(handler)
    await client.embed("x" * (MAX_INPUT_CHARS + 500))

    assert len(seen["body"]["input"]) == MAX_INPUT_CHARS


@pytest.mark.asyncio
async def test_missing_api_key_raises():
    client = _client(lambda request: httpx.Response(200), api_key=None)

    with pytest.raises(EmbeddingError):
        await client.embed("database choice")


@pytest.mark.asyncio
async def test_empty_text_raises():
    client = _client(lambda request: httpx.Response(200))

    with pytest.raises(EmbeddingError):
        await client.embed("   ")


@pytest.mark.asyncio
async def test_http_error_raises_embedding_error():
    client = _client(lambda request: httpx.Response(500, json={"error": "boom"}))

    with pytest.raises(EmbeddingError):
        await client.embed("database choice")


@pytest.mark.asyncio
async def test_malformed_response_raises_embedding_error():
    client = _client(lambda request: httpx.Response(200, json={"data": []}))

    with pytest.raises(EmbeddingError):
        await client.embed("database choice")


@pytest.mark.asyncio
async def test_transport_error_retried_once():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"data": [{"embedding": [0.5]}]})

    client = _client(handler)
    vector = await client.embed("database choice")

    assert vector == [0.5]
    assert attempts["count"] == 2
