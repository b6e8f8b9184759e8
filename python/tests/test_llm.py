"""
LLM Client Tests - Ollama request shape and failure classification.

Uses httpx.MockTransport so no server is needed.
"""

import json

import httpx
import pytest

from arborist.errors import LlmRejectedError, LlmTransientError, SystemicError
from arborist.llm import OllamaClient


def _client(test_config, handler) -> OllamaClient:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url=test_config.llm_url
    )
    return OllamaClient(test_config, client=http)


class TestOllamaClient:

    @pytest.mark.asyncio
    async def test_complete_sends_generate_request(self, test_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "  A tax receipt.  ", "done": True})

        client = _client(test_config, handler)
        result = await client.complete("Summarize this", system="Be brief")
        await client.aclose()

        assert result == "A tax receipt."
        assert seen["path"] == "/api/generate"
        assert seen["body"] == {
            "model": test_config.llm_model,
            "prompt": "Summarize this",
            "stream": False,
            "system": "Be brief",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_statuses_are_transient(self, test_config, status):
        client = _client(test_config, lambda request: httpx.Response(status))

        with pytest.raises(LlmTransientError):
            await client.complete("x")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_client_error_is_rejected(self, test_config):
        client = _client(test_config, lambda request: httpx.Response(404, text="model not found"))

        with pytest.raises(LlmRejectedError, match="model not found"):
            await client.complete("x")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, test_config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(test_config, handler)
        with pytest.raises(LlmTransientError):
            await client.complete("x")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, test_config):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client = _client(test_config, handler)
        with pytest.raises(LlmTransientError):
            await client.complete("x")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_malformed_body_is_rejected(self, test_config):
        client = _client(test_config, lambda request: httpx.Response(200, json={"done": True}))

        with pytest.raises(LlmRejectedError):
            await client.complete("x")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_ping(self, test_config):
        client = _client(test_config, lambda request: httpx.Response(200, json={"models": []}))
        await client.ping()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_ping_unreachable_is_systemic(self, test_config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(test_config, handler)
        with pytest.raises(SystemicError):
            await client.ping()
        await client.aclose()
