"""
Tests for the chat completions provider against a mocked HTTP transport.
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import FakeClock

from deepex.clients.credentials import CredentialPool
from deepex.clients.errors import UpstreamClientError
from deepex.clients.llm import ChatProvider, ModelSpec, ModelTier, parse_sse_line
from deepex.clients.request_client import ResilientClient, RetryPolicy
from deepex.config.settings import ProviderConfig

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def sse_body(*pieces: str) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": piece}, "finish_reason": None}]})
        for piece in pieces
    ]
    lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


def make_provider(handler, secrets=("key-1", "key-2")):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    pool = CredentialPool.from_secrets("llm", list(secrets), clock=FakeClock())
    client = ResilientClient("llm", pool, RetryPolicy(), sleep=AsyncMock(), rng=lambda: 0.5)
    return ChatProvider(http, client, ProviderConfig()), http


class TestParseSSELine:
    """Parsing of streamed completion lines."""

    def test_content_delta(self):
        """Test a data line yields its delta content."""
        line = 'data: {"choices":[{"delta":{"content":"Hi"},"finish_reason":null}]}'

        assert parse_sse_line(line) == ("Hi", False)

    def test_done_marker(self):
        """Test [DONE] ends the stream."""
        assert parse_sse_line("data: [DONE]") == ("", True)

    def test_stop_reason_ends_stream(self):
        """Test finish_reason=stop marks the final chunk."""
        line = 'data: {"choices":[{"delta":{"content":"."},"finish_reason":"stop"}]}'

        assert parse_sse_line(line) == (".", True)

    def test_noise_is_ignored(self):
        """Test comments, blanks and malformed JSON are skipped."""
        assert parse_sse_line(": ping") == ("", False)
        assert parse_sse_line("") == ("", False)
        assert parse_sse_line("data: {not json") == ("", False)


class TestPayload:
    """Request payload construction."""

    def test_chat_payload(self):
        """Test a chat-tier spec maps to the chat model without thinking fields."""
        provider, _ = make_provider(lambda r: httpx.Response(200))

        payload = provider.build_payload(MESSAGES, ModelSpec(temperature=0.7), stream=True)

        assert payload["model"] == "LongCat-Flash-Chat"
        assert payload["temperature"] == 0.7
        assert payload["stream"] is True
        assert "enable_thinking" not in payload

    def test_thinking_budget_raises_max_tokens(self):
        """Test max_tokens is lifted above the thinking budget."""
        provider, _ = make_provider(lambda r: httpx.Response(200))
        spec = ModelSpec(tier=ModelTier.THINKING, thinking_budget=8192, max_tokens=4096)

        payload = provider.build_payload(MESSAGES, spec, stream=False)

        assert payload["model"] == "LongCat-Flash-Thinking-2601"
        assert payload["enable_thinking"] is True
        assert payload["thinking_budget"] == 8192
        assert payload["max_tokens"] > 8192


class TestComplete:
    """Non-streaming completions."""

    async def test_complete_returns_message_content(self):
        """Test the reply content is returned and the key is sent as a bearer token."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["authorization"])
            return httpx.Response(200, json={"choices": [{"message": {"content": "Answer"}}]})

        provider, http = make_provider(handler)
        async with http:
            assert await provider.complete(MESSAGES, ModelSpec()) == "Answer"
        assert seen == ["Bearer key-1"]

    async def test_rate_limit_rotates_key(self):
        """Test a 429 retries with the next key."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["authorization"])
            if len(seen) == 1:
                return httpx.Response(429, text="too many")
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        provider, http = make_provider(handler)
        async with http:
            assert await provider.complete(MESSAGES, ModelSpec()) == "ok"
        assert seen == ["Bearer key-1", "Bearer key-2"]

    async def test_bad_request_propagates(self):
        """Test a 400 surfaces as UpstreamClientError."""
        provider, http = make_provider(lambda r: httpx.Response(400, text="bad model"))

        async with http:
            with pytest.raises(UpstreamClientError) as exc_info:
                await provider.complete(MESSAGES, ModelSpec())
        assert exc_info.value.status_code == 400


class TestStream:
    """Streamed completions."""

    async def test_stream_yields_deltas(self):
        """Test SSE deltas are yielded in order."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, content=sse_body("Hel", "lo", "!"))

        provider, http = make_provider(handler)
        async with http:
            chunks = [c async for c in provider.stream(MESSAGES, ModelSpec())]
        assert "".join(chunks) == "Hello!"

    async def test_empty_stream_falls_back_to_completion(self):
        """Test streams with no content fall back to a plain completion."""
        modes = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            modes.append(body["stream"])
            if body["stream"]:
                return httpx.Response(200, content=b"data: [DONE]\n\n")
            return httpx.Response(200, json={"choices": [{"message": {"content": "fallback"}}]})

        provider, http = make_provider(handler)
        async with http:
            chunks = [c async for c in provider.stream(MESSAGES, ModelSpec())]
        assert chunks == ["fallback"]
        assert modes[-1] is False
        assert modes.count(True) == 3
