"""
OpenAI-compatible chat completions provider (httpx).

Thinking models take ``enable_thinking`` and ``thinking_budget``; the
provider keeps ``max_tokens`` above the thinking budget as the API requires.
"""

import json
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from ..config.settings import ProviderConfig
from ..observability.logging import get_logger
from ..observability.tracing import trace_span
from .credentials import CredentialSlot
from .errors import classify_status
from .request_client import ResilientClient

logger = get_logger(__name__)

Message = dict[str, str]


class ModelTier(str, Enum):
    LITE = "lite"
    CHAT = "chat"
    THINKING = "thinking"


@dataclass(frozen=True)
class ModelSpec:
    """Which model tier to call and how."""

    tier: ModelTier = ModelTier.CHAT
    temperature: float = 0.3
    enable_thinking: bool = False
    thinking_budget: int | None = None
    max_tokens: int | None = None


def parse_sse_line(line: str) -> tuple[str, bool]:
    """Parse one line of a streamed completion.

    Returns ``(content, done)``. Non-data lines and malformed JSON yield
    ``("", False)``.
    """
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return "", False
    data = stripped[len("data:") :].strip()
    if data == "[DONE]":
        return "", True
    try:
        chunk = json.loads(data)
        choice = (chunk.get("choices") or [{}])[0]
    except (ValueError, AttributeError, IndexError):
        return "", False
    content = (choice.get("delta") or {}).get("content") or ""
    return content, choice.get("finish_reason") == "stop"


class ChatProvider:
    """Chat completions over a rotated key pool."""

    provider_name = "llm"

    def __init__(self, http: httpx.AsyncClient, client: ResilientClient, config: ProviderConfig):
        self._http = http
        self._client = client
        self.config = config

    @property
    def url(self) -> str:
        return f"{self.config.base_url}/chat/completions"

    def model_name(self, tier: ModelTier) -> str:
        return {
            ModelTier.LITE: self.config.lite_model,
            ModelTier.CHAT: self.config.chat_model,
            ModelTier.THINKING: self.config.thinking_model,
        }[tier]

    def build_payload(self, messages: list[Message], spec: ModelSpec, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model_name(spec.tier),
            "messages": messages,
            "temperature": spec.temperature,
            "max_tokens": spec.max_tokens or self.config.max_tokens,
            "stream": stream,
        }
        if spec.enable_thinking or spec.tier is ModelTier.THINKING:
            budget = spec.thinking_budget or self.config.default_thinking_budget
            payload["enable_thinking"] = True
            payload["thinking_budget"] = budget
            if payload["max_tokens"] <= budget:
                payload["max_tokens"] = budget + 4096
        return payload

    def _headers(self, slot: CredentialSlot) -> dict[str, str]:
        return {"Authorization": f"Bearer {slot.secret}", "Content-Type": "application/json"}

    async def _post(self, payload: dict[str, Any], slot: CredentialSlot) -> str:
        response = await self._http.post(self.url, json=payload, headers=self._headers(slot))
        if response.status_code >= 400:
            raise classify_status(response.status_code, response.text, provider=self.provider_name)
        data = response.json()
        choices = data.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or ""

    async def _open(self, payload: dict[str, Any], slot: CredentialSlot) -> AsyncIterator[str]:
        async with self._http.stream(
            "POST", self.url, json=payload, headers=self._headers(slot)
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise classify_status(response.status_code, body, provider=self.provider_name)
            async for line in response.aiter_lines():
                content, done = parse_sse_line(line)
                if content:
                    yield content
                if done:
                    return

    @trace_span("llm.complete")
    async def complete(self, messages: list[Message], spec: ModelSpec) -> str:
        payload = self.build_payload(messages, spec, stream=False)
        logger.debug("Chat completion", model=payload["model"], messages=len(messages))
        return await self._client.call(lambda slot: self._post(payload, slot))

    async def stream(self, messages: list[Message], spec: ModelSpec) -> AsyncIterator[str]:
        payload = self.build_payload(messages, spec, stream=True)
        fallback_payload = {**payload, "stream": False}
        logger.debug("Chat stream", model=payload["model"], messages=len(messages))
        chunks = self._client.stream(
            lambda slot: self._open(payload, slot),
            fallback=lambda slot: self._post(fallback_payload, slot),
        )
        async with aclosing(chunks):
            async for chunk in chunks:
                yield chunk
