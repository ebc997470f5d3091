"""
Tests for the resilient request layer: rotation, retry accounting and
streamed requests.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import FakeClock

from deepex.clients.credentials import CredentialPool
from deepex.clients.errors import (
    EmptyResponseError,
    RateLimitedError,
    StreamStalledError,
    TransientUpstreamError,
    UpstreamClientError,
    UpstreamExhaustedError,
)
from deepex.clients.request_client import (
    FailureKind,
    ResilientClient,
    RetryLedger,
    RetryPolicy,
    failure_kind,
    jittered,
)
from deepex.config.settings import ResilienceConfig


def make_client(secrets=("k1", "k2"), **policy):
    pool = CredentialPool.from_secrets("llm", list(secrets), clock=FakeClock())
    sleep = AsyncMock()
    client = ResilientClient(
        "llm",
        pool,
        RetryPolicy(backoff_schedule=(1.0, 2.0, 4.0, 8.0), **policy),
        sleep=sleep,
        rng=lambda: 0.5,
    )
    return client, pool, sleep


class ScriptedSend:
    """Plays back outcomes per attempt and records which slot was used."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.slots: list[str] = []

    async def __call__(self, slot):
        self.slots.append(slot.id)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def collect(stream) -> list[str]:
    return [chunk async for chunk in stream]


class TestHelpers:
    """Classification and backoff helpers."""

    def test_failure_kinds(self):
        """Test each upstream error maps to its retry class."""
        assert failure_kind(RateLimitedError("x")) is FailureKind.RATE_LIMITED
        assert failure_kind(TransientUpstreamError("x")) is FailureKind.TRANSIENT
        assert failure_kind(StreamStalledError("x")) is FailureKind.STALLED
        assert failure_kind(EmptyResponseError("x")) is FailureKind.EMPTY
        assert failure_kind(httpx.ConnectError("x")) is FailureKind.NETWORK
        assert failure_kind(UpstreamClientError("x")) is None
        assert failure_kind(UpstreamExhaustedError("x")) is None

    def test_jitter_bounds(self):
        """Test jitter stays within the configured ratio."""
        assert jittered(10.0, 0.3, rng=lambda: 0.0) == pytest.approx(7.0)
        assert jittered(10.0, 0.3, rng=lambda: 1.0) == pytest.approx(13.0)
        assert jittered(0.0) == 0.0

    def test_backoff_clamps_to_schedule(self):
        """Test backoff uses the last entry once the schedule runs out."""
        policy = RetryPolicy(backoff_schedule=(1.0, 2.0))

        assert [policy.backoff(n) for n in (1, 2, 3, 9)] == [1.0, 2.0, 2.0, 2.0]

    def test_ledger_only_counts_real_failures(self):
        """Test rate limits and empty replies do not count toward max_attempts."""
        ledger = RetryLedger()
        for kind in (FailureKind.RATE_LIMITED, FailureKind.EMPTY, FailureKind.TRANSIENT):
            ledger.record(kind)

        assert ledger.raw_attempts == 3
        assert ledger.counted_failures == 1

    def test_policy_from_config(self):
        """Test overrides win over the shared resilience config."""
        policy = RetryPolicy.from_config(ResilienceConfig(), max_attempts=2, backoff_schedule=(5.0,))

        assert policy.max_attempts == 2
        assert policy.backoff_schedule == (5.0,)
        assert policy.request_timeout == 45.0


class TestCall:
    """Non-streaming calls."""

    async def test_success_first_try(self):
        """Test a good response returns without sleeping."""
        client, _, sleep = make_client()
        send = ScriptedSend("ok")

        assert await client.call(send) == "ok"
        sleep.assert_not_awaited()

    async def test_rate_limit_rotates_and_pauses(self):
        """Test a 429 penalizes the key and the retry uses the next one."""
        client, pool, sleep = make_client()
        send = ScriptedSend(RateLimitedError("slow down"), "ok")

        assert await client.call(send) == "ok"
        assert send.slots == ["llm-1", "llm-2"]
        assert pool.slots[0].is_penalized
        sleep.assert_awaited_once_with(1.0)

    async def test_rate_limits_do_not_consume_attempts(self):
        """Test rate-limited tries are not counted against max_attempts."""
        client, _, _ = make_client(max_attempts=1)
        send = ScriptedSend(RateLimitedError("a"), RateLimitedError("b"), "ok")

        assert await client.call(send) == "ok"
        assert len(send.slots) == 3

    async def test_raw_attempt_ceiling(self):
        """Test endless rate limiting stops at max_raw_attempts."""
        client, _, _ = make_client(max_raw_attempts=3)
        send = ScriptedSend(RateLimitedError("no"))

        with pytest.raises(UpstreamExhaustedError):
            await client.call(send)
        assert len(send.slots) == 3

    async def test_transient_failures_back_off_then_exhaust(self):
        """Test counted failures follow the backoff schedule up to max_attempts."""
        client, _, sleep = make_client(max_attempts=5)
        send = ScriptedSend(TransientUpstreamError("503"))

        with pytest.raises(UpstreamExhaustedError) as exc_info:
            await client.call(send)

        assert len(send.slots) == 5
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0, 8.0]
        assert exc_info.value.provider == "llm"

    async def test_client_error_is_not_retried(self):
        """Test a 400 propagates immediately."""
        client, _, sleep = make_client()
        send = ScriptedSend(UpstreamClientError("bad request", status_code=400))

        with pytest.raises(UpstreamClientError):
            await client.call(send)
        assert len(send.slots) == 1
        sleep.assert_not_awaited()

    async def test_lookup_returns_empty_when_exhausted(self):
        """Test lookups degrade to the empty value instead of raising."""
        client, _, _ = make_client(max_attempts=2)
        send = ScriptedSend(TransientUpstreamError("503"))

        assert await client.call(send, lookup=True, empty=[]) == []

    async def test_empty_replies_are_retried_then_accepted(self):
        """Test empty text is retried max_empty_retries times, then returned."""
        client, _, _ = make_client(max_empty_retries=2)
        send = ScriptedSend("")

        assert await client.call(send) == ""
        assert len(send.slots) == 3

    async def test_empty_then_content(self):
        """Test an empty reply rotates to another key."""
        client, _, _ = make_client()
        send = ScriptedSend("  ", "answer")

        assert await client.call(send) == "answer"
        assert send.slots == ["llm-1", "llm-2"]

    async def test_request_timeout_counts_as_failure(self):
        """Test an attempt that exceeds request_timeout is retried."""
        client, _, _ = make_client(request_timeout=0.01)
        calls = []

        async def send(slot):
            calls.append(slot.id)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return "late but fine"

        assert await client.call(send) == "late but fine"
        assert len(calls) == 2


class TestStream:
    """Streamed calls."""

    async def test_chunks_pass_through_and_blank_chunks_are_dropped(self):
        """Test leading blank chunks are skipped and content is yielded in order."""
        client, _, _ = make_client()

        async def source(slot):
            for chunk in ("", "Hel", "", "lo"):
                yield chunk

        assert await collect(client.stream(source)) == ["Hel", "lo"]

    async def test_open_failure_is_retried(self):
        """Test a failure before the first chunk retries on another key."""
        client, _, _ = make_client()
        opened = []

        async def source(slot):
            opened.append(slot.id)
            if len(opened) == 1:
                raise TransientUpstreamError("502")
            yield "ok"

        assert await collect(client.stream(source)) == ["ok"]
        assert opened == ["llm-1", "llm-2"]

    async def test_stall_before_first_chunk_is_retried(self):
        """Test a silent stream counts as a stall and is reopened."""
        client, _, _ = make_client(request_timeout=0.02)
        opened = []

        async def source(slot):
            opened.append(slot.id)
            if len(opened) == 1:
                await asyncio.sleep(1)
            yield "fresh"

        assert await collect(client.stream(source)) == ["fresh"]
        assert len(opened) == 2

    async def test_failure_after_content_keeps_partial(self):
        """Test a transport error mid-stream ends the stream with what arrived."""
        client, _, _ = make_client()

        async def source(slot):
            yield "partial "
            yield "answer"
            raise httpx.ReadError("connection reset")

        assert await collect(client.stream(source)) == ["partial ", "answer"]

    async def test_empty_streams_fall_back_to_plain_call(self):
        """Test the non-streaming fallback runs when streams never carry content."""
        client, _, _ = make_client(max_empty_retries=1)

        async def source(slot):
            if False:
                yield ""

        fallback = ScriptedSend("from fallback")

        assert await collect(client.stream(source, fallback=fallback)) == ["from fallback"]
        assert len(fallback.slots) == 1

    async def test_client_error_before_content_propagates(self):
        """Test a non-retriable error while opening surfaces as-is after one attempt."""
        client, _, sleep = make_client()
        opened = []

        async def source(slot):
            opened.append(slot.id)
            raise UpstreamClientError("bad request", status_code=400)
            yield ""

        with pytest.raises(UpstreamClientError):
            await collect(client.stream(source))
        assert opened == ["llm-1"]
        sleep.assert_not_awaited()

    async def test_exhausted_stream_raises(self):
        """Test repeated failures before content raise UpstreamExhaustedError."""
        client, _, _ = make_client(max_attempts=2)

        async def source(slot):
            raise TransientUpstreamError("500")
            yield ""

        with pytest.raises(UpstreamExhaustedError):
            await collect(client.stream(source))
