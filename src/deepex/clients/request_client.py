"""
Resilient request layer shared by every upstream client.

Each attempt binds one credential from the pool and one wall-clock timeout.
The retry loop is a bounded tenacity ``AsyncRetrying`` driven by a per-call
``RetryLedger``:

- rate limited: penalize the credential, rotate, short pause; not counted
  against ``max_attempts`` but bounded by ``max_raw_attempts``
- transient 5xx / network / stall: penalize, exponential backoff with jitter
- empty success: rotate and retry up to ``max_empty_retries``
- other 4xx: fail immediately

Streams retry only the opening of the stream and its first content chunk.
Once content has been handed to the caller, a stall or transport failure ends
the stream and the partial content stands.
"""

import asyncio
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception

from ..config.settings import ResilienceConfig
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.tracing import trace_span
from .credentials import CredentialPool, CredentialSlot
from .errors import (
    EmptyResponseError,
    RateLimitedError,
    StreamStalledError,
    TransientUpstreamError,
    UpstreamClientError,
    UpstreamError,
    UpstreamExhaustedError,
)
from .streams import StallGuardedStream

logger = get_logger(__name__)

T = TypeVar("T")

SendFn = Callable[[CredentialSlot], Awaitable[Any]]
OpenStreamFn = Callable[[CredentialSlot], AsyncIterator[str]]
SleepFn = Callable[[float], Awaitable[None]]


def jittered(seconds: float, ratio: float = 0.3, rng: Callable[[], float] = random.random) -> float:
    """Spread ``seconds`` uniformly by +/- ``ratio``."""
    if seconds <= 0:
        return 0.0
    variance = seconds * ratio
    return max(0.0, seconds + (rng() * 2 - 1) * variance)


class FailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    NETWORK = "network"
    STALLED = "stalled"
    EMPTY = "empty"


_COUNTED = {FailureKind.TRANSIENT, FailureKind.NETWORK, FailureKind.STALLED}


def failure_kind(exc: BaseException) -> FailureKind | None:
    """Classify a failed attempt; ``None`` means it must not be retried."""
    if isinstance(exc, (UpstreamClientError, UpstreamExhaustedError)):
        return None
    if isinstance(exc, RateLimitedError):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, EmptyResponseError):
        return FailureKind.EMPTY
    if isinstance(exc, StreamStalledError):
        return FailureKind.STALLED
    if isinstance(exc, TransientUpstreamError):
        return FailureKind.TRANSIENT
    if isinstance(exc, Exception):
        return FailureKind.NETWORK
    return None


@dataclass(frozen=True)
class RetryPolicy:
    request_timeout: float = 45.0
    stall_timeout: float = 30.0
    max_attempts: int = 5
    max_raw_attempts: int = 20
    max_empty_retries: int = 2
    backoff_schedule: tuple[float, ...] = (1.0, 2.0, 4.0, 8.0, 12.0)
    jitter: float = 0.3
    rate_limit_pause: float = 1.0
    rate_limit_cooldown: float = 60.0
    error_cooldown: float = 30.0

    @classmethod
    def from_config(cls, config: ResilienceConfig, **overrides) -> "RetryPolicy":
        values = config.model_dump()
        values["backoff_schedule"] = tuple(values["backoff_schedule"])
        values.update(overrides)
        return cls(**values)

    def backoff(self, counted_failures: int) -> float:
        index = min(max(counted_failures, 1), len(self.backoff_schedule)) - 1
        return self.backoff_schedule[index]


@dataclass
class RetryLedger:
    """Attempt bookkeeping for a single logical call."""

    raw_attempts: int = 0
    counted_failures: int = 0
    rate_limited: int = 0
    empty_responses: int = 0
    last_failure: FailureKind | None = None

    def record(self, kind: FailureKind) -> None:
        self.raw_attempts += 1
        self.last_failure = kind
        if kind is FailureKind.RATE_LIMITED:
            self.rate_limited += 1
        elif kind is FailureKind.EMPTY:
            self.empty_responses += 1
        if kind in _COUNTED:
            self.counted_failures += 1


class ResilientClient:
    """Runs upstream requests with credential rotation and bounded retries."""

    def __init__(
        self,
        name: str,
        pool: CredentialPool,
        policy: RetryPolicy | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.name = name
        self.pool = pool
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng
        self._metrics = get_metrics_collector()

    def _retrying(self, ledger: RetryLedger) -> AsyncRetrying:
        policy = self.policy

        def after(retry_state: RetryCallState) -> None:
            kind = failure_kind(retry_state.outcome.exception())
            if kind is not None:
                ledger.record(kind)

        def wait(retry_state: RetryCallState) -> float:
            if ledger.last_failure is FailureKind.RATE_LIMITED:
                return jittered(policy.rate_limit_pause, policy.jitter, self._rng)
            if ledger.last_failure is FailureKind.EMPTY:
                return 0.0
            return jittered(policy.backoff(ledger.counted_failures), policy.jitter, self._rng)

        def stop(retry_state: RetryCallState) -> bool:
            return (
                ledger.counted_failures >= policy.max_attempts
                or ledger.raw_attempts >= policy.max_raw_attempts
                or ledger.empty_responses > policy.max_empty_retries
            )

        return AsyncRetrying(
            retry=retry_if_exception(lambda exc: failure_kind(exc) is not None),
            after=after,
            wait=wait,
            stop=stop,
            sleep=self._sleep,
        )

    def _on_failure(self, slot: CredentialSlot, exc: BaseException) -> None:
        kind = failure_kind(exc)
        if kind is FailureKind.RATE_LIMITED:
            self.pool.report_failure(slot.id, self.policy.rate_limit_cooldown)
        elif kind in _COUNTED:
            self.pool.report_failure(slot.id, self.policy.error_cooldown)
        outcome = kind.value if kind else "fatal"
        self._metrics.record_upstream_attempt(self.name, outcome)
        logger.warning(
            "Upstream attempt failed",
            provider=self.name,
            slot=slot.id,
            outcome=outcome,
            error=f"{type(exc).__name__}: {exc}"[:300],
        )

    def _on_success(self, slot: CredentialSlot) -> None:
        self.pool.report_success(slot.id)
        self._metrics.record_upstream_attempt(self.name, "success")

    async def _attempt(self, send: SendFn, ledger: RetryLedger) -> Any:
        slot = self.pool.select()
        try:
            result = await asyncio.wait_for(send(slot), self.policy.request_timeout)
            if (
                isinstance(result, str)
                and not result.strip()
                and ledger.empty_responses < self.policy.max_empty_retries
            ):
                raise EmptyResponseError(f"{self.name} returned no content", provider=self.name)
        except Exception as exc:
            self._on_failure(slot, exc)
            raise
        self._on_success(slot)
        return result

    def _exhausted(self, ledger: RetryLedger, last: BaseException | None) -> UpstreamExhaustedError:
        return UpstreamExhaustedError(
            f"{self.name} gave up after {ledger.raw_attempts} attempts "
            f"({ledger.rate_limited} rate limited): {last}",
            provider=self.name,
        )

    @trace_span("request_client.call")
    async def call(self, send: SendFn, *, lookup: bool = False, empty: Any = "") -> Any:
        """Run ``send`` until it succeeds or the retry ceiling is reached.

        Lookups give back ``empty`` when the ceiling is reached; anything else
        raises ``UpstreamExhaustedError``. Non-retriable errors always propagate.
        """
        ledger = RetryLedger()
        result: Any = empty
        try:
            async for attempt in self._retrying(ledger):
                with attempt:
                    result = await self._attempt(send, ledger)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            if lookup:
                logger.warning(
                    "Lookup exhausted, continuing without result",
                    provider=self.name,
                    attempts=ledger.raw_attempts,
                )
                return empty
            raise self._exhausted(ledger, last) from last
        return result

    async def _open(self, open_stream: OpenStreamFn) -> tuple[CredentialSlot, StallGuardedStream, str]:
        slot = self.pool.select()
        guarded = StallGuardedStream(open_stream(slot), self.policy.stall_timeout, provider=self.name)
        try:
            timeout: float | None = self.policy.request_timeout
            while True:
                try:
                    chunk = await guarded.next(timeout)
                except StopAsyncIteration:
                    raise EmptyResponseError(
                        f"{self.name} stream ended without content", provider=self.name
                    ) from None
                if chunk:
                    return slot, guarded, chunk
                timeout = None
        except asyncio.CancelledError:
            await guarded.cancel()
            raise
        except Exception as exc:
            await guarded.cancel()
            self._on_failure(slot, exc)
            raise

    async def stream(
        self, open_stream: OpenStreamFn, *, fallback: SendFn | None = None
    ) -> AsyncIterator[str]:
        """Yield text chunks from a streamed request.

        When every attempt ends without content, ``fallback`` (a non-streaming
        send) is tried through ``call()`` as a last resort.
        """
        ledger = RetryLedger()
        try:
            async for attempt in self._retrying(ledger):
                with attempt:
                    slot, guarded, first = await self._open(open_stream)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            if isinstance(last, EmptyResponseError) and fallback is not None:
                logger.warning("Stream kept coming back empty, falling back", provider=self.name)
                text = await self.call(fallback)
                if text:
                    yield text
                return
            raise self._exhausted(ledger, last) from last

        # Retrying only ends without RetryError after a successful open
        try:
            yield first
            while True:
                try:
                    chunk = await guarded.next()
                except StopAsyncIteration:
                    break
                except (UpstreamError, httpx.HTTPError, OSError) as exc:
                    logger.warning(
                        "Stream interrupted after content, keeping partial result",
                        provider=self.name,
                        chunks=guarded.chunks_received,
                        error=f"{type(exc).__name__}: {exc}"[:300],
                    )
                    break
                if chunk:
                    yield chunk
            self._on_success(slot)
        finally:
            await guarded.cancel()
