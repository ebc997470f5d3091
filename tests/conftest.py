"""
Global pytest configuration and fixtures for test isolation.

Resets module-level observability state and cached settings between tests,
and provides a scripted chat provider for engine and stage tests.
"""

import json
import random
from collections.abc import Callable

import pytest

from deepex.clients.llm import ModelSpec
from deepex.config.settings import FanOutConfig, PipelineConfig, SearchConfig, Settings, VisionConfig

# Markers that identify each stage's system prompt
ROLE_MARKERS = {
    "classifier": "You are the problem characterizer",
    "instant": "Instant mode",
    "decomposer": "You are the problem decomposer",
    "primary_solver": "You are the primary solver",
    "critic": "You are the critic.",
    "refiner": "You are the refiner",
    "confidence": "Rate how confident",
    "deep_decomposer": "You are the deep decomposer",
    "solver_a": "You are Solver A",
    "solver_b": "You are Solver B",
    "solver_c": "You are Solver C",
    "skeptic": "You are the skeptic",
    "verifier": "You are the verifier",
    "synthesizer": "You are the synthesizer",
    "meta_critic": "You are the final quality check",
    "resynthesis": "You are revising a synthesized answer",
}


def reset_all_global_state():
    """Reset global observability state and cached settings."""
    random.seed(1337)

    from deepex.config.container import get_container
    from deepex.config.settings import get_settings
    from deepex.observability import metrics, probe, tracing
    from deepex.observability.logging import clear_run_id

    tracing._tracing_manager = None
    metrics._metrics_collector = None
    probe._METRICS_STORE.clear()
    get_settings.cache_clear()
    get_container.cache_clear()
    clear_run_id()


@pytest.fixture(autouse=True)
def test_isolation():
    """Per-test isolation to ensure clean state for each test."""
    reset_all_global_state()
    yield
    reset_all_global_state()


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChatProvider:
    """Scripted stand-in for ``ChatProvider``.

    ``replies`` maps a role (see ``ROLE_MARKERS``) to a string, a list of
    strings consumed one per call, an exception to raise, or a callable
    returning one of those. ``delays`` advances ``clock`` when a role is called
    and ``chunk_delays`` advances it before each streamed chunk of that role.
    The last user prompt sent for each role is kept in ``prompts``.
    """

    def __init__(
        self,
        replies: dict[str, object],
        *,
        clock: FakeClock | None = None,
        delays: dict[str, float] | None = None,
        chunk_delays: dict[str, float] | None = None,
        chunk_size: int = 8,
    ):
        self.replies = dict(replies)
        self.clock = clock
        self.delays = delays or {}
        self.chunk_delays = chunk_delays or {}
        self.chunk_size = chunk_size
        self.calls: list[str] = []
        self.specs: dict[str, ModelSpec] = {}
        self.prompts: dict[str, str] = {}

    def _role(self, messages: list[dict[str, str]]) -> str:
        system = messages[0]["content"]
        matches = [role for role, marker in ROLE_MARKERS.items() if marker in system]
        assert len(matches) == 1, f"ambiguous or unknown system prompt: {matches}"
        return matches[0]

    def _reply(self, messages: list[dict[str, str]], spec: ModelSpec) -> str:
        role = self._role(messages)
        self.calls.append(role)
        self.specs[role] = spec
        self.prompts[role] = messages[-1]["content"]
        if self.clock is not None and role in self.delays:
            self.clock.advance(self.delays[role])

        reply = self.replies.get(role, "")
        if isinstance(reply, list):
            reply = reply.pop(0) if reply else ""
        if callable(reply) and not isinstance(reply, Exception):
            reply = reply()
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def complete(self, messages, spec):
        return self._reply(messages, spec)

    async def stream(self, messages, spec):
        reply = self._reply(messages, spec)
        delay = self.chunk_delays.get(self.calls[-1], 0.0)
        for i in range(0, len(reply), self.chunk_size):
            if self.clock is not None and delay:
                self.clock.advance(delay)
            yield reply[i : i + self.chunk_size]

    def called(self, role: str) -> int:
        return self.calls.count(role)


def intent_json(mode: str = "deep", **overrides) -> str:
    intent = {
        "domain": "strategy",
        "reasoning_modes": ["strategic"],
        "complexity": "medium",
        "stakes": "medium",
        "uncertainty": "medium",
        "recommended_mode": mode,
        "needs_web_search": False,
        "search_queries": [],
        "wants_image_generation": False,
    }
    intent.update(overrides)
    return json.dumps(intent)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_provider() -> Callable[..., FakeChatProvider]:
    return FakeChatProvider


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        pipeline=PipelineConfig(time_budget=100.0, synth_time_budget=50.0),
        fanout=FanOutConfig(stagger=0.0, task_timeout=5.0),
        search=SearchConfig(enabled=False),
        vision=VisionConfig(enabled=False),
    )
