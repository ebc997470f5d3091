"""
Tests for the intake stages: web search, image analysis and image generation,
plus classification side effects.
"""

import base64
import json
from unittest.mock import AsyncMock, MagicMock

from conftest import FakeChatProvider, intent_json

from deepex.clients.errors import UpstreamExhaustedError
from deepex.clients.search import SearchResult, Source, WebPage
from deepex.config.settings import FanOutConfig, PipelineConfig, SearchConfig, Settings, VisionConfig
from deepex.core.artifacts import CriticReport
from deepex.core.engine import ImageInput, ReasonRequest, ReasoningEngine
from deepex.core.events import EventChannel
from deepex.core.fanout import FanOutExecutor
from deepex.core.model_selector import Complexity
from deepex.core.pipelines import StageID
from deepex.core.runtime_patterns import TimeBudget
from deepex.core.stages import StageServices, escalation_reason, load_solutions
from deepex.core.state_machine import PipelineRun, StageContext


def intake_settings() -> Settings:
    return Settings(
        pipeline=PipelineConfig(time_budget=100.0),
        fanout=FanOutConfig(stagger=0.0, task_timeout=5.0),
        search=SearchConfig(enabled=True, max_queries=2, results_per_query=4),
        vision=VisionConfig(enabled=True),
    )


def search_result(*urls: str) -> SearchResult:
    pages = [WebPage(name=f"Page {u}", url=u, snippet=f"about {u}") for u in urls]
    return SearchResult(sources=[Source(title=p.name, url=p.url, snippet=p.snippet) for p in pages], raw_results=pages)


def instant_replies(**intent) -> dict:
    return {"classifier": intent_json("instant", **intent), "instant": "Short answer."}


async def run(provider, settings, request, search=None, vision=None):
    services = StageServices(
        provider=provider,
        fanout=FanOutExecutor(provider, stagger=0.0),
        search=search,
        vision=vision,
        settings=settings,
    )
    engine = ReasoningEngine(services, settings)
    channel = EventChannel()
    await engine.run(request, channel)
    return [e async for e in channel.events()]


def artifacts_for(events, layer):
    return [e["artifact"] for e in events if e["type"] == "layer_artifact" and e["layer"] == layer]


class TestClassification:
    """Classification side effects."""

    async def test_complexity_drives_model_choice(self, test_settings):
        """Test high stakes and uncertainty select the high-complexity models."""
        provider = FakeChatProvider(
            {
                "classifier": intent_json("instant", complexity="high", stakes="high", uncertainty="high"),
                "instant": "ok",
            }
        )

        events = await run(provider, test_settings, ReasonRequest(query="q"))

        mode = [e for e in events if e["type"] == "mode_selected"][0]
        assert mode["complexity"] == Complexity.HIGH.value
        assert provider.specs["instant"].temperature == 0.4

    async def test_classification_event_carries_intent(self, test_settings):
        """Test the classification event exposes the parsed intent."""
        provider = FakeChatProvider(instant_replies(domain="finance"))

        events = await run(provider, test_settings, ReasonRequest(query="q"))

        assert events[0]["type"] == "layer_start"
        classification = [e for e in events if e["type"] == "classification"][0]
        assert classification["intent"]["domain"] == "finance"

    async def test_history_reaches_classifier(self, test_settings):
        """Test prior turns are included in the classification prompt."""
        provider = FakeChatProvider(instant_replies())
        request = ReasonRequest(query="and now?", conversation=[{"role": "user", "content": "about Rust"}])

        await run(provider, test_settings, request)

        assert "user: about Rust" in provider.prompts["classifier"]


class TestWebSearch:
    """Web search during intake."""

    async def test_search_runs_capped_queries_and_dedupes(self):
        """Test at most max_queries searches run and duplicate URLs are merged."""
        search = MagicMock()
        search.search = AsyncMock(side_effect=[search_result("u1", "u2"), search_result("u2", "u3")])
        provider = FakeChatProvider(
            instant_replies(needs_web_search=True, search_queries=["one", "two", "three"])
        )

        events = await run(provider, intake_settings(), ReasonRequest(query="q"), search=search)

        assert search.search.await_count == 2
        search.search.assert_any_await("one", count=4)
        artifact = artifacts_for(events, "web_search")[0]
        assert [s["url"] for s in artifact["sources"]] == ["u1", "u2", "u3"]
        assert "WEB SEARCH RESULTS" in provider.prompts["instant"]
        final = events[-1]
        assert final["type"] == "final_complete"
        assert len(final["sources"]) == 3

    async def test_query_itself_used_when_no_queries(self):
        """Test the user query is searched when the classifier gave no queries."""
        search = MagicMock()
        search.search = AsyncMock(return_value=search_result("u1"))
        provider = FakeChatProvider(instant_replies(needs_web_search=True))

        await run(provider, intake_settings(), ReasonRequest(query="latest news on X"), search=search)

        search.search.assert_awaited_once_with("latest news on X", count=4)

    async def test_heuristic_triggers_search(self):
        """Test time-sensitive wording searches even without the classifier asking."""
        search = MagicMock()
        search.search = AsyncMock(return_value=SearchResult())
        provider = FakeChatProvider(instant_replies(domain="technology"))

        await run(provider, intake_settings(), ReasonRequest(query="What is the latest Python release?"), search=search)

        search.search.assert_awaited_once()

    async def test_no_search_when_disabled(self, test_settings):
        """Test search is skipped when disabled in settings."""
        search = MagicMock()
        search.search = AsyncMock()
        provider = FakeChatProvider(instant_replies(needs_web_search=True))

        await run(provider, test_settings, ReasonRequest(query="q"), search=search)

        search.search.assert_not_awaited()


class TestVision:
    """Image analysis and generation."""

    async def test_image_description_feeds_later_stages(self):
        """Test the description is appended to the query seen by the answering stage."""
        vision = MagicMock()
        vision.analyze = AsyncMock(return_value="A whiteboard with a sequence diagram.")
        provider = FakeChatProvider(instant_replies())
        request = ReasonRequest(query="Explain this", image=ImageInput(data="QUJD", mime_type="image/png"))

        events = await run(provider, intake_settings(), request, vision=vision)

        vision.analyze.assert_awaited_once_with("QUJD", "image/png", "Explain this")
        assert "[Attached image description]" in provider.prompts["instant"]
        assert artifacts_for(events, "vision_analysis")[0]["description"].startswith("A whiteboard")

    async def test_vision_failure_is_not_fatal(self):
        """Test a failed analysis lets the run continue without a description."""
        vision = MagicMock()
        vision.analyze = AsyncMock(side_effect=UpstreamExhaustedError("vision gave up", provider="vision"))
        provider = FakeChatProvider(instant_replies())
        request = ReasonRequest(query="Explain this", image=ImageInput(data="QUJD"))

        events = await run(provider, intake_settings(), request, vision=vision)

        assert events[-1]["type"] == "final_complete"
        assert "[Attached image description]" not in provider.prompts["instant"]

    async def test_image_generation_emits_base64(self):
        """Test a generated image is emitted as a base64 artifact."""
        vision = MagicMock()
        vision.generate = AsyncMock(return_value=b"PNGDATA")
        provider = FakeChatProvider(
            instant_replies(wants_image_generation=True, image_generation_prompt="a lighthouse at dusk")
        )

        events = await run(provider, intake_settings(), ReasonRequest(query="draw"), vision=vision)

        artifact = artifacts_for(events, "image_generation")[0]
        assert base64.b64decode(artifact["image"]) == b"PNGDATA"
        assert artifact["prompt"] == "a lighthouse at dusk"
        vision.generate.assert_awaited_once_with("a lighthouse at dusk")


class TestHelpers:
    """Stage helper functions."""

    def test_load_solutions_placeholders(self):
        """Test missing or unreadable solver outputs become placeholders."""
        pipeline_run = PipelineRun(query="q")
        ctx = StageContext(run=pipeline_run, channel=EventChannel(), budget=TimeBudget(10.0))
        pipeline_run.store(StageID.ULTRA_SOLVERS, json.dumps({"solver_a_standard": "A", "solver_b_pessimist": ""}))

        assert load_solutions(ctx) == ["A", "[solver_b_pessimist unavailable]", "[solver_c_creative unavailable]"]

        pipeline_run.store(StageID.ULTRA_SOLVERS, "not json")
        assert load_solutions(ctx)[0] == "[solver_a_standard unavailable]"

    def test_escalation_reason(self):
        """Test the reason names both triggers when both apply."""
        reason = escalation_reason(CriticReport(missing_angles=["a", "b"]), 60, 70)

        assert reason == "confidence 60 below 70, 2 missing angle(s)"
