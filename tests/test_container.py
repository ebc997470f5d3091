"""
Tests for the dependency injection container.
"""

import pytest

from deepex.clients.errors import ConfigurationError
from deepex.clients.llm import ChatProvider
from deepex.clients.search import WebSearchClient
from deepex.config.container import Container, get_container, setup_container
from deepex.config.settings import AuditConfig, ProviderConfig, SearchConfig, Settings, VisionConfig
from deepex.core.audit import NullAuditSink
from deepex.core.engine import ReasoningEngine


def settings_with(**overrides) -> Settings:
    values = {
        "llm": ProviderConfig(key_env_prefix="DEEPEX_TEST_UNSET_LLM_KEY"),
        "search": SearchConfig(enabled=False),
        "vision": VisionConfig(enabled=False),
        "audit": AuditConfig(enabled=False),
    }
    values.update(overrides)
    return Settings(**values)


class TestContainer:
    """Service registration and lookup."""

    def test_factory_builds_once(self):
        """Test factory results are cached per container."""
        container = Container(settings_with())
        calls = []
        container.register_factory("thing", lambda c: calls.append(1) or object())

        assert container.get("thing") is container.get("thing")
        assert len(calls) == 1

    def test_singleton_wins(self):
        """Test singletons are returned before factories run."""
        container = Container(settings_with())
        marker = object()
        container.register_singleton("engine", marker)
        container.register_factory("engine", lambda c: pytest.fail("factory should not run"))

        assert container.get("engine") is marker

    def test_unknown_service_default(self):
        """Test unknown names return the default."""
        assert Container(settings_with()).get("missing", 42) == 42

    async def test_cleanup_closes_services(self):
        """Test services with aclose are closed on cleanup."""
        closed = []

        class Closeable:
            async def aclose(self):
                closed.append(True)

        container = Container(settings_with())
        container.register_factory("http_client", lambda c: Closeable())
        container.get("http_client")

        await container.cleanup()

        assert closed == [True]


class TestSetupContainer:
    """Default wiring from settings."""

    def test_no_llm_keys(self):
        """Test a missing LLM pool makes the engine unavailable."""
        container = setup_container(settings_with())

        assert container.get("llm_pool") is None
        with pytest.raises(ConfigurationError):
            container.get("engine")

    async def test_engine_wiring(self):
        """Test explicit keys produce a full engine with optional clients left out."""
        container = setup_container(settings_with(llm=ProviderConfig(api_keys=["k1", "k2"])))

        engine = container.get("engine")

        assert isinstance(engine, ReasoningEngine)
        assert isinstance(engine.services.provider, ChatProvider)
        assert engine.services.search is None
        assert engine.services.vision is None
        assert engine.snapshot_dir is None
        assert isinstance(container.get("audit_recorder").sink, NullAuditSink)
        assert container.credential_counts() == {"llm": 2, "search": 0, "vision": 0}
        await container.cleanup()

    async def test_search_client_with_keys(self):
        """Test search keys enable the search client."""
        container = setup_container(settings_with(search=SearchConfig(enabled=True, api_keys=["s1"])))

        assert isinstance(container.get("search_client"), WebSearchClient)
        assert container.credential_counts()["search"] == 1
        await container.cleanup()

    def test_get_container_is_cached(self):
        """Test the process-wide container is built once."""
        assert get_container() is get_container()
