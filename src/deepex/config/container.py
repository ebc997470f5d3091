"""
Dependency injection container for managing application dependencies.

Credential pools, request clients and providers are built lazily from
settings and shared for the lifetime of the container; async resources
(the shared HTTP client) are closed on cleanup.
"""

from functools import lru_cache
from typing import Any

from ..clients.errors import ConfigurationError
from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        """Register a factory function for a service."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a singleton instance."""
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    async def cleanup(self) -> None:
        """Close every built service that has ``aclose``."""
        for name, service in self._services.items():
            if not hasattr(service, "aclose"):
                continue
            try:
                await service.aclose()
            except Exception as e:
                logger.error("Error closing service", service=name, error=str(e))

        self._services.clear()

    def credential_counts(self) -> dict[str, int]:
        counts = {}
        for provider in ("llm", "search", "vision"):
            pool = self.get(f"{provider}_pool")
            counts[provider] = len(pool) if pool is not None else 0
        return counts


def _optional_pool(name: str, build) -> Any:
    try:
        return build()
    except ConfigurationError as e:
        logger.warning("Credential pool not configured", pool=name, error=str(e))
        return None


def setup_container(settings: Settings | None = None) -> Container:
    """Setup container with default service factories."""
    container = Container(settings)

    def _http_client_factory(c: Container):
        import httpx

        return httpx.AsyncClient(
            timeout=httpx.Timeout(c.settings.resilience.request_timeout, connect=10.0),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        )

    def _llm_pool_factory(c: Container):
        from ..clients.credentials import CredentialPool, load_numbered

        llm = c.settings.llm
        return _optional_pool(
            "llm",
            lambda: CredentialPool.from_secrets("llm", llm.api_keys or load_numbered(llm.key_env_prefix)),
        )

    def _search_pool_factory(c: Container):
        from ..clients.credentials import CredentialPool, load_numbered

        search = c.settings.search
        if not search.enabled:
            return None
        return _optional_pool(
            "search",
            lambda: CredentialPool.from_secrets(
                "search", search.api_keys or load_numbered(search.key_env_prefix)
            ),
        )

    def _vision_pool_factory(c: Container):
        from ..clients.credentials import CredentialPool, load_account_pairs

        vision = c.settings.vision
        if not vision.enabled:
            return None
        return _optional_pool(
            "vision",
            lambda: CredentialPool(
                "vision", load_account_pairs(vision.account_env_prefix, vision.key_env_prefix)
            ),
        )

    def _chat_provider_factory(c: Container):
        from ..clients.llm import ChatProvider
        from ..clients.request_client import ResilientClient, RetryPolicy

        pool = c.get("llm_pool")
        if pool is None:
            raise ConfigurationError(
                f"no LLM credentials: set {c.settings.llm.key_env_prefix}_1.. or DEEPEX_LLM__API_KEYS"
            )
        client = ResilientClient("llm", pool, RetryPolicy.from_config(c.settings.resilience))
        return ChatProvider(c.get("http_client"), client, c.settings.llm)

    def _search_client_factory(c: Container):
        from ..clients.request_client import ResilientClient, RetryPolicy
        from ..clients.search import WebSearchClient

        pool = c.get("search_pool")
        if pool is None:
            return None
        search = c.settings.search
        policy = RetryPolicy.from_config(
            c.settings.resilience,
            request_timeout=search.request_timeout,
            max_attempts=search.max_attempts,
            backoff_schedule=tuple(search.backoff_schedule),
        )
        return WebSearchClient(c.get("http_client"), ResilientClient("search", pool, policy), search)

    def _vision_client_factory(c: Container):
        from ..clients.request_client import ResilientClient, RetryPolicy
        from ..clients.vision import VisionClient

        pool = c.get("vision_pool")
        if pool is None:
            return None
        vision = c.settings.vision
        policy = RetryPolicy.from_config(
            c.settings.resilience,
            request_timeout=vision.request_timeout,
            max_attempts=vision.max_attempts,
            backoff_schedule=tuple(vision.backoff_schedule),
        )
        return VisionClient(c.get("http_client"), ResilientClient("vision", pool, policy), vision)

    def _fanout_executor_factory(c: Container):
        from ..core.fanout import FanOutExecutor

        fanout = c.settings.fanout
        return FanOutExecutor(c.get("chat_provider"), stagger=fanout.stagger, result_cap=fanout.result_cap)

    def _audit_recorder_factory(c: Container):
        from ..core.audit import AuditRecorder, JsonlAuditSink, NullAuditSink

        audit = c.settings.audit
        return AuditRecorder(JsonlAuditSink(audit.directory) if audit.enabled else NullAuditSink())

    def _engine_factory(c: Container):
        from ..core.engine import ReasoningEngine
        from ..core.stages import StageServices

        services = StageServices(
            provider=c.get("chat_provider"),
            fanout=c.get("fanout_executor"),
            search=c.get("search_client"),
            vision=c.get("vision_client"),
            settings=c.settings,
        )
        audit = c.settings.audit
        return ReasoningEngine(
            services,
            c.settings,
            c.get("audit_recorder"),
            snapshot_dir=audit.directory if audit.enabled else None,
        )

    container.register_factory("http_client", _http_client_factory)
    container.register_factory("llm_pool", _llm_pool_factory)
    container.register_factory("search_pool", _search_pool_factory)
    container.register_factory("vision_pool", _vision_pool_factory)
    container.register_factory("chat_provider", _chat_provider_factory)
    container.register_factory("search_client", _search_client_factory)
    container.register_factory("vision_client", _vision_client_factory)
    container.register_factory("fanout_executor", _fanout_executor_factory)
    container.register_factory("audit_recorder", _audit_recorder_factory)
    container.register_factory("engine", _engine_factory)

    return container


@lru_cache
def get_container() -> Container:
    """Get cached container instance."""
    return setup_container()
