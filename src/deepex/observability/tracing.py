"""
OpenTelemetry tracing for the reasoning engine and its upstream clients.

Every span carries the current run id, so one reasoning run can be followed
across invocations (each resume is a separate root span with the same
``deepex.run_id``). Spans leave the process over OTLP only when an endpoint
is configured; until ``setup_tracing`` runs the tracer is a no-op.
"""

import asyncio
import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import NoOpTracer, Status, StatusCode, Tracer

from .logging import get_logger, get_run_id

logger = get_logger(__name__)

RUN_ID_ATTRIBUTE = "deepex.run_id"


def _attribute(value: Any) -> Any:
    return value if isinstance(value, bool | int | float | str) else str(value)


class TracingManager:
    """Owns the tracer provider and opens run-tagged spans."""

    def __init__(self, service_name: str = "deepex", service_version: str = "1.0.0"):
        self.service_name = service_name
        self.service_version = service_version
        self.tracer_provider: TracerProvider | None = None
        self.tracer: Tracer = NoOpTracer()

    @property
    def enabled(self) -> bool:
        return self.tracer_provider is not None

    def initialize(self, otlp_endpoint: str | None = None) -> None:
        if self.enabled:
            return
        self.tracer_provider = TracerProvider(
            resource=Resource.create({"service.name": self.service_name, "service.version": self.service_version})
        )
        if otlp_endpoint:
            self.tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
        trace.set_tracer_provider(self.tracer_provider)
        self.tracer = self.tracer_provider.get_tracer(self.service_name, self.service_version)
        logger.info("Tracing initialized", otlp_endpoint=otlp_endpoint or "-")

    @contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None):
        """Open a span tagged with the current run; errors mark it failed and propagate."""
        with self.tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
            run_id = get_run_id()
            if run_id:
                span.set_attribute(RUN_ID_ATTRIBUTE, run_id)
            for key, value in (attributes or {}).items():
                span.set_attribute(key, _attribute(value))
            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, f"{type(e).__name__}: {e}"[:200]))
                raise

    def shutdown(self) -> None:
        if self.tracer_provider is not None:
            self.tracer_provider.shutdown()
            self.tracer_provider = None
        self.tracer = NoOpTracer()


_tracing_manager: TracingManager | None = None


def setup_tracing(service_name: str, service_version: str, otlp_endpoint: str | None = None) -> TracingManager:
    global _tracing_manager
    _tracing_manager = TracingManager(service_name, service_version)
    _tracing_manager.initialize(otlp_endpoint)
    return _tracing_manager


def get_tracing_manager() -> TracingManager:
    global _tracing_manager
    if _tracing_manager is None:
        _tracing_manager = TracingManager()
    return _tracing_manager


def get_tracer() -> Tracer:
    return get_tracing_manager().tracer


def trace_span(name: str | None = None, attributes: dict[str, Any] | None = None):
    """Decorator wrapping a function (sync or async) in a span.

    Upstream clients use it on their entry points (``llm.complete``,
    ``search.query``, ...) and the engine on ``engine.run``.
    """

    def decorator(func: Callable) -> Callable:
        span_name = name or func.__qualname__
        span_attributes = {"code.function": func.__qualname__, "code.namespace": func.__module__, **(attributes or {})}

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with get_tracing_manager().span(span_name, span_attributes):
                    return await func(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with get_tracing_manager().span(span_name, span_attributes):
                return func(*args, **kwargs)

        return sync_wrapper

    return decorator


def add_span_attributes(**attributes: Any) -> None:
    """Tag the active span, if it is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        for key, value in attributes.items():
            span.set_attribute(f"deepex.{key}", _attribute(value))
