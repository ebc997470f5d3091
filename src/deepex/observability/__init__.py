"""
Observability for DeepEx: structured logging with run IDs, OpenTelemetry
tracing and metrics, and per-run performance probes.

Usage:
    >>> from deepex.observability.logging import get_logger, set_run_id
    >>> from deepex.observability.probe import probe
    >>>
    >>> logger = get_logger(__name__)
    >>> set_run_id("run-42")
    >>> with probe("stage.decomposition", "run-42"):
    ...     logger.info("Decomposing", query_length=120)

Configuration:
    - DEEPEX_OBSERVABILITY__LOG_LEVEL=INFO
    - DEEPEX_OBSERVABILITY__LOG_FORMAT=console|json
    - DEEPEX_OBSERVABILITY__OTLP_ENDPOINT=http://collector:4317
"""

from .logging import get_logger, setup_logging
from .metrics import get_metrics_collector, setup_metrics
from .tracing import get_tracer, trace_span

__all__ = [
    "get_logger",
    "setup_logging",
    "get_metrics_collector",
    "setup_metrics",
    "trace_span",
    "get_tracer",
]
