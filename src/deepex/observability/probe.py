"""
Performance probes: timed spans with structured logging and per-run timing
storage for audit snapshots.
"""

import contextlib
import time
from typing import Any

from .logging import get_logger
from .tracing import get_tracer

log = get_logger("deepex.probe")

# Per-run timings, consumed by the audit snapshot
_METRICS_STORE: dict[str, dict[str, Any]] = {}


@contextlib.contextmanager
def probe(op: str, run_id: str | None = None, **labels):
    """
    Performance probe context manager.

    Opens an OpenTelemetry span named ``op``, logs the duration on exit and,
    when ``run_id`` is given, keeps the timing for the run's audit snapshot.

    Args:
        op: Operation name (e.g., "stage.decomposition")
        run_id: Optional run ID for correlation
        **labels: Additional labels for the log line and span
    """
    start_time = time.perf_counter()
    ok = True
    error_type = None

    with get_tracer().start_as_current_span(op) as span:
        for key, value in labels.items():
            span.set_attribute(key, str(value))
        try:
            yield
        except Exception as e:
            ok = False
            error_type = type(e).__name__
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log.info(
                f"op={op} ok={str(ok).lower()}" + (f" error={error_type}" if error_type else ""),
                op=op,
                ms=duration_ms,
                **labels,
            )
            if run_id:
                _METRICS_STORE.setdefault(run_id, {})[op] = {
                    "duration_ms": duration_ms,
                    "success": ok,
                    "error_type": error_type,
                    "labels": labels,
                    "timestamp": time.time(),
                }


def get_run_metrics(run_id: str) -> dict[str, Any]:
    """Get all recorded timings for a run."""
    return _METRICS_STORE.get(run_id, {})


def clear_run_metrics(run_id: str) -> None:
    _METRICS_STORE.pop(run_id, None)
