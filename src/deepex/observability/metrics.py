"""
OpenTelemetry metrics for pipeline stages, upstream attempts and fan-out branches.
"""

from opentelemetry.metrics import Counter as OTelCounter
from opentelemetry.metrics import Histogram, Meter, NoOpMeter

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, OTelCounter] = {}
        self._histograms: dict[str, Histogram] = {}

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self._counters["stage_runs_total"] = self.meter.create_counter(
            "deepex_stage_runs_total", description="Pipeline stages executed", unit="1"
        )
        self._histograms["stage_duration"] = self.meter.create_histogram(
            "deepex_stage_duration_seconds", description="Pipeline stage duration", unit="s"
        )
        self._counters["upstream_attempts_total"] = self.meter.create_counter(
            "deepex_upstream_attempts_total",
            description="Upstream request attempts by outcome",
            unit="1",
        )
        self._counters["fanout_tasks_total"] = self.meter.create_counter(
            "deepex_fanout_tasks_total", description="Fan-out branches by final status", unit="1"
        )
        self._counters["checkpoints_total"] = self.meter.create_counter(
            "deepex_checkpoints_total", description="Runs halted with a checkpoint", unit="1"
        )
        self._counters["escalations_total"] = self.meter.create_counter(
            "deepex_escalations_total", description="Deep runs escalated to ultra", unit="1"
        )

    def record_stage(self, stage: str, duration: float, success: bool) -> None:
        attributes = {"stage": stage, "success": str(success).lower()}
        self._counters["stage_runs_total"].add(1, attributes)
        self._histograms["stage_duration"].record(duration, attributes)

    def record_upstream_attempt(self, provider: str, outcome: str) -> None:
        self._counters["upstream_attempts_total"].add(
            1, {"provider": provider, "outcome": outcome}
        )

    def record_fanout_task(self, status: str) -> None:
        self._counters["fanout_tasks_total"].add(1, {"status": status})

    def record_checkpoint(self, kind: str, resume_stage: str) -> None:
        self._counters["checkpoints_total"].add(1, {"kind": kind, "resume_stage": resume_stage})

    def record_escalation(self) -> None:
        self._counters["escalations_total"].add(1)


# Global metrics collector instance
_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter) -> MetricsCollector:
    """Setup global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector, creating a no-op one on first use."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(NoOpMeter("deepex"))
    return _metrics_collector
