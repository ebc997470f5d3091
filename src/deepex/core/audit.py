"""
Audit trail for pipeline runs.

Each completed stage produces a ``StageRecord`` that is appended to a sink in
the background; a failed write is logged and never affects the run. Run
snapshots combine the probe timings of a run into one JSON document.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from ..observability.logging import get_logger
from ..observability.probe import get_run_metrics

logger = get_logger(__name__)


class StageRecord(BaseModel):
    run_id: str
    sequence: int
    stage: str
    pipeline: str
    success: bool = True
    duration_ms: float = 0.0
    output_chars: int = 0
    output: str = ""
    recorded_at: float = Field(default_factory=time.time)


class AuditSink(Protocol):
    def append(self, record: StageRecord) -> None: ...


class NullAuditSink:
    def append(self, record: StageRecord) -> None:
        return None


class JsonlAuditSink:
    """One JSON object per line in ``<directory>/run_<run_id>.jsonl``."""

    def __init__(self, directory: Path | str = "artifacts"):
        self.directory = Path(directory)

    def path_for(self, run_id: str) -> Path:
        return self.directory / f"run_{run_id}.jsonl"

    def append(self, record: StageRecord) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with self.path_for(record.run_id).open("a", encoding="utf-8") as f:
            f.write(record.model_dump_json() + "\n")


class AuditRecorder:
    """Fire-and-forget writer in front of an ``AuditSink``."""

    def __init__(self, sink: AuditSink | None = None):
        self.sink = sink or NullAuditSink()
        self._pending: set[asyncio.Task] = set()

    async def _write(self, record: StageRecord) -> None:
        try:
            await asyncio.to_thread(self.sink.append, record)
        except Exception as e:
            logger.error(
                "Failed to write audit record", stage=record.stage, run=record.run_id, error=str(e)
            )

    def record(self, record: StageRecord) -> None:
        task = asyncio.create_task(self._write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every queued write to settle."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def create_run_snapshot(
    run_id: str,
    query: str,
    mode: str | None = None,
    stages: list[str] | None = None,
    confidence: int | None = None,
    outcome: str = "completed",
    additional_data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Create a snapshot of one invocation for audit purposes.

    Args:
        run_id: Run identifier
        query: Original query
        mode: Reasoning mode the run was routed to
        stages: Stages executed in this invocation, in order
        confidence: Final confidence score, when the run completed
        outcome: ``completed``, ``checkpointed`` or ``failed``
        additional_data: Extra fields merged into the snapshot

    Returns:
        Snapshot dictionary
    """
    timings = {
        op: {"duration_ms": data["duration_ms"], "success": data["success"]}
        for op, data in get_run_metrics(run_id).items()
    }
    snapshot = {
        "run_id": run_id,
        "query": query,
        "mode": mode,
        "stages": stages or [],
        "confidence": confidence,
        "outcome": outcome,
        "timings_ms": timings,
        "metadata": {
            "total_operations": len(timings),
            "total_duration_ms": sum(t["duration_ms"] for t in timings.values()),
            "failed_operations": sum(1 for t in timings.values() if not t["success"]),
        },
    }
    if additional_data:
        snapshot.update(additional_data)
    return snapshot


def save_run_snapshot(snapshot: dict[str, Any], artifacts_dir: Path | str = "artifacts") -> Path:
    artifacts_path = Path(artifacts_dir)
    artifacts_path.mkdir(parents=True, exist_ok=True)

    snapshot_file = artifacts_path / f"run_{snapshot['run_id']}_snapshot.json"
    snapshot_file.write_text(json.dumps(snapshot, indent=2, default=str))
    logger.info("Saved run snapshot", path=str(snapshot_file))
    return snapshot_file
