"""
Tests for the stage audit trail and run snapshots.
"""

import json

from deepex.core.audit import (
    AuditRecorder,
    JsonlAuditSink,
    StageRecord,
    create_run_snapshot,
    save_run_snapshot,
)
from deepex.observability.probe import probe


def record(sequence: int, stage: str = "refiner", run_id: str = "r1") -> StageRecord:
    return StageRecord(run_id=run_id, sequence=sequence, stage=stage, pipeline="deep", output="text")


class TestJsonlSink:
    """Append-only JSONL files per run."""

    def test_appends_one_line_per_record(self, tmp_path):
        """Test records land in run_<id>.jsonl in order."""
        sink = JsonlAuditSink(tmp_path / "audit")

        sink.append(record(1, "decomposition"))
        sink.append(record(2, "primary_solver"))

        lines = sink.path_for("r1").read_text().splitlines()
        assert [json.loads(line)["stage"] for line in lines] == ["decomposition", "primary_solver"]


class TestAuditRecorder:
    """Background writes."""

    async def test_writes_in_background(self, tmp_path):
        """Test drain waits for queued writes."""
        sink = JsonlAuditSink(tmp_path)
        recorder = AuditRecorder(sink)

        recorder.record(record(1))
        recorder.record(record(2))
        await recorder.drain()

        assert recorder.pending == 0
        assert len(sink.path_for("r1").read_text().splitlines()) == 2

    async def test_sink_failure_is_contained(self):
        """Test a failing sink is logged and does not raise."""

        class BrokenSink:
            def append(self, record):
                raise OSError("disk full")

        recorder = AuditRecorder(BrokenSink())
        recorder.record(record(1))

        await recorder.drain()

        assert recorder.pending == 0

    async def test_default_sink_discards(self):
        """Test a recorder without a sink accepts records."""
        recorder = AuditRecorder()
        recorder.record(record(1))

        await recorder.drain()


class TestSnapshots:
    """Per-run snapshot documents."""

    def test_snapshot_includes_probe_timings(self):
        """Test probe timings for the run are summarised."""
        with probe("stage.decomposition", "snap-1"):
            pass

        snapshot = create_run_snapshot(
            "snap-1", "q", mode="deep", stages=["decomposition"], confidence=81, additional_data={"escalated": False}
        )

        assert snapshot["timings_ms"]["stage.decomposition"]["success"] is True
        assert snapshot["metadata"]["total_operations"] == 1
        assert snapshot["confidence"] == 81
        assert snapshot["escalated"] is False

    def test_save_snapshot(self, tmp_path):
        """Test snapshots are written as run_<id>_snapshot.json."""
        path = save_run_snapshot(create_run_snapshot("snap-2", "q", outcome="checkpointed"), tmp_path)

        assert path.name == "run_snap-2_snapshot.json"
        assert json.loads(path.read_text())["outcome"] == "checkpointed"
