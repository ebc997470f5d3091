"""
Reasoning engine: one invocation from request to terminal event.

An invocation either starts a run from a fresh request or resumes one from a
checkpoint. The engine walks the pipelines under a time budget and ends with
exactly one terminal event: the final answer, a checkpoint ``stage_data``, or
an ``error``.
"""

import asyncio
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..clients.errors import CheckpointError, DeepExError, InvocationError
from ..config.settings import Settings, get_settings
from ..observability.logging import clear_run_id, get_logger, set_run_id
from ..observability.metrics import get_metrics_collector
from ..observability.probe import clear_run_metrics
from ..observability.tracing import add_span_attributes, trace_span
from .artifacts import ReasoningMode, parse_confidence
from .audit import AuditRecorder, create_run_snapshot, save_run_snapshot
from .checkpoint import (
    DeepCheckpoint,
    UltraSolveCheckpoint,
    UltraSynthCheckpoint,
    build_checkpoint,
    is_resume_request,
    parse_resume,
    restore_run,
    serialize,
)
from .events import EventChannel
from .pipelines import PipelineKind, StageID, continuation_stage
from .runtime_patterns import TimeBudget
from .stages import StageServices, build_stages, build_transitions
from .state_machine import MachineOutcome, MachineResult, PipelineRun, StageContext, StateMachine

logger = get_logger(__name__)


class Turn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ImageInput(BaseModel):
    data: str = Field(..., min_length=1, description="Base64-encoded image")
    mime_type: str = Field("image/jpeg", pattern=r"^image/[\w.+-]+$")


class ReasonRequest(BaseModel):
    """A fresh reasoning request."""

    query: str = Field(..., min_length=1)
    conversation: list[Turn] = Field(default_factory=list)
    mode_override: ReasoningMode | None = None
    image: ImageInput | None = None
    run_id: str | None = Field(None, max_length=64)

    @field_validator("query")
    @classmethod
    def strip_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must not be blank")
        return v


Invocation = ReasonRequest | DeepCheckpoint | UltraSolveCheckpoint | UltraSynthCheckpoint


def parse_invocation(payload: Any, max_query_length: int = 20000) -> Invocation:
    """Turn a request body into a fresh request or a checkpoint.

    Raises:
        InvocationError: the body is not a valid request of either shape
    """
    if not isinstance(payload, dict):
        raise InvocationError("request body must be a JSON object")
    if is_resume_request(payload):
        try:
            return parse_resume(payload)
        except CheckpointError as e:
            raise InvocationError(str(e)) from e
    try:
        request = ReasonRequest.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        raise InvocationError(f"invalid request at {where or 'root'}: {first.get('msg')}") from e
    if len(request.query) > max_query_length:
        raise InvocationError(f"query exceeds {max_query_length} characters")
    return request


class ReasoningEngine:
    """Runs invocations against the fixed pipelines."""

    def __init__(
        self,
        services: StageServices,
        settings: Settings | None = None,
        recorder: AuditRecorder | None = None,
        *,
        snapshot_dir: Path | str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or services.settings or get_settings()
        self.services = services
        self.recorder = recorder or AuditRecorder()
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else None
        self._clock = clock
        self.machine = StateMachine(
            build_stages(services), build_transitions(self.settings.pipeline), self.recorder
        )

    def _new_run(self, request: ReasonRequest) -> PipelineRun:
        fields: dict[str, Any] = {}
        if request.run_id:
            fields["run_id"] = request.run_id
        return PipelineRun(
            query=request.query,
            conversation=[turn.model_dump() for turn in request.conversation],
            mode_override=request.mode_override,
            image=request.image.model_dump() if request.image else None,
            **fields,
        )

    def _prepare(self, invocation: Invocation) -> tuple[PipelineRun, PipelineKind, StageID | None]:
        if isinstance(invocation, ReasonRequest):
            return self._new_run(invocation), PipelineKind.INTAKE, None
        logger.info(
            "Resuming from checkpoint",
            kind=invocation.kind,
            resume_stage=invocation.resume_stage.value,
            artifacts=len(invocation.artifacts),
        )
        return restore_run(invocation), invocation.pipeline, invocation.resume_stage

    def _budget_for(self, kind: PipelineKind, resuming: bool) -> TimeBudget:
        pipeline = self.settings.pipeline
        if resuming and kind is PipelineKind.ULTRA_SYNTH:
            return TimeBudget(pipeline.synth_time_budget, self._clock)
        return TimeBudget(pipeline.time_budget, self._clock)

    @trace_span("engine.run")
    async def run(self, invocation: Invocation, channel: EventChannel) -> MachineResult | None:
        """Run one invocation. Always ends the channel with one terminal event."""
        run: PipelineRun | None = None
        try:
            run, kind, start = self._prepare(invocation)
            run.history_turns = self.settings.pipeline.history_turns
            run.history_chars = self.settings.pipeline.history_chars
            set_run_id(run.run_id)
            add_span_attributes(run_id=run.run_id, pipeline=kind.value)

            ctx = StageContext(run=run, channel=channel, budget=self._budget_for(kind, start is not None))
            result = await self.machine.run(ctx, kind, start)

            if result.outcome is MachineOutcome.HALTED:
                self._emit_checkpoint(ctx, result)
            else:
                self._finish(ctx, result)
            await self._snapshot(run, result)
            return result
        except asyncio.CancelledError:
            logger.warning("Invocation cancelled")
            raise
        except Exception as e:
            logger.exception("Reasoning run failed", error=f"{type(e).__name__}: {e}"[:300])
            channel.emit_error(str(e) if isinstance(e, DeepExError) else f"Internal error: {type(e).__name__}")
            if run is not None:
                await self._snapshot(run, None)
            return None
        finally:
            channel.close()
            clear_run_id()

    async def handle(self, payload: Any, channel: EventChannel) -> MachineResult | None:
        """Parse and run a request body; an unparseable body raises ``InvocationError``."""
        invocation = parse_invocation(payload, self.settings.api.max_query_length)
        return await self.run(invocation, channel)

    def _emit_checkpoint(self, ctx: StageContext, result: MachineResult) -> None:
        checkpoint = build_checkpoint(result.pipeline, result.resume_stage, ctx.run)
        ctx.channel.emit_checkpoint(continuation_stage(result.pipeline), serialize(checkpoint))
        get_metrics_collector().record_checkpoint(result.pipeline.value, result.resume_stage.value)
        logger.info(
            "Checkpoint emitted",
            kind=result.pipeline.value,
            resume_stage=result.resume_stage.value,
            elapsed_s=round(ctx.budget.elapsed(), 1),
        )

    def _finish(self, ctx: StageContext, result: MachineResult) -> None:
        run, channel, pipeline = ctx.run, ctx.channel, self.settings.pipeline

        if result.pipeline is PipelineKind.INSTANT:
            # Already streamed as final chunks
            channel.emit_final_complete(pipeline.instant_confidence, sources=run.sources)
            return

        if result.pipeline is PipelineKind.DEEP:
            answer = run.artifact(StageID.REFINER) or run.artifact(StageID.PRIMARY_SOLVER)
            confidence = parse_confidence(run.artifact(StageID.CONFIDENCE_GATE), pipeline.deep_confidence_default)
            chunk_size = pipeline.deep_chunk_size
        elif result.pipeline is PipelineKind.ULTRA_SYNTH:
            answer = run.artifact(StageID.RESYNTHESIS) or run.artifact(StageID.SYNTHESIZER)
            confidence = parse_confidence(run.artifact(StageID.ULTRA_CONFIDENCE), pipeline.ultra_confidence_default)
            chunk_size = pipeline.ultra_chunk_size
        else:
            raise DeepExError(f"run ended in non-terminal pipeline '{result.pipeline.value}'")

        channel.emit_final_start()
        for offset in range(0, len(answer), chunk_size):
            channel.emit_final_chunk(answer[offset : offset + chunk_size])
        channel.emit_final_complete(
            confidence.score,
            assumptions=confidence.assumptions,
            uncertainty_notes=confidence.uncertainty_notes,
            sources=run.sources,
        )
        logger.info(
            "Run complete",
            pipeline=result.pipeline.value,
            confidence=confidence.score,
            answer_chars=len(answer),
            escalated=run.escalated,
        )

    async def _snapshot(self, run: PipelineRun, result: MachineResult | None) -> None:
        if self.snapshot_dir is None:
            clear_run_metrics(run.run_id)
            return
        if result is None:
            outcome = "failed"
        elif result.outcome is MachineOutcome.HALTED:
            outcome = "checkpointed"
        else:
            outcome = "completed"
        scored = run.artifact(StageID.ULTRA_CONFIDENCE) or run.artifact(StageID.CONFIDENCE_GATE)
        snapshot = create_run_snapshot(
            run.run_id,
            run.query,
            mode=run.mode.value if run.mode else None,
            stages=[stage.value for stage in result.executed] if result else [],
            confidence=parse_confidence(scored, 0).score if scored and outcome == "completed" else None,
            outcome=outcome,
            additional_data={"escalated": run.escalated, "pipeline": run.pipeline.value},
        )
        try:
            await asyncio.to_thread(save_run_snapshot, snapshot, self.snapshot_dir)
        except OSError as e:
            logger.error("Failed to save run snapshot", error=str(e))
        finally:
            clear_run_metrics(run.run_id)
