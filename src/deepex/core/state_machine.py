"""
State machine that walks the fixed reasoning pipelines.

Stages run in pipeline order; after each stage the invocation budget is
checked and, on checkpointable pipelines, the machine halts in front of the
next stage so the caller can package a checkpoint. Pipelines chain through
guarded transitions (routing after intake, escalation from deep to ultra,
ultra solve to ultra synth). A stage whose artifact is already present is
never executed again, which makes resuming a checkpoint idempotent.
"""

import inspect
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from .artifacts import ReasoningMode
from .audit import AuditRecorder, StageRecord
from .events import EventChannel
from .model_selector import Complexity
from .pipelines import PIPELINES, PipelineKind, StageID
from .runtime_patterns import TimeBudget

logger = get_logger(__name__)


@dataclass
class PipelineRun:
    """Mutable state of one reasoning run within one invocation."""

    query: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    conversation: list[dict[str, str]] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    artifacts: dict[str, str] = field(default_factory=dict)
    cursor: StageID | None = None
    log_sequence: int = 0
    mode: ReasoningMode | None = None
    mode_override: ReasoningMode | None = None
    pipeline: PipelineKind = PipelineKind.INTAKE
    complexity: Complexity = Complexity.MEDIUM
    search_context: str = ""
    sources: list[dict[str, Any]] = field(default_factory=list)
    image: dict[str, str] | None = None
    escalated: bool = False
    history_turns: int = 16
    history_chars: int = 2000

    def artifact(self, stage: StageID) -> str:
        return self.artifacts.get(stage.value, "")

    def has_artifact(self, stage: StageID) -> bool:
        return stage.value in self.artifacts

    def store(self, stage: StageID, output: str) -> None:
        self.artifacts[stage.value] = output

    def next_sequence(self) -> int:
        self.log_sequence += 1
        return self.log_sequence

    @property
    def working_query(self) -> str:
        """The query plus any image description gathered during intake."""
        description = self.artifact(StageID.VISION_ANALYSIS)
        if not description:
            return self.query
        return f"{self.query}\n\n[Attached image description]\n{description}"

    def history_messages(self) -> list[dict[str, str]]:
        recent = self.conversation[-self.history_turns :] if self.history_turns else []
        return [
            {"role": turn.get("role", "user"), "content": turn.get("content", "")[: self.history_chars]}
            for turn in recent
        ]

    @property
    def history_block(self) -> str:
        lines = [f"{m['role']}: {m['content']}" for m in self.history_messages()]
        return "\n\nConversation so far:\n" + "\n".join(lines) if lines else ""

    def messages(self, system: str, user: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": system},
            *self.history_messages(),
            {"role": "user", "content": user},
        ]


@dataclass
class StageContext:
    """Everything a stage sees while it executes."""

    run: PipelineRun
    channel: EventChannel
    budget: TimeBudget


class Stage(ABC):
    """One named step of a pipeline."""

    stage_id: StageID
    label: str = ""
    parallel_group: str | None = None

    @property
    def layer(self) -> str:
        return self.stage_id.value

    @abstractmethod
    async def execute(self, ctx: StageContext) -> str:
        """Run the stage and return its serialized artifact."""
        ...

    def should_execute(self, ctx: StageContext) -> bool:
        return True

    async def on_entry(self, ctx: StageContext) -> None:
        ctx.channel.emit_layer_start(self.layer, self.label, self.parallel_group)

    async def on_exit(self, ctx: StageContext, output: str) -> None:
        ctx.channel.emit_layer_complete(self.layer, self.label, self.parallel_group)

    def __str__(self) -> str:
        return f"Stage({self.stage_id.value})"


@dataclass
class Transition:
    """Pipeline transition with optional guard condition."""

    from_pipeline: PipelineKind
    to_pipeline: PipelineKind
    guard: Callable[[StageContext], bool] | None = None
    action: Callable[[StageContext], Awaitable[None] | None] | None = None

    def can_transition(self, ctx: StageContext) -> bool:
        if self.guard:
            return self.guard(ctx)
        return True

    async def execute_action(self, ctx: StageContext) -> None:
        if self.action:
            result = self.action(ctx)
            if inspect.isawaitable(result):
                await result


class MachineOutcome(str, Enum):
    COMPLETED = "completed"
    HALTED = "halted"


@dataclass(frozen=True)
class MachineResult:
    outcome: MachineOutcome
    pipeline: PipelineKind
    resume_stage: StageID | None = None
    executed: tuple[StageID, ...] = ()


class StateMachine:
    """Runs pipelines stage by stage and follows transitions between them."""

    def __init__(
        self,
        stages: list[Stage],
        transitions: list[Transition],
        recorder: AuditRecorder | None = None,
    ):
        self.stages: dict[StageID, Stage] = {stage.stage_id: stage for stage in stages}
        self.transitions = transitions
        self.recorder = recorder or AuditRecorder()
        self._metrics = get_metrics_collector()

        missing = [s for p in PIPELINES.values() for s in p.stages if s not in self.stages]
        if missing:
            raise ValueError(f"No stage registered for {', '.join(s.value for s in missing)}")

    def get_valid_transition(self, ctx: StageContext, from_pipeline: PipelineKind) -> Transition | None:
        for transition in self.transitions:
            if transition.from_pipeline is from_pipeline and transition.can_transition(ctx):
                return transition
        return None

    async def run(
        self, ctx: StageContext, kind: PipelineKind, start_at: StageID | None = None
    ) -> MachineResult:
        pipeline = PIPELINES[kind]
        start = start_at
        executed: list[StageID] = []

        while True:
            ctx.run.pipeline = pipeline.kind
            logger.info(
                "Entering pipeline",
                pipeline=pipeline.kind.value,
                start=(start or pipeline.stages[0]).value,
            )
            for stage_id in pipeline.stages_from(start):
                if await self._step(ctx, pipeline.kind, stage_id):
                    executed.append(stage_id)

                if pipeline.checkpointable and ctx.budget.exceeded():
                    next_stage = pipeline.next_stage(stage_id)
                    if next_stage is not None:
                        return self._halt(pipeline.kind, next_stage, executed)
            start = None

            transition = self.get_valid_transition(ctx, pipeline.kind)
            if transition is None:
                return MachineResult(MachineOutcome.COMPLETED, pipeline.kind, executed=tuple(executed))

            await transition.execute_action(ctx)
            target = PIPELINES[transition.to_pipeline]
            logger.info("Pipeline transition", source=pipeline.kind.value, target=target.kind.value)
            if target.checkpointable and ctx.budget.exceeded():
                return self._halt(target.kind, target.stages[0], executed)
            pipeline = target

    def _halt(self, kind: PipelineKind, stage: StageID, executed: list[StageID]) -> MachineResult:
        logger.info("Budget exceeded, halting", pipeline=kind.value, resume_stage=stage.value)
        return MachineResult(MachineOutcome.HALTED, kind, stage, tuple(executed))

    async def _step(self, ctx: StageContext, kind: PipelineKind, stage_id: StageID) -> bool:
        """Execute one stage unless it already ran or opts out. Returns True if it ran."""
        run = ctx.run
        stage = self.stages[stage_id]
        run.cursor = stage_id

        if run.has_artifact(stage_id):
            logger.debug("Stage already has an artifact, skipping", stage=stage_id.value)
            return False
        if not stage.should_execute(ctx):
            logger.debug("Stage not applicable, skipping", stage=stage_id.value)
            return False

        await stage.on_entry(ctx)
        started = time.perf_counter()
        success = False
        output = ""
        try:
            with probe(f"stage.{stage_id.value}", run.run_id, pipeline=kind.value):
                output = await stage.execute(ctx)
            success = True
        finally:
            duration = time.perf_counter() - started
            self._metrics.record_stage(stage_id.value, duration, success)
            self.recorder.record(
                StageRecord(
                    run_id=run.run_id,
                    sequence=run.next_sequence(),
                    stage=stage_id.value,
                    pipeline=kind.value,
                    success=success,
                    duration_ms=duration * 1000,
                    output_chars=len(output),
                    output=output,
                )
            )

        run.store(stage_id, output)
        await stage.on_exit(ctx, output)
        return True
