"""
Checkpoint/resume protocol.

A checkpoint is a tagged value: ``kind`` names the pipeline it came from and
``resume_stage`` the first stage still to run. It carries every artifact
produced so far plus the run metadata needed to rebuild the run. Resume
requests arrive as ``{"stage": "continue_<kind>", "checkpoint": {...}}``.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from ..clients.errors import CheckpointError
from ..observability.logging import get_logger
from .artifacts import ReasoningMode
from .model_selector import Complexity
from .pipelines import PIPELINES, PipelineKind, StageID, continuation_stage
from .state_machine import PipelineRun

logger = get_logger(__name__)

_STAGE_IDS = frozenset(stage.value for stage in StageID)


class RunMetadata(BaseModel):
    run_id: str
    query: str
    conversation: list[dict[str, str]] = Field(default_factory=list)
    search_context: str = ""
    sources: list[dict[str, Any]] = Field(default_factory=list)
    mode: ReasoningMode | None = None
    complexity: Complexity = Complexity.MEDIUM
    started_at: float
    log_sequence: int = Field(0, ge=0)
    escalated: bool = False

    @classmethod
    def from_run(cls, run: PipelineRun) -> "RunMetadata":
        return cls(
            run_id=run.run_id,
            query=run.query,
            conversation=run.conversation,
            search_context=run.search_context,
            sources=run.sources,
            mode=run.mode,
            complexity=run.complexity,
            started_at=run.started_at,
            log_sequence=run.log_sequence,
            escalated=run.escalated,
        )


class _CheckpointBase(BaseModel):
    resume_stage: StageID
    artifacts: dict[str, str] = Field(default_factory=dict)
    run_metadata: RunMetadata

    @field_validator("artifacts", mode="before")
    @classmethod
    def drop_unknown_artifacts(cls, v):
        if not isinstance(v, dict):
            return v
        unknown = [key for key in v if key not in _STAGE_IDS]
        if unknown:
            logger.warning("Ignoring unknown checkpoint artifacts", keys=",".join(map(str, unknown)))
        # Non-string artifacts are replaced later by the stage default
        return {k: val for k, val in v.items() if k in _STAGE_IDS and isinstance(val, str)}

    @model_validator(mode="after")
    def check_resume_stage(self):
        if self.resume_stage not in PIPELINES[self.pipeline].stages:
            raise ValueError(
                f"resume_stage '{self.resume_stage.value}' is not part of the "
                f"'{self.pipeline.value}' pipeline"
            )
        return self

    @property
    def pipeline(self) -> PipelineKind:
        return PipelineKind(self.kind)  # type: ignore[attr-defined]

    @property
    def continuation(self) -> str:
        return continuation_stage(self.pipeline)


class DeepCheckpoint(_CheckpointBase):
    kind: Literal["deep"] = "deep"


class UltraSolveCheckpoint(_CheckpointBase):
    kind: Literal["ultra_solve"] = "ultra_solve"


class UltraSynthCheckpoint(_CheckpointBase):
    kind: Literal["ultra_synth"] = "ultra_synth"


Checkpoint = Annotated[
    DeepCheckpoint | UltraSolveCheckpoint | UltraSynthCheckpoint,
    Field(discriminator="kind"),
]

_checkpoint_adapter: TypeAdapter = TypeAdapter(Checkpoint)


def build_checkpoint(kind: PipelineKind, resume_stage: StageID, run: PipelineRun) -> Checkpoint:
    fields = {
        "resume_stage": resume_stage,
        "artifacts": dict(run.artifacts),
        "run_metadata": RunMetadata.from_run(run),
    }
    match kind:
        case PipelineKind.DEEP:
            return DeepCheckpoint(**fields)
        case PipelineKind.ULTRA_SOLVE:
            return UltraSolveCheckpoint(**fields)
        case PipelineKind.ULTRA_SYNTH:
            return UltraSynthCheckpoint(**fields)
        case _:
            raise CheckpointError(f"pipeline '{kind.value}' is not checkpointable")


def restore_run(checkpoint: Checkpoint) -> PipelineRun:
    meta = checkpoint.run_metadata
    return PipelineRun(
        query=meta.query,
        run_id=meta.run_id,
        conversation=list(meta.conversation),
        started_at=meta.started_at,
        artifacts=dict(checkpoint.artifacts),
        log_sequence=meta.log_sequence,
        mode=meta.mode,
        pipeline=checkpoint.pipeline,
        complexity=meta.complexity,
        search_context=meta.search_context,
        sources=list(meta.sources),
        escalated=meta.escalated,
    )


def is_resume_request(payload: dict[str, Any]) -> bool:
    return "checkpoint" in payload or str(payload.get("stage", "")).startswith("continue_")


def parse_resume(payload: dict[str, Any]) -> Checkpoint:
    """Validate a resume request into its checkpoint variant.

    Raises:
        CheckpointError: the checkpoint is malformed or does not match ``stage``
    """
    stage = payload.get("stage")
    raw = payload.get("checkpoint")
    if not isinstance(raw, dict):
        raise CheckpointError("resume request is missing a checkpoint object")
    try:
        checkpoint = _checkpoint_adapter.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        raise CheckpointError(f"invalid checkpoint at {where or 'root'}: {first.get('msg')}") from e
    if stage != checkpoint.continuation:
        raise CheckpointError(
            f"stage '{stage}' does not match checkpoint kind '{checkpoint.kind}'"
        )
    return checkpoint


def serialize(checkpoint: Checkpoint) -> dict[str, Any]:
    return checkpoint.model_dump(mode="json")
