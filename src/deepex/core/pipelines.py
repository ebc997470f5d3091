"""
Stage identifiers and the fixed pipeline topology.
"""

from dataclasses import dataclass
from enum import Enum


class StageID(str, Enum):
    CLASSIFICATION = "classification"
    VISION_ANALYSIS = "vision_analysis"
    WEB_SEARCH = "web_search"
    IMAGE_GENERATION = "image_generation"
    INSTANT_ANSWER = "instant_answer"
    DECOMPOSITION = "decomposition"
    PRIMARY_SOLVER = "primary_solver"
    FAST_CRITIC = "fast_critic"
    REFINER = "refiner"
    CONFIDENCE_GATE = "confidence_gate"
    DEEP_DECOMPOSITION = "deep_decomposition"
    ULTRA_SOLVERS = "ultra_solvers"
    SKEPTIC_AGENT = "skeptic_agent"
    VERIFIER_AGENT = "verifier_agent"
    SYNTHESIZER = "synthesizer"
    META_CRITIC = "meta_critic"
    RESYNTHESIS = "resynthesis"
    ULTRA_CONFIDENCE = "ultra_confidence"


class PipelineKind(str, Enum):
    INTAKE = "intake"
    INSTANT = "instant"
    DEEP = "deep"
    ULTRA_SOLVE = "ultra_solve"
    ULTRA_SYNTH = "ultra_synth"


@dataclass(frozen=True)
class PipelineDef:
    kind: PipelineKind
    stages: tuple[StageID, ...]
    checkpointable: bool

    def index(self, stage: StageID) -> int:
        return self.stages.index(stage)

    def stages_from(self, stage: StageID | None) -> tuple[StageID, ...]:
        if stage is None:
            return self.stages
        return self.stages[self.index(stage) :]

    def next_stage(self, stage: StageID) -> StageID | None:
        position = self.index(stage) + 1
        return self.stages[position] if position < len(self.stages) else None


PIPELINES: dict[PipelineKind, PipelineDef] = {
    PipelineKind.INTAKE: PipelineDef(
        PipelineKind.INTAKE,
        (
            StageID.CLASSIFICATION,
            StageID.VISION_ANALYSIS,
            StageID.WEB_SEARCH,
            StageID.IMAGE_GENERATION,
        ),
        checkpointable=False,
    ),
    PipelineKind.INSTANT: PipelineDef(
        PipelineKind.INSTANT, (StageID.INSTANT_ANSWER,), checkpointable=False
    ),
    PipelineKind.DEEP: PipelineDef(
        PipelineKind.DEEP,
        (
            StageID.DECOMPOSITION,
            StageID.PRIMARY_SOLVER,
            StageID.FAST_CRITIC,
            StageID.REFINER,
            StageID.CONFIDENCE_GATE,
        ),
        checkpointable=True,
    ),
    PipelineKind.ULTRA_SOLVE: PipelineDef(
        PipelineKind.ULTRA_SOLVE,
        (StageID.DEEP_DECOMPOSITION, StageID.ULTRA_SOLVERS),
        checkpointable=True,
    ),
    PipelineKind.ULTRA_SYNTH: PipelineDef(
        PipelineKind.ULTRA_SYNTH,
        (
            StageID.SKEPTIC_AGENT,
            StageID.VERIFIER_AGENT,
            StageID.SYNTHESIZER,
            StageID.META_CRITIC,
            StageID.RESYNTHESIS,
            StageID.ULTRA_CONFIDENCE,
        ),
        checkpointable=True,
    ),
}


def continuation_stage(kind: PipelineKind) -> str:
    """Name of the ``stage`` field a resume request for ``kind`` carries."""
    return f"continue_{kind.value}"
