"""
Maps (pipeline step, effective complexity) to a model tier and sampling setup.

Lite handles JSON scoring and classification, Chat handles writing and
medium reasoning, Thinking is reserved for decomposition and solving on
harder queries.
"""

from enum import Enum

from ..clients.llm import ModelSpec, ModelTier
from ..observability.logging import get_logger
from .pipelines import StageID

logger = get_logger(__name__)


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_WEIGHTS = {"low": 0, "medium": 1, "high": 2}


def derive_complexity(complexity: str, stakes: str, uncertainty: str) -> Complexity:
    """Fold the three classifier levels into one tier (sum 0-1 low, 2-3 medium, 4-6 high)."""
    score = sum(_WEIGHTS.get(level, 1) for level in (complexity, stakes, uncertainty))
    if score <= 1:
        return Complexity.LOW
    if score <= 3:
        return Complexity.MEDIUM
    return Complexity.HIGH


def _lite(temperature: float) -> ModelSpec:
    return ModelSpec(ModelTier.LITE, temperature)


def _chat(temperature: float) -> ModelSpec:
    return ModelSpec(ModelTier.CHAT, temperature)


def _thinking(budget: int) -> ModelSpec:
    return ModelSpec(ModelTier.THINKING, enable_thinking=True, thinking_budget=budget)


def _flat(spec: ModelSpec) -> dict[Complexity, ModelSpec]:
    return dict.fromkeys(Complexity, spec)


_TABLE: dict[StageID, dict[Complexity, ModelSpec]] = {
    StageID.CLASSIFICATION: _flat(_chat(0.1)),
    StageID.INSTANT_ANSWER: {
        Complexity.LOW: _lite(0.3),
        Complexity.MEDIUM: _chat(0.3),
        Complexity.HIGH: _chat(0.4),
    },
    StageID.DECOMPOSITION: {
        Complexity.LOW: _lite(0.2),
        Complexity.MEDIUM: _chat(0.3),
        Complexity.HIGH: _thinking(1024),
    },
    StageID.PRIMARY_SOLVER: {
        Complexity.LOW: _chat(0.3),
        Complexity.MEDIUM: _thinking(2048),
        Complexity.HIGH: _thinking(4096),
    },
    StageID.FAST_CRITIC: {
        Complexity.LOW: _lite(0.1),
        Complexity.MEDIUM: _chat(0.2),
        Complexity.HIGH: _thinking(1024),
    },
    StageID.REFINER: _flat(_chat(0.3)),
    StageID.CONFIDENCE_GATE: _flat(_lite(0.1)),
    StageID.DEEP_DECOMPOSITION: {
        Complexity.LOW: _chat(0.3),
        Complexity.MEDIUM: _thinking(1024),
        Complexity.HIGH: _thinking(2048),
    },
    StageID.ULTRA_SOLVERS: {
        Complexity.LOW: _chat(0.3),
        Complexity.MEDIUM: _thinking(2048),
        Complexity.HIGH: _thinking(3072),
    },
    StageID.SKEPTIC_AGENT: {
        Complexity.LOW: _lite(0.2),
        Complexity.MEDIUM: _chat(0.3),
        Complexity.HIGH: _thinking(2048),
    },
    StageID.VERIFIER_AGENT: {
        Complexity.LOW: _lite(0.1),
        Complexity.MEDIUM: _chat(0.2),
        Complexity.HIGH: _thinking(2048),
    },
    StageID.SYNTHESIZER: {
        Complexity.LOW: _chat(0.3),
        Complexity.MEDIUM: _chat(0.4),
        Complexity.HIGH: _thinking(2048),
    },
    StageID.META_CRITIC: {
        Complexity.LOW: _lite(0.1),
        Complexity.MEDIUM: _lite(0.1),
        Complexity.HIGH: _chat(0.2),
    },
    StageID.RESYNTHESIS: _flat(_chat(0.4)),
    StageID.ULTRA_CONFIDENCE: _flat(_lite(0.1)),
}

_FALLBACK = _chat(0.3)


def select_model(step: StageID, complexity: Complexity) -> ModelSpec:
    spec = _TABLE.get(step, {}).get(complexity, _FALLBACK)
    logger.debug(
        "Model selected",
        step=step.value,
        complexity=complexity.value,
        tier=spec.tier.value,
        thinking_budget=spec.thinking_budget or "-",
    )
    return spec
