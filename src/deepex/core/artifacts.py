"""
Structured stage outputs and their tolerant parsers.

Models reply with JSON, sometimes wrapped in Markdown fences or surrounded by
prose. Each ``parse_*`` function extracts the object, validates it, and falls
back to a conservative default when that fails so the pipeline keeps going.
"""

import json
import math
import re
from enum import Enum
from typing import Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..observability.logging import get_logger

logger = get_logger(__name__)

Level = Literal["low", "medium", "high"]

M = TypeVar("M", bound=BaseModel)

_FENCE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.S)


class ReasoningMode(str, Enum):
    INSTANT = "instant"
    DEEP = "deep"
    ULTRA_DEEP = "ultra_deep"


class _Artifact(BaseModel):
    model_config = ConfigDict(extra="ignore")


class IntentMetadata(_Artifact):
    """Classification of the incoming query."""

    domain: str = "general"
    reasoning_modes: list[str] = Field(default_factory=lambda: ["meta"])
    complexity: Level = "medium"
    stakes: Level = "medium"
    uncertainty: Level = "medium"
    recommended_mode: ReasoningMode = ReasoningMode.DEEP
    parallelism_needed: bool = False
    needs_web_search: bool = False
    search_queries: list[str] = Field(default_factory=list)
    wants_image_generation: bool = False
    image_generation_prompt: str | None = None

    @field_validator("search_queries", mode="before")
    @classmethod
    def flatten_queries(cls, v):
        # Classifiers sometimes answer with {"query": ..., "count": ...} objects
        if not isinstance(v, list):
            return []
        queries = []
        for item in v:
            if isinstance(item, dict):
                item = item.get("query")
            if isinstance(item, str) and item.strip():
                queries.append(item.strip())
        return queries


class ProblemMap(_Artifact):
    facts: list[str] = Field(default_factory=list)
    intent: str = ""
    constraints: list[str] = Field(default_factory=list)
    unknowns: list[str] = Field(default_factory=list)
    output_type: str = "text"


class DeepProblemMap(ProblemMap):
    hidden_requirements: list[str] = Field(default_factory=list)
    edge_cases: list[str] = Field(default_factory=list)
    stakeholders: list[str] = Field(default_factory=list)
    recommended_approach: str = ""


class CriticReport(_Artifact):
    issues: list[str] = Field(default_factory=list)
    confidence_flags: list[str] = Field(default_factory=list)
    missing_angles: list[str] = Field(default_factory=list)


class SkepticReport(_Artifact):
    contradictions: list[str] = Field(default_factory=list)
    weak_points: list[str] = Field(default_factory=list)
    unresolved_questions: list[str] = Field(default_factory=list)


class VerificationReport(_Artifact):
    logical_flow_valid: bool = True
    assumption_issues: list[str] = Field(default_factory=list)
    consistency_issues: list[str] = Field(default_factory=list)
    overall_validity: Literal["valid", "partially_valid", "invalid"] = "partially_valid"


class MetaCritique(_Artifact):
    fully_answers_user: bool = True
    missing_elements: list[str] = Field(default_factory=list)
    quality_assessment: str = "Good"

    @property
    def needs_resynthesis(self) -> bool:
        return not self.fully_answers_user and bool(self.missing_elements)


class ConfidenceResult(_Artifact):
    score: int = 75
    assumptions: list[str] = Field(default_factory=list)
    uncertainty_notes: list[str] = Field(default_factory=list)

    @field_validator("score", mode="before")
    @classmethod
    def clamp_score(cls, v):
        score = float(v)
        if not math.isfinite(score):
            raise ValueError("score must be a finite number")
        return max(0, min(100, round(score)))


def extract_json(text: str) -> str:
    """Pull the JSON object out of a model reply."""
    text = text.strip()
    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    if not text.startswith("{"):
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            text = text[start : end + 1]
    return text


def parse_artifact(model: type[M], text: str, default: M) -> M:
    if not text or not text.strip():
        return default
    try:
        return model.model_validate(json.loads(extract_json(text)))
    except (ValueError, TypeError, ValidationError) as exc:
        logger.warning(
            "Unparseable stage output, using default",
            artifact=model.__name__,
            error=str(exc).splitlines()[0][:200],
        )
        return default


def parse_intent(text: str) -> IntentMetadata:
    return parse_artifact(IntentMetadata, text, IntentMetadata())


def parse_problem_map(text: str, query: str) -> ProblemMap:
    problem = parse_artifact(ProblemMap, text, ProblemMap(intent=query))
    if not problem.intent:
        problem.intent = query
    return problem


def parse_deep_problem_map(text: str, query: str) -> DeepProblemMap:
    problem = parse_artifact(DeepProblemMap, text, DeepProblemMap(intent=query))
    if not problem.intent:
        problem.intent = query
    return problem


def parse_critic(text: str) -> CriticReport:
    return parse_artifact(CriticReport, text, CriticReport())


def parse_skeptic(text: str) -> SkepticReport:
    return parse_artifact(SkepticReport, text, SkepticReport())


def parse_verification(text: str) -> VerificationReport:
    return parse_artifact(VerificationReport, text, VerificationReport())


def parse_meta_critique(text: str) -> MetaCritique:
    return parse_artifact(MetaCritique, text, MetaCritique())


def parse_confidence(text: str, default_score: int) -> ConfidenceResult:
    return parse_artifact(ConfidenceResult, text, ConfidenceResult(score=default_score))


def should_escalate(confidence: ConfidenceResult, critique: CriticReport, threshold: int = 70) -> bool:
    """Deep answers escalate when confidence is low or the critic saw missing angles."""
    return confidence.score < threshold or bool(critique.missing_angles)


def dump(artifact: BaseModel) -> str:
    return artifact.model_dump_json(indent=2)
