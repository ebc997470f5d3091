"""
Concrete reasoning stages and the transitions between pipelines.

Structured stages ask for JSON and fall back to their artifact default when
the reply does not parse. Streamed stages forward chunks as ``layer_chunk``
events and, on checkpointable pipelines, stop reading once the invocation
budget is spent, keeping what arrived so far.
"""

import asyncio
import base64
import json
from contextlib import aclosing
from dataclasses import dataclass, field

from ..clients.llm import ChatProvider, ModelSpec
from ..clients.search import (
    SearchResult,
    WebPage,
    WebSearchClient,
    build_search_context,
    dedupe_sources,
    should_search,
)
from ..clients.vision import VisionClient
from ..config.settings import PipelineConfig, Settings, get_settings
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from . import prompts
from .artifacts import (
    CriticReport,
    IntentMetadata,
    ReasoningMode,
    dump,
    parse_confidence,
    parse_critic,
    parse_deep_problem_map,
    parse_intent,
    parse_meta_critique,
    parse_problem_map,
    parse_skeptic,
    parse_verification,
    should_escalate,
)
from .fanout import FanOutExecutor, FanOutTask
from .model_selector import Complexity, derive_complexity, select_model
from .pipelines import PipelineKind, StageID
from .state_machine import Stage, StageContext, Transition

logger = get_logger(__name__)

SOLVER_LAYERS = ("solver_a_standard", "solver_b_pessimist", "solver_c_creative")
SOLVER_LABELS = {
    "solver_a_standard": "Solver A (standard)",
    "solver_b_pessimist": "Solver B (pessimist)",
    "solver_c_creative": "Solver C (creative)",
}


@dataclass
class StageServices:
    """Collaborators shared by all stages."""

    provider: ChatProvider
    fanout: FanOutExecutor
    search: WebSearchClient | None = None
    vision: VisionClient | None = None
    settings: Settings = field(default_factory=get_settings)


def intent_of(ctx: StageContext) -> IntentMetadata:
    return parse_intent(ctx.run.artifact(StageID.CLASSIFICATION))


def load_solutions(ctx: StageContext) -> list[str]:
    """Solver outputs in solver order; absent or unreadable entries become placeholders."""
    raw = ctx.run.artifact(StageID.ULTRA_SOLVERS)
    try:
        data = json.loads(raw) if raw else {}
    except ValueError:
        logger.warning("Unreadable solver artifact, using placeholders")
        data = {}
    if not isinstance(data, dict):
        data = {}
    return [
        value if isinstance(value := data.get(layer), str) and value else f"[{layer} unavailable]"
        for layer in SOLVER_LAYERS
    ]


class ModelStage(Stage):
    """A stage backed by the chat provider."""

    checkpointable = True

    def __init__(self, services: StageServices):
        self.services = services

    def spec(self, ctx: StageContext) -> ModelSpec:
        return select_model(self.stage_id, ctx.run.complexity)

    async def complete(self, ctx: StageContext, system: str, user: str) -> str:
        return await self.services.provider.complete(ctx.run.messages(system, user), self.spec(ctx))

    async def stream(self, ctx: StageContext, system: str, user: str) -> str:
        parts: list[str] = []
        chunks = self.services.provider.stream(ctx.run.messages(system, user), self.spec(ctx))
        async with aclosing(chunks):
            async for chunk in chunks:
                parts.append(chunk)
                ctx.channel.emit_layer_chunk(self.layer, chunk)
                if self.checkpointable and ctx.budget.exceeded():
                    logger.info("Budget reached mid-stream, keeping partial output", stage=self.layer)
                    break
        return "".join(parts)


# Intake


class ClassificationStage(ModelStage):
    stage_id = StageID.CLASSIFICATION
    label = "Classifying problem"
    checkpointable = False

    def spec(self, ctx: StageContext) -> ModelSpec:
        return select_model(self.stage_id, Complexity.MEDIUM)

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        text = await self.services.provider.complete(
            [
                {"role": "system", "content": prompts.CLASSIFIER_SYSTEM},
                {"role": "user", "content": prompts.classifier_user(run.query, run.history_block)},
            ],
            self.spec(ctx),
        )
        intent = parse_intent(text)
        run.complexity = derive_complexity(intent.complexity, intent.stakes, intent.uncertainty)
        run.mode = run.mode_override or intent.recommended_mode

        ctx.channel.emit_classification(intent.model_dump(mode="json"))
        ctx.channel.emit_mode_selected(run.mode.value, run.complexity.value)
        logger.info(
            "Query classified",
            domain=intent.domain,
            mode=run.mode.value,
            complexity=run.complexity.value,
            override=bool(run.mode_override),
        )
        return dump(intent)


class VisionAnalysisStage(Stage):
    stage_id = StageID.VISION_ANALYSIS
    label = "Analyzing image"

    def __init__(self, services: StageServices):
        self.services = services

    def should_execute(self, ctx: StageContext) -> bool:
        return bool(ctx.run.image) and self.services.vision is not None

    async def execute(self, ctx: StageContext) -> str:
        image = ctx.run.image or {}
        try:
            description = await self.services.vision.analyze(
                image.get("data", ""), image.get("mime_type", "image/jpeg"), ctx.run.query
            )
        except Exception as e:
            logger.warning("Image analysis failed, continuing without it", error=str(e)[:200])
            return ""
        ctx.channel.emit_layer_artifact(self.layer, {"description": description})
        return description


class WebSearchStage(Stage):
    stage_id = StageID.WEB_SEARCH
    label = "Searching the web"

    def __init__(self, services: StageServices):
        self.services = services

    def should_execute(self, ctx: StageContext) -> bool:
        if self.services.search is None or not self.services.settings.search.enabled:
            return False
        intent = intent_of(ctx)
        return intent.needs_web_search or should_search(ctx.run.query, intent.domain)

    async def execute(self, ctx: StageContext) -> str:
        config = self.services.settings.search
        queries = intent_of(ctx).search_queries[: config.max_queries] or [ctx.run.query]

        results: list[SearchResult] = await asyncio.gather(
            *(self.services.search.search(q, count=config.results_per_query) for q in queries)
        )
        pages: list[WebPage] = []
        seen: set[str] = set()
        for result in results:
            for page in result.raw_results:
                if page.url not in seen:
                    seen.add(page.url)
                    pages.append(page)
        sources = dedupe_sources([s for result in results for s in result.sources])

        ctx.run.search_context = build_search_context(pages)
        ctx.run.sources = [source.model_dump() for source in sources]
        ctx.channel.emit_layer_artifact(self.layer, {"queries": queries, "sources": ctx.run.sources})
        logger.info("Web search finished", queries=len(queries), sources=len(sources))
        return ctx.run.search_context


class ImageGenerationStage(Stage):
    stage_id = StageID.IMAGE_GENERATION
    label = "Generating image"

    def __init__(self, services: StageServices):
        self.services = services

    def should_execute(self, ctx: StageContext) -> bool:
        return self.services.vision is not None and intent_of(ctx).wants_image_generation

    async def execute(self, ctx: StageContext) -> str:
        prompt = intent_of(ctx).image_generation_prompt or ctx.run.query
        try:
            image = await self.services.vision.generate(prompt)
        except Exception as e:
            logger.warning("Image generation failed, skipping", error=str(e)[:200])
            return ""
        if not image:
            return ""
        ctx.channel.emit_layer_artifact(
            self.layer,
            {"image": base64.b64encode(image).decode("ascii"), "mime_type": "image/png", "prompt": prompt},
        )
        # The image itself is not kept in the run artifacts
        return prompt


# Instant


class InstantAnswerStage(ModelStage):
    stage_id = StageID.INSTANT_ANSWER
    label = "Answering"
    checkpointable = False

    async def on_entry(self, ctx: StageContext) -> None:
        ctx.channel.emit_final_start()

    async def on_exit(self, ctx: StageContext, output: str) -> None:
        return None

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        user = prompts.instant_user(run.working_query, run.search_context)
        parts: list[str] = []
        chunks = self.services.provider.stream(run.messages(prompts.INSTANT_SYSTEM, user), self.spec(ctx))
        async with aclosing(chunks):
            async for chunk in chunks:
                parts.append(chunk)
                ctx.channel.emit_final_chunk(chunk)
        return "".join(parts)


# Deep


class DecompositionStage(ModelStage):
    stage_id = StageID.DECOMPOSITION
    label = "Decomposing problem"

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        text = await self.complete(
            ctx,
            prompts.DECOMPOSITION_SYSTEM,
            prompts.decomposition_user(run.working_query, run.search_context),
        )
        problem = parse_problem_map(text, run.query)
        ctx.channel.emit_layer_artifact(self.layer, problem.model_dump())
        return dump(problem)


class PrimarySolverStage(ModelStage):
    stage_id = StageID.PRIMARY_SOLVER
    label = "Solving"

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        problem = parse_problem_map(run.artifact(StageID.DECOMPOSITION), run.query)
        return await self.stream(
            ctx,
            prompts.PRIMARY_SOLVER_SYSTEM,
            prompts.primary_solver_user(run.working_query, dump(problem), run.search_context),
        )


class FastCriticStage(ModelStage):
    stage_id = StageID.FAST_CRITIC
    label = "Critiquing"

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        problem = parse_problem_map(run.artifact(StageID.DECOMPOSITION), run.query)
        text = await self.complete(
            ctx,
            prompts.FAST_CRITIC_SYSTEM,
            prompts.critic_user(run.query, dump(problem), run.artifact(StageID.PRIMARY_SOLVER)),
        )
        report = parse_critic(text)
        ctx.channel.emit_layer_artifact(self.layer, report.model_dump())
        return dump(report)


class RefinerStage(ModelStage):
    stage_id = StageID.REFINER
    label = "Refining"

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        critique = parse_critic(run.artifact(StageID.FAST_CRITIC))
        return await self.stream(
            ctx,
            prompts.REFINER_SYSTEM,
            prompts.refiner_user(run.query, run.artifact(StageID.PRIMARY_SOLVER), dump(critique)),
        )


class ConfidenceGateStage(ModelStage):
    stage_id = StageID.CONFIDENCE_GATE
    label = "Scoring confidence"

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        answer = run.artifact(StageID.REFINER) or run.artifact(StageID.PRIMARY_SOLVER)
        text = await self.complete(ctx, prompts.CONFIDENCE_SYSTEM, prompts.confidence_user(run.query, answer))
        confidence = parse_confidence(text, self.services.settings.pipeline.deep_confidence_default)
        ctx.channel.emit_layer_artifact(self.layer, confidence.model_dump())
        return dump(confidence)


# Ultra-Deep


class DeepDecompositionStage(ModelStage):
    stage_id = StageID.DEEP_DECOMPOSITION
    label = "Deep decomposition"

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        text = await self.complete(
            ctx,
            prompts.DEEP_DECOMPOSITION_SYSTEM,
            prompts.decomposition_user(run.working_query, run.search_context),
        )
        problem = parse_deep_problem_map(text, run.query)
        ctx.channel.emit_layer_artifact(self.layer, problem.model_dump())
        return dump(problem)


class UltraSolversStage(ModelStage):
    """Three perspectives solved in parallel through the fan-out executor."""

    stage_id = StageID.ULTRA_SOLVERS
    label = "Parallel solvers"
    parallel_group = "ultra_solvers"

    async def on_entry(self, ctx: StageContext) -> None:
        ctx.channel.emit_parallel_start(self.parallel_group, list(SOLVER_LAYERS))
        for layer in SOLVER_LAYERS:
            ctx.channel.emit_layer_start(layer, SOLVER_LABELS[layer], self.parallel_group)

    async def on_exit(self, ctx: StageContext, output: str) -> None:
        for layer in SOLVER_LAYERS:
            ctx.channel.emit_layer_complete(layer, SOLVER_LABELS[layer], self.parallel_group)

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        problem = parse_deep_problem_map(run.artifact(StageID.DEEP_DECOMPOSITION), run.query)
        user = prompts.solver_user(run.working_query, dump(problem), run.search_context)
        spec = self.spec(ctx)
        tasks = [
            FanOutTask(id=layer, messages=run.messages(prompts.SOLVER_SYSTEMS[layer], user), spec=spec)
            for layer in SOLVER_LAYERS
        ]
        results = await self.services.fanout.run_parallel(
            tasks,
            self.services.settings.fanout.task_timeout,
            on_chunk=ctx.channel.emit_layer_chunk,
            should_stop=ctx.budget.exceeded,
        )
        return json.dumps(dict(zip(SOLVER_LAYERS, results, strict=True)))


class SkepticAgentStage(ModelStage):
    stage_id = StageID.SKEPTIC_AGENT
    label = "Skeptic review"

    async def execute(self, ctx: StageContext) -> str:
        text = await self.complete(
            ctx, prompts.SKEPTIC_SYSTEM, prompts.skeptic_user(ctx.run.query, load_solutions(ctx))
        )
        report = parse_skeptic(text)
        ctx.channel.emit_layer_artifact(self.layer, report.model_dump())
        return dump(report)


class VerifierAgentStage(ModelStage):
    stage_id = StageID.VERIFIER_AGENT
    label = "Verifying logic"

    async def execute(self, ctx: StageContext) -> str:
        skeptic = parse_skeptic(ctx.run.artifact(StageID.SKEPTIC_AGENT))
        text = await self.complete(
            ctx, prompts.VERIFIER_SYSTEM, prompts.verifier_user(load_solutions(ctx), dump(skeptic))
        )
        report = parse_verification(text)
        ctx.channel.emit_layer_artifact(self.layer, report.model_dump())
        return dump(report)


class SynthesizerStage(ModelStage):
    stage_id = StageID.SYNTHESIZER
    label = "Synthesizing"

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        solutions = load_solutions(ctx)
        skeptic = parse_skeptic(run.artifact(StageID.SKEPTIC_AGENT))
        verification = parse_verification(run.artifact(StageID.VERIFIER_AGENT))
        answer = await self.stream(
            ctx,
            prompts.SYNTHESIZER_SYSTEM,
            prompts.synthesizer_user(run.query, solutions, dump(skeptic), dump(verification), run.search_context),
        )
        if answer.strip():
            return answer

        fallback = next((s for s in solutions if s.strip() and not s.startswith("[")), "")
        logger.warning("Synthesizer produced nothing, using first solver output", has_fallback=bool(fallback))
        return fallback


class MetaCriticStage(ModelStage):
    stage_id = StageID.META_CRITIC
    label = "Final review"

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        text = await self.complete(
            ctx, prompts.META_CRITIC_SYSTEM, prompts.meta_critic_user(run.query, run.artifact(StageID.SYNTHESIZER))
        )
        critique = parse_meta_critique(text)
        ctx.channel.emit_layer_artifact(self.layer, critique.model_dump())
        return dump(critique)


class ResynthesisStage(ModelStage):
    """Runs once, only when the meta-critique lists missing elements."""

    stage_id = StageID.RESYNTHESIS
    label = "Re-synthesizing"

    def should_execute(self, ctx: StageContext) -> bool:
        return parse_meta_critique(ctx.run.artifact(StageID.META_CRITIC)).needs_resynthesis

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        critique = parse_meta_critique(run.artifact(StageID.META_CRITIC))
        return await self.stream(
            ctx,
            prompts.RESYNTHESIS_SYSTEM,
            prompts.resynthesis_user(run.query, run.artifact(StageID.SYNTHESIZER), critique.missing_elements),
        )


class UltraConfidenceStage(ModelStage):
    stage_id = StageID.ULTRA_CONFIDENCE
    label = "Scoring confidence"

    async def execute(self, ctx: StageContext) -> str:
        run = ctx.run
        answer = run.artifact(StageID.RESYNTHESIS) or run.artifact(StageID.SYNTHESIZER)
        text = await self.complete(ctx, prompts.CONFIDENCE_SYSTEM, prompts.confidence_user(run.query, answer))
        confidence = parse_confidence(text, self.services.settings.pipeline.ultra_confidence_default)
        ctx.channel.emit_layer_artifact(self.layer, confidence.model_dump())
        return dump(confidence)


_STAGE_CLASSES: tuple[type[Stage], ...] = (
    ClassificationStage,
    VisionAnalysisStage,
    WebSearchStage,
    ImageGenerationStage,
    InstantAnswerStage,
    DecompositionStage,
    PrimarySolverStage,
    FastCriticStage,
    RefinerStage,
    ConfidenceGateStage,
    DeepDecompositionStage,
    UltraSolversStage,
    SkepticAgentStage,
    VerifierAgentStage,
    SynthesizerStage,
    MetaCriticStage,
    ResynthesisStage,
    UltraConfidenceStage,
)


def build_stages(services: StageServices) -> list[Stage]:
    return [stage_cls(services) for stage_cls in _STAGE_CLASSES]


def escalation_reason(critique: CriticReport, score: int, threshold: int) -> str:
    reasons = []
    if score < threshold:
        reasons.append(f"confidence {score} below {threshold}")
    if critique.missing_angles:
        reasons.append(f"{len(critique.missing_angles)} missing angle(s)")
    return ", ".join(reasons)


def build_transitions(config: PipelineConfig) -> list[Transition]:
    """Routing out of intake, deep-to-ultra escalation, and ultra solve to synth."""

    def routed(mode: ReasoningMode):
        return lambda ctx: ctx.run.mode is mode

    def gate(ctx: StageContext):
        confidence = parse_confidence(ctx.run.artifact(StageID.CONFIDENCE_GATE), config.deep_confidence_default)
        critique = parse_critic(ctx.run.artifact(StageID.FAST_CRITIC))
        return confidence, critique

    def needs_escalation(ctx: StageContext) -> bool:
        if ctx.run.escalated:
            return False
        confidence, critique = gate(ctx)
        return should_escalate(confidence, critique, config.escalation_threshold)

    def escalate(ctx: StageContext) -> None:
        confidence, critique = gate(ctx)
        reason = escalation_reason(critique, confidence.score, config.escalation_threshold)
        ctx.run.escalated = True
        ctx.run.mode = ReasoningMode.ULTRA_DEEP
        ctx.channel.emit_escalation(reason, confidence.score)
        get_metrics_collector().record_escalation()
        logger.info("Escalating to ultra-deep", reason=reason, score=confidence.score)

    return [
        Transition(PipelineKind.INTAKE, PipelineKind.INSTANT, guard=routed(ReasoningMode.INSTANT)),
        Transition(PipelineKind.INTAKE, PipelineKind.DEEP, guard=routed(ReasoningMode.DEEP)),
        Transition(PipelineKind.INTAKE, PipelineKind.ULTRA_SOLVE, guard=routed(ReasoningMode.ULTRA_DEEP)),
        Transition(PipelineKind.DEEP, PipelineKind.ULTRA_SOLVE, guard=needs_escalation, action=escalate),
        Transition(PipelineKind.ULTRA_SOLVE, PipelineKind.ULTRA_SYNTH),
    ]
