from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from .consensus import ConsensusScorer
from .context import CancellationToken, StageContext
from .evaluators import LLMArbiter, LLMEvaluator, ScriptedArbiter, ScriptedEvaluator
from .events import GenerationCallbacks
from .execution_log import DetachedTasks
from .graph import TERMINAL, CompiledPipeline, PipelineGraph, RunResult, StageHandler
from .llm import GenerationService, LLMGenerationService
from .model_selection import RuntimeModelSelection
from .models import Dimension, EvaluatorRole, Issue, ReadingLevel, Severity
from .refinement import RefinementRoute, finalize_stage, refine_stage, route_after_scoring
from .retry import RetryPolicy, Sleep
from .rubric import PRIMARY_PANEL
from .settings import RuntimeSettings
from .stages import (
    classify_stage,
    make_summary_stage,
    narrative_stage,
    reconcile_stage,
    research_stage,
    score_stage,
    structure_stage,
)
from .state import PipelineState, initial_state
from .state_store import DocumentStore

logger = logging.getLogger(__name__)


class StageId(str, Enum):
    # Node names must not collide with PipelineState keys.
    RESEARCH = "research"
    CLASSIFY = "classify"
    STRUCTURE = "extract_structure"
    NARRATIVE = "write_narrative"
    RECONCILE = "reconcile"
    SUMMARY_CHILD = "summary_child"
    SUMMARY_TEEN = "summary_teen"
    SUMMARY_UNDERGRAD = "summary_undergrad"
    SUMMARY_POSTDOC = "summary_postdoc"
    SCORE = "score"
    REFINE = "refine"
    FINALIZE = "finalize"


SUMMARY_STAGES: dict[ReadingLevel, StageId] = {
    ReadingLevel.CHILD: StageId.SUMMARY_CHILD,
    ReadingLevel.TEEN: StageId.SUMMARY_TEEN,
    ReadingLevel.UNDERGRAD: StageId.SUMMARY_UNDERGRAD,
    ReadingLevel.POSTDOC: StageId.SUMMARY_POSTDOC,
}

STAGE_HANDLERS: Mapping[StageId, StageHandler] = MappingProxyType(
    {
        StageId.RESEARCH: research_stage,
        StageId.CLASSIFY: classify_stage,
        StageId.STRUCTURE: structure_stage,
        StageId.NARRATIVE: narrative_stage,
        StageId.RECONCILE: reconcile_stage,
        **{stage: make_summary_stage(level) for level, stage in SUMMARY_STAGES.items()},
        StageId.SCORE: score_stage,
        StageId.REFINE: refine_stage,
        StageId.FINALIZE: finalize_stage,
    }
)

# Stage -> (event stage name, parallel group)
STAGE_GROUPS: Mapping[StageId, tuple[str, str | None]] = MappingProxyType(
    {
        StageId.RESEARCH: ("research", None),
        StageId.CLASSIFY: ("classification", None),
        StageId.STRUCTURE: ("structure-narrative", "structure-narrative"),
        StageId.NARRATIVE: ("structure-narrative", "structure-narrative"),
        StageId.RECONCILE: ("reconciliation", None),
        **{stage: ("summaries", "summaries") for stage in SUMMARY_STAGES.values()},
        StageId.SCORE: ("scoring", None),
        StageId.REFINE: ("refinement", None),
        StageId.FINALIZE: ("finalize", None),
    }
)

# Scoring retries per evaluator call inside the consensus protocol; finalize only checkpoints.
_UNRETRIED_STAGES = frozenset({StageId.SCORE, StageId.FINALIZE})


def build_pipeline(
    settings: RuntimeSettings | None = None,
    handlers: Mapping[StageId, StageHandler] | None = None,
) -> PipelineGraph[StageId]:
    """Wire the document pipeline.

    research -> classify -> {extract_structure, write_narrative} -> reconcile
    -> four reading-level summaries -> score -> (refine -> score)* -> finalize.
    """
    settings = (settings or RuntimeSettings()).normalized()
    table = dict(STAGE_HANDLERS)
    table.update(handlers or {})
    stage_retry = RetryPolicy.from_settings(settings)

    graph: PipelineGraph[StageId] = PipelineGraph(
        PipelineState,
        StageId,
        recursion_limit=settings.recursion_limit,
    )
    for stage in StageId:
        event_stage, parallel_group = STAGE_GROUPS[stage]
        graph.add_stage(
            stage,
            table[stage],
            retry=None if stage in _UNRETRIED_STAGES else stage_retry,
            parallel_group=parallel_group,
            event_stage=event_stage,
        )

    graph.set_entry(StageId.RESEARCH)
    graph.add_edge(StageId.RESEARCH, StageId.CLASSIFY)
    graph.add_edge(StageId.CLASSIFY, StageId.STRUCTURE)
    graph.add_edge(StageId.CLASSIFY, StageId.NARRATIVE)
    graph.add_join([StageId.STRUCTURE, StageId.NARRATIVE], StageId.RECONCILE)
    for stage in SUMMARY_STAGES.values():
        graph.add_edge(StageId.RECONCILE, stage)
    graph.add_join(list(SUMMARY_STAGES.values()), StageId.SCORE)
    graph.add_conditional_edge(
        StageId.SCORE,
        route_after_scoring,
        {RefinementRoute.REFINE: StageId.REFINE, RefinementRoute.END: StageId.FINALIZE},
    )
    graph.add_edge(StageId.REFINE, StageId.SCORE)
    graph.add_edge(StageId.FINALIZE, TERMINAL)
    return graph


def compile_pipeline(
    settings: RuntimeSettings | None = None,
    handlers: Mapping[StageId, StageHandler] | None = None,
) -> CompiledPipeline:
    return build_pipeline(settings, handlers).compile()


# ---------------------------------------------------------------------------
# Scorer factories
# ---------------------------------------------------------------------------

# Offline demo panel: the first pass lands just under the default target, the
# second clears it, so one refinement round is exercised.
_OFFLINE_PASSES: dict[EvaluatorRole, tuple[float, float]] = {
    EvaluatorRole.SKEPTIC: (7.4, 8.2),
    EvaluatorRole.ADVOCATE: (8.6, 8.9),
    EvaluatorRole.GENERALIST: (7.8, 8.4),
}

_OFFLINE_ISSUES: dict[EvaluatorRole, tuple[Issue, ...]] = {
    EvaluatorRole.SKEPTIC: (
        Issue(
            dimension=Dimension.EVIDENCE_QUALITY,
            severity=Severity.HIGH,
            description="Key causal claim is not tied to a cited source",
            suggested_fix="Cite the empirical review for the causal claim",
        ),
    ),
    EvaluatorRole.GENERALIST: (
        Issue(
            dimension=Dimension.ACCESSIBILITY,
            severity=Severity.MEDIUM,
            description="Baseline is used before it is defined",
            suggested_fix="Define baseline in the introduction",
        ),
    ),
}


def build_offline_scorer(settings: RuntimeSettings, *, sleep: Sleep = asyncio.sleep) -> ConsensusScorer:
    evaluators = [
        ScriptedEvaluator(role.value, list(_OFFLINE_PASSES[role]), issues=_OFFLINE_ISSUES.get(role, ()))
        for role in PRIMARY_PANEL
    ]
    return ConsensusScorer.from_settings(
        settings,
        evaluators=evaluators,
        arbiter=ScriptedArbiter(8.0),
        sleep=sleep,
    )


def build_llm_scorer(
    settings: RuntimeSettings,
    service: GenerationService,
    *,
    sleep: Sleep = asyncio.sleep,
) -> ConsensusScorer:
    return ConsensusScorer.from_settings(
        settings,
        evaluators=[LLMEvaluator(role, service) for role in PRIMARY_PANEL],
        arbiter=LLMArbiter(service),
        sleep=sleep,
    )


def build_llm_generator(settings: RuntimeSettings, *, repo_root: Path | None = None) -> LLMGenerationService:
    return LLMGenerationService(
        selection=RuntimeModelSelection.from_settings(settings),
        repo_root=repo_root,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def generate_document(
    question: str,
    *,
    settings: RuntimeSettings | None = None,
    generator: GenerationService,
    scorer: ConsensusScorer,
    store: DocumentStore | None = None,
    callbacks: GenerationCallbacks | None = None,
    document_id: str | None = None,
    cancel_token: CancellationToken | None = None,
    detached: DetachedTasks | None = None,
    sleep: Sleep = asyncio.sleep,
    pipeline: CompiledPipeline | None = None,
) -> RunResult:
    """Run one question through the full pipeline and return the three-way outcome.

    Checkpoint writes and execution-log writes are detached; call
    ``detached.drain()`` to wait for them before shutting down.
    """
    settings = (settings or RuntimeSettings()).normalized()
    state = initial_state(
        question,
        document_id=document_id,
        target_score=settings.target_score,
        max_refinement_attempts=settings.max_refinement_attempts,
    )
    context = StageContext.create(
        settings=settings,
        generator=generator,
        scorer=scorer,
        store=store,
        callbacks=callbacks,
        document_id=document_id,
        cancel_token=cancel_token,
        detached=detached,
        sleep=sleep,
    )
    runnable = pipeline or compile_pipeline(settings)
    logger.info("Run %s started for document %s", context.run_id, document_id or "(unsaved)")
    result = await runnable.run(state, context=context)
    logger.info("Run %s finished: %s", context.run_id, result.outcome.value)
    return result
