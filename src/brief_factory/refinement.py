from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping

from .context import StageContext
from .llm import GenerationRequest, invoke_with_parse_retry, normalize_structured_output
from .models import ConsensusResult, Dimension, NarrativeOutput, PendingRefinement, PrioritizedIssue
from .state import render_document

logger = logging.getLogger(__name__)

DEFAULT_TARGET_SCORE = 8.0
DEFAULT_MAX_ATTEMPTS = 2
WEAK_DIMENSION_THRESHOLD = 7.0
MAX_WEAK_DIMENSIONS_REPORTED = 3


class RefinementRoute(str, Enum):
    REFINE = "refine"
    END = "end"


def route_after_scoring(
    state: Mapping[str, Any],
    target: float | None = None,
    max_attempts: int | None = None,
) -> RefinementRoute:
    """Refine while the score is under target and the attempt counter has room; otherwise end.

    ``target`` and ``max_attempts`` default to the values carried in state so
    the loop bound travels with the run.
    """
    result: ConsensusResult | None = state.get("consensus_result")
    if result is None:
        return RefinementRoute.END
    if target is None:
        target = float(state.get("target_score", DEFAULT_TARGET_SCORE))
    if max_attempts is None:
        max_attempts = int(state.get("max_refinement_attempts", DEFAULT_MAX_ATTEMPTS))
    attempts = int(state.get("refinement_attempts", 0))
    if result.final_score < target and attempts < max_attempts:
        logger.info(
            "Score %.1f below target %.1f; refinement attempt %d of %d",
            result.final_score,
            target,
            attempts + 1,
            max_attempts,
        )
        return RefinementRoute.REFINE
    return RefinementRoute.END


def _format_issue(issue: PrioritizedIssue) -> str:
    line = f"[{issue.priority.value}] {issue.dimension.value}: {issue.description}"
    if issue.suggested_fix:
        line += f" (fix: {issue.suggested_fix})"
    return line


def weakest_dimensions(
    breakdown: Mapping[Dimension, float],
    *,
    below: float = WEAK_DIMENSION_THRESHOLD,
    limit: int = MAX_WEAK_DIMENSIONS_REPORTED,
) -> list[tuple[Dimension, float]]:
    weak = [(dimension, score) for dimension, score in breakdown.items() if score < below]
    weak.sort(key=lambda item: (item[1], item[0].value))
    return weak[:limit]


async def refine_stage(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
    """Rewrite the narrative against the highest-priority critique.

    Research, classification, structure and summaries are left as they are.
    The attempt is recorded as pending; the next scoring pass closes it.
    """
    result: ConsensusResult = state["consensus_result"]
    narrative: NarrativeOutput = state["narrative"]
    attempt_number = int(state.get("refinement_attempts", 0)) + 1
    issues = list(result.aggregated_critique.issues)
    issue_lines = [_format_issue(issue) for issue in issues] or ["(no specific issues reported)"]

    request = GenerationRequest(
        stage="refinement",
        role="refiner",
        prompt=(
            f"The document below scored {result.final_score:.1f}/10. Rewrite ONLY the narrative "
            "(introduction, main body, conclusion, key takeaways) so it addresses the issues in "
            "priority order, highest first. Keep every factual claim consistent with the structured facts.\n\n"
            "Issues:\n" + "\n".join(f"- {line}" for line in issue_lines) + "\n\nDocument:\n" + render_document(state)
        ),
        schema=NarrativeOutput,
        payload={
            "narrative": narrative.model_dump(mode="json"),
            "issues": [issue.description for issue in issues],
            "attempt": attempt_number,
        },
    )
    revised = normalize_structured_output(
        raw_output=await invoke_with_parse_retry(ctx.require_generator(), request, fallback=narrative),
        schema=NarrativeOutput,
    )
    pending = PendingRefinement(
        attempt_number=attempt_number,
        score_before=result.final_score,
        dimension_scores_before=dict(result.clarity_score.dimension_breakdown),
        issues_addressed=tuple(issue.description for issue in issues),
    )
    logger.info("Refinement attempt %d addressing %d issue(s)", attempt_number, len(issues))
    return {"narrative": revised, "refinement_attempts": attempt_number, "pending_refinement": pending}


def quality_warning_reason(
    result: ConsensusResult,
    *,
    attempts: int,
    target: float,
) -> str:
    reason = (
        f"Document scored {result.final_score:.1f}/10 after {attempts} refinement attempt(s) "
        f"(target {target:.1f})."
    )
    weak = weakest_dimensions(result.clarity_score.dimension_breakdown)
    if weak:
        reason += " Lowest dimensions: " + ", ".join(f"{dim.value} {score:.1f}" for dim, score in weak) + "."
    return reason


async def finalize_stage(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
    """Flag a shortfall, never discard the document, and checkpoint the final result."""
    result: ConsensusResult | None = state.get("consensus_result")
    attempts = int(state.get("refinement_attempts", 0))
    target = float(state.get("target_score", DEFAULT_TARGET_SCORE))
    update: dict[str, Any] = {"quality_warning": False, "quality_warning_reason": None}
    if result is not None and result.final_score < target:
        reason = quality_warning_reason(result, attempts=attempts, target=target)
        logger.warning(reason)
        update = {"quality_warning": True, "quality_warning_reason": reason}

    history = state.get("refinement_history") or []
    ctx.persist(
        {
            "status": "completed",
            "document": render_document(state),
            "final_score": result.final_score if result is not None else None,
            "consensus_method": result.clarity_score.consensus_method.value if result is not None else None,
            "needs_human_review": result.needs_human_review if result is not None else False,
            "human_review_reason": result.human_review_reason if result is not None else None,
            "quality_warning": update["quality_warning"],
            "quality_warning_reason": update["quality_warning_reason"],
            "refinement_metadata": [attempt.model_dump(mode="json") for attempt in history],
        },
        label="final",
    )
    return update
