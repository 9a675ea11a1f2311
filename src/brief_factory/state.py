from __future__ import annotations

import operator
from typing import Annotated, Any, Mapping, TypedDict

from .models import (
    Classification,
    ConsensusResult,
    NarrativeOutput,
    PendingRefinement,
    ReadingLevelSummary,
    ReconciliationOutput,
    RefinementAttempt,
    Source,
    StructureOutput,
)


def merge_dicts(left: Mapping[str, Any] | None, right: Mapping[str, Any] | None) -> dict[str, Any]:
    """Shallow-merge reducer: keys from concurrent writers coexist; a repeated key takes the newer value."""
    merged = dict(left or {})
    merged.update(right or {})
    return merged


class PipelineState(TypedDict, total=False):
    """Accumulator for one document run.

    Un-annotated fields are last-write-wins. ``summaries`` shallow-merges so
    the four reading-level branches can write in any order; the list fields
    append.
    """

    question: str
    document_id: str | None
    target_score: float
    max_refinement_attempts: int
    sources: list[Source]
    research_notes: str
    classification: Classification
    persona: str
    structure: StructureOutput
    narrative: NarrativeOutput
    reconciliation: ReconciliationOutput
    summaries: Annotated[dict[str, ReadingLevelSummary], merge_dicts]
    consensus_result: ConsensusResult
    refinement_attempts: int
    pending_refinement: PendingRefinement | None
    refinement_history: Annotated[list[RefinementAttempt], operator.add]
    completed_steps: Annotated[list[str], operator.add]
    quality_warning: bool
    quality_warning_reason: str | None
    error: str | None


def initial_state(
    question: str,
    *,
    document_id: str | None = None,
    target_score: float = 8.0,
    max_refinement_attempts: int = 2,
) -> PipelineState:
    if not question or not question.strip():
        raise ValueError("question must be non-empty")
    if max_refinement_attempts < 0:
        raise ValueError(f"max_refinement_attempts must be >= 0, got: {max_refinement_attempts}")
    return PipelineState(
        question=question.strip(),
        document_id=document_id,
        target_score=target_score,
        max_refinement_attempts=max_refinement_attempts,
        summaries={},
        refinement_attempts=0,
        pending_refinement=None,
        refinement_history=[],
        completed_steps=[],
        quality_warning=False,
        quality_warning_reason=None,
        error=None,
    )


def render_document(state: Mapping[str, Any]) -> str:
    """Flatten the generated sections into the markdown text the evaluators read."""
    lines: list[str] = [f"# {state.get('question', '')}"]
    narrative: NarrativeOutput | None = state.get("narrative")
    if narrative is not None:
        lines += ["", "## Introduction", narrative.introduction, "", "## Analysis", narrative.main_body]
        lines += ["", "## Conclusion", narrative.conclusion]
        if narrative.key_takeaways:
            lines += ["", "## Key takeaways"] + [f"- {item}" for item in narrative.key_takeaways]
    structure: StructureOutput | None = state.get("structure")
    if structure is not None:
        lines += ["", "## Factors"] + [f"- {item}" for item in structure.factors]
        lines += ["", "## Policies"] + [f"- {item}" for item in structure.policies]
        if structure.definitions:
            lines += ["", "## Definitions"] + [f"- **{d.term}**: {d.definition}" for d in structure.definitions]
        if structure.consequences:
            lines += ["", "## Consequences"] + [f"- {item}" for item in structure.consequences]
        if structure.timeline:
            lines += ["", "## Timeline"] + [f"- {item}" for item in structure.timeline]
    summaries: Mapping[str, ReadingLevelSummary] = state.get("summaries") or {}
    for level in sorted(summaries):
        lines += ["", f"## Summary ({level})", summaries[level].text]
    sources: list[Source] = state.get("sources") or []
    if sources:
        lines += ["", "## Sources"] + [
            f"{idx}. {source.title} {source.url}".rstrip() for idx, source in enumerate(sources, start=1)
        ]
    return "\n".join(lines).strip() + "\n"
