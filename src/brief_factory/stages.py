"""Stage functions: each takes the committed state plus a ``StageContext`` and returns a partial update."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Mapping

from .context import StageContext
from .execution_log import consensus_audit_entries
from .llm import GenerationRequest, invoke_with_parse_retry, normalize_structured_output
from .models import (
    Classification,
    NarrativeOutput,
    ReadingLevel,
    ReadingLevelSummary,
    ReconciliationOutput,
    RefinementAttempt,
    ResearchOutput,
    StructureOutput,
)
from .rubric import READING_LEVELS, persona_for_domain
from .state import render_document

logger = logging.getLogger(__name__)

StageFn = Callable[[Mapping[str, Any], StageContext], Awaitable[dict[str, Any]]]


def _sources_digest(state: Mapping[str, Any]) -> str:
    sources = state.get("sources") or []
    if not sources:
        return "(no sources)"
    return "\n".join(
        f"[{idx}] {source.title} ({source.publisher or 'unknown'}): {source.excerpt}"
        for idx, source in enumerate(sources, start=1)
    )


async def research_stage(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
    question = state["question"]
    request = GenerationRequest(
        stage="research",
        role="researcher",
        prompt=(
            "Gather authoritative sources for the question below. Prefer primary sources, official "
            "statistics and peer-reviewed work; include the publisher and a short excerpt for each.\n\n"
            f"Question: {question}"
        ),
        schema=ResearchOutput,
        payload={"question": question},
    )
    output = normalize_structured_output(
        raw_output=await invoke_with_parse_retry(ctx.require_generator(), request), schema=ResearchOutput
    )
    logger.info("Research collected %d source(s)", len(output.sources))
    return {"sources": output.sources, "research_notes": output.research_notes}


async def classify_stage(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
    question = state["question"]
    request = GenerationRequest(
        stage="classification",
        role="classifier",
        prompt=(
            "Classify the question into a policy domain (economics, law, health, technology, environment, "
            "history or general), name its topic, and pick the specialist persona best placed to answer.\n\n"
            f"Question: {question}\nResearch notes: {state.get('research_notes', '')}"
        ),
        schema=Classification,
        payload={"question": question},
    )
    fallback = Classification(
        domain="general",
        topic=question[:80],
        persona=persona_for_domain("general"),
        confidence=0.0,
        rationale="Classifier output unavailable; general analyst used.",
    )
    classification = normalize_structured_output(
        raw_output=await invoke_with_parse_retry(ctx.require_generator(), request, fallback=fallback),
        schema=Classification,
    )
    persona = classification.persona.strip() or persona_for_domain(classification.domain)
    ctx.persist(
        {"classification": classification.model_dump(mode="json"), "status": "classified"},
        label="classification",
    )
    return {"classification": classification, "persona": persona}


async def structure_stage(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
    request = GenerationRequest(
        stage="structure",
        role="structurer",
        prompt=(
            f"As a {state.get('persona', 'policy_analyst')}, extract the structured facts for the question: "
            "causal factors, relevant policies, key definitions, consequences and a timeline. "
            "Use only what the sources support.\n\n"
            f"Question: {state['question']}\nSources:\n{_sources_digest(state)}"
        ),
        schema=StructureOutput,
        payload={"question": state["question"], "persona": state.get("persona")},
    )
    output = normalize_structured_output(
        raw_output=await invoke_with_parse_retry(ctx.require_generator(), request), schema=StructureOutput
    )
    return {"structure": output}


async def narrative_stage(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
    request = GenerationRequest(
        stage="narrative",
        role="narrator",
        prompt=(
            f"As a {state.get('persona', 'policy_analyst')}, write an explanatory narrative answering the "
            "question: an introduction, a main body that reasons from first principles, a conclusion and "
            "three to five key takeaways. Cite sources by their bracketed number.\n\n"
            f"Question: {state['question']}\nSources:\n{_sources_digest(state)}"
        ),
        schema=NarrativeOutput,
        payload={"question": state["question"], "persona": state.get("persona")},
    )
    output = normalize_structured_output(
        raw_output=await invoke_with_parse_retry(ctx.require_generator(), request), schema=NarrativeOutput
    )
    return {"narrative": output}


async def reconcile_stage(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
    """Align the narrative with the structured facts; structure is the source of truth."""
    narrative: NarrativeOutput | None = state.get("narrative")
    structure: StructureOutput | None = state.get("structure")
    if narrative is None or structure is None:
        raise RuntimeError("reconcile_stage requires both structure and narrative in state")

    request = GenerationRequest(
        stage="reconciliation",
        role="reconciler",
        prompt=(
            "Compare the narrative with the structured facts. Where they conflict, rewrite the narrative "
            "to match the structure and list every change. If they agree, return the narrative unchanged "
            "with is_consistent=true.\n\n"
            f"Structure:\n{structure.model_dump_json(indent=2)}\n\nNarrative:\n{narrative.model_dump_json(indent=2)}"
        ),
        schema=ReconciliationOutput,
        payload={"narrative": narrative.model_dump(mode="json")},
    )
    fallback = ReconciliationOutput(narrative=narrative, is_consistent=True, changes=[])
    reconciliation = normalize_structured_output(
        raw_output=await invoke_with_parse_retry(ctx.require_generator(), request, fallback=fallback),
        schema=ReconciliationOutput,
    )
    if not reconciliation.is_consistent:
        logger.info("Reconciliation applied %d change(s)", len(reconciliation.changes))
    return {"reconciliation": reconciliation, "narrative": reconciliation.narrative}


def make_summary_stage(level: ReadingLevel) -> StageFn:
    spec = READING_LEVELS[level]

    async def summary_stage(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
        narrative: NarrativeOutput = state["narrative"]
        request = GenerationRequest(
            stage=f"summary_{level.value}",
            role="summarizer",
            prompt=(
                f"Summarize the analysis for {spec.audience} in {spec.min_words}-{spec.max_words} words. "
                "Keep every claim consistent with the narrative.\n\n"
                f"Question: {state['question']}\n\nNarrative:\n{narrative.model_dump_json(indent=2)}"
            ),
            schema=ReadingLevelSummary,
            payload={"question": state["question"], "level": level.value},
        )
        summary = normalize_structured_output(
            raw_output=await invoke_with_parse_retry(ctx.require_generator(), request), schema=ReadingLevelSummary
        )
        if summary.level != level:
            summary = ReadingLevelSummary(level=level, text=summary.text)
        return {"summaries": {level.value: summary}}

    summary_stage.__name__ = f"summary_{level.value}_stage"
    return summary_stage


async def score_stage(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
    """Run the full consensus protocol and close any refinement attempt that was waiting on this score."""
    result = await ctx.require_scorer().score(render_document(state), state.get("sources") or [])
    for entry in consensus_audit_entries(result, document_id=ctx.document_id, run_id=ctx.run_id):
        try:
            ctx.execution_logger.record(entry)
        except Exception as exc:  # noqa: BLE001 - audit logging is best-effort.
            logger.warning("Could not record consensus audit entry: %s", exc)

    update: dict[str, Any] = {"consensus_result": result, "pending_refinement": None}
    pending = state.get("pending_refinement")
    if pending is not None:
        attempt = RefinementAttempt(
            attempt_number=pending.attempt_number,
            score_before=pending.score_before,
            score_after=result.final_score,
            issues_addressed=pending.issues_addressed,
            dimension_scores_before=pending.dimension_scores_before,
            dimension_scores_after=dict(result.clarity_score.dimension_breakdown),
            timestamp=datetime.now(UTC),
        )
        logger.info(
            "Refinement attempt %d: %.1f -> %.1f",
            attempt.attempt_number,
            attempt.score_before,
            attempt.score_after,
        )
        update["refinement_history"] = [attempt]
    return update
