from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from brief_factory.consensus import ConsensusScorer
from brief_factory.context import CancellationToken, StageContext
from brief_factory.errors import PermanentError
from brief_factory.evaluators import ScriptedArbiter, ScriptedEvaluator, uniform_scores
from brief_factory.events import RecordingCallbacks
from brief_factory.execution_log import DetachedTasks
from brief_factory.graph import RunOutcome
from brief_factory.models import ConsensusMethod, ConsensusResult, Dimension, ExecutionStatus
from brief_factory.pipeline import StageId, build_offline_scorer, build_pipeline, compile_pipeline, generate_document
from brief_factory.refinement import (
    RefinementRoute,
    quality_warning_reason,
    route_after_scoring,
    weakest_dimensions,
)
from brief_factory.settings import RuntimeSettings
from brief_factory.state_store import InMemoryDocumentStore
from brief_factory.templates import TemplateGenerationService

QUESTION = "How does a tariff change consumer prices?"


async def no_sleep(_: float) -> None:
    return None


def scripted_scorer(*passes: Any) -> ConsensusScorer:
    evaluators = [ScriptedEvaluator(role, list(passes)) for role in ("skeptic", "advocate", "generalist")]
    return ConsensusScorer(evaluators=evaluators, arbiter=ScriptedArbiter(8.0), sleep=no_sleep)


def score_once(*passes: Any) -> ConsensusResult:
    return asyncio.run(scripted_scorer(*passes).score("# Draft\n"))


def test_pipeline_graph_is_valid() -> None:
    build_pipeline().validate()


def test_route_after_scoring_respects_target_and_attempt_bound() -> None:
    result = score_once(7.0)
    state: dict[str, Any] = {
        "consensus_result": result,
        "refinement_attempts": 0,
        "target_score": 8.0,
        "max_refinement_attempts": 2,
    }

    assert route_after_scoring({}) == RefinementRoute.END
    assert route_after_scoring(state) == RefinementRoute.REFINE
    assert route_after_scoring({**state, "refinement_attempts": 2}) == RefinementRoute.END
    assert route_after_scoring({**state, "target_score": 7.0}) == RefinementRoute.END
    assert route_after_scoring({**state, "max_refinement_attempts": 0}) == RefinementRoute.END
    assert route_after_scoring(state, target=6.0) == RefinementRoute.END


def test_quality_warning_reason_lists_weakest_dimensions() -> None:
    result = score_once(uniform_scores(7.5, objectivity=4.0, accessibility=6.5))

    assert weakest_dimensions(result.clarity_score.dimension_breakdown) == [
        (Dimension.OBJECTIVITY, 4.0),
        (Dimension.ACCESSIBILITY, 6.5),
    ]
    reason = quality_warning_reason(result, attempts=2, target=8.0)
    assert reason.startswith(f"Document scored {result.final_score:.1f}/10 after 2 refinement attempt(s) (target 8.0).")
    assert reason.endswith("Lowest dimensions: objectivity 4.0, accessibility 6.5.")


def test_refinement_loop_stops_at_attempt_bound_with_quality_warning() -> None:
    generator = TemplateGenerationService()
    result = asyncio.run(
        generate_document(QUESTION, generator=generator, scorer=scripted_scorer(6.5, 7.2, 7.9), sleep=no_sleep)
    )
    state = result.state

    assert result.outcome == RunOutcome.SUCCESS_WITH_WARNING
    assert state["quality_warning"] is True
    assert state["quality_warning_reason"].startswith("Document scored 7.9/10 after 2 refinement attempt(s)")
    assert state["refinement_attempts"] == 2
    assert state["consensus_result"].final_score == 7.9
    assert state["pending_refinement"] is None
    history = state["refinement_history"]
    assert [(h.attempt_number, h.score_before, h.score_after) for h in history] == [(1, 6.5, 7.2), (2, 7.2, 7.9)]
    assert history[0].dimension_scores_after[Dimension.OBJECTIVITY] == 7.2
    assert state["completed_steps"].count("score") == 3
    assert state["completed_steps"].count("refine") == 2
    assert state["completed_steps"][-1] == "finalize"
    assert len([call for call in generator.calls if call[1] == "refiner"]) == 2
    assert "Revision 1 addresses" in state["narrative"].main_body
    assert "Revision 2 addresses" in state["narrative"].main_body


def test_no_refinement_when_first_score_meets_target() -> None:
    generator = TemplateGenerationService()
    result = asyncio.run(
        generate_document(QUESTION, generator=generator, scorer=scripted_scorer(8.6), sleep=no_sleep)
    )

    assert result.outcome == RunOutcome.SUCCESS
    assert result.state["refinement_attempts"] == 0
    assert result.state["refinement_history"] == []
    assert "refine" not in result.state["completed_steps"]
    assert result.state["quality_warning"] is False


def test_offline_run_end_to_end_reports_progress_in_stage_order() -> None:
    settings = RuntimeSettings()
    callbacks = RecordingCallbacks()
    result = asyncio.run(
        generate_document(
            QUESTION,
            settings=settings,
            generator=TemplateGenerationService(),
            scorer=build_offline_scorer(settings, sleep=no_sleep),
            callbacks=callbacks,
            sleep=no_sleep,
        )
    )
    state = result.state

    assert result.outcome == RunOutcome.SUCCESS
    assert result.error is None
    assert state["refinement_attempts"] == 1
    assert state["consensus_result"].final_score >= settings.target_score
    assert state["consensus_result"].clarity_score.consensus_method == ConsensusMethod.MEAN
    assert set(state["summaries"]) == {"child", "teen", "undergrad", "postdoc"}
    assert state["classification"].domain == "economics"
    assert state["sources"]
    assert state["completed_steps"][:2] == ["research", "classify"]
    assert sorted(state["completed_steps"][2:4]) == ["extract_structure", "write_narrative"]
    assert state["completed_steps"][4] == "reconcile"
    assert state["completed_steps"][-1] == "finalize"

    stages = [payload[0] for payload in callbacks.names("stage_changed")]
    assert stages == [
        "research",
        "classification",
        "structure-narrative",
        "reconciliation",
        "summaries",
        "scoring",
        "refinement",
        "scoring",
        "finalize",
    ]
    summaries_event = next(payload for payload in callbacks.names("stage_changed") if payload[0] == "summaries")
    assert len(summaries_event[1]) == 4
    assert callbacks.names("error") == []


def test_run_checkpoints_classification_and_final_document() -> None:
    store = InMemoryDocumentStore()
    detached = DetachedTasks()
    settings = RuntimeSettings()

    async def scenario() -> tuple[Any, dict[str, Any], list[Any]]:
        result = await generate_document(
            QUESTION,
            settings=settings,
            generator=TemplateGenerationService(),
            scorer=build_offline_scorer(settings, sleep=no_sleep),
            store=store,
            document_id="doc-1",
            detached=detached,
            sleep=no_sleep,
        )
        await detached.drain()
        return result, await store.get("doc-1"), await store.list_execution_logs("doc-1")

    result, document, logs = asyncio.run(scenario())

    assert result.outcome == RunOutcome.SUCCESS
    assert detached.pending == 0
    assert detached.failures == []
    assert document["id"] == "doc-1"
    assert document["status"] == "completed"
    assert document["classification"]["domain"] == "economics"
    assert document["final_score"] == result.state["consensus_result"].final_score
    assert document["consensus_method"] == "mean"
    assert document["quality_warning"] is False
    assert len(document["refinement_metadata"]) == 1
    assert document["document"].startswith(f"# {QUESTION}")

    research = {entry.status for entry in logs if entry.stage_name == "research"}
    assert research == {ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED}
    names = {entry.stage_name for entry in logs}
    assert {"consensus_evaluator:skeptic", "consensus_final_score", "finalize"} <= names
    assert all(entry.run_id == result.run_id for entry in logs)


def test_stage_failure_returns_failed_with_committed_state() -> None:
    async def broken_narrative(state: Mapping[str, Any], ctx: StageContext) -> dict[str, Any]:
        raise PermanentError("401 unauthorized from generation service")

    generator = TemplateGenerationService()
    pipeline = compile_pipeline(RuntimeSettings(), {StageId.NARRATIVE: broken_narrative})
    result = asyncio.run(
        generate_document(
            QUESTION,
            generator=generator,
            scorer=scripted_scorer(8.5),
            sleep=no_sleep,
            pipeline=pipeline,
        )
    )

    assert result.outcome == RunOutcome.FAILED
    assert result.error is not None
    assert result.error.stage == "write_narrative"
    assert "write_narrative" in result.state["error"]
    assert result.state["completed_steps"] == ["research", "classify"]
    assert "classification" in result.state
    assert "structure" not in result.state
    assert "reconciliation" not in result.state
    assert "consensus_result" not in result.state


def test_cancelled_run_discards_outputs() -> None:
    token = CancellationToken()
    token.cancel("user navigated away")
    generator = TemplateGenerationService()
    result = asyncio.run(
        generate_document(
            QUESTION,
            generator=generator,
            scorer=scripted_scorer(8.5),
            cancel_token=token,
            sleep=no_sleep,
        )
    )

    assert result.outcome == RunOutcome.CANCELLED
    assert result.error is not None and result.error.message == "user navigated away"
    assert result.state["question"] == QUESTION
    assert result.state["completed_steps"] == []
    assert generator.calls == []


def test_blank_question_is_rejected() -> None:
    with pytest.raises(ValueError):
        asyncio.run(generate_document("   ", generator=TemplateGenerationService(), scorer=scripted_scorer(8.0)))


def test_directly_built_settings_are_validated_before_running() -> None:
    generator = TemplateGenerationService()
    with pytest.raises(ValueError, match="BRIEF_MAX_PRIORITIZED_ISSUES"):
        asyncio.run(
            generate_document(
                QUESTION,
                settings=RuntimeSettings(max_prioritized_issues=0),
                generator=generator,
                scorer=scripted_scorer(8.0),
            )
        )
    assert generator.calls == []
