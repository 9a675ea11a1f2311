from __future__ import annotations

import asyncio
from typing import Sequence

import pytest

from brief_factory.consensus import MAX_DISCUSSION_SHIFT, ConsensusScorer, apply_discussion
from brief_factory.errors import MalformedOutputError
from brief_factory.evaluators import LLMEvaluator, ScriptedArbiter, ScriptedEvaluator, uniform_scores
from brief_factory.llm import GenerationRequest
from brief_factory.models import (
    ConsensusMethod,
    Dimension,
    DimensionScore,
    DisagreementResult,
    DiscussionResponse,
    EvaluatorRole,
    EvaluatorVerdict,
    Issue,
    Severity,
    Source,
    VerdictResponse,
)
from brief_factory.retry import RetryPolicy
from brief_factory.scoring import assemble_verdict

DOCUMENT = "# Why do tariffs raise prices?\n\nA short analysis."


async def no_sleep(_: float) -> None:
    return None


def make_scorer(evaluators: Sequence[object], arbiter: object | None = None, **kwargs: object) -> ConsensusScorer:
    return ConsensusScorer(
        evaluators=evaluators,  # type: ignore[arg-type]
        arbiter=arbiter or ScriptedArbiter(6.0),  # type: ignore[arg-type]
        sleep=no_sleep,
        **kwargs,  # type: ignore[arg-type]
    )


def split_panel(
    *,
    skeptic_discussion: dict[Dimension, float] | None = None,
    advocate_discussion: dict[Dimension, float] | None = None,
) -> list[ScriptedEvaluator]:
    return [
        ScriptedEvaluator("skeptic", [uniform_scores(7.0, evidence_quality=4.0)], discussion=skeptic_discussion),
        ScriptedEvaluator("advocate", [uniform_scores(7.0, evidence_quality=9.0)], discussion=advocate_discussion),
        ScriptedEvaluator("generalist", [uniform_scores(7.0, evidence_quality=6.5)]),
    ]


def test_consensus_without_disagreement_uses_mean() -> None:
    panel = [ScriptedEvaluator("skeptic", [9.2]), ScriptedEvaluator("advocate", [8.8]), ScriptedEvaluator("generalist", [9.0])]
    arbiter = ScriptedArbiter(5.0)
    result = asyncio.run(make_scorer(panel, arbiter).score(DOCUMENT))

    assert result.final_score == 9.0
    assert result.clarity_score.consensus_method == ConsensusMethod.MEAN
    assert result.needs_human_review is False
    assert result.discussion is None
    assert result.tiebreaker is None
    assert result.disagreement is not None and result.disagreement.has_disagreement is False
    assert all(evaluator.discuss_calls == 0 for evaluator in panel)
    assert arbiter.arbitrate_calls == 0
    assert set(result.evaluator_durations_ms) == {"skeptic", "advocate", "generalist"}


def test_discussion_that_closes_the_gap_settles_without_arbiter() -> None:
    panel = split_panel(
        skeptic_discussion={Dimension.EVIDENCE_QUALITY: 6.0},
        advocate_discussion={Dimension.EVIDENCE_QUALITY: 7.0},
    )
    arbiter = ScriptedArbiter(6.0)
    result = asyncio.run(make_scorer(panel, arbiter).score(DOCUMENT))

    assert result.disagreement is not None
    assert result.disagreement.disagreeing_dimensions == (Dimension.EVIDENCE_QUALITY,)
    assert result.disagreement.max_spread == pytest.approx(5.0)
    assert result.post_discussion_disagreement is not None
    assert result.post_discussion_disagreement.has_disagreement is False
    assert result.post_discussion_disagreement.max_spread == pytest.approx(1.0)
    assert result.clarity_score.consensus_method == ConsensusMethod.POST_DISCUSSION_MEAN
    assert result.needs_human_review is False
    assert arbiter.arbitrate_calls == 0
    assert result.discussion is not None
    assert result.discussion.changes_count == 2
    assert [v.score_for(Dimension.EVIDENCE_QUALITY) for v in result.verdicts] == [6.0, 7.0, 6.5]
    assert "[POST-DISCUSSION]" in result.verdicts[0].critique


def test_persistent_disagreement_invokes_arbiter_once_and_flags_review() -> None:
    panel = split_panel()
    arbiter = ScriptedArbiter(6.0)
    result = asyncio.run(make_scorer(panel, arbiter).score(DOCUMENT))

    assert all(evaluator.discuss_calls == 1 for evaluator in panel)
    assert arbiter.arbitrate_calls == 1
    assert result.clarity_score.consensus_method == ConsensusMethod.ARBITRATED
    assert result.clarity_score.evaluator_count == 4
    assert result.needs_human_review is True
    assert result.human_review_reason is not None
    assert "evidence_quality" in result.human_review_reason
    assert "Max spread: 5.0" in result.human_review_reason
    assert result.tiebreaker is not None
    assert result.tiebreaker.disputed_dimensions == (Dimension.EVIDENCE_QUALITY,)
    assert result.tiebreaker.verdict.score_for(Dimension.EVIDENCE_QUALITY) == 6.0
    # (4 + 9 + 6.5 + 6 * 1.5) / 4.5
    assert result.clarity_score.dimension_breakdown[Dimension.EVIDENCE_QUALITY] == pytest.approx(6.33)


def test_protocol_bounds_hold_when_many_dimensions_disagree() -> None:
    panel = [
        ScriptedEvaluator("skeptic", [uniform_scores(3.0)]),
        ScriptedEvaluator("advocate", [uniform_scores(9.5)]),
        ScriptedEvaluator("generalist", [uniform_scores(6.0)]),
    ]
    arbiter = ScriptedArbiter(6.5)
    result = asyncio.run(make_scorer(panel, arbiter).score(DOCUMENT))

    assert result.disagreement is not None
    assert len(result.disagreement.disagreeing_dimensions) == len(Dimension)
    assert all(evaluator.discuss_calls == 1 for evaluator in panel)
    assert arbiter.arbitrate_calls == 1
    assert result.needs_human_review is True
    assert f"{len(Dimension)} disputed dimension(s)" in (result.human_review_reason or "")


def test_discussion_revisions_are_clamped_and_never_mutate_the_original() -> None:
    original = assemble_verdict(
        role="advocate",
        dimension_scores=[DimensionScore(dimension=d, score=s) for d, s in uniform_scores(7.0, evidence_quality=9.0).items()],
        critique="Strong sourcing.",
    )
    response = DiscussionResponse(
        revised_scores=[
            DimensionScore(dimension=Dimension.EVIDENCE_QUALITY, score=1.0, reasoning="peers were right"),
            DimensionScore(dimension=Dimension.OBJECTIVITY, score=7.0),
        ],
        reflection="Overrated the evidence.",
    )

    revised, revisions = apply_discussion(original, response)

    assert original.score_for(Dimension.EVIDENCE_QUALITY) == 9.0
    assert revised is not original
    assert revised.score_for(Dimension.EVIDENCE_QUALITY) == 9.0 - MAX_DISCUSSION_SHIFT
    assert len(revisions) == 1
    assert revisions[0].previous_score == 9.0
    assert revisions[0].revised_score == 7.0
    assert revised.critique.endswith("[POST-DISCUSSION] Overrated the evidence.")


def test_malformed_evaluator_output_gets_one_strict_retry() -> None:
    flaky = ScriptedEvaluator("skeptic", [8.0], malformed_calls=1)
    panel = [flaky, ScriptedEvaluator("advocate", [8.2]), ScriptedEvaluator("generalist", [8.4])]
    result = asyncio.run(make_scorer(panel).score(DOCUMENT))

    assert flaky.strict_calls == 1
    assert flaky.evaluate_calls == 1
    assert result.verdicts[0].is_fallback is False
    assert result.verdicts[0].overall_score == 8.0


def test_malformed_evaluator_falls_back_to_neutral_and_keeps_panel_size() -> None:
    broken = ScriptedEvaluator("skeptic", [8.0], malformed_calls=2)
    panel = [broken, ScriptedEvaluator("advocate", [6.0]), ScriptedEvaluator("generalist", [6.0])]
    result = asyncio.run(make_scorer(panel).score(DOCUMENT))

    assert len(result.verdicts) == 3
    fallback = result.verdicts[0]
    assert fallback.role == "skeptic"
    assert fallback.is_fallback is True
    assert fallback.confidence == 0.0
    assert fallback.overall_score == 5.0
    assert result.final_score == pytest.approx(5.7)


class VerdictPayloadService:
    """Generation service that replays raw verdict payloads; the last one repeats."""

    def __init__(self, payloads: list[dict[str, object]]) -> None:
        self.payloads = payloads
        self.strict_flags: list[bool] = []

    async def invoke(self, request: GenerationRequest) -> dict[str, object]:
        self.strict_flags.append(request.strict)
        return self.payloads[min(len(self.strict_flags), len(self.payloads)) - 1]


def full_verdict_payload(score: float) -> dict[str, object]:
    return {
        "dimension_scores": [{"dimension": d.value, "score": s} for d, s in uniform_scores(score).items()],
        "confidence": 0.8,
    }


def test_verdict_without_dimension_scores_gets_strict_retry() -> None:
    service = VerdictPayloadService([{"dimension_scores": [], "critique": "Looks fine."}, full_verdict_payload(9.0)])
    panel = [
        LLMEvaluator(EvaluatorRole.SKEPTIC, service),  # type: ignore[arg-type]
        ScriptedEvaluator("advocate", [9.0]),
        ScriptedEvaluator("generalist", [9.0]),
    ]
    result = asyncio.run(make_scorer(panel).score(DOCUMENT))

    assert service.strict_flags == [False, True]
    assert result.verdicts[0].is_fallback is False
    assert result.verdicts[0].overall_score == 9.0
    assert result.final_score == 9.0
    assert result.clarity_score.consensus_method == ConsensusMethod.MEAN
    assert result.needs_human_review is False


def test_verdict_missing_rubric_dimensions_falls_back_to_neutral() -> None:
    partial = {"dimension_scores": [{"dimension": "objectivity", "score": 9.0}]}
    service = VerdictPayloadService([{"dimension_scores": []}, partial])
    panel = [
        LLMEvaluator(EvaluatorRole.SKEPTIC, service),  # type: ignore[arg-type]
        ScriptedEvaluator("advocate", [6.0]),
        ScriptedEvaluator("generalist", [6.0]),
    ]
    result = asyncio.run(make_scorer(panel).score(DOCUMENT))

    assert service.strict_flags == [False, True]
    fallback = result.verdicts[0]
    assert fallback.is_fallback is True
    assert fallback.overall_score == 5.0
    assert len(fallback.dimension_scores) == 7
    assert result.disagreement is not None and result.disagreement.has_disagreement is False
    assert result.final_score == pytest.approx(5.7)


class FlakyEvaluator:
    def __init__(self, role: str, failures: int) -> None:
        self.role = role
        self.failures = failures
        self.calls = 0

    async def evaluate(self, document: str, sources: Sequence[Source], *, strict: bool = False) -> VerdictResponse:
        self.calls += 1
        if self.calls <= self.failures:
            raise TimeoutError("evaluator timed out")
        return VerdictResponse(
            dimension_scores=[DimensionScore(dimension=d, score=s) for d, s in uniform_scores(8.0).items()],
            confidence=0.7,
        )

    async def discuss(
        self,
        own: EvaluatorVerdict,
        panel: Sequence[EvaluatorVerdict],
        disagreement: DisagreementResult,
        *,
        strict: bool = False,
    ) -> DiscussionResponse:
        return DiscussionResponse()


def test_transient_evaluator_errors_use_the_evaluator_retry_budget() -> None:
    delays: list[float] = []

    async def recording_sleep(delay: float) -> None:
        delays.append(delay)

    flaky = FlakyEvaluator("skeptic", failures=1)
    scorer = ConsensusScorer(
        evaluators=[flaky, ScriptedEvaluator("advocate", [8.0]), ScriptedEvaluator("generalist", [8.0])],
        arbiter=ScriptedArbiter(8.0),
        retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.25),
        sleep=recording_sleep,
    )
    result = asyncio.run(scorer.score(DOCUMENT))

    assert flaky.calls == 2
    assert delays == [0.25]
    assert result.final_score == 8.0


class BrokenArbiter:
    role = "arbiter"

    def __init__(self) -> None:
        self.calls = 0

    async def arbitrate(self, *args: object, strict: bool = False) -> object:
        self.calls += 1
        raise MalformedOutputError("arbiter returned prose")


def test_malformed_arbiter_settles_disputed_dimensions_at_panel_median() -> None:
    arbiter = BrokenArbiter()
    result = asyncio.run(make_scorer(split_panel(), arbiter).score(DOCUMENT))

    assert arbiter.calls == 2
    assert result.tiebreaker is not None
    assert result.tiebreaker.verdict.score_for(Dimension.EVIDENCE_QUALITY) == 6.5
    assert result.tiebreaker.verdict.confidence == 0.0
    assert result.needs_human_review is True


def test_aggregated_critique_includes_panel_issues() -> None:
    issue = Issue(
        dimension=Dimension.EVIDENCE_QUALITY,
        severity=Severity.HIGH,
        description="Central claim lacks a citation",
        suggested_fix="Cite the NBER review",
    )
    panel = [
        ScriptedEvaluator("skeptic", [7.0], issues=[issue]),
        ScriptedEvaluator("advocate", [7.5], issues=[issue]),
        ScriptedEvaluator("generalist", [7.2]),
    ]
    result = asyncio.run(make_scorer(panel, max_prioritized_issues=3).score(DOCUMENT))

    critique = result.aggregated_critique
    assert critique.total_issue_count == 1
    assert critique.issues[0].agreement_count == 2
    assert critique.issues[0].evaluator_roles == ("skeptic", "advocate")


@pytest.mark.parametrize("size", [0, 2, 4])
def test_panel_size_must_be_odd(size: int) -> None:
    panel = [ScriptedEvaluator(f"judge-{idx}", [7.0]) for idx in range(size)]
    with pytest.raises(ValueError):
        make_scorer(panel)


def test_panel_roles_must_be_unique() -> None:
    panel = [ScriptedEvaluator("skeptic", [7.0]) for _ in range(3)]
    with pytest.raises(ValueError):
        make_scorer(panel)
