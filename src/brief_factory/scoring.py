"""Pure consensus math: disagreement detection, final score, critique aggregation.

Nothing here performs I/O or suspends; every function is deterministic for
a given verdict set.
"""

from __future__ import annotations

import re
from statistics import mean
from typing import Iterable, Sequence

from .models import (
    AggregatedCritique,
    ClarityScore,
    ConsensusMethod,
    Dimension,
    DimensionPosition,
    DimensionScore,
    DisagreementResult,
    EvaluatorPosition,
    EvaluatorVerdict,
    Issue,
    PrioritizedIssue,
    PriorityLevel,
    Severity,
)
from .rubric import DIMENSION_WEIGHTS, RUBRIC, weighted_overall

DEFAULT_DISAGREEMENT_THRESHOLD = 2.0
ARBITER_WEIGHT_MULTIPLIER = 1.5
ISSUE_SIMILARITY_THRESHOLD = 0.6
NEUTRAL_SCORE = 5.0

_WORD_RE = re.compile(r"[a-z0-9]+")


def assemble_verdict(
    *,
    role: str,
    dimension_scores: Iterable[DimensionScore],
    issues: Iterable[Issue] = (),
    critique: str = "",
    confidence: float = 0.5,
    is_fallback: bool = False,
) -> EvaluatorVerdict:
    """Build a verdict whose overall score is the weighted average of its dimensions.

    Scores are ordered by rubric order; a dimension scored twice keeps its
    last score.
    """
    by_dimension: dict[Dimension, DimensionScore] = {}
    for entry in dimension_scores:
        by_dimension[entry.dimension] = entry
    ordered = tuple(by_dimension[spec.dimension] for spec in RUBRIC if spec.dimension in by_dimension)
    overall = weighted_overall({entry.dimension: entry.score for entry in ordered})
    return EvaluatorVerdict(
        role=role,
        overall_score=overall,
        dimension_scores=ordered,
        issues=tuple(issues),
        critique=critique,
        confidence=confidence,
        is_fallback=is_fallback,
    )


def neutral_verdict(role: str, reason: str = "") -> EvaluatorVerdict:
    """Stand-in for an evaluator whose output could not be parsed even after a strict retry."""
    return assemble_verdict(
        role=role,
        dimension_scores=[
            DimensionScore(dimension=spec.dimension, score=NEUTRAL_SCORE, reasoning="evaluation unavailable")
            for spec in RUBRIC
        ],
        critique=f"Evaluation unavailable; neutral default applied. {reason}".strip(),
        confidence=0.0,
        is_fallback=True,
    )


def detect_disagreement(
    verdicts: Sequence[EvaluatorVerdict],
    threshold: float = DEFAULT_DISAGREEMENT_THRESHOLD,
) -> DisagreementResult:
    """Flag every dimension whose max-min score spread across evaluators exceeds ``threshold``.

    A dimension an evaluator did not score counts as 0 for that evaluator.
    Fewer than two verdicts can never disagree.
    """
    if len(verdicts) < 2:
        return DisagreementResult(
            has_disagreement=False,
            evaluator_positions=tuple(
                EvaluatorPosition(evaluator=verdict.role, overall_score=verdict.overall_score)
                for verdict in verdicts
            ),
        )

    spreads: dict[Dimension, float] = {}
    disputed: list[Dimension] = []
    for spec in RUBRIC:
        scores = [verdict.score_for(spec.dimension) or 0.0 for verdict in verdicts]
        # Rounded so float noise (8.8 - 6.8) cannot push an exact threshold over the line.
        spread = round(max(scores) - min(scores), 6)
        spreads[spec.dimension] = spread
        if spread > threshold:
            disputed.append(spec.dimension)

    positions = tuple(
        EvaluatorPosition(
            evaluator=verdict.role,
            overall_score=verdict.overall_score,
            divergent_dimensions=tuple(
                DimensionPosition(dimension=dimension, score=verdict.score_for(dimension) or 0.0)
                for dimension in disputed
            ),
        )
        for verdict in verdicts
    )
    return DisagreementResult(
        has_disagreement=bool(disputed),
        disagreeing_dimensions=tuple(disputed),
        max_spread=max(spreads.values(), default=0.0),
        dimension_spreads=spreads,
        evaluator_positions=positions,
    )


def _mean_breakdown(verdicts: Sequence[EvaluatorVerdict]) -> dict[Dimension, float]:
    breakdown: dict[Dimension, float] = {}
    for spec in RUBRIC:
        scores = [score for verdict in verdicts if (score := verdict.score_for(spec.dimension)) is not None]
        if scores:
            breakdown[spec.dimension] = round(mean(scores), 2)
    return breakdown


def calculate_final_score(
    verdicts: Sequence[EvaluatorVerdict],
    *,
    disagreement: DisagreementResult | None = None,
    arbiter_verdict: EvaluatorVerdict | None = None,
    discussion_occurred: bool = False,
    arbiter_weight: float = ARBITER_WEIGHT_MULTIPLIER,
) -> ClarityScore:
    """Settle one scoring pass into a ``ClarityScore``.

    Args:
        verdicts: Primary panel verdicts; pass the revised verdicts when a
            discussion round ran.
        disagreement: Disagreement over ``verdicts``; required for arbitration.
        arbiter_verdict: Arbiter output, when a tiebreak was invoked.
        discussion_occurred: Whether ``verdicts`` come from a discussion round.
        arbiter_weight: Weight of the arbiter's score relative to one primary
            evaluator on each disputed dimension.

    Returns:
        Score with the consensus method that produced it.

    Raises:
        ValueError: If ``verdicts`` is empty.
    """
    if not verdicts:
        raise ValueError("calculate_final_score requires at least one verdict")

    if arbiter_verdict is not None and disagreement is not None and disagreement.disagreeing_dimensions:
        breakdown = _mean_breakdown(verdicts)
        for dimension in disagreement.disagreeing_dimensions:
            primary = [verdict.score_for(dimension) or 0.0 for verdict in verdicts]
            arbiter_score = arbiter_verdict.score_for(dimension)
            if arbiter_score is None:
                continue
            blended = (sum(primary) + arbiter_score * arbiter_weight) / (len(primary) + arbiter_weight)
            breakdown[dimension] = round(blended, 2)
        confidences = [verdict.confidence for verdict in verdicts] + [arbiter_verdict.confidence]
        return ClarityScore(
            overall=weighted_overall(breakdown),
            dimension_breakdown=breakdown,
            consensus_method=ConsensusMethod.ARBITRATED,
            confidence=round(mean(confidences), 2),
            evaluator_count=len(verdicts) + 1,
        )

    method = ConsensusMethod.POST_DISCUSSION_MEAN if discussion_occurred else ConsensusMethod.MEAN
    return ClarityScore(
        overall=round(mean(verdict.overall_score for verdict in verdicts), 1),
        dimension_breakdown=_mean_breakdown(verdicts),
        consensus_method=method,
        confidence=round(mean(verdict.confidence for verdict in verdicts), 2),
        evaluator_count=len(verdicts),
    )


def human_review_reason(disagreement: DisagreementResult) -> str:
    dimensions = ", ".join(dimension.value for dimension in disagreement.disagreeing_dimensions)
    count = len(disagreement.disagreeing_dimensions)
    return (
        f"Tiebreaker invoked due to {count} disputed dimension(s): {dimensions}. "
        f"Max spread: {disagreement.max_spread:.1f}."
    )


# ---------------------------------------------------------------------------
# Critique aggregation
# ---------------------------------------------------------------------------


def _words(text: str) -> set[str]:
    return set(_WORD_RE.findall(text.lower()))


def issue_similarity(left: str, right: str) -> float:
    """Jaccard similarity of the normalized word sets of two issue descriptions."""
    a, b = _words(left), _words(right)
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def priority_level(score: float) -> PriorityLevel:
    if score >= 8:
        return PriorityLevel.CRITICAL
    if score >= 5:
        return PriorityLevel.HIGH
    if score >= 3:
        return PriorityLevel.MEDIUM
    return PriorityLevel.LOW


class _IssueCluster:
    __slots__ = ("dimension", "severity", "description", "quote", "suggested_fix", "roles")

    def __init__(self, issue: Issue, role: str) -> None:
        self.dimension = issue.dimension
        self.severity = issue.severity
        self.description = issue.description
        self.quote = issue.quote
        self.suggested_fix = issue.suggested_fix
        self.roles = [role]

    def absorb(self, issue: Issue, role: str) -> None:
        if issue.severity.rank > self.severity.rank:
            self.severity = issue.severity
        if len(issue.quote) > len(self.quote):
            self.quote = issue.quote
        if len(issue.suggested_fix) > len(self.suggested_fix):
            self.suggested_fix = issue.suggested_fix
        if role not in self.roles:
            self.roles.append(role)

    def prioritize(self, panel_size: int) -> PrioritizedIssue:
        severity = Severity(self.severity)
        agreement = len(self.roles)
        score = (
            (agreement / max(panel_size, 1)) * 4
            + severity.rank
            + (2 if self.suggested_fix.strip() else 0)
            + severity.rank * DIMENSION_WEIGHTS[self.dimension] * 5
        )
        score = round(score, 2)
        return PrioritizedIssue(
            dimension=self.dimension,
            severity=severity,
            description=self.description,
            quote=self.quote,
            suggested_fix=self.suggested_fix,
            agreement_count=agreement,
            evaluator_roles=tuple(self.roles),
            priority_score=score,
            priority=priority_level(score),
        )


def aggregate_critiques(verdicts: Sequence[EvaluatorVerdict], limit: int = 5) -> AggregatedCritique:
    """Deduplicate issues across evaluators and keep the ``limit`` highest-priority ones."""
    clusters: list[_IssueCluster] = []
    for verdict in verdicts:
        for issue in verdict.issues:
            match = next(
                (
                    cluster
                    for cluster in clusters
                    if cluster.dimension == issue.dimension
                    and issue_similarity(cluster.description, issue.description) > ISSUE_SIMILARITY_THRESHOLD
                ),
                None,
            )
            if match is None:
                clusters.append(_IssueCluster(issue, verdict.role))
            else:
                match.absorb(issue, verdict.role)

    ranked = sorted(
        (cluster.prioritize(len(verdicts)) for cluster in clusters),
        key=lambda item: item.priority_score,
        reverse=True,
    )
    top = tuple(ranked[:limit])
    if not top:
        summary = "No issues identified by the evaluation panel."
    else:
        lines = [f"{len(clusters)} distinct issue(s) across {len(verdicts)} evaluator(s). Top priorities:"]
        for item in top:
            line = f"- [{item.priority.value}] {item.dimension.value}: {item.description}"
            if item.suggested_fix:
                line += f" (fix: {item.suggested_fix})"
            lines.append(line)
        summary = "\n".join(lines)
    return AggregatedCritique(issues=top, total_issue_count=len(clusters), summary=summary)
