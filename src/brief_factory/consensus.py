from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from statistics import median
from typing import Any, Awaitable, Callable, Sequence, TypedDict, TypeVar

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .errors import MalformedOutputError, RetryExhaustedError
from .evaluators import Arbiter, Evaluator
from .models import (
    ArbiterResponse,
    ConsensusResult,
    DimensionScore,
    DisagreementResult,
    DiscussionResponse,
    DiscussionRoundOutput,
    EvaluatorRole,
    EvaluatorVerdict,
    ScoreRevision,
    Source,
    TiebreakerOutput,
)
from .retry import RetryPolicy, Sleep, with_smart_retry
from .rubric import RUBRIC
from .scoring import (
    ARBITER_WEIGHT_MULTIPLIER,
    DEFAULT_DISAGREEMENT_THRESHOLD,
    aggregate_critiques,
    assemble_verdict,
    calculate_final_score,
    detect_disagreement,
    human_review_reason,
    neutral_verdict,
)
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_DISCUSSION_SHIFT = 2.0
MAX_DISCUSSION_ROUNDS = 1
MAX_ARBITER_INVOCATIONS = 1


class ConsensusState(TypedDict, total=False):
    document: str
    sources: list[Source]
    verdicts: list[EvaluatorVerdict]
    durations_ms: dict[str, int]
    disagreement: DisagreementResult
    post_discussion_disagreement: DisagreementResult
    discussion: DiscussionRoundOutput
    tiebreaker: TiebreakerOutput
    discussion_rounds: int
    arbiter_invocations: int
    result: ConsensusResult


@dataclass(frozen=True)
class PanelResult:
    verdicts: tuple[EvaluatorVerdict, ...]
    durations_ms: dict[str, int]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def apply_discussion(
    own: EvaluatorVerdict, response: DiscussionResponse
) -> tuple[EvaluatorVerdict, list[ScoreRevision]]:
    """Fold one evaluator's discussion response into a new verdict.

    Each dimension may move by at most ``MAX_DISCUSSION_SHIFT`` points and
    only dimensions the evaluator originally scored can be revised. The
    original verdict is left untouched.
    """
    current = own.scores_by_dimension()
    reasons = {entry.dimension: entry.reasoning for entry in own.dimension_scores}
    revisions: list[ScoreRevision] = []
    for entry in response.revised_scores:
        if entry.dimension not in current:
            continue
        previous = current[entry.dimension]
        low = max(0.0, previous - MAX_DISCUSSION_SHIFT)
        high = min(10.0, previous + MAX_DISCUSSION_SHIFT)
        revised = round(min(max(entry.score, low), high), 1)
        if abs(revised - previous) < 0.05:
            continue
        current[entry.dimension] = revised
        reasons[entry.dimension] = entry.reasoning or reasons.get(entry.dimension, "")
        revisions.append(
            ScoreRevision(
                role=own.role,
                dimension=entry.dimension,
                previous_score=previous,
                revised_score=revised,
                reason=entry.reasoning,
            )
        )

    critique = own.critique
    if response.reflection.strip():
        critique = f"{critique}\n\n[POST-DISCUSSION] {response.reflection.strip()}".strip()
    verdict = assemble_verdict(
        role=own.role,
        dimension_scores=[
            DimensionScore(dimension=dimension, score=score, reasoning=reasons.get(dimension, ""))
            for dimension, score in current.items()
        ],
        issues=list(own.issues) + list(response.additional_issues),
        critique=critique,
        confidence=own.confidence,
        is_fallback=own.is_fallback,
    )
    return verdict, revisions


def summarize_discussion(revisions: Sequence[ScoreRevision]) -> str:
    if not revisions:
        return "All evaluators maintained their original positions after reviewing other perspectives."
    lines = [f"Discussion round completed with {len(revisions)} score revision(s):"]
    for revision in revisions:
        direction = "up" if revision.revised_score > revision.previous_score else "down"
        lines.append(
            f"- {revision.role} revised {revision.dimension.value}: "
            f"{revision.previous_score:.1f} -> {revision.revised_score:.1f} ({direction})"
        )
    return "\n".join(lines)


class ConsensusScorer:
    """Multi-evaluator scoring with a bounded disagreement protocol.

    Subgraph: panel -> assess -> (discuss -> reassess -> (arbitrate ->)) settle.
    ``assess`` and ``reassess`` route with ``Command``; the discussion and
    arbiter bounds are counters carried in the subgraph state.
    """

    def __init__(
        self,
        *,
        evaluators: Sequence[Evaluator],
        arbiter: Arbiter,
        threshold: float = DEFAULT_DISAGREEMENT_THRESHOLD,
        arbiter_weight: float = ARBITER_WEIGHT_MULTIPLIER,
        retry_policy: RetryPolicy | None = None,
        max_prioritized_issues: int = 5,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not evaluators or len(evaluators) % 2 == 0:
            raise ValueError(f"Evaluator panel must have an odd number of members, got {len(evaluators)}")
        roles = [evaluator.role for evaluator in evaluators]
        if len(set(roles)) != len(roles):
            raise ValueError(f"Evaluator roles must be unique, got {roles}")
        self.evaluators = list(evaluators)
        self.arbiter = arbiter
        self.threshold = threshold
        self.arbiter_weight = arbiter_weight
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2, initial_delay=0.5)
        self.max_prioritized_issues = max_prioritized_issues
        self.sleep = sleep
        self.graph = self._build_graph().compile()

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        evaluators: Sequence[Evaluator],
        arbiter: Arbiter,
        sleep: Sleep = asyncio.sleep,
    ) -> "ConsensusScorer":
        return cls(
            evaluators=evaluators,
            arbiter=arbiter,
            threshold=settings.disagreement_threshold,
            arbiter_weight=settings.arbiter_weight,
            retry_policy=RetryPolicy.for_evaluators(settings),
            max_prioritized_issues=settings.max_prioritized_issues,
            sleep=sleep,
        )

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ConsensusState)
        graph.add_node("panel", self._panel)
        graph.add_node("assess", self._assess)
        graph.add_node("discuss", self._discuss)
        graph.add_node("reassess", self._reassess)
        graph.add_node("arbitrate", self._arbitrate)
        graph.add_node("settle", self._settle)

        graph.add_edge(START, "panel")
        graph.add_edge("panel", "assess")
        graph.add_edge("discuss", "reassess")
        graph.add_edge("arbitrate", "settle")
        graph.add_edge("settle", END)
        return graph

    # -- external calls -----------------------------------------------------

    async def _call_with_parse_retry(
        self,
        call: Callable[[bool], Awaitable[T]],
        *,
        name: str,
        fallback: Callable[[], T] | None = None,
    ) -> T:
        """Transient errors get the evaluator retry budget; malformed output gets one strict retry."""
        last_error: BaseException | None = None
        for strict in (False, True):
            try:
                return await with_smart_retry(
                    lambda strict=strict: call(strict),
                    policy=self.retry_policy,
                    name=name,
                    sleep=self.sleep,
                )
            except RetryExhaustedError as exc:
                if not isinstance(exc.last_error, MalformedOutputError):
                    raise
                last_error = exc.last_error
                logger.warning("%s returned malformed output (strict=%s): %s", name, strict, exc.last_error)
        if fallback is None:
            raise MalformedOutputError(f"{name} returned malformed output after a strict retry") from last_error
        return fallback()

    async def _evaluate_one(
        self, evaluator: Evaluator, document: str, sources: Sequence[Source]
    ) -> tuple[EvaluatorVerdict, int]:
        started = time.monotonic()
        try:
            response = await self._call_with_parse_retry(
                lambda strict: evaluator.evaluate(document, sources, strict=strict),
                name=f"evaluator:{evaluator.role}",
            )
        except MalformedOutputError:
            # Keep the panel size fixed: a neutral verdict stands in for the evaluator.
            verdict = neutral_verdict(evaluator.role, "Output was malformed after a strict retry.")
        else:
            verdict = assemble_verdict(
                role=evaluator.role,
                dimension_scores=response.dimension_scores,
                issues=response.issues,
                critique=response.critique,
                confidence=response.confidence,
            )
        return verdict, _elapsed_ms(started)

    async def run_panel(self, document: str, sources: Sequence[Source]) -> PanelResult:
        """Score ``document`` with every evaluator concurrently; evaluators never see each other here."""
        results = await asyncio.gather(
            *(self._evaluate_one(evaluator, document, sources) for evaluator in self.evaluators)
        )
        verdicts = tuple(verdict for verdict, _ in results)
        durations = {verdict.role: duration for verdict, duration in results}
        for verdict in verdicts:
            logger.info("Evaluator %s scored %.1f", verdict.role, verdict.overall_score)
        return PanelResult(verdicts=verdicts, durations_ms=durations)

    # -- graph nodes --------------------------------------------------------

    async def _panel(self, state: ConsensusState) -> dict[str, Any]:
        panel = await self.run_panel(state["document"], state.get("sources", []))
        return {"verdicts": list(panel.verdicts), "durations_ms": panel.durations_ms}

    def _assess(self, state: ConsensusState) -> Command[str]:
        disagreement = detect_disagreement(state["verdicts"], self.threshold)
        rounds = int(state.get("discussion_rounds", 0))
        if disagreement.has_disagreement and rounds < MAX_DISCUSSION_ROUNDS:
            logger.info(
                "Disagreement on %s (max spread %.1f); opening discussion",
                ", ".join(d.value for d in disagreement.disagreeing_dimensions),
                disagreement.max_spread,
            )
            return Command(update={"disagreement": disagreement}, goto="discuss")
        return Command(update={"disagreement": disagreement}, goto="settle")

    async def _discuss(self, state: ConsensusState) -> dict[str, Any]:
        started = time.monotonic()
        verdicts = state["verdicts"]
        disagreement = state["disagreement"]
        by_role = {evaluator.role: evaluator for evaluator in self.evaluators}

        async def _one(own: EvaluatorVerdict) -> DiscussionResponse:
            evaluator = by_role[own.role]
            return await self._call_with_parse_retry(
                lambda strict: evaluator.discuss(own, verdicts, disagreement, strict=strict),
                name=f"discussion:{own.role}",
                fallback=lambda: DiscussionResponse(reflection=""),
            )

        responses = await asyncio.gather(*(_one(own) for own in verdicts))
        revised: list[EvaluatorVerdict] = []
        revisions: list[ScoreRevision] = []
        for own, response in zip(verdicts, responses):
            verdict, changes = apply_discussion(own, response)
            revised.append(verdict)
            revisions.extend(changes)

        discussion = DiscussionRoundOutput(
            revised_verdicts=tuple(revised),
            revisions=tuple(revisions),
            changes_count=len(revisions),
            discussion_summary=summarize_discussion(revisions),
            duration_ms=_elapsed_ms(started),
        )
        return {
            "discussion": discussion,
            "discussion_rounds": int(state.get("discussion_rounds", 0)) + 1,
        }

    def _reassess(self, state: ConsensusState) -> Command[str]:
        revised = state["discussion"].revised_verdicts
        disagreement = detect_disagreement(revised, self.threshold)
        invocations = int(state.get("arbiter_invocations", 0))
        if disagreement.has_disagreement and invocations < MAX_ARBITER_INVOCATIONS:
            logger.info("Disagreement persists after discussion; invoking arbiter")
            return Command(update={"post_discussion_disagreement": disagreement}, goto="arbitrate")
        return Command(update={"post_discussion_disagreement": disagreement}, goto="settle")

    async def _arbitrate(self, state: ConsensusState) -> dict[str, Any]:
        started = time.monotonic()
        verdicts = list(state["discussion"].revised_verdicts)
        disagreement = state["post_discussion_disagreement"]
        summary = state["discussion"].discussion_summary

        def _fallback() -> ArbiterResponse:
            return ArbiterResponse(
                definitive_scores=[
                    DimensionScore(
                        dimension=dimension,
                        score=round(median(v.score_for(dimension) or 0.0 for v in verdicts), 1),
                        reasoning="arbiter output unavailable; panel median used",
                    )
                    for dimension in disagreement.disagreeing_dimensions
                ],
                resolution_summary="Arbiter output was malformed; disputed dimensions settled at the panel median.",
                confidence=0.0,
            )

        response = await self._call_with_parse_retry(
            lambda strict: self.arbiter.arbitrate(state["document"], verdicts, disagreement, summary, strict=strict),
            name="arbiter",
            fallback=_fallback,
        )
        verdict = self._arbiter_verdict(response, verdicts, disagreement)
        tiebreaker = TiebreakerOutput(
            verdict=verdict,
            disputed_dimensions=disagreement.disagreeing_dimensions,
            resolution_summary=response.resolution_summary,
            duration_ms=_elapsed_ms(started),
        )
        return {
            "tiebreaker": tiebreaker,
            "arbiter_invocations": int(state.get("arbiter_invocations", 0)) + 1,
        }

    @staticmethod
    def _arbiter_verdict(
        response: ArbiterResponse,
        verdicts: Sequence[EvaluatorVerdict],
        disagreement: DisagreementResult,
    ) -> EvaluatorVerdict:
        """Definitive scores settle disputed dimensions; other dimensions use the arbiter's score or the panel median."""
        disputed = set(disagreement.disagreeing_dimensions)
        definitive = {entry.dimension: entry for entry in response.definitive_scores if entry.dimension in disputed}
        others = {entry.dimension: entry for entry in response.other_scores}
        scores: list[DimensionScore] = []
        for spec in RUBRIC:
            if spec.dimension in definitive:
                scores.append(definitive[spec.dimension])
            elif spec.dimension in others and spec.dimension not in disputed:
                scores.append(others[spec.dimension])
            else:
                panel = [v.score_for(spec.dimension) or 0.0 for v in verdicts]
                scores.append(
                    DimensionScore(
                        dimension=spec.dimension,
                        score=round(median(panel), 1),
                        reasoning="panel median",
                    )
                )
        return assemble_verdict(
            role=EvaluatorRole.ARBITER.value,
            dimension_scores=scores,
            issues=response.issues,
            critique=response.resolution_summary,
            confidence=response.confidence,
        )

    def _settle(self, state: ConsensusState) -> dict[str, Any]:
        discussion = state.get("discussion")
        tiebreaker = state.get("tiebreaker")
        verdicts = list(discussion.revised_verdicts) if discussion is not None else list(state["verdicts"])
        needs_review = False
        reason: str | None = None

        if tiebreaker is not None:
            post = state["post_discussion_disagreement"]
            clarity = calculate_final_score(
                verdicts,
                disagreement=post,
                arbiter_verdict=tiebreaker.verdict,
                discussion_occurred=True,
                arbiter_weight=self.arbiter_weight,
            )
            needs_review = True
            reason = human_review_reason(post)
            critique_sources = verdicts + [tiebreaker.verdict]
        else:
            clarity = calculate_final_score(verdicts, discussion_occurred=discussion is not None)
            critique_sources = verdicts

        result = ConsensusResult(
            clarity_score=clarity,
            verdicts=tuple(verdicts),
            disagreement=state.get("disagreement"),
            post_discussion_disagreement=state.get("post_discussion_disagreement"),
            discussion=discussion,
            tiebreaker=tiebreaker,
            needs_human_review=needs_review,
            human_review_reason=reason,
            aggregated_critique=aggregate_critiques(critique_sources, self.max_prioritized_issues),
            evaluator_durations_ms=dict(state.get("durations_ms", {})),
        )
        logger.info(
            "Consensus settled at %.1f via %s%s",
            clarity.overall,
            clarity.consensus_method.value,
            " (human review flagged)" if needs_review else "",
        )
        return {"result": result}

    async def score(self, document: str, sources: Sequence[Source] = ()) -> ConsensusResult:
        final = await self.graph.ainvoke(
            {
                "document": document,
                "sources": list(sources),
                "discussion_rounds": 0,
                "arbiter_invocations": 0,
            }
        )
        return final["result"]
