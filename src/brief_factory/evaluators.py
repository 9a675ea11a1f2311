from __future__ import annotations

import json
from typing import Mapping, Protocol, Sequence

from .errors import MalformedOutputError
from .llm import GenerationRequest, GenerationService, normalize_structured_output
from .models import (
    ArbiterResponse,
    Dimension,
    DimensionScore,
    DisagreementResult,
    DiscussionResponse,
    EvaluatorRole,
    EvaluatorVerdict,
    Issue,
    Source,
    VerdictResponse,
)
from .rubric import EVALUATOR_PERSONAS, RUBRIC, describe_rubric


class Evaluator(Protocol):
    """One judge on the panel. Each call may raise ``MalformedOutputError``."""

    role: str

    async def evaluate(self, document: str, sources: Sequence[Source], *, strict: bool = False) -> VerdictResponse:
        ...

    async def discuss(
        self,
        own: EvaluatorVerdict,
        panel: Sequence[EvaluatorVerdict],
        disagreement: DisagreementResult,
        *,
        strict: bool = False,
    ) -> DiscussionResponse:
        ...


class Arbiter(Protocol):
    role: str

    async def arbitrate(
        self,
        document: str,
        verdicts: Sequence[EvaluatorVerdict],
        disagreement: DisagreementResult,
        discussion_summary: str,
        *,
        strict: bool = False,
    ) -> ArbiterResponse:
        ...


def _format_sources(sources: Sequence[Source]) -> str:
    if not sources:
        return "(no source material provided)"
    return "\n".join(f"[{idx}] {source.title} {source.url}".rstrip() for idx, source in enumerate(sources, start=1))


def _format_verdicts(verdicts: Sequence[EvaluatorVerdict]) -> str:
    return json.dumps(
        [
            {
                "role": verdict.role,
                "overall_score": verdict.overall_score,
                "dimension_scores": {k.value: v for k, v in verdict.scores_by_dimension().items()},
                "critique": verdict.critique,
                "issues": [issue.model_dump(mode="json") for issue in verdict.issues],
            }
            for verdict in verdicts
        ],
        indent=2,
    )


class LLMEvaluator:
    """Panel member backed by the generation service, speaking as one persona."""

    def __init__(self, role: EvaluatorRole, service: GenerationService) -> None:
        self.role = role.value
        self.persona = EVALUATOR_PERSONAS[role]
        self.service = service

    async def evaluate(self, document: str, sources: Sequence[Source], *, strict: bool = False) -> VerdictResponse:
        prompt = (
            f"You are {self.persona.name}, an independent evaluator of analytical briefs. "
            f"Focus on {self.persona.focus}. {self.persona.instructions}\n\n"
            "Score the document from 0 to 10 on every rubric dimension, list concrete issues with "
            "severity, a short supporting quote and a suggested fix, and write an overall critique.\n\n"
            f"Rubric:\n{describe_rubric()}\n\n"
            f"Sources:\n{_format_sources(sources)}\n\n"
            f"Document:\n{document}"
        )
        request = GenerationRequest(stage="scoring", role="evaluator", prompt=prompt, schema=VerdictResponse, strict=strict)
        return normalize_structured_output(raw_output=await self.service.invoke(request), schema=VerdictResponse)

    async def discuss(
        self,
        own: EvaluatorVerdict,
        panel: Sequence[EvaluatorVerdict],
        disagreement: DisagreementResult,
        *,
        strict: bool = False,
    ) -> DiscussionResponse:
        disputed = ", ".join(d.value for d in disagreement.disagreeing_dimensions) or "none"
        prompt = (
            f"You are {self.persona.name}. The panel disagrees on: {disputed}.\n"
            "Review every evaluator's verdict, including your own, and decide whether to revise your "
            "dimension scores. Revisions larger than 2 points are capped. Explain your reflection.\n\n"
            f"Your verdict role: {own.role}\n"
            f"All verdicts:\n{_format_verdicts(panel)}"
        )
        request = GenerationRequest(
            stage="scoring", role="evaluator", prompt=prompt, schema=DiscussionResponse, strict=strict
        )
        return normalize_structured_output(raw_output=await self.service.invoke(request), schema=DiscussionResponse)


class LLMArbiter:
    def __init__(self, service: GenerationService) -> None:
        self.role = EvaluatorRole.ARBITER.value
        self.persona = EVALUATOR_PERSONAS[EvaluatorRole.ARBITER]
        self.service = service

    async def arbitrate(
        self,
        document: str,
        verdicts: Sequence[EvaluatorVerdict],
        disagreement: DisagreementResult,
        discussion_summary: str,
        *,
        strict: bool = False,
    ) -> ArbiterResponse:
        disputed = ", ".join(d.value for d in disagreement.disagreeing_dimensions)
        prompt = (
            f"You are {self.persona.name}: {self.persona.instructions}\n"
            f"Disputed dimensions: {disputed} (max spread {disagreement.max_spread:.1f}).\n"
            f"Discussion summary:\n{discussion_summary}\n\n"
            f"Panel verdicts:\n{_format_verdicts(verdicts)}\n\n"
            f"Document:\n{document}\n\n"
            "Return definitive 0-10 scores for every disputed dimension and a resolution summary."
        )
        request = GenerationRequest(stage="scoring", role="arbiter", prompt=prompt, schema=ArbiterResponse, strict=strict)
        return normalize_structured_output(raw_output=await self.service.invoke(request), schema=ArbiterResponse)


# ---------------------------------------------------------------------------
# Deterministic evaluators (offline mode and tests)
# ---------------------------------------------------------------------------

ScoreSpec = float | Mapping[Dimension, float]


def uniform_scores(base: float, **overrides: float) -> dict[Dimension, float]:
    """Every rubric dimension at ``base``, with per-dimension overrides by enum value name."""
    scores = {rubric.dimension: float(base) for rubric in RUBRIC}
    for name, value in overrides.items():
        scores[Dimension(name)] = float(value)
    return scores


def _expand(spec: ScoreSpec) -> dict[Dimension, float]:
    if isinstance(spec, Mapping):
        return {Dimension(k): float(v) for k, v in spec.items()}
    return {rubric.dimension: float(spec) for rubric in RUBRIC}


class ScriptedEvaluator:
    """Evaluator that replays scripted scores.

    ``passes`` holds one score spec per ``evaluate`` call; the last one
    repeats once the script runs out. ``discussion`` is the score spec it
    moves to when asked to discuss (None keeps its position).
    ``malformed_calls`` makes that many leading calls raise
    ``MalformedOutputError``.
    """

    def __init__(
        self,
        role: str,
        passes: Sequence[ScoreSpec],
        *,
        issues: Sequence[Issue] = (),
        discussion: ScoreSpec | None = None,
        confidence: float = 0.8,
        malformed_calls: int = 0,
    ) -> None:
        if not passes:
            raise ValueError("ScriptedEvaluator needs at least one scoring pass")
        self.role = role
        self.passes = list(passes)
        self.issues = list(issues)
        self.discussion = discussion
        self.confidence = confidence
        self.malformed_calls = malformed_calls
        self.evaluate_calls = 0
        self.discuss_calls = 0
        self.strict_calls = 0

    def _maybe_malformed(self, strict: bool) -> None:
        if strict:
            self.strict_calls += 1
        if self.malformed_calls > 0:
            self.malformed_calls -= 1
            raise MalformedOutputError(f"{self.role} returned unparseable output")

    async def evaluate(self, document: str, sources: Sequence[Source], *, strict: bool = False) -> VerdictResponse:
        self._maybe_malformed(strict)
        spec = self.passes[min(self.evaluate_calls, len(self.passes) - 1)]
        self.evaluate_calls += 1
        return VerdictResponse(
            dimension_scores=[DimensionScore(dimension=k, score=v) for k, v in _expand(spec).items()],
            issues=list(self.issues),
            critique=f"{self.role} scripted critique",
            confidence=self.confidence,
        )

    async def discuss(
        self,
        own: EvaluatorVerdict,
        panel: Sequence[EvaluatorVerdict],
        disagreement: DisagreementResult,
        *,
        strict: bool = False,
    ) -> DiscussionResponse:
        self.discuss_calls += 1
        if self.discussion is None:
            return DiscussionResponse(reflection="Position maintained.")
        return DiscussionResponse(
            revised_scores=[DimensionScore(dimension=k, score=v) for k, v in _expand(self.discussion).items()],
            reflection="Revised after reviewing peer verdicts.",
        )


class ScriptedArbiter:
    def __init__(self, scores: ScoreSpec, *, confidence: float = 0.9) -> None:
        self.role = EvaluatorRole.ARBITER.value
        self.scores = _expand(scores)
        self.confidence = confidence
        self.arbitrate_calls = 0

    async def arbitrate(
        self,
        document: str,
        verdicts: Sequence[EvaluatorVerdict],
        disagreement: DisagreementResult,
        discussion_summary: str,
        *,
        strict: bool = False,
    ) -> ArbiterResponse:
        self.arbitrate_calls += 1
        return ArbiterResponse(
            definitive_scores=[
                DimensionScore(dimension=d, score=self.scores[d])
                for d in disagreement.disagreeing_dimensions
                if d in self.scores
            ],
            resolution_summary=f"Settled {len(disagreement.disagreeing_dimensions)} disputed dimension(s).",
            confidence=self.confidence,
        )
