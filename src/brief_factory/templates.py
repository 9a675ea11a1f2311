"""Deterministic offline generation service.

Fills each stage schema from the request payload so the full pipeline can run
without network access, for demos and tests.
"""

from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel

from .errors import MalformedOutputError
from .llm import GenerationRequest
from .models import (
    Classification,
    Definition,
    NarrativeOutput,
    ReadingLevel,
    ReadingLevelSummary,
    ReconciliationOutput,
    ResearchOutput,
    Source,
    StructureOutput,
)
from .rubric import READING_LEVELS, SPECIALIST_PERSONAS, persona_for_domain


_DOMAIN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "economics": ("tax", "tariff", "inflation", "wage", "market", "economy", "trade", "price"),
    "law": ("court", "law", "constitution", "legal", "rights", "statute"),
    "health": ("health", "vaccine", "hospital", "disease", "medicare", "drug"),
    "technology": ("ai", "software", "internet", "data", "algorithm", "technology"),
    "environment": ("climate", "carbon", "emission", "energy", "pollution"),
    "history": ("history", "war", "century", "empire", "revolution"),
}


def classify_question(question: str) -> str:
    words = {word.strip("?.,!:;\"'").lower() for word in question.split()}
    for domain, keywords in _DOMAIN_KEYWORDS.items():
        if words.intersection(keywords):
            return domain
    return "general"


def _question(request: GenerationRequest) -> str:
    return str(request.payload.get("question", "the question")).strip().rstrip("?")


class TemplateGenerationService:
    """Offline stand-in for ``LLMGenerationService``.

    Every call is recorded in ``calls`` as ``(stage, role, strict)``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, bool]] = []
        self._builders: dict[type[BaseModel], Callable[[GenerationRequest], BaseModel]] = {
            ResearchOutput: self._research,
            Classification: self._classification,
            StructureOutput: self._structure,
            NarrativeOutput: self._narrative,
            ReconciliationOutput: self._reconciliation,
            ReadingLevelSummary: self._summary,
        }

    async def invoke(self, request: GenerationRequest) -> BaseModel:
        self.calls.append((request.stage, request.role, request.strict))
        builder = self._builders.get(request.schema)
        if builder is None:
            raise MalformedOutputError(f"No offline template for schema {request.schema.__name__}")
        return builder(request)

    def _research(self, request: GenerationRequest) -> ResearchOutput:
        question = _question(request)
        return ResearchOutput(
            sources=[
                Source(
                    title=f"Background briefing: {question}",
                    publisher="Congressional Research Service",
                    excerpt="Summarizes the legislative history and the main competing proposals.",
                ),
                Source(
                    title=f"Empirical evidence on {question}",
                    publisher="National Bureau of Economic Research",
                    excerpt="Reviews measured outcomes and the uncertainty around them.",
                ),
            ],
            research_notes=f"Two background sources collected for: {question}.",
        )

    def _classification(self, request: GenerationRequest) -> Classification:
        question = _question(request)
        domain = classify_question(question)
        return Classification(
            domain=domain,
            topic=question[:80],
            persona=persona_for_domain(domain),
            confidence=0.6 if domain != "general" else 0.3,
            rationale=f"Keyword match routed the question to the {SPECIALIST_PERSONAS[domain]} persona.",
        )

    def _structure(self, request: GenerationRequest) -> StructureOutput:
        question = _question(request)
        return StructureOutput(
            factors=[f"Underlying incentives behind {question}", "Distributional effects across groups"],
            policies=["Current statutory framework", "Leading reform proposals"],
            definitions=[Definition(term="Baseline", definition="The outcome expected with no policy change.")],
            consequences=["Short-run adjustment costs", "Long-run behavioral responses"],
            timeline=["Original enactment", "Most recent amendment"],
        )

    def _narrative(self, request: GenerationRequest) -> NarrativeOutput:
        if request.role == "refiner":
            return self._refined_narrative(request)
        question = _question(request)
        persona = request.payload.get("persona") or "policy_analyst"
        return NarrativeOutput(
            introduction=f"This brief, written from the perspective of a {persona}, examines {question}.",
            main_body=(
                "Starting from first principles, the analysis identifies who bears the costs and who "
                "receives the benefits, then weighs the available evidence [1][2]."
            ),
            conclusion="The evidence supports a cautious reading; the main uncertainties are noted above.",
            key_takeaways=["Incentives drive outcomes", "Evidence is mixed but informative"],
        )

    def _refined_narrative(self, request: GenerationRequest) -> NarrativeOutput:
        current = NarrativeOutput.model_validate(request.payload["narrative"])
        attempt = request.payload.get("attempt", 1)
        issues: list[Any] = list(request.payload.get("issues") or [])
        addressed = "; ".join(str(issue) for issue in issues[:3]) or "general clarity"
        return NarrativeOutput(
            introduction=current.introduction,
            main_body=f"{current.main_body}\n\nRevision {attempt} addresses: {addressed}.",
            conclusion=current.conclusion,
            key_takeaways=list(current.key_takeaways),
        )

    def _reconciliation(self, request: GenerationRequest) -> ReconciliationOutput:
        narrative = NarrativeOutput.model_validate(request.payload["narrative"])
        return ReconciliationOutput(narrative=narrative, is_consistent=True, changes=[])

    def _summary(self, request: GenerationRequest) -> ReadingLevelSummary:
        level = ReadingLevel(request.payload["level"])
        spec = READING_LEVELS[level]
        question = _question(request)
        return ReadingLevelSummary(
            level=level,
            text=f"For {spec.audience}: {question} comes down to who pays and who benefits.",
        )
