from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .models import Dimension, EvaluatorRole, ReadingLevel


@dataclass(frozen=True)
class DimensionSpec:
    dimension: Dimension
    label: str
    weight: float
    description: str


@dataclass(frozen=True)
class EvaluatorPersona:
    role: EvaluatorRole
    name: str
    focus: str
    instructions: str


@dataclass(frozen=True)
class ReadingLevelSpec:
    level: ReadingLevel
    audience: str
    min_words: int
    max_words: int


RUBRIC: tuple[DimensionSpec, ...] = (
    DimensionSpec(
        Dimension.FIRST_PRINCIPLES_COHERENCE,
        "First-principles coherence",
        0.20,
        "Arguments build from fundamentals; conclusions follow from stated premises.",
    ),
    DimensionSpec(
        Dimension.INTERNAL_CONSISTENCY,
        "Internal consistency",
        0.15,
        "Sections, summaries and structured facts never contradict each other.",
    ),
    DimensionSpec(
        Dimension.EVIDENCE_QUALITY,
        "Evidence quality",
        0.20,
        "Claims are supported by credible, cited and relevant sources.",
    ),
    DimensionSpec(
        Dimension.ACCESSIBILITY,
        "Accessibility",
        0.15,
        "Jargon is explained and each reading level matches its audience.",
    ),
    DimensionSpec(
        Dimension.OBJECTIVITY,
        "Objectivity",
        0.10,
        "Competing positions are represented fairly without loaded language.",
    ),
    DimensionSpec(
        Dimension.FACTUAL_ACCURACY,
        "Factual accuracy",
        0.15,
        "Names, numbers, dates and mechanisms are correct.",
    ),
    DimensionSpec(
        Dimension.BIAS_DETECTION,
        "Bias detection",
        0.05,
        "Framing, omission and selection biases are absent or acknowledged.",
    ),
)

DIMENSION_WEIGHTS: dict[Dimension, float] = {spec.dimension: spec.weight for spec in RUBRIC}


EVALUATOR_PERSONAS: dict[EvaluatorRole, EvaluatorPersona] = {
    EvaluatorRole.SKEPTIC: EvaluatorPersona(
        role=EvaluatorRole.SKEPTIC,
        name="The Skeptic",
        focus="unsupported claims, weak evidence and logical gaps",
        instructions="Assume every claim is wrong until the document proves it. Penalize missing citations.",
    ),
    EvaluatorRole.ADVOCATE: EvaluatorPersona(
        role=EvaluatorRole.ADVOCATE,
        name="The Advocate",
        focus="what the document does well and whether its strengths serve the reader",
        instructions="Credit genuine clarity and balance, but still name concrete weaknesses.",
    ),
    EvaluatorRole.GENERALIST: EvaluatorPersona(
        role=EvaluatorRole.GENERALIST,
        name="The Generalist",
        focus="whether an informed non-expert can follow and trust the document",
        instructions="Read as a curious citizen. Flag jargon, leaps and confusing structure.",
    ),
    EvaluatorRole.ARBITER: EvaluatorPersona(
        role=EvaluatorRole.ARBITER,
        name="The Arbiter",
        focus="settling disputed dimensions with definitive, reasoned scores",
        instructions="Weigh every evaluator's argument on the disputed dimensions and issue a final score.",
    ),
}

PRIMARY_PANEL: tuple[EvaluatorRole, ...] = (
    EvaluatorRole.SKEPTIC,
    EvaluatorRole.ADVOCATE,
    EvaluatorRole.GENERALIST,
)

# Specialist voices the classifier may route a question to.
SPECIALIST_PERSONAS: dict[str, str] = {
    "economics": "economist",
    "law": "legal_scholar",
    "health": "public_health_researcher",
    "technology": "technologist",
    "environment": "environmental_scientist",
    "history": "historian",
    "general": "policy_analyst",
}

READING_LEVELS: dict[ReadingLevel, ReadingLevelSpec] = {
    ReadingLevel.CHILD: ReadingLevelSpec(ReadingLevel.CHILD, "a curious ten-year-old", 100, 150),
    ReadingLevel.TEEN: ReadingLevelSpec(ReadingLevel.TEEN, "a high-school student", 200, 250),
    ReadingLevel.UNDERGRAD: ReadingLevelSpec(ReadingLevel.UNDERGRAD, "an undergraduate", 350, 400),
    ReadingLevel.POSTDOC: ReadingLevelSpec(ReadingLevel.POSTDOC, "a domain researcher", 450, 500),
}


def persona_for_domain(domain: str) -> str:
    return SPECIALIST_PERSONAS.get(domain.strip().lower(), SPECIALIST_PERSONAS["general"])


def weighted_overall(scores: Mapping[Dimension, float]) -> float:
    """Weight-normalized average of the given dimension scores, rounded to one decimal.

    Dimensions missing from ``scores`` are left out of both numerator and
    denominator, so a partial breakdown is not dragged toward zero.
    """
    total_weight = 0.0
    weighted_sum = 0.0
    for dimension, score in scores.items():
        weight = DIMENSION_WEIGHTS[Dimension(dimension)]
        weighted_sum += score * weight
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return round(weighted_sum / total_weight, 1)


def describe_rubric() -> str:
    return "\n".join(
        f"- {spec.dimension.value} (weight {spec.weight:.2f}): {spec.description}" for spec in RUBRIC
    )
