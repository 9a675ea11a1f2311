from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Dimension(str, Enum):
    FIRST_PRINCIPLES_COHERENCE = "first_principles_coherence"
    INTERNAL_CONSISTENCY = "internal_consistency"
    EVIDENCE_QUALITY = "evidence_quality"
    ACCESSIBILITY = "accessibility"
    OBJECTIVITY = "objectivity"
    FACTUAL_ACCURACY = "factual_accuracy"
    BIAS_DETECTION = "bias_detection"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class EvaluatorRole(str, Enum):
    SKEPTIC = "skeptic"
    ADVOCATE = "advocate"
    GENERALIST = "generalist"
    ARBITER = "arbiter"


class ConsensusMethod(str, Enum):
    MEAN = "mean"
    POST_DISCUSSION_MEAN = "post-discussion mean"
    ARBITRATED = "arbitrated"


class PriorityLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReadingLevel(str, Enum):
    CHILD = "child"
    TEEN = "teen"
    UNDERGRAD = "undergrad"
    POSTDOC = "postdoc"


# ---------------------------------------------------------------------------
# Scoring records (immutable once produced)
# ---------------------------------------------------------------------------


class Issue(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimension: Dimension
    severity: Severity
    description: str
    quote: str = ""
    suggested_fix: str = ""


class DimensionScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimension: Dimension
    score: float = Field(ge=0.0, le=10.0)
    reasoning: str = ""


class EvaluatorVerdict(BaseModel):
    """One judge's scored output for one document in one scoring pass."""

    model_config = ConfigDict(frozen=True)

    role: str
    overall_score: float = Field(ge=0.0, le=10.0)
    dimension_scores: tuple[DimensionScore, ...]
    issues: tuple[Issue, ...] = ()
    critique: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    is_fallback: bool = False

    def score_for(self, dimension: Dimension) -> float | None:
        for entry in self.dimension_scores:
            if entry.dimension == dimension:
                return entry.score
        return None

    def scores_by_dimension(self) -> dict[Dimension, float]:
        return {entry.dimension: entry.score for entry in self.dimension_scores}


class DimensionPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimension: Dimension
    score: float


class EvaluatorPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    evaluator: str
    overall_score: float
    divergent_dimensions: tuple[DimensionPosition, ...] = ()


class DisagreementResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_disagreement: bool
    disagreeing_dimensions: tuple[Dimension, ...] = ()
    max_spread: float = 0.0
    dimension_spreads: dict[Dimension, float] = Field(default_factory=dict)
    evaluator_positions: tuple[EvaluatorPosition, ...] = ()


class ScoreRevision(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    dimension: Dimension
    previous_score: float
    revised_score: float
    reason: str = ""


class DiscussionRoundOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    revised_verdicts: tuple[EvaluatorVerdict, ...]
    revisions: tuple[ScoreRevision, ...] = ()
    changes_count: int = 0
    discussion_summary: str = ""
    duration_ms: int = 0


class TiebreakerOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    verdict: EvaluatorVerdict
    disputed_dimensions: tuple[Dimension, ...]
    resolution_summary: str = ""
    duration_ms: int = 0


class ClarityScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall: float = Field(ge=0.0, le=10.0)
    dimension_breakdown: dict[Dimension, float]
    consensus_method: ConsensusMethod
    confidence: float = Field(ge=0.0, le=1.0)
    evaluator_count: int


class PrioritizedIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimension: Dimension
    severity: Severity
    description: str
    quote: str = ""
    suggested_fix: str = ""
    agreement_count: int = 1
    evaluator_roles: tuple[str, ...] = ()
    priority_score: float = 0.0
    priority: PriorityLevel = PriorityLevel.LOW


class AggregatedCritique(BaseModel):
    model_config = ConfigDict(frozen=True)

    issues: tuple[PrioritizedIssue, ...] = ()
    total_issue_count: int = 0
    summary: str = ""


class ConsensusResult(BaseModel):
    """Settled outcome of one scoring pass."""

    model_config = ConfigDict(frozen=True)

    clarity_score: ClarityScore
    verdicts: tuple[EvaluatorVerdict, ...]
    disagreement: DisagreementResult | None = None
    post_discussion_disagreement: DisagreementResult | None = None
    discussion: DiscussionRoundOutput | None = None
    tiebreaker: TiebreakerOutput | None = None
    needs_human_review: bool = False
    human_review_reason: str | None = None
    aggregated_critique: AggregatedCritique = Field(default_factory=AggregatedCritique)
    evaluator_durations_ms: dict[str, int] = Field(default_factory=dict)

    @property
    def final_score(self) -> float:
        return self.clarity_score.overall


class PendingRefinement(BaseModel):
    """Refinement in flight: opened by the refine stage, closed by the next scoring pass."""

    model_config = ConfigDict(frozen=True)

    attempt_number: int
    score_before: float
    dimension_scores_before: dict[Dimension, float] = Field(default_factory=dict)
    issues_addressed: tuple[str, ...] = ()


class RefinementAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt_number: int
    score_before: float
    score_after: float
    issues_addressed: tuple[str, ...] = ()
    dimension_scores_before: dict[Dimension, float] = Field(default_factory=dict)
    dimension_scores_after: dict[Dimension, float] = Field(default_factory=dict)
    timestamp: datetime


# ---------------------------------------------------------------------------
# Stage outputs (also used as structured-output schemas)
# ---------------------------------------------------------------------------


class Source(BaseModel):
    title: str
    url: str = ""
    publisher: str = ""
    excerpt: str = ""


class ResearchOutput(BaseModel):
    sources: list[Source]
    research_notes: str = ""


class Classification(BaseModel):
    domain: str
    topic: str
    persona: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    rationale: str = ""


class Definition(BaseModel):
    term: str
    definition: str


class StructureOutput(BaseModel):
    factors: list[str]
    policies: list[str]
    definitions: list[Definition] = Field(default_factory=list)
    consequences: list[str] = Field(default_factory=list)
    timeline: list[str] = Field(default_factory=list)


class NarrativeOutput(BaseModel):
    introduction: str
    main_body: str
    conclusion: str
    key_takeaways: list[str] = Field(default_factory=list)


class ReconciliationOutput(BaseModel):
    narrative: NarrativeOutput
    is_consistent: bool = True
    changes: list[str] = Field(default_factory=list)


class ReadingLevelSummary(BaseModel):
    level: ReadingLevel
    text: str


# ---------------------------------------------------------------------------
# Structured-output schemas for evaluator calls
# ---------------------------------------------------------------------------


class VerdictResponse(BaseModel):
    dimension_scores: list[DimensionScore]
    issues: list[Issue] = Field(default_factory=list)
    critique: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _covers_rubric(self) -> "VerdictResponse":
        scored = {entry.dimension for entry in self.dimension_scores}
        missing = [dimension.value for dimension in Dimension if dimension not in scored]
        if missing:
            raise ValueError(f"dimension_scores is missing rubric dimensions: {', '.join(missing)}")
        return self


class DiscussionResponse(BaseModel):
    revised_scores: list[DimensionScore] = Field(default_factory=list)
    additional_issues: list[Issue] = Field(default_factory=list)
    reflection: str = ""


class ArbiterResponse(BaseModel):
    definitive_scores: list[DimensionScore]
    other_scores: list[DimensionScore] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    resolution_summary: str = ""
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Execution log records
# ---------------------------------------------------------------------------


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class ExecutionLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_id: str
    document_id: str | None = None
    run_id: str | None = None
    stage_name: str
    status: ExecutionStatus
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    parallel_group: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    output_tokens_estimate: int | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
