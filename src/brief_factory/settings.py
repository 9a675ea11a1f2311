from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    model_frontier: str = "gpt-4o"
    model_efficient: str = "gpt-4o-mini"
    model_economy: str = "gpt-4o-mini"
    target_score: float = 8.0
    max_refinement_attempts: int = 2
    disagreement_threshold: float = 2.0
    arbiter_weight: float = 1.5
    retry_max_attempts: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    evaluator_max_attempts: int = 2
    evaluator_retry_delay_seconds: float = 0.5
    max_prioritized_issues: int = 5
    recursion_limit: int = 100
    state_store_root: str = "state_store"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            model_frontier=os.getenv("BRIEF_MODEL_FRONTIER", "gpt-4o"),
            model_efficient=os.getenv("BRIEF_MODEL_EFFICIENT", "gpt-4o-mini"),
            model_economy=os.getenv("BRIEF_MODEL_ECONOMY", "gpt-4o-mini"),
            target_score=_get_env_float("BRIEF_TARGET_SCORE", default=8.0, minimum=0.0, maximum=10.0),
            max_refinement_attempts=_get_env_int("BRIEF_MAX_REFINEMENT_ATTEMPTS", default=2, minimum=0, maximum=10),
            disagreement_threshold=_get_env_float(
                "BRIEF_DISAGREEMENT_THRESHOLD", default=2.0, minimum=0.0, maximum=10.0
            ),
            arbiter_weight=_get_env_float("BRIEF_ARBITER_WEIGHT", default=1.5, minimum=1.0, maximum=10.0),
            retry_max_attempts=_get_env_int("BRIEF_RETRY_MAX_ATTEMPTS", default=3, minimum=1, maximum=10),
            retry_initial_delay_seconds=_get_env_float(
                "BRIEF_RETRY_INITIAL_DELAY_SECONDS", default=1.0, minimum=0.0, maximum=60.0
            ),
            retry_backoff_multiplier=_get_env_float(
                "BRIEF_RETRY_BACKOFF_MULTIPLIER", default=2.0, minimum=1.0, maximum=10.0
            ),
            evaluator_max_attempts=_get_env_int("BRIEF_EVALUATOR_MAX_ATTEMPTS", default=2, minimum=1, maximum=10),
            evaluator_retry_delay_seconds=_get_env_float(
                "BRIEF_EVALUATOR_RETRY_DELAY_SECONDS", default=0.5, minimum=0.0, maximum=60.0
            ),
            max_prioritized_issues=_get_env_int("BRIEF_MAX_PRIORITIZED_ISSUES", default=5, minimum=1, maximum=50),
            recursion_limit=_get_env_int("BRIEF_RECURSION_LIMIT", default=100, minimum=25),
            state_store_root=os.getenv("BRIEF_STATE_STORE_ROOT", "state_store"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- Model name validation --
        model_frontier = self.model_frontier.strip()
        if not model_frontier:
            raise ValueError("BRIEF_MODEL_FRONTIER must be non-empty")
        model_efficient = self.model_efficient.strip()
        if not model_efficient:
            raise ValueError("BRIEF_MODEL_EFFICIENT must be non-empty")
        model_economy = self.model_economy.strip()
        if not model_economy:
            raise ValueError("BRIEF_MODEL_ECONOMY must be non-empty")

        # -- Numeric bounds validation --
        if not 0.0 <= self.target_score <= 10.0:
            raise ValueError(f"BRIEF_TARGET_SCORE must be within [0, 10], got: {self.target_score}")
        if not 0 <= self.max_refinement_attempts <= 10:
            raise ValueError(
                f"BRIEF_MAX_REFINEMENT_ATTEMPTS must be within [0, 10], got: {self.max_refinement_attempts}"
            )
        if not 0.0 <= self.disagreement_threshold <= 10.0:
            raise ValueError(
                f"BRIEF_DISAGREEMENT_THRESHOLD must be within [0, 10], got: {self.disagreement_threshold}"
            )
        if self.arbiter_weight < 1.0:
            raise ValueError(f"BRIEF_ARBITER_WEIGHT must be >= 1.0, got: {self.arbiter_weight}")
        if self.retry_max_attempts < 1 or self.evaluator_max_attempts < 1:
            raise ValueError("BRIEF_RETRY_MAX_ATTEMPTS and BRIEF_EVALUATOR_MAX_ATTEMPTS must be >= 1")
        if self.retry_backoff_multiplier < 1.0:
            raise ValueError(
                f"BRIEF_RETRY_BACKOFF_MULTIPLIER must be >= 1.0, got: {self.retry_backoff_multiplier}"
            )
        if self.retry_initial_delay_seconds < 0 or self.evaluator_retry_delay_seconds < 0:
            raise ValueError(
                "BRIEF_RETRY_INITIAL_DELAY_SECONDS and BRIEF_EVALUATOR_RETRY_DELAY_SECONDS must be >= 0"
            )
        if self.max_prioritized_issues < 1:
            raise ValueError(f"BRIEF_MAX_PRIORITIZED_ISSUES must be >= 1, got: {self.max_prioritized_issues}")
        if self.recursion_limit < 25:
            raise ValueError(f"BRIEF_RECURSION_LIMIT must be >= 25, got: {self.recursion_limit}")
        if self.recursion_limit > 100_000:
            raise ValueError(
                f"BRIEF_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}"
            )

        # -- String field validation --
        if not self.state_store_root.strip():
            raise ValueError("BRIEF_STATE_STORE_ROOT must be non-empty")
        return RuntimeSettings(
            model_frontier=model_frontier,
            model_efficient=model_efficient,
            model_economy=model_economy,
            target_score=float(self.target_score),
            max_refinement_attempts=self.max_refinement_attempts,
            disagreement_threshold=float(self.disagreement_threshold),
            arbiter_weight=float(self.arbiter_weight),
            retry_max_attempts=self.retry_max_attempts,
            retry_initial_delay_seconds=float(self.retry_initial_delay_seconds),
            retry_backoff_multiplier=float(self.retry_backoff_multiplier),
            evaluator_max_attempts=self.evaluator_max_attempts,
            evaluator_retry_delay_seconds=float(self.evaluator_retry_delay_seconds),
            max_prioritized_issues=self.max_prioritized_issues,
            recursion_limit=self.recursion_limit,
            state_store_root=self.state_store_root.strip(),
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    """Float counterpart of ``_get_env_int``; rejects NaN and out-of-range values."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed != parsed:
        raise ValueError(f"{name} must be a number, got: {raw!r}")
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
