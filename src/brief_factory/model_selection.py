from __future__ import annotations

import json
import os
from dataclasses import dataclass, field

from .settings import RuntimeSettings

VALID_TIERS: frozenset[str] = frozenset({"frontier", "efficient", "economy"})

DEFAULT_MODELS_BY_TIER: dict[str, str] = {
    "frontier": "gpt-4o",
    "efficient": "gpt-4o-mini",
    "economy": "gpt-4o-mini",
}

# Generation roles and the tier each one runs on by default.
ROLE_TIERS: dict[str, str] = {
    "researcher": "frontier",
    "classifier": "economy",
    "structurer": "efficient",
    "narrator": "frontier",
    "reconciler": "efficient",
    "summarizer": "efficient",
    "evaluator": "frontier",
    "arbiter": "frontier",
    "refiner": "frontier",
}


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps model tiers to concrete model identifiers, with optional per-role overrides.

    Overrides are keyed either ``"<stage>.<role>"`` or plain ``"<role>"``;
    the stage-qualified key wins when both are present.
    """

    by_tier: dict[str, str]
    role_overrides: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        missing = VALID_TIERS - set(self.by_tier)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing required tiers: {', '.join(sorted(missing))}. "
                f"All of {sorted(VALID_TIERS)} must be configured."
            )
        for tier, model_name in self.by_tier.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"RuntimeModelSelection tier '{tier}' has empty model name")
        for key, model_name in self.role_overrides.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"Role override '{key}' has empty model name")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "RuntimeModelSelection":
        return cls(
            by_tier={
                "frontier": settings.model_frontier,
                "efficient": settings.model_efficient,
                "economy": settings.model_economy,
            },
            role_overrides=_load_role_overrides(),
        )

    def resolve(self, stage: str, role: str, model_tier: str | None = None) -> str:
        """Resolve the model for a role.

        Args:
            stage: Pipeline stage name.
            role: Generation role name.
            model_tier: Tier to use; defaults to the role's entry in ``ROLE_TIERS``.

        Returns:
            The concrete model name string.

        Raises:
            ValueError: If the tier is not a recognized tier.
        """
        for key in (f"{stage}.{role}", role):
            if key in self.role_overrides:
                return self.role_overrides[key]
        tier = model_tier or ROLE_TIERS.get(role, "efficient")
        if tier not in self.by_tier:
            available = ", ".join(sorted(self.by_tier))
            raise ValueError(f"Unknown model tier '{tier}' for {stage}/{role}. Valid tiers: {available}")
        return self.by_tier[tier]


def _load_role_overrides() -> dict[str, str]:
    raw = os.getenv("BRIEF_MODEL_ROLE_OVERRIDES_JSON", "").strip()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"BRIEF_MODEL_ROLE_OVERRIDES_JSON is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in payload.items()
    ):
        raise ValueError("BRIEF_MODEL_ROLE_OVERRIDES_JSON must be a JSON object of string to string")
    return {key.strip(): value.strip() for key, value in payload.items()}
