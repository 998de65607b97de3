"""Composite score computation and banding."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

NEUTRAL_SCORE = 50
CRITICAL_BELOW = 50
WARNING_BELOW = 75

BAND_ORDINAL = {"healthy": 2, "warning": 1, "critical": 0}


class ScoreFactor(BaseModel):
    """One normalized input to the composite score.

    ``value`` is oriented so that higher is healthier and is clamped to [0, 1].
    ``direction`` records whether the factor tracks a penalty or a boost.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    value: float
    weight: float = Field(default=1.0, ge=0.0)
    direction: Literal["positive", "negative"] = "positive"
    raw_value: float | None = None
    reason: str | None = None

    @field_validator("value", "weight")
    @classmethod
    def _finite(cls, value: float) -> float:
        """Reject NaN and infinite inputs."""
        if not math.isfinite(value):
            raise ValueError("Factor values and weights must be finite.")
        return value


@dataclass(frozen=True)
class ScoreReason:
    """Contribution of one factor relative to the neutral midpoint."""

    key: str
    label: str
    impact: float
    direction: str
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "impact": self.impact,
            "direction": self.direction,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ScoreResult:
    """Computed score, its band and the explanation behind it."""

    score: int
    band: str
    reasons: list[ScoreReason]
    factors: list[dict[str, Any]]


def assign_band(score: int) -> str:
    """Map a 0-100 score to healthy, warning or critical."""
    if score < CRITICAL_BELOW:
        return "critical"
    if score < WARNING_BELOW:
        return "warning"
    return "healthy"


def band_ordinal(band: str) -> int:
    """Return the ordinal of a band (healthy highest)."""
    try:
        return BAND_ORDINAL[band]
    except KeyError as exc:
        raise ValueError(f"Unknown score band: {band}") from exc


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def compute_score(factors: Iterable[ScoreFactor]) -> ScoreResult:
    """Compute the weighted score of the given factors.

    An empty factor list, or one whose weights sum to zero, yields the neutral
    score. Reasons are ordered most damaging first.
    """
    items = list(factors)
    total_weight = sum(factor.weight for factor in items)
    if not items or total_weight <= 0:
        return ScoreResult(
            score=NEUTRAL_SCORE,
            band=assign_band(NEUTRAL_SCORE),
            reasons=[],
            factors=[],
        )

    weighted = 0.0
    reasons: list[ScoreReason] = []
    breakdown: list[dict[str, Any]] = []
    for factor in items:
        value = _clamp_unit(factor.value)
        share = factor.weight / total_weight
        weighted += value * share
        impact = round((value - 0.5) * share * 100, 2)
        reasons.append(
            ScoreReason(
                key=factor.key,
                label=factor.label,
                impact=impact,
                direction=factor.direction,
                reason=factor.reason,
            )
        )
        breakdown.append(
            {
                "key": factor.key,
                "label": factor.label,
                "raw_value": factor.raw_value,
                "value": value,
                "weight": factor.weight,
                "direction": factor.direction,
                "impact": impact,
            }
        )

    score = max(0, min(100, round(weighted * 100)))
    reasons.sort(key=lambda reason: (reason.impact, reason.key))
    return ScoreResult(score=score, band=assign_band(score), reasons=reasons, factors=breakdown)
