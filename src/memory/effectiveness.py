"""Per-rule effectiveness and learned weight adjustment."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import case, or_
from sqlalchemy.orm import Session

from config import settings
from models import LearnedWeight, OperatorMemoryEvent
from services.upsert import dialect_insert
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_MULTIPLIER = 1.0
UNKNOWN_RULE = "unknown"


@dataclass(frozen=True)
class RuleEffectiveness:
    """Outcome counts for one rule over a window."""

    rule_key: str
    applied: int = 0
    dismissed: int = 0
    snoozed: int = 0
    success: int = 0
    failure: int = 0

    @property
    def total(self) -> int:
        return self.applied + self.dismissed + self.snoozed

    @property
    def success_rate(self) -> float:
        """Share of executions that succeeded."""
        executed = self.success + self.failure
        return self.success / executed if executed else 0.0

    @property
    def dismiss_rate(self) -> float:
        """Share of all interactions that were dismissals."""
        return self.dismissed / self.total if self.total else 0.0


@dataclass(frozen=True)
class WeightAdjustment:
    """Recommended change to one learned weight."""

    rule_key: str
    current: float
    delta: float
    proposed: float


def aggregate_effectiveness(
    rows: Iterable[tuple[str | None, str, str]],
) -> dict[str, RuleEffectiveness]:
    """Fold ``(rule_key, source_type, outcome)`` rows into per-rule counts."""
    counts: dict[str, dict[str, int]] = {}
    for rule_key, source_type, outcome in rows:
        bucket = counts.setdefault(
            rule_key or UNKNOWN_RULE,
            {"applied": 0, "dismissed": 0, "snoozed": 0, "success": 0, "failure": 0},
        )
        if source_type == "nba_execute":
            bucket["applied"] += 1
            if outcome == "success":
                bucket["success"] += 1
            elif outcome == "failure":
                bucket["failure"] += 1
        elif source_type == "nba_dismiss":
            bucket["dismissed"] += 1
        elif source_type == "nba_snooze":
            bucket["snoozed"] += 1
    return {key: RuleEffectiveness(rule_key=key, **values) for key, values in counts.items()}


def load_effectiveness_between(
    session: Session,
    user_id: str,
    start: datetime,
    end: datetime,
) -> dict[str, RuleEffectiveness]:
    """Aggregate memory events with ``start <= created_at < end``."""
    rows = (
        session.query(
            OperatorMemoryEvent.rule_key,
            OperatorMemoryEvent.source_type,
            OperatorMemoryEvent.outcome,
        )
        .filter(OperatorMemoryEvent.actor_user_id == user_id)
        .filter(OperatorMemoryEvent.created_at >= ensure_utc(start))
        .filter(OperatorMemoryEvent.created_at < ensure_utc(end))
        .all()
    )
    return aggregate_effectiveness(rows)


def load_effectiveness(
    session: Session,
    user_id: str,
    now: datetime,
    days: int | None = None,
) -> dict[str, RuleEffectiveness]:
    """Return per-rule effectiveness over the trailing window ending at ``now``."""
    window = days or settings.next_actions.effectiveness_window_days
    end = ensure_utc(now)
    return load_effectiveness_between(session, user_id, end - timedelta(days=window), end)


def load_weights(session: Session, user_id: str) -> dict[str, float]:
    """Return the learned multiplier for each rule the user has history on."""
    rows = (
        session.query(LearnedWeight.rule_key, LearnedWeight.multiplier)
        .filter(LearnedWeight.owner_user_id == user_id)
        .all()
    )
    return {rule_key: float(multiplier) for rule_key, multiplier in rows}


def effectiveness_boost(
    stats: RuleEffectiveness | None,
    *,
    bound: int | None = None,
    min_samples: int | None = None,
) -> int:
    """Return the bounded score boost earned by a rule's recent outcomes."""
    limit = settings.next_actions.effectiveness_boost_bound if bound is None else bound
    floor = settings.next_actions.effectiveness_min_samples if min_samples is None else min_samples
    if stats is None or stats.total < floor:
        return 0
    boost = round((stats.success_rate - stats.dismiss_rate) * limit)
    return max(-limit, min(limit, boost))


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def recommend_weight_adjustments(
    effectiveness: dict[str, RuleEffectiveness],
    weights: dict[str, float],
    *,
    step: float | None = None,
    bounds: tuple[float, float] | None = None,
    min_samples: int | None = None,
) -> list[WeightAdjustment]:
    """Recommend bounded multiplier changes from recent effectiveness.

    Each change moves a multiplier by at most ``step`` and never outside
    ``bounds``. Rules with fewer than ``min_samples`` interactions are left
    alone.
    """
    memory = settings.memory
    step_size = memory.weight_step if step is None else step
    lower, upper = bounds or (memory.weight_min, memory.weight_max)
    floor = memory.weight_min_samples if min_samples is None else min_samples
    if step_size <= 0:
        raise ValueError("step must be positive.")
    if not lower <= DEFAULT_MULTIPLIER <= upper:
        raise ValueError("bounds must contain the neutral multiplier.")

    adjustments: list[WeightAdjustment] = []
    for rule_key in sorted(effectiveness):
        stats = effectiveness[rule_key]
        if rule_key == UNKNOWN_RULE or stats.total < floor:
            continue
        signal = _clamp(stats.success_rate - stats.dismiss_rate, -1.0, 1.0)
        current = _clamp(weights.get(rule_key, DEFAULT_MULTIPLIER), lower, upper)
        proposed = round(_clamp(current + signal * step_size, lower, upper), 4)
        delta = round(proposed - current, 4)
        if delta == 0:
            continue
        adjustments.append(
            WeightAdjustment(rule_key=rule_key, current=current, delta=delta, proposed=proposed)
        )
    return adjustments


def apply_weight_adjustments(
    session: Session,
    user_id: str,
    adjustments: Iterable[WeightAdjustment],
    now: datetime,
    *,
    bounds: tuple[float, float] | None = None,
    window: str | None = None,
) -> int:
    """Persist adjustments atomically, clamping against the stored multiplier.

    When ``window`` is given, a rule already adjusted in that window is left
    alone, so repeated runs over the same day move each weight at most once.
    Returns the number of rows actually written.
    """
    lower, upper = bounds or (settings.memory.weight_min, settings.memory.weight_max)
    timestamp = ensure_utc(now)
    applied = 0
    for adjustment in adjustments:
        moved = LearnedWeight.multiplier + adjustment.delta
        stmt = (
            dialect_insert(session, LearnedWeight.__table__)
            .values(
                owner_user_id=user_id,
                rule_key=adjustment.rule_key,
                multiplier=_clamp(DEFAULT_MULTIPLIER + adjustment.delta, lower, upper),
                last_delta=adjustment.delta,
                adjusted_window=window,
                updated_at=timestamp,
            )
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["owner_user_id", "rule_key"],
            set_={
                "multiplier": case(
                    (moved > upper, upper),
                    (moved < lower, lower),
                    else_=moved,
                ),
                "last_delta": adjustment.delta,
                "adjusted_window": window,
                "updated_at": timestamp,
            },
            where=(
                or_(
                    LearnedWeight.adjusted_window.is_(None),
                    LearnedWeight.adjusted_window != window,
                )
                if window is not None
                else None
            ),
        )
        result = session.execute(stmt)
        applied += max(result.rowcount or 0, 0)
    if applied:
        logger.info("Applied %s learned weight adjustment(s) for %s.", applied, user_id)
    return applied
