"""Memory policy engine: trend diffs, suggestions and pattern alerts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from config import settings
from memory.effectiveness import (
    UNKNOWN_RULE,
    RuleEffectiveness,
    WeightAdjustment,
    apply_weight_adjustments,
    load_effectiveness_between,
    load_weights,
    recommend_weight_adjustments,
)
from next_actions.preferences import create_suppression
from notifications.cooldown import CooldownGate
from observability.context import run_log_context
from observability.events import emit_ops_event
from risk.rules import RiskFlagInput
from risk.service import RiskUpsertSummary, upsert_risk_flags
from services.database import execute_in_session
from time_utils import day_key, ensure_utc, utc_now

logger = logging.getLogger(__name__)

SUPPRESSION_DISMISS_MIN = 3
SUPPRESSION_SUCCESS_RATE_MAX = 0.25
SUPPRESSION_CONFIDENCE_DIVISOR = 6
ALERT_FAILURE_MIN = 2
ALERT_DELTA_MEDIUM = 3
ALERT_DELTA_HIGH = 5
CRITICAL_RULE_KEYS = frozenset(
    {
        "score_in_critical_band",
        "failed_notification_deliveries",
        "flywheel_won_no_delivery",
    }
)
TREND_LIMIT = 10


@dataclass(frozen=True)
class TrendDiff:
    """Change in interaction volume for one rule between windows."""

    rule_key: str
    current_count: int
    prior_count: int
    delta: int

    @property
    def direction(self) -> str:
        if self.delta > 0:
            return "up"
        if self.delta < 0:
            return "down"
        return "unchanged"


@dataclass(frozen=True)
class TrendDiffs:
    """Top movers, overall and among dismissed or successful rules."""

    recurring: list[TrendDiff]
    dismissed: list[TrendDiff]
    successful: list[TrendDiff]


@dataclass(frozen=True)
class PolicySuggestion:
    """Deterministic recommendation derived from window stats."""

    type: str
    rule_key: str
    confidence: float
    reasons: list[str]
    evidence: dict[str, Any]
    severity: str | None = None


@dataclass(frozen=True)
class PatternAlert:
    """Raise-risk suggestion promoted to a risk flag."""

    rule_key: str
    severity: str
    title: str
    description: str
    dedupe_key: str
    confidence: float


@dataclass(frozen=True)
class MemoryPolicyResult:
    """Outcome of one memory policy run."""

    suggestions: list[PolicySuggestion]
    pattern_alerts: list[PatternAlert]
    risk_summary: RiskUpsertSummary | None
    weight_adjustments: list[WeightAdjustment]
    suppressions_applied: list[str] = field(default_factory=list)
    weights_applied: int = 0


def compute_window_stats(
    session: Session,
    user_id: str,
    start: datetime,
    end: datetime,
) -> dict[str, RuleEffectiveness]:
    """Return per-rule interaction stats for ``start <= t < end``."""
    return load_effectiveness_between(session, user_id, start, end)


def _top(diffs: list[TrendDiff]) -> list[TrendDiff]:
    return sorted(diffs, key=lambda diff: (-abs(diff.delta), diff.rule_key))[:TREND_LIMIT]


def compute_trend_diffs(
    current: dict[str, RuleEffectiveness],
    prior: dict[str, RuleEffectiveness],
) -> TrendDiffs:
    """Compare two equal-length windows of rule stats."""
    recurring: list[TrendDiff] = []
    dismissed: list[TrendDiff] = []
    successful: list[TrendDiff] = []
    for rule_key in sorted(set(current) | set(prior)):
        now_stats = current.get(rule_key)
        prior_stats = prior.get(rule_key)
        current_count = now_stats.total if now_stats else 0
        prior_count = prior_stats.total if prior_stats else 0
        diff = TrendDiff(
            rule_key=rule_key,
            current_count=current_count,
            prior_count=prior_count,
            delta=current_count - prior_count,
        )
        recurring.append(diff)
        if any(stats and stats.dismissed > 0 for stats in (now_stats, prior_stats)):
            dismissed.append(diff)
        if any(stats and stats.success > 0 for stats in (now_stats, prior_stats)):
            successful.append(diff)
    return TrendDiffs(recurring=_top(recurring), dismissed=_top(dismissed), successful=_top(successful))


def derive_policy_suggestions(
    stats: dict[str, RuleEffectiveness],
    diffs: TrendDiffs,
) -> list[PolicySuggestion]:
    """Derive suppression and raise-risk suggestions, highest confidence first."""
    deltas = {diff.rule_key: diff.delta for diff in diffs.recurring}
    suggestions: list[PolicySuggestion] = []
    for rule_key in sorted(stats):
        if rule_key == UNKNOWN_RULE:
            continue
        item = stats[rule_key]

        if (
            item.dismissed >= SUPPRESSION_DISMISS_MIN
            and item.success_rate <= SUPPRESSION_SUCCESS_RATE_MAX
        ):
            suggestions.append(
                PolicySuggestion(
                    type="suppression_30d",
                    rule_key=rule_key,
                    confidence=min(1.0, item.dismissed / SUPPRESSION_CONFIDENCE_DIVISOR),
                    reasons=[
                        f"{item.dismissed} dismissals in window",
                        f"Success rate {item.success_rate * 100:.0f}% "
                        f"≤ {SUPPRESSION_SUCCESS_RATE_MAX * 100:.0f}%",
                    ],
                    evidence={
                        "dismiss_count": item.dismissed,
                        "success_rate": item.success_rate,
                        "total": item.total,
                    },
                )
            )

        failures = item.failure
        delta = deltas.get(rule_key, 0)
        if failures >= ALERT_FAILURE_MIN or delta >= ALERT_DELTA_MEDIUM:
            if rule_key in CRITICAL_RULE_KEYS:
                severity = "critical"
            elif delta >= ALERT_DELTA_HIGH:
                severity = "high"
            else:
                severity = "medium"
            reasons = []
            if failures >= ALERT_FAILURE_MIN:
                reasons.append(f"{failures} failures in window")
            if delta >= ALERT_DELTA_MEDIUM:
                reasons.append(f"Delta +{delta} vs prior period")
            suggestions.append(
                PolicySuggestion(
                    type="raise_risk",
                    rule_key=rule_key,
                    confidence=min(1.0, (failures + max(0, delta)) / 10),
                    reasons=reasons,
                    evidence={"failure_count": failures, "delta": delta},
                    severity=severity,
                )
            )

    suggestions.sort(key=lambda suggestion: -suggestion.confidence)
    return suggestions


def build_pattern_alerts(
    suggestions: list[PolicySuggestion],
    now: datetime,
    *,
    min_confidence: float | None = None,
) -> list[PatternAlert]:
    """Promote raise-risk suggestions above the confidence floor to alerts."""
    floor = settings.memory.pattern_alert_min_confidence if min_confidence is None else min_confidence
    window = day_key(now)
    alerts: list[PatternAlert] = []
    seen: set[str] = set()
    for suggestion in suggestions:
        if suggestion.type != "raise_risk" or suggestion.rule_key in seen:
            continue
        if suggestion.confidence < floor:
            continue
        seen.add(suggestion.rule_key)
        alerts.append(
            PatternAlert(
                rule_key=suggestion.rule_key,
                severity=suggestion.severity or "medium",
                title=f"Pattern alert: {suggestion.rule_key}",
                description=". ".join(suggestion.reasons),
                dedupe_key=f"pattern:{suggestion.rule_key}:{window}",
                confidence=suggestion.confidence,
            )
        )
    return alerts


def _alert_to_risk(alert: PatternAlert) -> RiskFlagInput:
    return RiskFlagInput(
        rule_key=alert.rule_key,
        dedupe_key=alert.dedupe_key,
        severity=alert.severity,
        title=alert.title,
        description=alert.description,
        source_type="memory_policy",
        source_id=alert.rule_key,
        evidence={"confidence": alert.confidence},
    )


def run_memory_policy(
    session_factory: Callable[[], Session],
    user_id: str,
    *,
    now: datetime | None = None,
    entity_type: str = "command_center",
    entity_id: str = "default",
    gate: CooldownGate | None = None,
    window_days: int | None = None,
    auto_apply_suppressions: bool | None = None,
    auto_apply_min_confidence: float | None = None,
    pattern_alert_min_confidence: float | None = None,
) -> MemoryPolicyResult:
    """Analyze recent history and act on it.

    Pattern alerts are routed through the risk flag manager and learned
    weights are adjusted. Suppression suggestions become 30-day preferences
    only when auto-apply is enabled and confidence clears the configured
    minimum.
    """
    memory = settings.memory
    timestamp = ensure_utc(now or utc_now())
    days = window_days or memory.window_days
    auto_apply = memory.auto_apply_suppressions if auto_apply_suppressions is None else auto_apply_suppressions
    apply_floor = (
        memory.auto_apply_min_confidence
        if auto_apply_min_confidence is None
        else auto_apply_min_confidence
    )

    current_start = timestamp - timedelta(days=days)
    prior_start = current_start - timedelta(days=days)
    window = day_key(timestamp)

    def analyze(session: Session):
        current = compute_window_stats(session, user_id, current_start, timestamp)
        prior = compute_window_stats(session, user_id, prior_start, current_start)
        diffs = compute_trend_diffs(current, prior)
        suggestions = derive_policy_suggestions(current, diffs)
        adjustments = recommend_weight_adjustments(current, load_weights(session, user_id))
        weights_applied = apply_weight_adjustments(
            session, user_id, adjustments, timestamp, window=window
        )

        applied: list[str] = []
        if auto_apply:
            for suggestion in suggestions:
                if suggestion.type != "suppression_30d" or suggestion.confidence < apply_floor:
                    continue
                create_suppression(
                    session,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    rule_key=suggestion.rule_key,
                    days=memory.suppression_days,
                    now=timestamp,
                    reason="; ".join(suggestion.reasons),
                    created_by="memory_policy",
                )
                applied.append(suggestion.rule_key)
        return suggestions, adjustments, weights_applied, applied

    with run_log_context(f"memory:{user_id}:{window}", user_id, entity_type):
        suggestions, adjustments, weights_applied, applied = execute_in_session(
            session_factory, analyze
        )

        alerts = build_pattern_alerts(
            suggestions, timestamp, min_confidence=pattern_alert_min_confidence
        )
        risk_summary = None
        if alerts:
            risk_summary = upsert_risk_flags(
                session_factory,
                [_alert_to_risk(alert) for alert in alerts],
                gate=gate,
                now=timestamp,
            )

        emit_ops_event(
            "memory.policy.run",
            meta={
                "user_id": user_id,
                "suggestions": len(suggestions),
                "pattern_alerts": len(alerts),
                "weight_adjustments": len(adjustments),
                "weights_applied": weights_applied,
                "suppressions_applied": len(applied),
                "auto_apply": auto_apply,
            },
        )
    return MemoryPolicyResult(
        suggestions=suggestions,
        pattern_alerts=alerts,
        risk_summary=risk_summary,
        weight_adjustments=adjustments,
        suppressions_applied=applied,
        weights_applied=weights_applied,
    )
