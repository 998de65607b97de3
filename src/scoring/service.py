"""Compute, persist and announce score snapshots."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from pydantic import ValidationError
from sqlalchemy.orm import Session

from config import settings
from errors import ContextValidationError
from models import ScoreEvent, ScoreSnapshot
from notifications.cooldown import CooldownGate
from notifications.service import NotificationInput, enqueue_notification
from observability.events import emit_ops_event
from scoring.alert_preferences import (
    ScoreAlertPreferences,
    load_score_alert_preferences,
    should_emit_score_notification,
)
from scoring.engine import ScoreFactor, compute_score
from scoring.events import DetectedScoreEvent, ScorePoint, detect_score_events
from services.database import execute_in_session
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

_EVENT_SEVERITY = {
    "threshold_breach": "critical",
    "sharp_drop": "warning",
    "recovery": "info",
}
_EVENT_TITLE = {
    "threshold_breach": "Score threshold breach",
    "sharp_drop": "Score sharp drop",
    "recovery": "Score recovered",
}


@dataclass(frozen=True)
class ScoreEventOutcome:
    """Stored score event and what happened to its notification."""

    event_id: int
    event_type: str
    delta: int
    notification_id: int | None = None
    suppressed_reason: str | None = None


@dataclass(frozen=True)
class ComputeResult:
    """Outcome of one compute-and-store call."""

    snapshot_id: int
    score: int
    band: str
    delta: int | None
    events: list[ScoreEventOutcome] = field(default_factory=list)


@dataclass(frozen=True)
class _StoredSnapshot:
    snapshot_id: int
    delta: int | None
    events: list[tuple[int, DetectedScoreEvent]]


def _coerce_factors(factors: Iterable[ScoreFactor | Mapping[str, Any]]) -> list[ScoreFactor]:
    try:
        return [
            factor if isinstance(factor, ScoreFactor) else ScoreFactor.model_validate(factor)
            for factor in factors
        ]
    except ValidationError as exc:
        raise ContextValidationError(
            f"Invalid score factors ({exc.error_count()} error(s))."
        ) from exc


def latest_snapshot(session: Session, entity_type: str, entity_id: str) -> ScoreSnapshot | None:
    """Return the most recent snapshot for a scope."""
    return (
        session.query(ScoreSnapshot)
        .filter(ScoreSnapshot.entity_type == entity_type)
        .filter(ScoreSnapshot.entity_id == entity_id)
        .order_by(ScoreSnapshot.computed_at.desc(), ScoreSnapshot.id.desc())
        .first()
    )


def compute_and_store(
    session_factory: Callable[[], Session],
    entity_type: str,
    entity_id: str,
    factors: Iterable[ScoreFactor | Mapping[str, Any]],
    *,
    cooldown_gate: CooldownGate,
    alert_preferences: ScoreAlertPreferences | None = None,
    sharp_drop_min_delta: int | None = None,
    now: datetime | None = None,
) -> ComputeResult:
    """Score an entity, store the snapshot with its events, then notify.

    The snapshot and its events commit together. Notifications are sent
    afterwards and are gated by alert preferences and the cooldown gate;
    gating never prevents an event from being recorded.
    """
    timestamp = ensure_utc(now or utc_now())
    result = compute_score(_coerce_factors(factors))
    min_delta = sharp_drop_min_delta or settings.scoring.sharp_drop_min_delta

    def handler(session: Session) -> tuple[_StoredSnapshot, ScoreAlertPreferences]:
        prefs = alert_preferences or load_score_alert_preferences(session)
        previous = latest_snapshot(session, entity_type, entity_id)
        previous_point = (
            ScorePoint(score=previous.score, band=previous.band) if previous is not None else None
        )
        delta = result.score - previous.score if previous is not None else None
        snapshot = ScoreSnapshot(
            entity_type=entity_type,
            entity_id=entity_id,
            score=result.score,
            band=result.band,
            delta=delta,
            factors_json=result.factors,
            reasons_json=[reason.as_dict() for reason in result.reasons],
            computed_at=timestamp,
        )
        session.add(snapshot)
        session.flush()

        stored_events: list[tuple[int, DetectedScoreEvent]] = []
        detected = detect_score_events(
            previous_point,
            ScorePoint(score=result.score, band=result.band),
            min_delta=min_delta,
        )
        for item in detected:
            event = ScoreEvent(
                snapshot_id=snapshot.id,
                entity_type=entity_type,
                entity_id=entity_id,
                event_type=item.event_type,
                from_score=item.from_score,
                to_score=item.to_score,
                from_band=item.from_band,
                to_band=item.to_band,
                delta=item.delta,
                reasons_json=[reason.as_dict() for reason in result.reasons[:3]],
                created_at=timestamp,
            )
            session.add(event)
            session.flush()
            stored_events.append((event.id, item))
        return _StoredSnapshot(snapshot.id, delta, stored_events), prefs

    stored, prefs = execute_in_session(session_factory, handler)
    logger.info(
        "Stored score %s for %s/%s (band=%s, events=%s).",
        result.score,
        entity_type,
        entity_id,
        result.band,
        len(stored.events),
    )

    top_reasons = [reason.label for reason in result.reasons[:2]]
    outcomes = [
        _notify_event(
            session_factory,
            cooldown_gate,
            prefs,
            entity_type,
            entity_id,
            event_id,
            item,
            top_reasons,
            timestamp,
        )
        for event_id, item in stored.events
    ]
    return ComputeResult(
        snapshot_id=stored.snapshot_id,
        score=result.score,
        band=result.band,
        delta=stored.delta,
        events=outcomes,
    )


def _notify_event(
    session_factory: Callable[[], Session],
    gate: CooldownGate,
    prefs: ScoreAlertPreferences,
    entity_type: str,
    entity_id: str,
    event_id: int,
    item: DetectedScoreEvent,
    top_reasons: list[str],
    now: datetime,
) -> ScoreEventOutcome:
    decision = should_emit_score_notification(item.event_type, item.delta, prefs)
    if not decision.emit:
        emit_ops_event(
            "score.notification.suppressed",
            status="skipped",
            meta={
                "event_id": event_id,
                "event_type": item.event_type,
                "reason": decision.reason,
                "entity_type": entity_type,
                "entity_id": entity_id,
            },
        )
        return ScoreEventOutcome(
            event_id=event_id,
            event_type=item.event_type,
            delta=item.delta,
            suppressed_reason=decision.reason,
        )

    sign = "+" if item.delta >= 0 else ""
    outcome = enqueue_notification(
        session_factory,
        NotificationInput(
            source="score",
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=item.event_type,
            title=f"{_EVENT_TITLE[item.event_type]}: {entity_type}",
            message=(
                f"{item.from_band} → {item.to_band} "
                f"({item.from_score} → {item.to_score}, Δ{sign}{item.delta})"
            ),
            severity=_EVENT_SEVERITY[item.event_type],
            source_ref=str(event_id),
            meta={
                "from_score": item.from_score,
                "to_score": item.to_score,
                "delta": item.delta,
                "from_band": item.from_band,
                "to_band": item.to_band,
                "top_reasons": top_reasons,
            },
        ),
        gate=gate,
        cooldown_minutes=prefs.cooldown_minutes,
        now=now,
    )
    return ScoreEventOutcome(
        event_id=event_id,
        event_type=item.event_type,
        delta=item.delta,
        notification_id=outcome.notification_id,
        suppressed_reason="cooldown_active" if outcome.suppressed else None,
    )
