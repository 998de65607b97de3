"""Operator controls for score notification emission."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from config import settings
from models import EngineSetting
from services.upsert import dialect_insert
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

SCORE_ALERTS_KEY = "score_alerts_preferences"


class ScoreAlertEvents(BaseModel):
    """Per event type notification toggles."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    threshold_breach: bool = True
    sharp_drop: bool = True
    recovery: bool = True


class ScoreAlertPreferences(BaseModel):
    """Stored score alert preferences."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = True
    events: ScoreAlertEvents = Field(default_factory=ScoreAlertEvents)
    sharp_drop_min_delta: int = Field(
        default_factory=lambda: settings.scoring.sharp_drop_min_delta, ge=1, le=100
    )
    cooldown_minutes: int = Field(
        default_factory=lambda: settings.scoring.cooldown_minutes, ge=0, le=1440
    )


@dataclass(frozen=True)
class EmitDecision:
    """Whether a score event should produce a notification."""

    emit: bool
    reason: str | None = None


def should_emit_score_notification(
    event_type: str,
    delta: int,
    preferences: ScoreAlertPreferences | None,
) -> EmitDecision:
    """Apply alert preferences to one detected score event."""
    prefs = preferences or ScoreAlertPreferences()
    if not prefs.enabled:
        return EmitDecision(emit=False, reason="global_disabled")
    if not getattr(prefs.events, event_type, False):
        return EmitDecision(emit=False, reason="event_disabled")
    if event_type == "sharp_drop" and abs(delta) < prefs.sharp_drop_min_delta:
        return EmitDecision(emit=False, reason="below_min_delta")
    return EmitDecision(emit=True)


def _clamp_stored(value: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(value)
    if isinstance(data.get("sharp_drop_min_delta"), (int, float)):
        data["sharp_drop_min_delta"] = int(max(1, min(100, data["sharp_drop_min_delta"])))
    if isinstance(data.get("cooldown_minutes"), (int, float)):
        data["cooldown_minutes"] = int(max(0, min(1440, data["cooldown_minutes"])))
    return data


def load_score_alert_preferences(session: Session) -> ScoreAlertPreferences:
    """Load preferences, falling back to defaults when missing or unreadable."""
    row = session.get(EngineSetting, SCORE_ALERTS_KEY)
    if row is None or not isinstance(row.value_json, Mapping):
        return ScoreAlertPreferences()
    try:
        return ScoreAlertPreferences.model_validate(_clamp_stored(row.value_json))
    except ValidationError:
        logger.warning("Stored score alert preferences are invalid; using defaults.")
        return ScoreAlertPreferences()


def update_score_alert_preferences(
    session: Session,
    changes: Mapping[str, Any],
    now: datetime,
) -> ScoreAlertPreferences:
    """Merge ``changes`` into the stored preferences and persist them.

    Out-of-range values raise ``pydantic.ValidationError``.
    """
    current = load_score_alert_preferences(session)
    merged = current.model_dump()
    for key, value in changes.items():
        if key == "events" and isinstance(value, Mapping):
            merged["events"] = {**merged["events"], **value}
        else:
            merged[key] = value
    updated = ScoreAlertPreferences.model_validate(merged)

    timestamp = ensure_utc(now)
    payload = updated.model_dump()
    stmt = dialect_insert(session, EngineSetting.__table__).values(
        key=SCORE_ALERTS_KEY,
        value_json=payload,
        updated_at=timestamp,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["key"],
        set_={"value_json": payload, "updated_at": timestamp},
    )
    session.execute(stmt)
    session.expire_all()
    logger.info("Score alert preferences updated.")
    return updated
