"""Unit tests for score alert preferences."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from models import EngineSetting
from scoring.alert_preferences import (
    SCORE_ALERTS_KEY,
    ScoreAlertPreferences,
    load_score_alert_preferences,
    should_emit_score_notification,
    update_score_alert_preferences,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_defaults_when_nothing_stored(sqlite_session_factory: sessionmaker) -> None:
    """Missing preferences load as the configured defaults."""
    with closing(sqlite_session_factory()) as session:
        prefs = load_score_alert_preferences(session)

    assert prefs.enabled is True
    assert prefs.events.threshold_breach is True
    assert prefs.sharp_drop_min_delta == 15
    assert prefs.cooldown_minutes == 60


def test_update_merges_and_persists(sqlite_session_factory: sessionmaker) -> None:
    """Partial updates merge into the stored preferences."""
    with closing(sqlite_session_factory()) as session:
        update_score_alert_preferences(session, {"events": {"recovery": False}}, NOW)
        session.commit()
    with closing(sqlite_session_factory()) as session:
        update_score_alert_preferences(session, {"cooldown_minutes": 15}, NOW)
        session.commit()

    with closing(sqlite_session_factory()) as session:
        prefs = load_score_alert_preferences(session)

    assert prefs.events.recovery is False
    assert prefs.events.sharp_drop is True
    assert prefs.cooldown_minutes == 15


def test_update_rejects_out_of_range_values(sqlite_session_factory: sessionmaker) -> None:
    """Updates outside the allowed ranges raise a validation error."""
    with closing(sqlite_session_factory()) as session:
        with pytest.raises(ValidationError):
            update_score_alert_preferences(session, {"sharp_drop_min_delta": 500}, NOW)
        with pytest.raises(ValidationError):
            update_score_alert_preferences(session, {"cooldown_minutes": -1}, NOW)


def test_stored_out_of_range_values_are_clamped(sqlite_session_factory: sessionmaker) -> None:
    """Previously stored values outside range are clamped on load."""
    with closing(sqlite_session_factory()) as session:
        session.add(
            EngineSetting(
                key=SCORE_ALERTS_KEY,
                value_json={"sharp_drop_min_delta": 500, "cooldown_minutes": 5000},
            )
        )
        session.commit()
        prefs = load_score_alert_preferences(session)

    assert prefs.sharp_drop_min_delta == 100
    assert prefs.cooldown_minutes == 1440


def test_unreadable_stored_value_falls_back_to_defaults(
    sqlite_session_factory: sessionmaker,
) -> None:
    """Garbage in storage yields defaults instead of an error."""
    with closing(sqlite_session_factory()) as session:
        session.add(EngineSetting(key=SCORE_ALERTS_KEY, value_json={"enabled": "sometimes"}))
        session.commit()
        prefs = load_score_alert_preferences(session)

    assert prefs == ScoreAlertPreferences()


@pytest.mark.parametrize(
    ("prefs", "event_type", "delta", "emit", "reason"),
    [
        (ScoreAlertPreferences(), "threshold_breach", -30, True, None),
        (ScoreAlertPreferences(enabled=False), "recovery", 20, False, "global_disabled"),
        (
            ScoreAlertPreferences(events={"sharp_drop": False}),
            "sharp_drop",
            -30,
            False,
            "event_disabled",
        ),
        (ScoreAlertPreferences(sharp_drop_min_delta=20), "sharp_drop", -16, False, "below_min_delta"),
        (ScoreAlertPreferences(sharp_drop_min_delta=20), "sharp_drop", -20, True, None),
    ],
)
def test_should_emit_score_notification(prefs, event_type, delta, emit, reason) -> None:
    """Preferences gate notifications by toggle and minimum delta."""
    decision = should_emit_score_notification(event_type, delta, prefs)

    assert decision.emit is emit
    assert decision.reason == reason
