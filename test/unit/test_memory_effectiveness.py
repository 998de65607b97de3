"""Unit tests for rule effectiveness and learned weight adjustment."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from memory.effectiveness import (
    RuleEffectiveness,
    WeightAdjustment,
    aggregate_effectiveness,
    apply_weight_adjustments,
    effectiveness_boost,
    load_effectiveness,
    load_weights,
    recommend_weight_adjustments,
)
from memory.ingest import record_memory_event
from models import OperatorMemoryEvent

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_aggregate_counts_by_source_and_outcome() -> None:
    """Rows fold into applied, dismissed, snoozed, success and failure counts."""
    stats = aggregate_effectiveness(
        [
            ("a", "nba_execute", "success"),
            ("a", "nba_execute", "failure"),
            ("a", "nba_execute", "success"),
            ("a", "nba_dismiss", "neutral"),
            ("a", "nba_snooze", "neutral"),
            (None, "nba_dismiss", "neutral"),
        ]
    )

    a = stats["a"]
    assert (a.applied, a.dismissed, a.snoozed, a.success, a.failure) == (3, 1, 1, 2, 1)
    assert a.total == 5
    assert a.success_rate == pytest.approx(2 / 3)
    assert a.dismiss_rate == pytest.approx(0.2)
    assert stats["unknown"].dismissed == 1


def test_rates_are_zero_without_samples() -> None:
    """Empty stats report zero rates instead of dividing by zero."""
    empty = RuleEffectiveness(rule_key="a")

    assert empty.success_rate == 0.0
    assert empty.dismiss_rate == 0.0


def test_effectiveness_boost_is_bounded_and_needs_samples() -> None:
    """The boost needs a minimum sample and stays within its bound."""
    winning = RuleEffectiveness(rule_key="a", applied=5, success=5)
    losing = RuleEffectiveness(rule_key="a", dismissed=5)
    sparse = RuleEffectiveness(rule_key="a", applied=1, success=1)

    assert effectiveness_boost(winning, bound=6, min_samples=3) == 6
    assert effectiveness_boost(losing, bound=6, min_samples=3) == -6
    assert effectiveness_boost(sparse, bound=6, min_samples=3) == 0
    assert effectiveness_boost(None) == 0


def test_recommendations_move_at_most_one_step() -> None:
    """Adjustments move by at most the step size toward the signal."""
    effectiveness = {
        "good": RuleEffectiveness(rule_key="good", applied=4, success=4),
        "bad": RuleEffectiveness(rule_key="bad", dismissed=4),
        "sparse": RuleEffectiveness(rule_key="sparse", dismissed=2),
    }

    adjustments = recommend_weight_adjustments(
        effectiveness, {"good": 1.0, "bad": 1.0}, step=0.1, bounds=(0.5, 1.5), min_samples=3
    )

    by_rule = {item.rule_key: item for item in adjustments}
    assert set(by_rule) == {"good", "bad"}
    assert by_rule["good"].proposed == pytest.approx(1.1)
    assert by_rule["bad"].proposed == pytest.approx(0.9)
    assert all(abs(item.delta) <= 0.1 + 1e-9 for item in adjustments)


def test_recommendations_respect_bounds() -> None:
    """A multiplier already at a bound is not pushed past it."""
    effectiveness = {"bad": RuleEffectiveness(rule_key="bad", dismissed=4)}

    assert recommend_weight_adjustments(
        effectiveness, {"bad": 0.5}, step=0.1, bounds=(0.5, 1.5), min_samples=3
    ) == []
    near = recommend_weight_adjustments(
        effectiveness, {"bad": 0.55}, step=0.1, bounds=(0.5, 1.5), min_samples=3
    )
    assert near[0].proposed == 0.5


def test_recommendations_reject_bad_parameters() -> None:
    """Non-positive steps and bounds excluding 1.0 are rejected."""
    with pytest.raises(ValueError):
        recommend_weight_adjustments({}, {}, step=0.0)
    with pytest.raises(ValueError):
        recommend_weight_adjustments({}, {}, bounds=(1.1, 1.5))


def test_applied_weights_clamp_at_lower_bound(sqlite_session_factory: sessionmaker) -> None:
    """Repeated negative adjustments stop at the lower bound."""
    adjustment = WeightAdjustment(rule_key="bad", current=1.0, delta=-0.1, proposed=0.9)
    with closing(sqlite_session_factory()) as session:
        apply_weight_adjustments(session, "u1", [adjustment], NOW)
        session.commit()
        assert load_weights(session, "u1") == {"bad": pytest.approx(0.9)}

        for _ in range(10):
            apply_weight_adjustments(session, "u1", [adjustment], NOW)
        session.commit()
        weights = load_weights(session, "u1")

    assert weights["bad"] == pytest.approx(0.5)
    assert weights["bad"] >= 0.5


def test_applied_weights_clamp_at_upper_bound(sqlite_session_factory: sessionmaker) -> None:
    """Repeated positive adjustments stop at the upper bound."""
    adjustment = WeightAdjustment(rule_key="good", current=1.0, delta=0.1, proposed=1.1)
    with closing(sqlite_session_factory()) as session:
        for _ in range(12):
            apply_weight_adjustments(session, "u1", [adjustment], NOW)
        session.commit()
        weights = load_weights(session, "u1")

    assert weights["good"] == pytest.approx(1.5)
    assert weights["good"] <= 1.5


def test_windowed_adjustments_apply_once_per_window(sqlite_session_factory: sessionmaker) -> None:
    """The same window never moves a weight twice; a new window does."""
    adjustment = WeightAdjustment(rule_key="bad", current=1.0, delta=-0.1, proposed=0.9)
    with closing(sqlite_session_factory()) as session:
        first = apply_weight_adjustments(session, "u1", [adjustment], NOW, window="2026-03-01")
        repeat = apply_weight_adjustments(session, "u1", [adjustment], NOW, window="2026-03-01")
        session.commit()
        assert load_weights(session, "u1") == {"bad": pytest.approx(0.9)}

        later = apply_weight_adjustments(
            session, "u1", [adjustment], NOW + timedelta(days=1), window="2026-03-02"
        )
        session.commit()
        weights = load_weights(session, "u1")

    assert (first, repeat, later) == (1, 0, 1)
    assert weights == {"bad": pytest.approx(0.8)}


def test_load_effectiveness_uses_trailing_window(sqlite_session_factory: sessionmaker) -> None:
    """Only events inside the window and for the user are counted."""
    with closing(sqlite_session_factory()) as session:
        record_memory_event(
            session, actor_user_id="u1", source_type="nba_dismiss", rule_key="a", now=NOW
        )
        record_memory_event(
            session,
            actor_user_id="u1",
            source_type="nba_dismiss",
            rule_key="a",
            now=NOW - timedelta(days=10),
        )
        record_memory_event(
            session, actor_user_id="u2", source_type="nba_dismiss", rule_key="a", now=NOW
        )
        session.commit()

        stats = load_effectiveness(session, "u1", NOW + timedelta(minutes=1), days=7)

    assert stats["a"].dismissed == 1


def test_record_memory_event_defaults_and_validation(sqlite_session_factory: sessionmaker) -> None:
    """Executions default to success, other sources to neutral."""
    with closing(sqlite_session_factory()) as session:
        executed = record_memory_event(
            session, actor_user_id="u1", source_type="nba_execute", rule_key="a", now=NOW
        )
        snoozed = record_memory_event(
            session,
            actor_user_id="u1",
            source_type="nba_snooze",
            rule_key="a",
            now=NOW,
            meta={"webhook_url": "https://hooks.example/x", "days": 1},
        )
        session.commit()

        assert executed.outcome == "success"
        assert snoozed.outcome == "neutral"
        assert snoozed.meta_json == {"webhook_url": "[redacted]", "days": 1}
        assert session.query(OperatorMemoryEvent).count() == 2

        with pytest.raises(ValueError):
            record_memory_event(
                session, actor_user_id="u1", source_type="nba_open", rule_key="a", now=NOW
            )
