"""Unit tests for the memory policy engine."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from memory.effectiveness import RuleEffectiveness, load_weights
from memory.ingest import record_memory_event
from memory.policy import (
    PolicySuggestion,
    build_pattern_alerts,
    compute_trend_diffs,
    derive_policy_suggestions,
    run_memory_policy,
)
from models import NextActionPreference, RiskFlag

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _seed(factory: sessionmaker, rule_key: str, source_type: str, count: int, **kwargs) -> None:
    with closing(factory()) as session:
        for index in range(count):
            record_memory_event(
                session,
                actor_user_id="u1",
                source_type=source_type,
                rule_key=rule_key,
                now=kwargs.get("at", NOW - timedelta(hours=index + 1)),
                outcome=kwargs.get("outcome"),
            )
        session.commit()


def _seed_history(factory: sessionmaker) -> None:
    _seed(factory, "flywheel_referral_gap", "nba_dismiss", 4)
    _seed(factory, "retention_overdue", "nba_execute", 2, outcome="failure")


def test_trend_diffs_rank_by_absolute_change() -> None:
    """Largest movers come first; ties break by rule key."""
    current = {
        "a": RuleEffectiveness(rule_key="a", dismissed=5),
        "b": RuleEffectiveness(rule_key="b", applied=1, success=1),
    }
    prior = {
        "b": RuleEffectiveness(rule_key="b", applied=3, success=3),
        "c": RuleEffectiveness(rule_key="c", snoozed=2),
    }

    diffs = compute_trend_diffs(current, prior)

    assert [(diff.rule_key, diff.delta) for diff in diffs.recurring] == [
        ("a", 5),
        ("b", -2),
        ("c", -2),
    ]
    assert [diff.rule_key for diff in diffs.dismissed] == ["a"]
    assert [diff.rule_key for diff in diffs.successful] == ["b"]
    assert diffs.recurring[0].direction == "up"
    assert diffs.recurring[1].direction == "down"


def test_repeated_dismissals_suggest_suppression() -> None:
    """Four dismissals with no successes suggest a 30-day suppression."""
    stats = {"gap": RuleEffectiveness(rule_key="gap", dismissed=4)}

    suggestions = derive_policy_suggestions(stats, compute_trend_diffs(stats, {}))

    suppression = next(item for item in suggestions if item.type == "suppression_30d")
    assert suppression.confidence == pytest.approx(4 / 6)
    assert suppression.evidence["dismiss_count"] == 4


def test_failures_suggest_raising_risk() -> None:
    """Two failures raise a medium risk; critical rules stay critical."""
    stats = {
        "retention_overdue": RuleEffectiveness(rule_key="retention_overdue", applied=2, failure=2),
        "score_in_critical_band": RuleEffectiveness(
            rule_key="score_in_critical_band", applied=2, failure=2
        ),
    }

    suggestions = derive_policy_suggestions(stats, compute_trend_diffs({}, {}))

    by_rule = {item.rule_key: item for item in suggestions if item.type == "raise_risk"}
    assert by_rule["retention_overdue"].severity == "medium"
    assert by_rule["retention_overdue"].confidence == pytest.approx(0.2)
    assert by_rule["score_in_critical_band"].severity == "critical"


def test_pattern_alerts_respect_confidence_floor() -> None:
    """Only raise-risk suggestions at or above the floor become alerts."""
    suggestions = [
        PolicySuggestion("raise_risk", "a", 0.4, ["2 failures in window"], {}, "medium"),
        PolicySuggestion("raise_risk", "b", 0.1, ["1 failure"], {}, "medium"),
        PolicySuggestion("suppression_30d", "c", 0.9, ["dismissed"], {}),
    ]

    alerts = build_pattern_alerts(suggestions, NOW, min_confidence=0.2)

    assert [alert.rule_key for alert in alerts] == ["a"]
    assert alerts[0].dedupe_key == "pattern:a:2026-03-01"


def test_policy_run_raises_pattern_risk_flags(sqlite_session_factory: sessionmaker) -> None:
    """Repeated failures surface as deduplicated pattern risk flags."""
    _seed_history(sqlite_session_factory)

    result = run_memory_policy(sqlite_session_factory, "u1", now=NOW)

    retention = next(
        item
        for item in result.suggestions
        if item.type == "raise_risk" and item.rule_key == "retention_overdue"
    )
    assert retention.severity == "medium"
    assert retention.confidence == pytest.approx(0.4)
    assert result.suggestions[0].type == "suppression_30d"
    assert result.suggestions[0].confidence == pytest.approx(4 / 6)
    assert result.risk_summary is not None
    assert result.risk_summary.created == len(result.pattern_alerts)

    with closing(sqlite_session_factory()) as session:
        flag = (
            session.query(RiskFlag)
            .filter(RiskFlag.dedupe_key == "pattern:retention_overdue:2026-03-01")
            .one()
        )
    assert flag.status == "open"
    assert flag.severity == "medium"
    assert flag.source_type == "memory_policy"


def test_policy_rerun_same_day_reuses_flags(sqlite_session_factory: sessionmaker) -> None:
    """A second run on the same day refreshes the existing pattern flags."""
    _seed_history(sqlite_session_factory)

    run_memory_policy(sqlite_session_factory, "u1", now=NOW)
    second = run_memory_policy(sqlite_session_factory, "u1", now=NOW + timedelta(minutes=10))

    assert second.risk_summary.created == 0
    with closing(sqlite_session_factory()) as session:
        assert session.query(RiskFlag).count() == len(second.pattern_alerts)


def test_policy_run_adjusts_learned_weights(sqlite_session_factory: sessionmaker) -> None:
    """Frequently dismissed rules lose weight; sparse rules are left alone."""
    _seed_history(sqlite_session_factory)

    result = run_memory_policy(sqlite_session_factory, "u1", now=NOW)

    assert [item.rule_key for item in result.weight_adjustments] == ["flywheel_referral_gap"]
    with closing(sqlite_session_factory()) as session:
        weights = load_weights(session, "u1")
    assert weights == {"flywheel_referral_gap": pytest.approx(0.9)}


def test_policy_reruns_move_weights_once_per_day(sqlite_session_factory: sessionmaker) -> None:
    """Re-running on the same day leaves learned weights where the first run put them."""
    _seed_history(sqlite_session_factory)

    first = run_memory_policy(sqlite_session_factory, "u1", now=NOW)
    reruns = [
        run_memory_policy(sqlite_session_factory, "u1", now=NOW + timedelta(minutes=minutes))
        for minutes in (0, 5, 30, 60)
    ]

    assert first.weights_applied == 1
    assert [result.weights_applied for result in reruns] == [0, 0, 0, 0]
    with closing(sqlite_session_factory()) as session:
        weights = load_weights(session, "u1")
    assert weights == {"flywheel_referral_gap": pytest.approx(0.9)}


def test_policy_run_next_day_moves_weight_again(sqlite_session_factory: sessionmaker) -> None:
    """A new UTC day opens a new adjustment window."""
    _seed_history(sqlite_session_factory)

    run_memory_policy(sqlite_session_factory, "u1", now=NOW)
    run_memory_policy(sqlite_session_factory, "u1", now=NOW + timedelta(hours=2))
    next_day = run_memory_policy(sqlite_session_factory, "u1", now=NOW + timedelta(days=1))

    assert next_day.weights_applied == 1
    with closing(sqlite_session_factory()) as session:
        weights = load_weights(session, "u1")
    assert weights == {"flywheel_referral_gap": pytest.approx(0.8)}


def test_suppressions_are_not_applied_by_default(sqlite_session_factory: sessionmaker) -> None:
    """Suppression suggestions stay suggestions unless auto-apply is enabled."""
    _seed_history(sqlite_session_factory)

    result = run_memory_policy(sqlite_session_factory, "u1", now=NOW)

    assert result.suppressions_applied == []
    with closing(sqlite_session_factory()) as session:
        assert session.query(NextActionPreference).count() == 0


def test_auto_apply_creates_suppression_above_floor(sqlite_session_factory: sessionmaker) -> None:
    """Auto-apply turns confident suppression suggestions into preferences."""
    _seed_history(sqlite_session_factory)

    result = run_memory_policy(
        sqlite_session_factory,
        "u1",
        now=NOW,
        auto_apply_suppressions=True,
        auto_apply_min_confidence=0.5,
    )

    assert result.suppressions_applied == ["flywheel_referral_gap"]
    with closing(sqlite_session_factory()) as session:
        preference = session.query(NextActionPreference).one()
    assert preference.rule_key == "flywheel_referral_gap"
    assert preference.created_by == "memory_policy"
    assert preference.status == "active"


def test_auto_apply_skips_suggestions_below_floor(sqlite_session_factory: sessionmaker) -> None:
    """A floor above the suggestion confidence leaves preferences untouched."""
    _seed_history(sqlite_session_factory)

    result = run_memory_policy(
        sqlite_session_factory,
        "u1",
        now=NOW,
        auto_apply_suppressions=True,
        auto_apply_min_confidence=0.8,
    )

    assert result.suppressions_applied == []


def test_events_before_the_window_are_ignored(sqlite_session_factory: sessionmaker) -> None:
    """History older than the current window only feeds the trend baseline."""
    _seed(
        sqlite_session_factory,
        "flywheel_referral_gap",
        "nba_dismiss",
        4,
        at=NOW - timedelta(days=10),
    )

    result = run_memory_policy(sqlite_session_factory, "u1", now=NOW)

    assert result.suggestions == []
    assert result.pattern_alerts == []
    assert result.risk_summary is None
