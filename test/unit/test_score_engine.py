"""Unit tests for composite score computation, banding and events."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from scoring.adapters import (
    CommandCenterSignals,
    build_command_center_factors,
    count_to_normalized,
)
from scoring.engine import ScoreFactor, assign_band, band_ordinal, compute_score
from scoring.events import ScorePoint, detect_score_events


def _factor(key: str, value: float, weight: float = 1.0, **extra) -> ScoreFactor:
    return ScoreFactor(key=key, label=key.replace("_", " "), value=value, weight=weight, **extra)


def test_empty_factors_yield_neutral_score() -> None:
    """No factors produce the neutral score of 50."""
    result = compute_score([])

    assert result.score == 50
    assert result.band == "warning"
    assert result.reasons == []


def test_zero_total_weight_yields_neutral_score() -> None:
    """Factors whose weights sum to zero produce the neutral score."""
    result = compute_score([_factor("a", 0.1, weight=0.0), _factor("b", 0.9, weight=0.0)])

    assert result.score == 50


def test_weighted_mean_of_factors() -> None:
    """The score is the weighted mean of factor values scaled to 0-100."""
    result = compute_score([_factor("a", 1.0, weight=3.0), _factor("b", 0.0, weight=1.0)])

    assert result.score == 75
    assert result.band == "healthy"


def test_values_are_clamped_to_unit_interval() -> None:
    """Out-of-range factor values are clamped before weighting."""
    result = compute_score([_factor("a", 7.0), _factor("b", -2.0)])

    assert result.score == 50
    assert [factor["value"] for factor in result.factors] == [1.0, 0.0]


def test_reasons_sorted_most_damaging_first() -> None:
    """Reasons are ordered by ascending impact."""
    result = compute_score(
        [
            _factor("good", 0.9),
            _factor("bad", 0.1),
            _factor("ok", 0.5),
        ]
    )

    assert [reason.key for reason in result.reasons] == ["bad", "ok", "good"]
    assert result.reasons[0].impact == pytest.approx(-13.33, abs=0.01)
    assert result.reasons[1].impact == 0


def test_factor_rejects_non_finite_and_negative_weight() -> None:
    """NaN values and negative weights are rejected."""
    with pytest.raises(ValidationError):
        _factor("nan", float("nan"))
    with pytest.raises(ValidationError):
        _factor("neg", 0.5, weight=-1.0)


@pytest.mark.parametrize(
    ("score", "band"),
    [(0, "critical"), (49, "critical"), (50, "warning"), (74, "warning"), (75, "healthy"), (100, "healthy")],
)
def test_band_cutoffs(score: int, band: str) -> None:
    """Scores map to bands at the 50 and 75 cutoffs."""
    assert assign_band(score) == band


def test_band_is_monotonic_in_score() -> None:
    """A higher score never lands in a worse band."""
    ordinals = [band_ordinal(assign_band(score)) for score in range(101)]

    assert ordinals == sorted(ordinals)


def test_band_ordinal_rejects_unknown_band() -> None:
    """Unknown bands raise ValueError."""
    with pytest.raises(ValueError):
        band_ordinal("amber")


def test_breach_and_sharp_drop_from_warning_to_critical() -> None:
    """Dropping 70 to 40 is both a threshold breach and a sharp drop."""
    events = detect_score_events(ScorePoint(70, "warning"), ScorePoint(40, "critical"))

    assert [event.event_type for event in events] == ["threshold_breach", "sharp_drop"]
    assert all(event.delta == -30 for event in events)
    assert events[0].from_band == "warning"
    assert events[0].to_band == "critical"


def test_recovery_when_band_improves() -> None:
    """Moving 45 to 85 is a recovery."""
    events = detect_score_events(ScorePoint(45, "critical"), ScorePoint(85, "healthy"))

    assert [event.event_type for event in events] == ["recovery"]
    assert events[0].delta == 40


def test_sixteen_point_drop_across_band_yields_two_events() -> None:
    """60 to 44 crosses a band and exceeds the sharp drop threshold."""
    events = detect_score_events(ScorePoint(60, "warning"), ScorePoint(44, "critical"))

    assert {event.event_type for event in events} == {"threshold_breach", "sharp_drop"}


def test_small_drop_within_band_is_silent() -> None:
    """A small move inside one band produces no events."""
    assert detect_score_events(ScorePoint(90, "healthy"), ScorePoint(80, "healthy")) == []


def test_sharp_drop_honors_custom_minimum() -> None:
    """The sharp drop threshold is configurable."""
    previous = ScorePoint(95, "healthy")
    current = ScorePoint(85, "healthy")

    assert detect_score_events(previous, current, min_delta=10)[0].event_type == "sharp_drop"
    assert detect_score_events(previous, current, min_delta=11) == []


def test_first_snapshot_has_no_events() -> None:
    """Without a previous snapshot nothing is detected."""
    assert detect_score_events(None, ScorePoint(10, "critical")) == []


def test_invalid_min_delta_rejected() -> None:
    """A minimum delta below 1 is rejected."""
    with pytest.raises(ValueError):
        detect_score_events(ScorePoint(50, "warning"), ScorePoint(40, "critical"), min_delta=0)


def test_count_to_normalized_caps_penalty() -> None:
    """Penalties stop growing past the maximum count."""
    assert count_to_normalized(0, 15, 7) == 1.0
    assert count_to_normalized(2, 15, 7) == pytest.approx(0.7)
    assert count_to_normalized(50, 20, 5) == 0.0


def test_command_center_factors_all_clear_is_healthy() -> None:
    """A clean operational snapshot scores 100."""
    factors = build_command_center_factors(CommandCenterSignals(integrations_total=3))
    result = compute_score(factors)

    assert len(factors) == 7
    assert result.score == 100
    assert result.band == "healthy"


def test_command_center_factors_penalize_failures() -> None:
    """Job failures and integration errors pull the score down."""
    signals = CommandCenterSignals(
        job_failures=5,
        errors_today=4,
        integrations_total=2,
        integrations_in_error=2,
    )
    result = compute_score(build_command_center_factors(signals))

    assert result.score < 75
    assert result.reasons[0].key in {"job_health", "observability_errors", "integration_health"}
    job = next(factor for factor in result.factors if factor["key"] == "job_health")
    assert job["value"] == 0.0
    assert job["raw_value"] == 5
