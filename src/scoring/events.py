"""Detect significant transitions between consecutive score snapshots."""

from __future__ import annotations

from dataclasses import dataclass

from scoring.engine import band_ordinal

DEFAULT_SHARP_DROP_MIN_DELTA = 15


@dataclass(frozen=True)
class ScorePoint:
    """Score and band of one snapshot."""

    score: int
    band: str


@dataclass(frozen=True)
class DetectedScoreEvent:
    """Transition detected between two snapshots."""

    event_type: str
    from_score: int
    to_score: int
    from_band: str
    to_band: str
    delta: int


def detect_score_events(
    previous: ScorePoint | None,
    current: ScorePoint,
    min_delta: int = DEFAULT_SHARP_DROP_MIN_DELTA,
) -> list[DetectedScoreEvent]:
    """Return every event implied by moving from ``previous`` to ``current``.

    Threshold breaches, sharp drops and recoveries are evaluated independently,
    so one transition can yield more than one event.
    """
    if previous is None:
        return []
    if min_delta < 1:
        raise ValueError("min_delta must be >= 1.")

    delta = current.score - previous.score
    from_rank = band_ordinal(previous.band)
    to_rank = band_ordinal(current.band)

    event_types: list[str] = []
    if to_rank < from_rank:
        event_types.append("threshold_breach")
    if delta <= -min_delta:
        event_types.append("sharp_drop")
    if to_rank > from_rank:
        event_types.append("recovery")

    return [
        DetectedScoreEvent(
            event_type=event_type,
            from_score=previous.score,
            to_score=current.score,
            from_band=previous.band,
            to_band=current.band,
            delta=delta,
        )
        for event_type in event_types
    ]
