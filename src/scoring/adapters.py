"""Map operational signals onto score factors."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from scoring.engine import ScoreFactor


class CommandCenterSignals(BaseModel):
    """Operational counts feeding the command center score."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    followups_overdue: int = Field(default=0, ge=0)
    intake_gaps: int = Field(default=0, ge=0)
    proof_gaps: int = Field(default=0, ge=0)
    job_failures: int = Field(default=0, ge=0)
    errors_today: int = Field(default=0, ge=0)
    reminders_overdue: int = Field(default=0, ge=0)
    integrations_total: int = Field(default=0, ge=0)
    integrations_in_error: int = Field(default=0, ge=0)


def count_to_normalized(count: int, penalty_per_unit: float, max_count: int) -> float:
    """Convert an issue count into a [0, 1] health value."""
    penalty = min(max_count * penalty_per_unit, count * penalty_per_unit)
    return max(0.0, 100.0 - penalty) / 100.0


def _count_factor(
    key: str,
    label: str,
    count: int,
    *,
    penalty_per_unit: float,
    max_count: int,
    weight: float,
    noun: str,
    clear_reason: str,
) -> ScoreFactor:
    return ScoreFactor(
        key=key,
        label=label,
        raw_value=count,
        value=count_to_normalized(count, penalty_per_unit, max_count),
        weight=weight,
        direction="negative",
        reason=f"{count} {noun}" if count > 0 else clear_reason,
    )


def build_command_center_factors(signals: CommandCenterSignals) -> list[ScoreFactor]:
    """Build the command center factor set."""
    factors = [
        _count_factor(
            "followups_overdue",
            "Followups overdue",
            signals.followups_overdue,
            penalty_per_unit=15,
            max_count=7,
            weight=2.0,
            noun="followup(s) overdue",
            clear_reason="No overdue followups",
        ),
        _count_factor(
            "intake_gaps",
            "Intake action gaps",
            signals.intake_gaps,
            penalty_per_unit=12,
            max_count=8,
            weight=1.5,
            noun="intake gap(s)",
            clear_reason="No intake gaps",
        ),
        _count_factor(
            "proof_gaps",
            "Proof gaps",
            signals.proof_gaps,
            penalty_per_unit=15,
            max_count=7,
            weight=1.5,
            noun="proof gap(s)",
            clear_reason="No proof gaps",
        ),
        _count_factor(
            "job_health",
            "Job health",
            signals.job_failures,
            penalty_per_unit=20,
            max_count=5,
            weight=2.0,
            noun="job issue(s)",
            clear_reason="Jobs healthy",
        ),
        _count_factor(
            "observability_errors",
            "Ops errors today",
            signals.errors_today,
            penalty_per_unit=25,
            max_count=4,
            weight=1.5,
            noun="error(s) today",
            clear_reason="No errors today",
        ),
        _count_factor(
            "reminders_overdue",
            "Reminders overdue",
            signals.reminders_overdue,
            penalty_per_unit=15,
            max_count=7,
            weight=1.0,
            noun="reminder(s) overdue",
            clear_reason="No overdue reminders",
        ),
    ]

    total = signals.integrations_total
    in_error = min(signals.integrations_in_error, total)
    ok_ratio = (total - in_error) / total if total > 0 else 1.0
    factors.append(
        ScoreFactor(
            key="integration_health",
            label="Integration health",
            raw_value=round(ok_ratio * 100, 2),
            value=ok_ratio,
            weight=1.0,
            direction="positive",
            reason=(
                f"{in_error} integration(s) in error" if in_error > 0 else "All integrations OK"
            ),
        )
    )
    return factors
