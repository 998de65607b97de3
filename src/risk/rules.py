"""Risk rule evaluation over an operational snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from time_utils import ensure_utc

SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


@dataclass(frozen=True)
class RiskFlagInput:
    """Inputs describing one risk occurrence."""

    rule_key: str
    dedupe_key: str
    severity: str
    title: str
    description: str | None = None
    source_type: str | None = None
    source_id: str | None = None
    action_url: str | None = None
    suggested_fix: str | None = None
    evidence: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.severity not in SEVERITY_RANK:
            raise ValueError(f"Unknown risk severity: {self.severity}")
        if not self.dedupe_key.strip():
            raise ValueError("dedupe_key must be non-empty.")


class RiskRuleContext(BaseModel):
    """Aggregates consulted by the risk rules."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    now: datetime
    failed_delivery_count_24h: int = Field(default=0, ge=0)
    stale_running_jobs_count: int = Field(default=0, ge=0)
    overdue_reminders_high_count: int = Field(default=0, ge=0)
    command_center_band: str | None = None
    proposal_followup_overdue_count: int = Field(default=0, ge=0)
    retention_overdue_count: int = Field(default=0, ge=0)
    owner_user_id: str | None = None
    growth_deal_count: int = Field(default=0, ge=0)
    growth_last_activity_at: datetime | None = None


def risk_dedupe_key(rule_key: str, scope: str) -> str:
    """Return the dedupe key for a rule firing in a scope."""
    return f"risk:{rule_key}:{scope}"


def evaluate_risk_rules(context: RiskRuleContext) -> list[RiskFlagInput]:
    """Return a risk occurrence for every rule the context trips."""
    flags: list[RiskFlagInput] = []

    if context.failed_delivery_count_24h >= 3:
        flags.append(
            RiskFlagInput(
                rule_key="critical_notifications_failed_delivery",
                dedupe_key=risk_dedupe_key("critical_notifications_failed_delivery", "system"),
                severity="critical",
                title="Failed notification deliveries",
                description=f"{context.failed_delivery_count_24h}+ deliveries failed in last 24h",
                source_type="notification_event",
                action_url="/dashboard/notifications?filter=failed",
                suggested_fix="Retry failed deliveries or check channel config",
                evidence={"failed_count": context.failed_delivery_count_24h, "window_hours": 24},
            )
        )

    if context.stale_running_jobs_count >= 1:
        flags.append(
            RiskFlagInput(
                rule_key="stale_running_jobs",
                dedupe_key=risk_dedupe_key("stale_running_jobs", "system"),
                severity="high",
                title="Stale running jobs",
                description=f"{context.stale_running_jobs_count} job(s) stuck in running state",
                source_type="job",
                action_url="/dashboard/jobs?filter=stale",
                suggested_fix="Run job recovery or investigate",
                evidence={"stale_count": context.stale_running_jobs_count},
            )
        )

    if context.overdue_reminders_high_count > 0:
        flags.append(
            RiskFlagInput(
                rule_key="overdue_reminders_high_priority",
                dedupe_key=risk_dedupe_key("overdue_reminders_high_priority", "system"),
                severity="high",
                title="Overdue high-priority reminders",
                description=f"{context.overdue_reminders_high_count} reminder(s) overdue",
                source_type="reminder",
                action_url="/dashboard/reminders?bucket=overdue",
                suggested_fix="Clear overdue reminders",
                evidence={"overdue_count": context.overdue_reminders_high_count},
            )
        )

    if context.command_center_band == "critical":
        flags.append(
            RiskFlagInput(
                rule_key="score_in_critical_band",
                dedupe_key=risk_dedupe_key("score_in_critical_band", "command_center"),
                severity="critical",
                title="Operational score in critical band",
                description="Command center score is critical",
                source_type="score",
                source_id="command_center",
                action_url="/dashboard/internal/scoreboard",
                suggested_fix="Investigate top reasons and trends",
                evidence={"band": context.command_center_band, "entity_id": "command_center"},
            )
        )

    if context.proposal_followup_overdue_count > 0:
        count = context.proposal_followup_overdue_count
        flags.append(
            RiskFlagInput(
                rule_key="proposal_followups_overdue",
                dedupe_key=risk_dedupe_key("proposal_followups_overdue", "system"),
                severity="high" if count >= 5 else "medium",
                title="Proposal follow-ups overdue",
                description=f"{count} proposal(s) need follow-up",
                source_type="proposal",
                action_url="/dashboard/proposal-followups?bucket=overdue",
                suggested_fix="Schedule or complete overdue follow-ups",
                evidence={"overdue_count": count},
            )
        )

    if context.retention_overdue_count > 0:
        count = context.retention_overdue_count
        flags.append(
            RiskFlagInput(
                rule_key="retention_overdue",
                dedupe_key=risk_dedupe_key("retention_overdue", "system"),
                severity="high" if count >= 3 else "medium",
                title="Retention contacts overdue",
                description=f"{count} retention task(s) overdue",
                source_type="delivery_project",
                action_url="/dashboard/retention?bucket=overdue",
                suggested_fix="Contact retention clients",
                evidence={"overdue_count": count},
            )
        )

    if context.owner_user_id and context.growth_deal_count >= 3:
        scope = f"growth:{context.owner_user_id}"
        cutoff = ensure_utc(context.now) - timedelta(days=7)
        last_activity = ensure_utc(context.growth_last_activity_at)
        if last_activity is None or last_activity < cutoff:
            flags.append(
                RiskFlagInput(
                    rule_key="growth_pipeline_zero_activity_7d",
                    dedupe_key=risk_dedupe_key("growth_pipeline_zero_activity_7d", scope),
                    severity="high",
                    title="Growth pipeline inactive 7+ days",
                    description="No outreach or events in 7+ days with 3+ deals in pipeline",
                    source_type="growth_pipeline",
                    source_id=context.owner_user_id,
                    action_url="/dashboard/growth",
                    suggested_fix="Review pipeline and send follow-ups",
                    evidence={
                        "deal_count": context.growth_deal_count,
                        "last_activity_at": last_activity.isoformat() if last_activity else None,
                    },
                )
            )

    return flags
