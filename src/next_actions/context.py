"""Read-only business snapshot consumed by the next-action rules."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import ContextValidationError
from time_utils import ensure_utc

SCOPES = ("command_center", "founder_growth")


class ProposalSnapshot(BaseModel):
    """One sent proposal and its follow-up state."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    proposal_id: str = Field(..., min_length=1)
    title: str | None = None
    sent_at: datetime | None = None
    last_followup_at: datetime | None = None

    @field_validator("sent_at", "last_followup_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        """Store timestamps as UTC."""
        return ensure_utc(value)


class NextActionContext(BaseModel):
    """Aggregates describing the business as of ``now``."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    now: datetime
    command_center_band: str | None = None
    failed_delivery_count: int = Field(default=0, ge=0)
    overdue_reminders_count: int = Field(default=0, ge=0)
    sent_no_followup_date_count: int = Field(default=0, ge=0)
    retention_overdue_count: int = Field(default=0, ge=0)
    handoff_no_client_confirm_count: int = Field(default=0, ge=0)
    won_no_delivery_count: int = Field(default=0, ge=0)
    referral_gap_count: int = Field(default=0, ge=0)
    stage_stall_count: int = Field(default=0, ge=0)
    growth_overdue_count: int = Field(default=0, ge=0)
    growth_first_overdue_deal_id: str | None = None
    growth_no_outreach_count: int = Field(default=0, ge=0)
    growth_first_no_outreach_deal_id: str | None = None
    proposals: list[ProposalSnapshot] = Field(default_factory=list)

    @field_validator("now")
    @classmethod
    def _normalize_now(cls, value: datetime) -> datetime:
        """Store the snapshot instant as UTC."""
        return ensure_utc(value)

    @field_validator("command_center_band")
    @classmethod
    def _validate_band(cls, value: str | None) -> str | None:
        """Ensure the band is one of the score bands."""
        if value is not None and value not in {"healthy", "warning", "critical"}:
            raise ValueError(f"Unknown score band: {value}")
        return value


def build_context(raw: NextActionContext | Mapping[str, Any]) -> NextActionContext:
    """Validate a provider snapshot, raising ``ContextValidationError`` when malformed."""
    if isinstance(raw, NextActionContext):
        return raw
    if not isinstance(raw, Mapping):
        raise ContextValidationError("Context snapshot must be a mapping.")
    try:
        return NextActionContext.model_validate(dict(raw))
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise ContextValidationError(
            f"Invalid context snapshot: {', '.join(fields)}"
        ) from exc
