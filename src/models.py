"""Data models for the decision engine."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base

# SQLAlchemy base
Base = declarative_base()

NextActionStatusEnum = Enum(
    "queued",
    "done",
    "dismissed",
    "snoozed",
    name="next_action_status",
    native_enum=False,
)
NextActionPriorityEnum = Enum(
    "critical",
    "high",
    "medium",
    "low",
    name="next_action_priority",
    native_enum=False,
)
PreferenceStatusEnum = Enum(
    "active",
    "inactive",
    name="next_action_preference_status",
    native_enum=False,
)
RiskSeverityEnum = Enum(
    "low",
    "medium",
    "high",
    "critical",
    name="risk_severity",
    native_enum=False,
)
RiskStatusEnum = Enum(
    "open",
    "dismissed",
    "resolved",
    "snoozed",
    name="risk_status",
    native_enum=False,
)
ScoreBandEnum = Enum(
    "healthy",
    "warning",
    "critical",
    name="score_band",
    native_enum=False,
)
ScoreEventTypeEnum = Enum(
    "threshold_breach",
    "sharp_drop",
    "recovery",
    name="score_event_type",
    native_enum=False,
)
NotificationSeverityEnum = Enum(
    "info",
    "warning",
    "critical",
    name="notification_severity",
    native_enum=False,
)
NotificationStatusEnum = Enum(
    "pending",
    "sent",
    "failed",
    "suppressed",
    name="notification_status",
    native_enum=False,
)
MemorySourceTypeEnum = Enum(
    "nba_execute",
    "nba_dismiss",
    "nba_snooze",
    name="memory_source_type",
    native_enum=False,
)
MemoryOutcomeEnum = Enum(
    "success",
    "failure",
    "neutral",
    name="memory_outcome",
    native_enum=False,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NextAction(Base):
    """Stored next-best-action recommendation."""

    __tablename__ = "next_actions"
    __table_args__ = (
        UniqueConstraint(
            "entity_type",
            "entity_id",
            "dedupe_key",
            name="uq_next_actions_entity_dedupe",
        ),
        CheckConstraint("score >= 0 AND score <= 100", name="ck_next_actions_score"),
    )

    id = Column(Integer, primary_key=True)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(200), nullable=False)
    dedupe_key = Column(String(500), nullable=False)
    rule_key = Column(String(200), nullable=False)
    title = Column(String(500), nullable=False)
    reason = Column(Text, nullable=True)
    priority = Column(NextActionPriorityEnum, nullable=False)
    score = Column(Integer, nullable=False)
    status = Column(NextActionStatusEnum, nullable=False, default="queued")
    snoozed_until = Column(DateTime(timezone=True), nullable=True)
    action_url = Column(String(500), nullable=True)
    payload_json = Column(JSON, nullable=True)
    explanation_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    last_seen_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class NextActionPreference(Base):
    """Suppression window withholding candidates by rule or dedupe key."""

    __tablename__ = "next_action_preferences"
    __table_args__ = (
        CheckConstraint(
            "rule_key IS NOT NULL OR dedupe_key IS NOT NULL",
            name="ck_next_action_preferences_target",
        ),
        UniqueConstraint(
            "entity_type",
            "entity_id",
            "target_key",
            name="uq_next_action_preferences_target",
        ),
        Index(
            "ix_next_action_preferences_scope",
            "entity_type",
            "entity_id",
            "status",
        ),
    )

    id = Column(Integer, primary_key=True)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(200), nullable=False)
    rule_key = Column(String(200), nullable=True)
    dedupe_key = Column(String(500), nullable=True)
    target_key = Column(String(520), nullable=False)
    status = Column(PreferenceStatusEnum, nullable=False, default="active")
    suppressed_until = Column(DateTime(timezone=True), nullable=True)
    reason = Column(Text, nullable=True)
    created_by = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class NextActionRun(Base):
    """Audit record of a next-action pipeline invocation."""

    __tablename__ = "next_action_runs"

    id = Column(Integer, primary_key=True)
    run_key = Column(String(500), nullable=False, unique=True)
    triggered_by = Column(String(100), nullable=False)
    actor = Column(String(200), nullable=False)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(200), nullable=False)
    created_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    candidate_count = Column(Integer, nullable=False, default=0)
    suppressed_count = Column(Integer, nullable=False, default=0)
    warning_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    first_run_at = Column(DateTime(timezone=True), default=_utcnow)
    last_run_at = Column(DateTime(timezone=True), nullable=False)


class RiskFlag(Base):
    """Deduplicated, severity-ranked operational issue."""

    __tablename__ = "risk_flags"

    id = Column(Integer, primary_key=True)
    dedupe_key = Column(String(500), nullable=False, unique=True)
    rule_key = Column(String(200), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    severity = Column(RiskSeverityEnum, nullable=False)
    status = Column(RiskStatusEnum, nullable=False, default="open")
    source_type = Column(String(100), nullable=True)
    source_id = Column(String(200), nullable=True)
    action_url = Column(String(500), nullable=True)
    suggested_fix = Column(Text, nullable=True)
    evidence_json = Column(JSON, nullable=True)
    snoozed_until = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    first_seen_at = Column(DateTime(timezone=True), default=_utcnow)
    last_seen_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class ScoreSnapshot(Base):
    """Append-only composite health score for an entity."""

    __tablename__ = "score_snapshots"
    __table_args__ = (
        CheckConstraint("score >= 0 AND score <= 100", name="ck_score_snapshots_score"),
        Index("ix_score_snapshots_scope", "entity_type", "entity_id", "computed_at"),
    )

    id = Column(Integer, primary_key=True)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(200), nullable=False)
    score = Column(Integer, nullable=False)
    band = Column(ScoreBandEnum, nullable=False)
    delta = Column(Integer, nullable=True)
    factors_json = Column(JSON, nullable=False, default=list)
    reasons_json = Column(JSON, nullable=False, default=list)
    computed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ScoreEvent(Base):
    """Significant transition derived from consecutive snapshots."""

    __tablename__ = "score_events"

    id = Column(Integer, primary_key=True)
    snapshot_id = Column(Integer, ForeignKey("score_snapshots.id"), nullable=False)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(200), nullable=False)
    event_type = Column(ScoreEventTypeEnum, nullable=False)
    from_score = Column(Integer, nullable=False)
    to_score = Column(Integer, nullable=False)
    from_band = Column(ScoreBandEnum, nullable=False)
    to_band = Column(ScoreBandEnum, nullable=False)
    delta = Column(Integer, nullable=False)
    reasons_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class NotificationEvent(Base):
    """Outbound notification awaiting or recording delivery."""

    __tablename__ = "notification_events"
    __table_args__ = (Index("ix_notification_events_dedupe", "dedupe_key", "occurred_at"),)

    id = Column(Integer, primary_key=True)
    dedupe_key = Column(String(500), nullable=False)
    event_key = Column(String(200), nullable=False)
    source = Column(String(100), nullable=False)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(200), nullable=False)
    event_type = Column(String(100), nullable=False)
    title = Column(String(500), nullable=False)
    message = Column(Text, nullable=True)
    severity = Column(NotificationSeverityEnum, nullable=False)
    status = Column(NotificationStatusEnum, nullable=False, default="pending")
    source_ref = Column(String(200), nullable=True)
    meta_json = Column(JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)


class LearnedWeight(Base):
    """Per-owner, per-rule score multiplier learned from outcomes."""

    __tablename__ = "learned_weights"
    __table_args__ = (
        UniqueConstraint("owner_user_id", "rule_key", name="uq_learned_weights_owner_rule"),
        CheckConstraint(
            "multiplier >= 0.5 AND multiplier <= 1.5",
            name="ck_learned_weights_multiplier",
        ),
    )

    id = Column(Integer, primary_key=True)
    owner_user_id = Column(String(200), nullable=False)
    rule_key = Column(String(200), nullable=False)
    multiplier = Column(Float, nullable=False, default=1.0)
    last_delta = Column(Float, nullable=False, default=0.0)
    adjusted_window = Column(String(10), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class OperatorMemoryEvent(Base):
    """Historical outcome of an operator interaction with a recommendation."""

    __tablename__ = "operator_memory_events"
    __table_args__ = (
        Index("ix_operator_memory_events_actor_time", "actor_user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    actor_user_id = Column(String(200), nullable=False)
    rule_key = Column(String(200), nullable=True)
    source_type = Column(MemorySourceTypeEnum, nullable=False)
    outcome = Column(MemoryOutcomeEnum, nullable=False, default="neutral")
    next_action_id = Column(Integer, ForeignKey("next_actions.id"), nullable=True)
    meta_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EngineSetting(Base):
    """Key/value operator setting stored as JSON."""

    __tablename__ = "engine_settings"

    key = Column(String(200), primary_key=True)
    value_json = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


def _ensure_aware_timestamp(value: datetime | None) -> datetime | None:
    """Normalize timestamps to UTC when timezone info is missing."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


_TIMESTAMP_COLUMNS = {
    NextAction: ("created_at", "updated_at", "last_seen_at", "completed_at", "snoozed_until"),
    NextActionPreference: ("suppressed_until", "created_at", "updated_at"),
    NextActionRun: ("first_run_at", "last_run_at"),
    RiskFlag: ("snoozed_until", "resolved_at", "first_seen_at", "last_seen_at", "updated_at"),
    ScoreSnapshot: ("computed_at",),
    NotificationEvent: ("occurred_at", "sent_at"),
}


def _register_timestamp_normalizer(model: type, columns: tuple[str, ...]) -> None:
    @event.listens_for(model, "load")
    def _normalize_on_load(target, _context: object) -> None:
        """Ensure loaded timestamps retain timezone awareness."""
        for column in columns:
            setattr(target, column, _ensure_aware_timestamp(getattr(target, column)))


for _model, _columns in _TIMESTAMP_COLUMNS.items():
    _register_timestamp_normalizer(_model, _columns)
