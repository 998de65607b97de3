"""Initial decision engine schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _status(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def upgrade() -> None:
    """Create next action, scoring, risk, notification and memory tables."""
    op.create_table(
        "next_actions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=200), nullable=False),
        sa.Column("dedupe_key", sa.String(length=500), nullable=False),
        sa.Column("rule_key", sa.String(length=200), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "priority",
            _status("next_action_priority", "critical", "high", "medium", "low"),
            nullable=False,
        ),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            _status("next_action_status", "queued", "done", "dismissed", "snoozed"),
            nullable=False,
        ),
        sa.Column("snoozed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("action_url", sa.String(length=500), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("explanation_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "entity_type",
            "entity_id",
            "dedupe_key",
            name="uq_next_actions_entity_dedupe",
        ),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_next_actions_score"),
    )
    op.create_table(
        "next_action_preferences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=200), nullable=False),
        sa.Column("rule_key", sa.String(length=200), nullable=True),
        sa.Column("dedupe_key", sa.String(length=500), nullable=True),
        sa.Column("target_key", sa.String(length=520), nullable=False),
        sa.Column(
            "status",
            _status("next_action_preference_status", "active", "inactive"),
            nullable=False,
        ),
        sa.Column("suppressed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "rule_key IS NOT NULL OR dedupe_key IS NOT NULL",
            name="ck_next_action_preferences_target",
        ),
        sa.UniqueConstraint(
            "entity_type",
            "entity_id",
            "target_key",
            name="uq_next_action_preferences_target",
        ),
    )
    op.create_index(
        "ix_next_action_preferences_scope",
        "next_action_preferences",
        ["entity_type", "entity_id", "status"],
    )
    op.create_table(
        "next_action_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("run_key", sa.String(length=500), nullable=False, unique=True),
        sa.Column("triggered_by", sa.String(length=100), nullable=False),
        sa.Column("actor", sa.String(length=200), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=200), nullable=False),
        sa.Column("created_count", sa.Integer(), nullable=False),
        sa.Column("updated_count", sa.Integer(), nullable=False),
        sa.Column("candidate_count", sa.Integer(), nullable=False),
        sa.Column("suppressed_count", sa.Integer(), nullable=False),
        sa.Column("warning_count", sa.Integer(), nullable=False),
        sa.Column("error_count", sa.Integer(), nullable=False),
        sa.Column("first_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "risk_flags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("dedupe_key", sa.String(length=500), nullable=False, unique=True),
        sa.Column("rule_key", sa.String(length=200), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "severity",
            _status("risk_severity", "low", "medium", "high", "critical"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _status("risk_status", "open", "dismissed", "resolved", "snoozed"),
            nullable=False,
        ),
        sa.Column("source_type", sa.String(length=100), nullable=True),
        sa.Column("source_id", sa.String(length=200), nullable=True),
        sa.Column("action_url", sa.String(length=500), nullable=True),
        sa.Column("suggested_fix", sa.Text(), nullable=True),
        sa.Column("evidence_json", sa.JSON(), nullable=True),
        sa.Column("snoozed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "score_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=200), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column(
            "band",
            _status("score_band", "healthy", "warning", "critical"),
            nullable=False,
        ),
        sa.Column("delta", sa.Integer(), nullable=True),
        sa.Column("factors_json", sa.JSON(), nullable=False),
        sa.Column("reasons_json", sa.JSON(), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_score_snapshots_score"),
    )
    op.create_index(
        "ix_score_snapshots_scope",
        "score_snapshots",
        ["entity_type", "entity_id", "computed_at"],
    )
    op.create_table(
        "score_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "snapshot_id",
            sa.Integer(),
            sa.ForeignKey("score_snapshots.id"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=200), nullable=False),
        sa.Column(
            "event_type",
            _status("score_event_type", "threshold_breach", "sharp_drop", "recovery"),
            nullable=False,
        ),
        sa.Column("from_score", sa.Integer(), nullable=False),
        sa.Column("to_score", sa.Integer(), nullable=False),
        sa.Column(
            "from_band",
            _status("score_band", "healthy", "warning", "critical"),
            nullable=False,
        ),
        sa.Column(
            "to_band",
            _status("score_band", "healthy", "warning", "critical"),
            nullable=False,
        ),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reasons_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "notification_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("dedupe_key", sa.String(length=500), nullable=False),
        sa.Column("event_key", sa.String(length=200), nullable=False),
        sa.Column("source", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=200), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column(
            "severity",
            _status("notification_severity", "info", "warning", "critical"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _status("notification_status", "pending", "sent", "failed", "suppressed"),
            nullable=False,
        ),
        sa.Column("source_ref", sa.String(length=200), nullable=True),
        sa.Column("meta_json", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_notification_events_dedupe",
        "notification_events",
        ["dedupe_key", "occurred_at"],
    )
    op.create_table(
        "learned_weights",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_user_id", sa.String(length=200), nullable=False),
        sa.Column("rule_key", sa.String(length=200), nullable=False),
        sa.Column("multiplier", sa.Float(), nullable=False),
        sa.Column("last_delta", sa.Float(), nullable=False),
        sa.Column("adjusted_window", sa.String(length=10), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("owner_user_id", "rule_key", name="uq_learned_weights_owner_rule"),
        sa.CheckConstraint(
            "multiplier >= 0.5 AND multiplier <= 1.5",
            name="ck_learned_weights_multiplier",
        ),
    )
    op.create_table(
        "operator_memory_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_user_id", sa.String(length=200), nullable=False),
        sa.Column("rule_key", sa.String(length=200), nullable=True),
        sa.Column(
            "source_type",
            _status("memory_source_type", "nba_execute", "nba_dismiss", "nba_snooze"),
            nullable=False,
        ),
        sa.Column(
            "outcome",
            _status("memory_outcome", "success", "failure", "neutral"),
            nullable=False,
        ),
        sa.Column(
            "next_action_id",
            sa.Integer(),
            sa.ForeignKey("next_actions.id"),
            nullable=True,
        ),
        sa.Column("meta_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_operator_memory_events_actor_time",
        "operator_memory_events",
        ["actor_user_id", "created_at"],
    )
    op.create_table(
        "engine_settings",
        sa.Column("key", sa.String(length=200), primary_key=True),
        sa.Column("value_json", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    """Drop decision engine tables."""
    op.drop_table("engine_settings")
    op.drop_index("ix_operator_memory_events_actor_time", table_name="operator_memory_events")
    op.drop_table("operator_memory_events")
    op.drop_table("learned_weights")
    op.drop_index("ix_notification_events_dedupe", table_name="notification_events")
    op.drop_table("notification_events")
    op.drop_table("score_events")
    op.drop_index("ix_score_snapshots_scope", table_name="score_snapshots")
    op.drop_table("score_snapshots")
    op.drop_table("risk_flags")
    op.drop_table("next_action_runs")
    op.drop_index("ix_next_action_preferences_scope", table_name="next_action_preferences")
    op.drop_table("next_action_preferences")
    op.drop_table("next_actions")
