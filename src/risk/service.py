"""Risk flag persistence: atomic upsert, escalation and lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy import and_, case, literal, or_, update
from sqlalchemy.orm import Session

from config import settings
from errors import NotFoundError
from models import RiskFlag
from notifications.cooldown import CooldownGate
from notifications.service import NotificationInput, enqueue_notification
from observability.events import emit_ops_event
from observability.sanitize import sanitize_meta, truncate
from risk.rules import SEVERITY_RANK, RiskFlagInput
from services.database import execute_in_session
from services.upsert import dialect_insert
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

_REFRESHABLE_STATUSES = ("open", "snoozed")
_TERMINAL_STATUSES = ("dismissed", "resolved")


@dataclass(frozen=True)
class RiskFlagResult:
    """Outcome of one create-or-update call."""

    risk_flag_id: int
    created: bool
    updated: bool
    notified: bool = False


@dataclass(frozen=True)
class RiskUpsertSummary:
    """Aggregate outcome of a batch upsert."""

    created: int
    updated: int
    unchanged: int
    critical_notified: int


def _severity_rank_expr():
    return case(SEVERITY_RANK, value=RiskFlag.severity, else_=0)


def _upsert_flag(session: Session, inputs: RiskFlagInput, now: datetime) -> tuple[int, bool, bool]:
    evidence = sanitize_meta(inputs.evidence) or None
    insert_stmt = (
        dialect_insert(session, RiskFlag.__table__)
        .values(
            dedupe_key=inputs.dedupe_key,
            rule_key=inputs.rule_key,
            title=truncate(inputs.title),
            description=inputs.description,
            severity=inputs.severity,
            status="open",
            source_type=inputs.source_type,
            source_id=inputs.source_id,
            action_url=inputs.action_url,
            suggested_fix=inputs.suggested_fix,
            evidence_json=evidence,
            first_seen_at=now,
            last_seen_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["dedupe_key"])
    )
    created = session.execute(insert_stmt).rowcount == 1

    updated = False
    if not created:
        snooze_expired = and_(
            RiskFlag.status == "snoozed",
            or_(RiskFlag.snoozed_until.is_(None), RiskFlag.snoozed_until <= now),
        )
        update_stmt = (
            update(RiskFlag)
            .where(RiskFlag.dedupe_key == inputs.dedupe_key)
            .where(RiskFlag.status.in_(_REFRESHABLE_STATUSES))
            .values(
                title=truncate(inputs.title),
                description=inputs.description,
                severity=case(
                    (
                        _severity_rank_expr() < SEVERITY_RANK[inputs.severity],
                        literal(inputs.severity),
                    ),
                    else_=RiskFlag.severity,
                ),
                status=case((snooze_expired, literal("open")), else_=RiskFlag.status),
                snoozed_until=case((snooze_expired, None), else_=RiskFlag.snoozed_until),
                action_url=inputs.action_url,
                suggested_fix=inputs.suggested_fix,
                evidence_json=evidence,
                last_seen_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        updated = session.execute(update_stmt).rowcount == 1

    flag_id = session.query(RiskFlag.id).filter(RiskFlag.dedupe_key == inputs.dedupe_key).scalar()
    return flag_id, created, updated


def create_or_update(
    session_factory: Callable[[], Session],
    inputs: RiskFlagInput,
    *,
    gate: CooldownGate | None = None,
    cooldown_minutes: int | None = None,
    now: datetime | None = None,
) -> RiskFlagResult:
    """Record one risk occurrence.

    A new dedupe key creates an open flag. An open or snoozed match refreshes
    ``last_seen_at`` and can only raise severity. Dismissed and resolved flags
    are left untouched; a fresh dedupe key is needed to raise the issue again.
    A newly created critical flag enqueues a notification.
    """
    timestamp = ensure_utc(now or utc_now())
    flag_id, created, updated = execute_in_session(
        session_factory, lambda session: _upsert_flag(session, inputs, timestamp)
    )
    if not created and not updated:
        logger.debug("Risk flag %s is terminal or snoozed; left unchanged.", inputs.dedupe_key)

    notified = False
    if created and inputs.severity == "critical":
        outcome = enqueue_notification(
            session_factory,
            NotificationInput(
                source="risk",
                entity_type="risk_flag",
                entity_id=inputs.dedupe_key,
                event_type="created_critical",
                title=inputs.title,
                message=inputs.suggested_fix or inputs.title,
                severity="critical",
                source_ref=str(flag_id),
                meta={"rule_key": inputs.rule_key, "action_url": inputs.action_url},
            ),
            gate=gate or CooldownGate(session_factory),
            cooldown_minutes=(
                settings.notifications.default_cooldown_minutes
                if cooldown_minutes is None
                else cooldown_minutes
            ),
            now=timestamp,
        )
        notified = outcome.created
        if notified:
            emit_ops_event(
                "risk.critical_notified",
                meta={"dedupe_key": inputs.dedupe_key, "title": inputs.title},
            )
    return RiskFlagResult(risk_flag_id=flag_id, created=created, updated=updated, notified=notified)


def upsert_risk_flags(
    session_factory: Callable[[], Session],
    flags: Iterable[RiskFlagInput],
    *,
    gate: CooldownGate | None = None,
    now: datetime | None = None,
) -> RiskUpsertSummary:
    """Record a batch of risk occurrences and emit a summary ops event."""
    timestamp = ensure_utc(now or utc_now())
    created = updated = unchanged = notified = 0
    for item in flags:
        result = create_or_update(session_factory, item, gate=gate, now=timestamp)
        if result.created:
            created += 1
        elif result.updated:
            updated += 1
        else:
            unchanged += 1
        if result.notified:
            notified += 1
    summary = RiskUpsertSummary(
        created=created, updated=updated, unchanged=unchanged, critical_notified=notified
    )
    emit_ops_event(
        "risk.upsert",
        meta={
            "created": created,
            "updated": updated,
            "unchanged": unchanged,
            "critical_notified": notified,
        },
    )
    return summary


def _fetch_flag(session: Session, flag_id: int) -> RiskFlag:
    flag = session.get(RiskFlag, flag_id)
    if flag is None:
        raise NotFoundError(f"Risk flag not found: {flag_id}")
    return flag


def snooze_risk(
    session_factory: Callable[[], Session],
    flag_id: int,
    until: datetime,
    *,
    now: datetime | None = None,
) -> None:
    """Snooze an open flag until ``until``."""
    timestamp = ensure_utc(now or utc_now())

    def handler(session: Session) -> None:
        flag = _fetch_flag(session, flag_id)
        if flag.status in _TERMINAL_STATUSES:
            raise ValueError(f"Risk flag {flag_id} is {flag.status} and cannot be snoozed.")
        flag.status = "snoozed"
        flag.snoozed_until = ensure_utc(until)
        flag.updated_at = timestamp

    execute_in_session(session_factory, handler)


def resolve_risk(
    session_factory: Callable[[], Session],
    flag_id: int,
    *,
    now: datetime | None = None,
) -> None:
    """Mark a flag resolved."""
    timestamp = ensure_utc(now or utc_now())

    def handler(session: Session) -> None:
        flag = _fetch_flag(session, flag_id)
        flag.status = "resolved"
        flag.resolved_at = timestamp
        flag.updated_at = timestamp

    execute_in_session(session_factory, handler)


def dismiss_risk(
    session_factory: Callable[[], Session],
    flag_id: int,
    *,
    now: datetime | None = None,
) -> None:
    """Mark a flag dismissed."""
    timestamp = ensure_utc(now or utc_now())

    def handler(session: Session) -> None:
        flag = _fetch_flag(session, flag_id)
        flag.status = "dismissed"
        flag.updated_at = timestamp

    execute_in_session(session_factory, handler)
