"""Idempotent persistence and lifecycle of next actions."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import DataError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from errors import ErrorDetail, NotFoundError, StoreUnavailableError, exception_to_error
from memory.ingest import record_memory_event
from models import NextAction
from next_actions.registry import Candidate
from observability.sanitize import truncate
from services.database import execute_in_session
from services.upsert import dialect_insert
from time_utils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertResult:
    """Counts from one upsert pass plus per-item errors."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[ErrorDetail] = field(default_factory=list)


def _refreshable(now: datetime):
    return or_(
        NextAction.status == "queued",
        and_(
            NextAction.status == "snoozed",
            or_(NextAction.snoozed_until.is_(None), NextAction.snoozed_until <= now),
        ),
    )


def _upsert_one(
    session: Session,
    candidate: Candidate,
    entity_type: str,
    entity_id: str,
    now: datetime,
) -> str:
    fields = {
        "rule_key": candidate.rule_key,
        "title": truncate(candidate.title),
        "reason": candidate.reason,
        "priority": candidate.priority,
        "score": candidate.score,
        "action_url": candidate.action_url,
        "payload_json": candidate.payload or None,
        "explanation_json": candidate.explanation or None,
    }
    insert_stmt = (
        dialect_insert(session, NextAction.__table__)
        .values(
            entity_type=entity_type,
            entity_id=entity_id,
            dedupe_key=candidate.dedupe_key,
            status="queued",
            created_at=now,
            updated_at=now,
            last_seen_at=now,
            **fields,
        )
        .on_conflict_do_nothing(
            index_elements=["entity_type", "entity_id", "dedupe_key"],
        )
    )
    if session.execute(insert_stmt).rowcount == 1:
        return "created"

    update_stmt = (
        update(NextAction)
        .where(NextAction.entity_type == entity_type)
        .where(NextAction.entity_id == entity_id)
        .where(NextAction.dedupe_key == candidate.dedupe_key)
        .where(_refreshable(now))
        .values(
            status="queued",
            snoozed_until=None,
            updated_at=now,
            last_seen_at=now,
            **fields,
        )
        .execution_options(synchronize_session=False)
    )
    if session.execute(update_stmt).rowcount == 1:
        return "updated"
    return "skipped"


def upsert_next_actions(
    session_factory: Callable[[], Session],
    candidates: Iterable[Candidate],
    *,
    entity_type: str,
    entity_id: str,
    now: datetime,
) -> UpsertResult:
    """Create or refresh stored actions keyed by (entity, dedupe key).

    Queued actions, and snoozed ones whose snooze has expired, are refreshed
    in place. Done, dismissed and actively snoozed actions are left alone and
    counted as skipped. Each candidate runs in its own savepoint so a rejected
    row becomes a per-item error instead of aborting the batch.
    """
    timestamp = ensure_utc(now)
    counts = {"created": 0, "updated": 0, "skipped": 0}
    errors: list[ErrorDetail] = []
    with closing(session_factory()) as session:
        try:
            for candidate in candidates:
                try:
                    with session.begin_nested():
                        outcome = _upsert_one(session, candidate, entity_type, entity_id, timestamp)
                except (IntegrityError, DataError) as exc:
                    logger.warning(
                        "Upsert rejected for %s (%s).", candidate.dedupe_key, type(exc).__name__
                    )
                    detail = exception_to_error(exc)
                    errors.append(
                        replace(
                            detail,
                            metadata={**detail.metadata, "dedupe_key": candidate.dedupe_key},
                        )
                    )
                    continue
                counts[outcome] += 1
            session.commit()
        except OperationalError as exc:
            session.rollback()
            raise StoreUnavailableError("Store unavailable.") from exc
        except Exception:
            session.rollback()
            raise
    return UpsertResult(errors=errors, **counts)


def _fetch_action(session: Session, action_id: int) -> NextAction:
    action = session.get(NextAction, action_id)
    if action is None:
        raise NotFoundError(f"Next action not found: {action_id}")
    return action


def complete_next_action(
    session_factory: Callable[[], Session],
    action_id: int,
    *,
    actor_user_id: str,
    now: datetime,
    outcome: str = "success",
) -> None:
    """Mark an action done and remember how executing it went."""
    timestamp = ensure_utc(now)

    def handler(session: Session) -> None:
        action = _fetch_action(session, action_id)
        action.status = "done"
        action.completed_at = timestamp
        action.updated_at = timestamp
        record_memory_event(
            session,
            actor_user_id=actor_user_id,
            source_type="nba_execute",
            rule_key=action.rule_key,
            outcome=outcome,
            next_action_id=action.id,
            now=timestamp,
        )

    execute_in_session(session_factory, handler)


def dismiss_next_action(
    session_factory: Callable[[], Session],
    action_id: int,
    *,
    actor_user_id: str,
    now: datetime,
) -> None:
    """Dismiss an action; re-fires of its dedupe key will not reopen it."""
    timestamp = ensure_utc(now)

    def handler(session: Session) -> None:
        action = _fetch_action(session, action_id)
        action.status = "dismissed"
        action.updated_at = timestamp
        record_memory_event(
            session,
            actor_user_id=actor_user_id,
            source_type="nba_dismiss",
            rule_key=action.rule_key,
            next_action_id=action.id,
            now=timestamp,
        )

    execute_in_session(session_factory, handler)


def snooze_next_action(
    session_factory: Callable[[], Session],
    action_id: int,
    until: datetime,
    *,
    actor_user_id: str,
    now: datetime,
) -> None:
    """Snooze a queued action until ``until``."""
    timestamp = ensure_utc(now)

    def handler(session: Session) -> None:
        action = _fetch_action(session, action_id)
        if action.status in ("done", "dismissed"):
            raise ValueError(f"Next action {action_id} is {action.status} and cannot be snoozed.")
        action.status = "snoozed"
        action.snoozed_until = ensure_utc(until)
        action.updated_at = timestamp
        record_memory_event(
            session,
            actor_user_id=actor_user_id,
            source_type="nba_snooze",
            rule_key=action.rule_key,
            next_action_id=action.id,
            now=timestamp,
            meta={"snoozed_until": ensure_utc(until).isoformat()},
        )

    execute_in_session(session_factory, handler)
