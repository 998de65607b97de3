"""Record operator interactions with recommendations."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import OperatorMemoryEvent
from observability.events import emit_ops_event
from observability.sanitize import sanitize_meta
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

SOURCE_TYPES = ("nba_execute", "nba_dismiss", "nba_snooze")
OUTCOMES = ("success", "failure", "neutral")


def record_memory_event(
    session: Session,
    *,
    actor_user_id: str,
    source_type: str,
    rule_key: str | None,
    now: datetime,
    outcome: str | None = None,
    next_action_id: int | None = None,
    meta: dict[str, Any] | None = None,
) -> OperatorMemoryEvent | None:
    """Append one memory event without disturbing the caller's transaction.

    The insert runs in a savepoint. A store error is logged and reported as
    an ops event, and ``None`` is returned so the surrounding lifecycle change
    still commits.
    """
    if source_type not in SOURCE_TYPES:
        raise ValueError(f"Unknown memory source type: {source_type}")
    resolved_outcome = outcome or ("success" if source_type == "nba_execute" else "neutral")
    if resolved_outcome not in OUTCOMES:
        raise ValueError(f"Unknown memory outcome: {resolved_outcome}")

    event = OperatorMemoryEvent(
        actor_user_id=actor_user_id,
        rule_key=rule_key,
        source_type=source_type,
        outcome=resolved_outcome,
        next_action_id=next_action_id,
        meta_json=sanitize_meta(meta) or None,
        created_at=ensure_utc(now),
    )
    try:
        with session.begin_nested():
            session.add(event)
    except SQLAlchemyError as exc:
        logger.exception("Failed to record memory event for rule=%s.", rule_key)
        emit_ops_event(
            "memory.ingest.failed",
            status="error",
            meta={"rule_key": rule_key, "source_type": source_type},
            error=exc,
        )
        return None
    return event
