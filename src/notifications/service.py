"""Create and transition outbound notification events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from errors import NotFoundError
from models import NotificationEvent
from notifications.cooldown import CooldownGate, notification_dedupe_key
from observability.events import emit_ops_event
from observability.sanitize import sanitize_error_message, sanitize_meta, truncate
from services.database import execute_in_session
from time_utils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationInput:
    """Inputs describing one outbound notification."""

    source: str
    entity_type: str
    entity_id: str
    event_type: str
    title: str
    severity: str
    message: str | None = None
    source_ref: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        return notification_dedupe_key(
            self.source, self.entity_type, self.entity_id, self.event_type
        )


@dataclass(frozen=True)
class NotificationOutcome:
    """Result of an enqueue attempt."""

    created: bool
    notification_id: int | None = None
    suppressed: bool = False
    last_at: datetime | None = None


def create_notification_event(
    session: Session,
    inputs: NotificationInput,
    now: datetime,
) -> NotificationEvent:
    """Add a pending notification event to the session."""
    event = NotificationEvent(
        dedupe_key=inputs.dedupe_key,
        event_key=f"{inputs.source}.{inputs.event_type}",
        source=inputs.source,
        entity_type=inputs.entity_type,
        entity_id=inputs.entity_id,
        event_type=inputs.event_type,
        title=truncate(inputs.title),
        message=truncate(inputs.message) if inputs.message else None,
        severity=inputs.severity,
        status="pending",
        source_ref=inputs.source_ref,
        meta_json=sanitize_meta(inputs.meta) or None,
        occurred_at=ensure_utc(now),
    )
    session.add(event)
    session.flush()
    return event


def enqueue_notification(
    session_factory: Callable[[], Session],
    inputs: NotificationInput,
    *,
    gate: CooldownGate,
    cooldown_minutes: int,
    now: datetime,
) -> NotificationOutcome:
    """Create a pending notification unless the cooldown gate blocks it."""
    status = gate.is_in_cooldown(
        inputs.entity_type,
        inputs.entity_id,
        inputs.event_type,
        cooldown_minutes,
        now=now,
        source=inputs.source,
    )
    if status.in_cooldown:
        emit_ops_event(
            f"{inputs.source}.notification.suppressed",
            status="skipped",
            meta={
                "entity_type": inputs.entity_type,
                "entity_id": inputs.entity_id,
                "event_type": inputs.event_type,
                "last_at": status.last_at,
                "cooldown_minutes": cooldown_minutes,
            },
        )
        return NotificationOutcome(created=False, suppressed=True, last_at=status.last_at)

    notification_id = execute_in_session(
        session_factory,
        lambda session: create_notification_event(session, inputs, now).id,
    )
    gate.remember(inputs.dedupe_key, now, cooldown_minutes)
    logger.info("Queued notification %s (id=%s).", inputs.dedupe_key, notification_id)
    return NotificationOutcome(created=True, notification_id=notification_id)


def _transition(
    session: Session,
    notification_id: int,
    status: str,
    *,
    now: datetime | None = None,
    error: object | None = None,
) -> NotificationEvent:
    event = session.get(NotificationEvent, notification_id)
    if event is None:
        raise NotFoundError(f"Notification {notification_id} not found.")
    event.status = status
    if status == "sent":
        event.sent_at = ensure_utc(now)
    if error is not None:
        event.last_error = sanitize_error_message(error)
    session.flush()
    return event


def mark_notification_sent(session: Session, notification_id: int, now: datetime) -> NotificationEvent:
    """Mark a notification as delivered."""
    return _transition(session, notification_id, "sent", now=now)


def mark_notification_failed(
    session: Session, notification_id: int, error: object
) -> NotificationEvent:
    """Mark a notification as failed, keeping a sanitized error."""
    return _transition(session, notification_id, "failed", error=error)


def mark_notification_suppressed(session: Session, notification_id: int) -> NotificationEvent:
    """Mark a pending notification as suppressed by the dispatcher."""
    return _transition(session, notification_id, "suppressed")
