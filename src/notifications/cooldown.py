"""Cooldown gate suppressing repeat notifications for the same event."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from errors import StoreUnavailableError
from models import NotificationEvent
from services.kv_store import KeyValueStore
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = ("pending", "sent")


@dataclass(frozen=True)
class CooldownStatus:
    """Whether a notification key is inside its cooldown window."""

    in_cooldown: bool
    last_at: datetime | None = None


def notification_dedupe_key(
    source: str,
    entity_type: str,
    entity_id: str,
    event_type: str,
) -> str:
    """Return the cooldown lookup key for one (entity, event type) pair."""
    return f"notif:{source}:{entity_type}:{entity_id}:{event_type}"


def _cache_key(dedupe_key: str) -> str:
    return f"cooldown:{dedupe_key}"


class CooldownGate:
    """Decide whether an outbound notification repeats one sent recently.

    Recent sends are looked up in the key-value cache first, then in stored
    notification events. Only pending or sent events count.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: KeyValueStore | None = None,
        *,
        fail_open: bool | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._fail_open = (
            settings.notifications.cooldown_fail_open if fail_open is None else fail_open
        )

    def is_in_cooldown(
        self,
        entity_type: str,
        entity_id: str,
        event_type: str,
        cooldown_minutes: int,
        *,
        now: datetime,
        source: str = "score",
    ) -> CooldownStatus:
        """Return the cooldown status for the given entity and event type."""
        if cooldown_minutes <= 0:
            return CooldownStatus(in_cooldown=False)

        dedupe_key = notification_dedupe_key(source, entity_type, entity_id, event_type)
        now = ensure_utc(now)
        window_start = now - timedelta(minutes=cooldown_minutes)
        try:
            last_at = self._cached_last_at(dedupe_key)
            if last_at is None or last_at < window_start:
                last_at = self._stored_last_at(dedupe_key, window_start)
        except (SQLAlchemyError, RedisError) as exc:
            if not self._fail_open:
                logger.error("Cooldown lookup failed for %s.", dedupe_key)
                raise StoreUnavailableError("Cooldown lookup failed.") from exc
            logger.warning(
                "Cooldown lookup failed for %s; allowing notification (%s).",
                dedupe_key,
                type(exc).__name__,
            )
            return CooldownStatus(in_cooldown=False)

        if last_at is None or last_at < window_start:
            return CooldownStatus(in_cooldown=False, last_at=last_at)
        return CooldownStatus(in_cooldown=True, last_at=last_at)

    def remember(self, dedupe_key: str, occurred_at: datetime, cooldown_minutes: int) -> None:
        """Cache a notification send time for the length of its cooldown."""
        if self._store is None or cooldown_minutes <= 0:
            return
        try:
            self._store.set(
                _cache_key(dedupe_key),
                ensure_utc(occurred_at).isoformat(),
                ttl_seconds=cooldown_minutes * 60,
            )
        except RedisError:
            logger.warning("Failed to cache cooldown for %s.", dedupe_key)

    def _cached_last_at(self, dedupe_key: str) -> datetime | None:
        if self._store is None:
            return None
        raw = self._store.get(_cache_key(dedupe_key))
        if raw is None:
            return None
        return ensure_utc(datetime.fromisoformat(raw))

    def _stored_last_at(self, dedupe_key: str, window_start: datetime) -> datetime | None:
        with closing(self._session_factory()) as session:
            row = (
                session.query(NotificationEvent.occurred_at)
                .filter(NotificationEvent.dedupe_key == dedupe_key)
                .filter(NotificationEvent.status.in_(_ACTIVE_STATUSES))
                .filter(NotificationEvent.occurred_at >= window_start)
                .order_by(NotificationEvent.occurred_at.desc())
                .first()
            )
        if row is None:
            return None
        return ensure_utc(row[0])
