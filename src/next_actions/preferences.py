"""Suppression preferences withholding next-action candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import NextActionPreference
from next_actions.registry import Candidate
from services.upsert import dialect_insert
from time_utils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveSuppression:
    """Detached view of an active preference."""

    preference_id: int
    rule_key: str | None
    dedupe_key: str | None
    suppressed_until: datetime | None


@dataclass(frozen=True)
class FilterResult:
    """Candidates kept and withheld by the preference filter."""

    kept: list[Candidate]
    suppressed: list[Candidate]


def preference_target_key(rule_key: str | None, dedupe_key: str | None) -> str:
    """Return the uniqueness key for a preference target."""
    if dedupe_key:
        return f"dedupe:{dedupe_key}"
    if rule_key:
        return f"rule:{rule_key}"
    raise ValueError("A preference needs a rule_key or a dedupe_key.")


def load_active_suppressions(
    session: Session,
    entity_type: str,
    entity_id: str,
    now: datetime,
) -> list[ActiveSuppression]:
    """Return preferences that are active and unexpired at ``now``."""
    timestamp = ensure_utc(now)
    rows = (
        session.query(NextActionPreference)
        .filter(NextActionPreference.entity_type == entity_type)
        .filter(NextActionPreference.entity_id == entity_id)
        .filter(NextActionPreference.status == "active")
        .filter(
            or_(
                NextActionPreference.suppressed_until.is_(None),
                NextActionPreference.suppressed_until > timestamp,
            )
        )
        .order_by(NextActionPreference.id)
        .all()
    )
    return [
        ActiveSuppression(
            preference_id=row.id,
            rule_key=row.rule_key,
            dedupe_key=row.dedupe_key,
            suppressed_until=ensure_utc(row.suppressed_until),
        )
        for row in rows
    ]


def is_candidate_suppressed(
    candidate: Candidate,
    suppressions: Iterable[ActiveSuppression],
) -> bool:
    """Return True when any suppression matches the candidate's rule or dedupe key."""
    for suppression in suppressions:
        if suppression.rule_key and suppression.rule_key == candidate.rule_key:
            return True
        if suppression.dedupe_key and suppression.dedupe_key == candidate.dedupe_key:
            return True
    return False


def apply_suppressions(
    candidates: Iterable[Candidate],
    suppressions: list[ActiveSuppression],
) -> FilterResult:
    """Split candidates by whether a loaded suppression matches them."""
    kept: list[Candidate] = []
    suppressed: list[Candidate] = []
    for candidate in candidates:
        if is_candidate_suppressed(candidate, suppressions):
            suppressed.append(candidate)
        else:
            kept.append(candidate)
    return FilterResult(kept=kept, suppressed=suppressed)


def filter_by_preferences(
    session: Session,
    candidates: Iterable[Candidate],
    entity_type: str,
    entity_id: str,
    now: datetime,
) -> FilterResult:
    """Drop candidates matching an active preference for the entity."""
    return apply_suppressions(
        candidates, load_active_suppressions(session, entity_type, entity_id, now)
    )


def create_suppression(
    session: Session,
    *,
    entity_type: str,
    entity_id: str,
    now: datetime,
    rule_key: str | None = None,
    dedupe_key: str | None = None,
    days: int | None = 30,
    reason: str | None = None,
    created_by: str | None = None,
) -> int:
    """Create or extend a suppression window.

    ``days=None`` suppresses until the preference is deactivated. An existing
    preference for the same target is reactivated with the new window.
    """
    target_key = preference_target_key(rule_key, dedupe_key)
    timestamp = ensure_utc(now)
    suppressed_until = None if days is None else timestamp + timedelta(days=days)
    stmt = dialect_insert(session, NextActionPreference.__table__).values(
        entity_type=entity_type,
        entity_id=entity_id,
        rule_key=rule_key,
        dedupe_key=dedupe_key,
        target_key=target_key,
        status="active",
        suppressed_until=suppressed_until,
        reason=reason,
        created_by=created_by,
        created_at=timestamp,
        updated_at=timestamp,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["entity_type", "entity_id", "target_key"],
        set_={
            "status": "active",
            "suppressed_until": suppressed_until,
            "reason": reason,
            "created_by": created_by,
            "updated_at": timestamp,
        },
    )
    session.execute(stmt)
    preference_id = (
        session.query(NextActionPreference.id)
        .filter(NextActionPreference.entity_type == entity_type)
        .filter(NextActionPreference.entity_id == entity_id)
        .filter(NextActionPreference.target_key == target_key)
        .scalar()
    )
    logger.info(
        "Suppression %s set for %s/%s until %s.",
        target_key,
        entity_type,
        entity_id,
        suppressed_until,
    )
    return preference_id


def deactivate_preference(session: Session, preference_id: int, now: datetime) -> None:
    """Mark a preference inactive so it no longer suppresses anything."""
    preference = session.get(NextActionPreference, preference_id)
    if preference is None:
        raise NotFoundError(f"Preference not found: {preference_id}")
    preference.status = "inactive"
    preference.updated_at = ensure_utc(now)
    session.flush()
