"""Per-day audit ledger of next-action pipeline runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from models import NextActionRun
from services.upsert import dialect_insert
from time_utils import day_key, ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunCounts:
    """Counters recorded for one pipeline run."""

    created: int = 0
    updated: int = 0
    candidates: int = 0
    suppressed: int = 0
    warnings: int = 0
    errors: int = 0


def build_run_key(actor: str, entity_type: str, entity_id: str, now: datetime) -> str:
    """Return the ledger key; repeated runs on the same UTC day share it."""
    return f"nba:{actor}:{entity_type}:{entity_id}:{day_key(now)}"


def record_run(
    session: Session,
    *,
    run_key: str,
    actor: str,
    entity_type: str,
    entity_id: str,
    triggered_by: str,
    counts: RunCounts,
    now: datetime,
) -> int:
    """Upsert the ledger row for ``run_key`` with the latest counts."""
    timestamp = ensure_utc(now)
    values = {
        "created_count": counts.created,
        "updated_count": counts.updated,
        "candidate_count": counts.candidates,
        "suppressed_count": counts.suppressed,
        "warning_count": counts.warnings,
        "error_count": counts.errors,
        "triggered_by": triggered_by,
        "last_run_at": timestamp,
    }
    stmt = dialect_insert(session, NextActionRun.__table__).values(
        run_key=run_key,
        actor=actor,
        entity_type=entity_type,
        entity_id=entity_id,
        first_run_at=timestamp,
        **values,
    )
    stmt = stmt.on_conflict_do_update(index_elements=["run_key"], set_=values)
    session.execute(stmt)
    run_id = session.query(NextActionRun.id).filter(NextActionRun.run_key == run_key).scalar()
    logger.debug("Recorded run %s (id=%s).", run_key, run_id)
    return run_id
