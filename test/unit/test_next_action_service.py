"""Unit tests for next-action upserts and lifecycle changes."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from errors import CONFLICT, NotFoundError
from memory.effectiveness import load_effectiveness
from models import NextAction, OperatorMemoryEvent
from next_actions.registry import Candidate
from next_actions.service import (
    complete_next_action,
    dismiss_next_action,
    snooze_next_action,
    upsert_next_actions,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _candidate(key: str, score: int = 70, title: str = "Do the thing") -> Candidate:
    return Candidate(
        rule_key=key,
        dedupe_key=f"nba:{key}:command_center",
        title=title,
        reason="Because",
        priority="high",
        score=score,
        payload={"bucket": "overdue"},
    )


def _upsert(factory: sessionmaker, candidates, now: datetime = NOW):
    return upsert_next_actions(
        factory, candidates, entity_type="command_center", entity_id="default", now=now
    )


def _action_id(factory: sessionmaker, key: str) -> int:
    with closing(factory()) as session:
        return (
            session.query(NextAction.id)
            .filter(NextAction.dedupe_key == f"nba:{key}:command_center")
            .scalar()
        )


def test_first_upsert_creates_and_second_refreshes(sqlite_session_factory: sessionmaker) -> None:
    """Upserting the same candidates twice creates once and then updates."""
    candidates = [_candidate("a"), _candidate("b")]

    first = _upsert(sqlite_session_factory, candidates)
    second = _upsert(
        sqlite_session_factory,
        [_candidate("a", score=90, title="Do it now"), _candidate("b")],
        NOW + timedelta(hours=1),
    )

    assert (first.created, first.updated, first.skipped) == (2, 0, 0)
    assert (second.created, second.updated, second.skipped) == (0, 2, 0)
    with closing(sqlite_session_factory()) as session:
        rows = session.query(NextAction).order_by(NextAction.dedupe_key).all()
    assert len(rows) == 2
    assert rows[0].score == 90
    assert rows[0].title == "Do it now"
    assert rows[0].created_at == NOW
    assert rows[0].last_seen_at == NOW + timedelta(hours=1)


def test_dismissed_and_done_actions_are_not_reopened(sqlite_session_factory: sessionmaker) -> None:
    """Terminal actions are skipped on later upserts."""
    _upsert(sqlite_session_factory, [_candidate("a"), _candidate("b")])
    dismiss_next_action(
        sqlite_session_factory, _action_id(sqlite_session_factory, "a"), actor_user_id="u1", now=NOW
    )
    complete_next_action(
        sqlite_session_factory, _action_id(sqlite_session_factory, "b"), actor_user_id="u1", now=NOW
    )

    result = _upsert(sqlite_session_factory, [_candidate("a"), _candidate("b")])

    assert (result.created, result.updated, result.skipped) == (0, 0, 2)
    with closing(sqlite_session_factory()) as session:
        statuses = {row.rule_key: row.status for row in session.query(NextAction).all()}
    assert statuses == {"a": "dismissed", "b": "done"}


def test_snoozed_action_reactivates_after_snooze_expires(
    sqlite_session_factory: sessionmaker,
) -> None:
    """Active snoozes are respected; expired snoozes return to the queue."""
    _upsert(sqlite_session_factory, [_candidate("a")])
    action_id = _action_id(sqlite_session_factory, "a")
    snooze_next_action(
        sqlite_session_factory,
        action_id,
        NOW + timedelta(days=1),
        actor_user_id="u1",
        now=NOW,
    )

    during = _upsert(sqlite_session_factory, [_candidate("a")], NOW + timedelta(hours=2))
    after = _upsert(sqlite_session_factory, [_candidate("a")], NOW + timedelta(days=2))

    assert during.skipped == 1
    assert after.updated == 1
    with closing(sqlite_session_factory()) as session:
        action = session.get(NextAction, action_id)
        assert action.status == "queued"
        assert action.snoozed_until is None


def test_rejected_row_is_reported_without_aborting_batch(
    sqlite_session_factory: sessionmaker,
) -> None:
    """A candidate the store rejects becomes an error; the rest still land."""
    result = _upsert(sqlite_session_factory, [_candidate("a"), _candidate("bad", score=150), _candidate("c")])

    assert result.created == 2
    assert len(result.errors) == 1
    assert result.errors[0].code == CONFLICT
    assert result.errors[0].metadata["dedupe_key"] == "nba:bad:command_center"
    with closing(sqlite_session_factory()) as session:
        assert session.query(NextAction).count() == 2


def test_lifecycle_changes_record_memory_events(sqlite_session_factory: sessionmaker) -> None:
    """Completing, dismissing and snoozing are remembered per rule."""
    _upsert(sqlite_session_factory, [_candidate("a"), _candidate("b"), _candidate("c")])
    complete_next_action(
        sqlite_session_factory,
        _action_id(sqlite_session_factory, "a"),
        actor_user_id="u1",
        now=NOW,
        outcome="failure",
    )
    dismiss_next_action(
        sqlite_session_factory, _action_id(sqlite_session_factory, "b"), actor_user_id="u1", now=NOW
    )
    snooze_next_action(
        sqlite_session_factory,
        _action_id(sqlite_session_factory, "c"),
        NOW + timedelta(days=1),
        actor_user_id="u1",
        now=NOW,
    )

    with closing(sqlite_session_factory()) as session:
        events = session.query(OperatorMemoryEvent).order_by(OperatorMemoryEvent.id).all()
        stats = load_effectiveness(session, "u1", NOW + timedelta(minutes=1))

    assert [(event.source_type, event.outcome) for event in events] == [
        ("nba_execute", "failure"),
        ("nba_dismiss", "neutral"),
        ("nba_snooze", "neutral"),
    ]
    assert stats["a"].applied == 1
    assert stats["a"].failure == 1
    assert stats["b"].dismissed == 1
    assert stats["c"].snoozed == 1


def test_lifecycle_helpers_validate_inputs(sqlite_session_factory: sessionmaker) -> None:
    """Missing actions and snoozing terminal actions are rejected."""
    _upsert(sqlite_session_factory, [_candidate("a")])
    action_id = _action_id(sqlite_session_factory, "a")
    dismiss_next_action(sqlite_session_factory, action_id, actor_user_id="u1", now=NOW)

    with pytest.raises(ValueError):
        snooze_next_action(
            sqlite_session_factory,
            action_id,
            NOW + timedelta(days=1),
            actor_user_id="u1",
            now=NOW,
        )
    with pytest.raises(NotFoundError):
        complete_next_action(sqlite_session_factory, 9999, actor_user_id="u1", now=NOW)
