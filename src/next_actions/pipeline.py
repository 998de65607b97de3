"""One next-best-action run: read, evaluate, filter, persist, record."""

from __future__ import annotations

import contextvars
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, TypeVar, Union

from redis.exceptions import RedisError
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import settings
from errors import ErrorDetail, RateLimitExceededError, StoreUnavailableError
from memory.effectiveness import load_effectiveness, load_weights
from next_actions.context import SCOPES, NextActionContext, build_context
from next_actions.preferences import apply_suppressions, load_active_suppressions
from next_actions.registry import RuleRegistry
from next_actions.rules import produce_candidates
from next_actions.run_ledger import RunCounts, build_run_key, record_run
from next_actions.service import upsert_next_actions
from observability.context import run_log_context
from observability.events import emit_ops_event
from services.database import execute_in_session
from services.kv_store import build_key_value_store
from services.rate_limiter import FixedWindowRateLimiter, RateLimitConfig
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

ContextProvider = Callable[[Session, str, datetime], Union[NextActionContext, Mapping[str, Any]]]

DEFAULT_ENTITY_ID = "default"

_default_rate_limiter: FixedWindowRateLimiter | None = None


@dataclass(frozen=True)
class RunResult:
    """Summary of one pipeline run."""

    created: int
    updated: int
    run_key: str
    last_run_at: datetime
    candidate_count: int
    suppressed_count: int
    warnings: list[ErrorDetail] = field(default_factory=list)
    errors: list[ErrorDetail] = field(default_factory=list)


def get_default_rate_limiter() -> FixedWindowRateLimiter:
    """Return the process-wide run limiter built from settings."""
    global _default_rate_limiter
    if _default_rate_limiter is None:
        _default_rate_limiter = FixedWindowRateLimiter(
            build_key_value_store(),
            RateLimitConfig(
                namespace="nba_run",
                max_per_window=settings.next_actions.rate_limit_per_minute,
                window_seconds=60,
            ),
        )
    return _default_rate_limiter


def _read(session_factory: Callable[[], Session], reader: Callable[[Session], T]) -> T:
    with closing(session_factory()) as session:
        try:
            return reader(session)
        except OperationalError as exc:
            raise StoreUnavailableError("Store unavailable.") from exc


def _submit(executor: ThreadPoolExecutor, fn: Callable[[], T]):
    ctx = contextvars.copy_context()
    return executor.submit(ctx.run, fn)


def run_next_actions(
    session_factory: Callable[[], Session],
    context_provider: ContextProvider,
    *,
    actor: str,
    scope: str = "command_center",
    entity_id: str | None = None,
    triggered_by: str = "manual",
    rate_limiter: FixedWindowRateLimiter | None = None,
    registry: RuleRegistry | None = None,
    max_workers: int | None = None,
    now: datetime | None = None,
) -> RunResult:
    """Run the pipeline once for ``scope``.

    Reads (context, learned weights, effectiveness, suppressions) run
    concurrently, each on its own session. Writes start only after every read
    has finished. Re-running with unchanged inputs creates nothing new.
    """
    if scope not in SCOPES:
        raise ValueError(f"Unknown scope: {scope}")
    timestamp = ensure_utc(now or utc_now())
    target_id = entity_id or DEFAULT_ENTITY_ID
    run_key = build_run_key(actor, scope, target_id, timestamp)

    limiter = rate_limiter or get_default_rate_limiter()
    try:
        decision = limiter.hit(actor, timestamp)
    except RedisError as exc:
        raise StoreUnavailableError("Rate limit store unavailable.") from exc
    if not decision.allowed:
        emit_ops_event(
            "run.rate_limited",
            status="skipped",
            meta={"actor": actor, "retry_after_seconds": decision.retry_after_seconds},
        )
        raise RateLimitExceededError(
            f"Run rate limit exceeded for {actor}.",
            retry_after_seconds=decision.retry_after_seconds,
        )

    with run_log_context(run_key, actor, scope):
        emit_ops_event(
            "run.start",
            status="start",
            meta={"run_key": run_key, "triggered_by": triggered_by},
        )
        try:
            result = _run(
                session_factory,
                context_provider,
                actor=actor,
                scope=scope,
                entity_id=target_id,
                triggered_by=triggered_by,
                run_key=run_key,
                registry=registry,
                max_workers=max_workers or settings.next_actions.read_workers,
                now=timestamp,
            )
        except OperationalError as exc:
            emit_ops_event("run.error", status="error", meta={"run_key": run_key}, error=exc)
            raise StoreUnavailableError("Store unavailable.") from exc
        except Exception as exc:
            emit_ops_event("run.error", status="error", meta={"run_key": run_key}, error=exc)
            raise

        emit_ops_event(
            "run.complete",
            status="warning" if result.warnings or result.errors else "ok",
            meta={
                "run_key": run_key,
                "created": result.created,
                "updated": result.updated,
                "candidates": result.candidate_count,
                "suppressed": result.suppressed_count,
                "warnings": len(result.warnings),
                "errors": len(result.errors),
            },
        )
    return result


def _run(
    session_factory: Callable[[], Session],
    context_provider: ContextProvider,
    *,
    actor: str,
    scope: str,
    entity_id: str,
    triggered_by: str,
    run_key: str,
    registry: RuleRegistry | None,
    max_workers: int,
    now: datetime,
) -> RunResult:
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="nba-read") as executor:
        context_future = _submit(
            executor,
            lambda: _read(
                session_factory,
                lambda session: build_context(context_provider(session, scope, now)),
            ),
        )
        weights_future = _submit(
            executor,
            lambda: _read(session_factory, lambda session: load_weights(session, actor)),
        )
        effectiveness_future = _submit(
            executor,
            lambda: _read(
                session_factory, lambda session: load_effectiveness(session, actor, now)
            ),
        )
        suppressions_future = _submit(
            executor,
            lambda: _read(
                session_factory,
                lambda session: load_active_suppressions(session, scope, entity_id, now),
            ),
        )
        context = context_future.result()
        weights = weights_future.result()
        effectiveness = effectiveness_future.result()
        suppressions = suppressions_future.result()

    batch = produce_candidates(context, scope, weights, effectiveness, registry=registry)
    filtered = apply_suppressions(batch.candidates, suppressions)
    if filtered.suppressed:
        logger.info("Suppressed %s candidate(s) by preference.", len(filtered.suppressed))

    upserted = upsert_next_actions(
        session_factory,
        filtered.kept,
        entity_type=scope,
        entity_id=entity_id,
        now=now,
    )

    counts = RunCounts(
        created=upserted.created,
        updated=upserted.updated,
        candidates=len(batch.candidates),
        suppressed=len(filtered.suppressed),
        warnings=len(batch.warnings),
        errors=len(upserted.errors),
    )
    execute_in_session(
        session_factory,
        lambda session: record_run(
            session,
            run_key=run_key,
            actor=actor,
            entity_type=scope,
            entity_id=entity_id,
            triggered_by=triggered_by,
            counts=counts,
            now=now,
        ),
    )

    return RunResult(
        created=upserted.created,
        updated=upserted.updated,
        run_key=run_key,
        last_run_at=now,
        candidate_count=len(batch.candidates),
        suppressed_count=len(filtered.suppressed),
        warnings=list(batch.warnings),
        errors=list(upserted.errors),
    )
