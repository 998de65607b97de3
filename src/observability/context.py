"""Run-scoped fields attached to every log line.

While a pipeline or memory policy run is active, its ``run_key``, ``actor``
and ``scope`` ride along on each record. Read worker threads see them too
because the pipeline submits work through ``contextvars.copy_context``.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_RUN_FIELDS: ContextVar[dict[str, str]] = ContextVar("engine_run_fields", default={})


def get_context() -> dict[str, str]:
    """Return a copy of the fields bound in the current context."""
    return dict(_RUN_FIELDS.get())


def set_service_name(service: str) -> None:
    """Tag every later log line in this context with the service name."""
    _RUN_FIELDS.set({**_RUN_FIELDS.get(), "service": service})


@contextmanager
def run_log_context(run_key: str, actor: str, scope: str) -> Iterator[None]:
    """Bind one run's identity for the duration of a block."""
    token = _RUN_FIELDS.set(
        {**_RUN_FIELDS.get(), "run_key": run_key, "actor": actor, "scope": scope}
    )
    try:
        yield
    finally:
        _RUN_FIELDS.reset(token)
