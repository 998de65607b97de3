"""Structured ops events for pipeline runs and alerting decisions."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from observability.sanitize import sanitize_error_message, sanitize_meta

logger = logging.getLogger(__name__)

_LEVELS = {
    "ok": logging.INFO,
    "start": logging.INFO,
    "skipped": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def emit_ops_event(
    event_key: str,
    *,
    status: str = "ok",
    meta: Mapping[str, Any] | None = None,
    error: object | None = None,
) -> dict[str, Any]:
    """Log a sanitized ops event and return the emitted payload."""
    payload: dict[str, Any] = {
        "event_key": event_key,
        "status": status,
        "meta": sanitize_meta(meta),
    }
    if error is not None:
        payload["error"] = sanitize_error_message(error)
    logger.log(
        _LEVELS.get(status, logging.INFO),
        "ops event %s (%s)",
        event_key,
        status,
        extra={"ops_event": payload},
    )
    return payload
