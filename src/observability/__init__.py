"""Logging, run context and ops event helpers."""

from observability.context import get_context, run_log_context, set_service_name
from observability.events import emit_ops_event
from observability.logging_config import configure_logging
from observability.sanitize import sanitize_error_message, sanitize_meta

__all__ = [
    "configure_logging",
    "emit_ops_event",
    "get_context",
    "run_log_context",
    "sanitize_error_message",
    "sanitize_meta",
    "set_service_name",
]
