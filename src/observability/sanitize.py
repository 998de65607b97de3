"""Scrub secrets and oversized values from observability payloads."""

from __future__ import annotations

import re
from typing import Any, Mapping

MAX_STRING_LENGTH = 500
MAX_DEPTH = 4
REDACTED = "[redacted]"
URL_REDACTED = "[url redacted]"

_SECRET_KEY_FRAGMENTS = (
    "token",
    "secret",
    "password",
    "apikey",
    "api_key",
    "authorization",
    "webhook",
    "configjson",
)
_BEARER_PATTERN = re.compile(r"bearer\s+[a-z0-9._~+/=-]+", re.IGNORECASE)
_URL_PATTERN = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
_API_KEY_PATTERN = re.compile(r"\b(?:sk|pk|rk)[-_][a-z0-9_-]{8,}", re.IGNORECASE)


def _is_secret_key(key: str) -> bool:
    normalized = key.lower().replace("-", "_")
    collapsed = normalized.replace("_", "")
    return any(
        fragment in normalized or fragment in collapsed for fragment in _SECRET_KEY_FRAGMENTS
    )


def truncate(value: str, limit: int = MAX_STRING_LENGTH) -> str:
    """Clip a string to ``limit`` characters, marking the cut with an ellipsis."""
    if len(value) <= limit:
        return value
    return value[:limit] + "…"


def _sanitize_value(value: Any, depth: int) -> Any:
    if isinstance(value, str):
        return truncate(value)
    if isinstance(value, Mapping):
        if depth >= MAX_DEPTH:
            return REDACTED
        return _sanitize_mapping(value, depth + 1)
    if isinstance(value, (list, tuple)):
        if depth >= MAX_DEPTH:
            return REDACTED
        return [_sanitize_value(item, depth + 1) for item in value if item is not None]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return truncate(str(value))


def _sanitize_mapping(meta: Mapping[str, Any], depth: int) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in meta.items():
        if value is None:
            continue
        key_text = str(key)
        if _is_secret_key(key_text):
            cleaned[key_text] = REDACTED
            continue
        cleaned[key_text] = _sanitize_value(value, depth)
    return cleaned


def sanitize_meta(meta: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a copy of ``meta`` safe for logs and ops events.

    Secret-looking keys are replaced with ``[redacted]``, ``None`` values are
    dropped, strings are truncated and nesting deeper than ``MAX_DEPTH`` is
    collapsed.
    """
    if not meta:
        return {}
    return _sanitize_mapping(meta, 0)


def sanitize_error_message(message: object) -> str:
    """Reduce an error message to caller-safe text."""
    if message is None:
        return "Unknown error"
    text = str(message).strip()
    if not text:
        return "Unknown error"
    text = _BEARER_PATTERN.sub(f"Bearer {REDACTED}", text)
    text = _URL_PATTERN.sub(URL_REDACTED, text)
    text = _API_KEY_PATTERN.sub(REDACTED, text)
    return truncate(text)
