"""Error taxonomy for the decision engine.

Domain failures raise ``EngineError`` subclasses. Anything crossing a caller
boundary (run results, ops events) is reduced to an ``ErrorDetail`` whose
message has been sanitized.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from sqlalchemy.exc import DBAPIError, DataError, IntegrityError, OperationalError

from observability.sanitize import sanitize_error_message

VALIDATION_ERROR = "VALIDATION_ERROR"
INVALID_CONTEXT = "INVALID_CONTEXT"
CONFLICT = "CONFLICT"
NOT_FOUND = "NOT_FOUND"
STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
RATE_LIMITED = "RATE_LIMITED"
RULE_FAILED = "RULE_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorCategory(str, Enum):
    """High-level error categories."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    DEPENDENCY = "dependency"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"


@dataclass(frozen=True)
class ErrorDetail:
    """Structured, caller-safe error."""

    code: str
    message: str
    category: ErrorCategory
    retryable: bool = False
    metadata: Mapping[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "metadata": dict(self.metadata),
        }


class EngineError(Exception):
    """Base class for decision engine failures."""

    code = INTERNAL_ERROR
    category = ErrorCategory.INTERNAL
    retryable = False

    def to_detail(self, **metadata: str) -> ErrorDetail:
        """Return the caller-safe detail for this error."""
        return ErrorDetail(
            code=self.code,
            message=sanitize_error_message(str(self)),
            category=self.category,
            retryable=self.retryable,
            metadata=dict(metadata),
        )


class ContextValidationError(EngineError):
    """Raised when the context snapshot is malformed."""

    code = INVALID_CONTEXT
    category = ErrorCategory.VALIDATION


class StoreUnavailableError(EngineError):
    """Raised when the persistence store cannot be reached."""

    code = STORE_UNAVAILABLE
    category = ErrorCategory.DEPENDENCY
    retryable = True


class RateLimitExceededError(EngineError):
    """Raised when an actor triggers runs faster than allowed."""

    code = RATE_LIMITED
    category = ErrorCategory.RATE_LIMITED
    retryable = True

    def __init__(self, message: str, *, retry_after_seconds: int) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class NotFoundError(EngineError):
    """Raised when a referenced record does not exist."""

    code = NOT_FOUND
    category = ErrorCategory.NOT_FOUND


def exception_to_error(exc: BaseException) -> ErrorDetail:
    """Normalize an exception into a sanitized ``ErrorDetail``.

    The original exception text is never returned verbatim; database errors in
    particular are replaced with a generic message because their text embeds
    SQL and connection parameters.
    """
    metadata = {"exception_type": type(exc).__name__}

    if isinstance(exc, EngineError):
        return exc.to_detail(**metadata)

    if isinstance(exc, IntegrityError):
        return ErrorDetail(
            code=CONFLICT,
            message="Write conflicted with an existing record.",
            category=ErrorCategory.CONFLICT,
            metadata=metadata,
        )

    if isinstance(exc, DataError):
        return ErrorDetail(
            code=VALIDATION_ERROR,
            message="Record rejected by the store.",
            category=ErrorCategory.VALIDATION,
            metadata=metadata,
        )

    if isinstance(exc, (OperationalError, DBAPIError, ConnectionError, TimeoutError)):
        return ErrorDetail(
            code=STORE_UNAVAILABLE,
            message="Store unavailable.",
            category=ErrorCategory.DEPENDENCY,
            retryable=True,
            metadata=metadata,
        )

    if isinstance(exc, ValueError):
        return ErrorDetail(
            code=VALIDATION_ERROR,
            message=sanitize_error_message(str(exc)),
            category=ErrorCategory.VALIDATION,
            metadata=metadata,
        )

    return ErrorDetail(
        code=INTERNAL_ERROR,
        message=sanitize_error_message(str(exc) or "unexpected exception"),
        category=ErrorCategory.INTERNAL,
        metadata=metadata,
    )


def is_store_unavailable(exc: BaseException) -> bool:
    """Return True when a database exception means the store is unreachable."""
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)
