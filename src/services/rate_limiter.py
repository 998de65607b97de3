"""Fixed-window rate limiting over a shared key-value store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from services.kv_store import KeyValueStore
from time_utils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Rate limit configuration for one key namespace."""

    namespace: str
    max_per_window: int
    window_seconds: int = 60


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of rate limiting evaluation."""

    allowed: bool
    remaining: int
    retry_after_seconds: int


class FixedWindowRateLimiter:
    """Count hits per key in fixed windows aligned to the epoch."""

    def __init__(self, store: KeyValueStore, config: RateLimitConfig) -> None:
        if config.max_per_window <= 0 or config.window_seconds <= 0:
            raise ValueError("Rate limit window and maximum must be positive.")
        self._store = store
        self._config = config

    def hit(self, key: str, now: datetime) -> RateLimitDecision:
        """Record one hit for ``key`` and report whether it is allowed."""
        epoch_seconds = int(ensure_utc(now).timestamp())
        window = self._config.window_seconds
        window_index = epoch_seconds // window
        retry_after = window - (epoch_seconds % window)
        counter_key = f"ratelimit:{self._config.namespace}:{key}:{window_index}"
        count = self._store.incr(counter_key, ttl_seconds=window)
        if count <= self._config.max_per_window:
            return RateLimitDecision(
                allowed=True,
                remaining=self._config.max_per_window - count,
                retry_after_seconds=0,
            )
        logger.warning(
            "Rate limit exceeded for %s key=%s (count=%s).",
            self._config.namespace,
            key,
            count,
        )
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            retry_after_seconds=retry_after,
        )
