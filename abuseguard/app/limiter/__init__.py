"""Hybrid client-side / remote rate limiting.

This package provides the sliding window limiter, its persisted bucket
store, the per-action policy presets and the countdown formatter.
"""

from abuseguard.app.limiter.formatting import format_duration, format_time_remaining
from abuseguard.app.limiter.local import SlidingWindowRateLimiter
from abuseguard.app.limiter.models import RateLimitDecision, RateLimitEntry, RateLimitPolicy
from abuseguard.app.limiter.multi import MultiRateLimiter
from abuseguard.app.limiter.presets import (
    RATE_LIMIT_PRESETS,
    RateLimitAction,
    clear_all_rate_limiters,
    create_rate_limiter,
    get_policy,
    resolve_action,
)
from abuseguard.app.limiter.store import (
    InMemoryStore,
    JsonFileStore,
    KeyValueStore,
    RedisStore,
    get_store,
    reset_store,
)

__all__ = [
    # Models
    "RateLimitPolicy",
    "RateLimitEntry",
    "RateLimitDecision",
    # Stores
    "KeyValueStore",
    "InMemoryStore",
    "JsonFileStore",
    "RedisStore",
    "get_store",
    "reset_store",
    # Limiters
    "SlidingWindowRateLimiter",
    "MultiRateLimiter",
    # Presets
    "RateLimitAction",
    "RATE_LIMIT_PRESETS",
    "resolve_action",
    "get_policy",
    "create_rate_limiter",
    "clear_all_rate_limiters",
    # Formatting
    "format_duration",
    "format_time_remaining",
]
