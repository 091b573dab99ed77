"""Storage backends for the remote authority.

Both backends apply the same sliding window and blocking rules as the
client-side limiter, but serialize updates per identifier.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Optional

from abuseguard.app.core.config import settings
from abuseguard.app.core.logging import get_log_context, get_logger
from abuseguard.app.exceptions import BackendUnavailableError
from abuseguard.app.limiter.models import RateLimitEntry, RateLimitPolicy
from abuseguard.app.authority.redis_lua import CHECK_AND_RECORD_SCRIPT

logger = get_logger(__name__)


@dataclass
class AuthorityResult:
    """Result of an authoritative check."""
    allowed: bool
    remaining: int
    blocked_until: Optional[int] = None


@dataclass
class OutcomeStats:
    """Reported outcomes for one identifier."""
    successes: int = 0
    failures: int = 0


class AuthorityBackend(ABC):
    """Abstract base class for remote authority backends."""

    name: str = "abstract"

    @abstractmethod
    async def check_and_record(
        self, action: str, identifier: str, policy: RateLimitPolicy, now: int
    ) -> AuthorityResult:
        """Atomically evaluate and record one attempt."""

    @abstractmethod
    async def record_outcome(self, action: str, identifier: str, success: bool) -> None:
        """Store the reported outcome of an attempt."""

    @abstractmethod
    async def reset(self, action: str, identifier: str) -> None:
        """Forget the bucket for ``identifier``."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryAuthorityBackend(AuthorityBackend):
    """Single-process backend with one asyncio lock per bucket."""

    name = "memory"

    def __init__(self) -> None:
        self._buckets: dict[str, RateLimitEntry] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._outcomes: defaultdict[str, OutcomeStats] = defaultdict(OutcomeStats)

    @staticmethod
    def _key(action: str, identifier: str) -> str:
        return f"{action}:{identifier}"

    async def check_and_record(
        self, action: str, identifier: str, policy: RateLimitPolicy, now: int
    ) -> AuthorityResult:
        key = self._key(action, identifier)
        async with self._locks[key]:
            entry = self._buckets.get(key) or RateLimitEntry()
            if entry.is_blocked(now):
                return AuthorityResult(False, 0, entry.blocked_until)
            if entry.blocked_until is not None:
                entry = RateLimitEntry()

            entry.prune(now, policy.window_ms)
            if len(entry.attempts) >= policy.max_attempts:
                entry.block(now + policy.block_duration_ms)
                self._buckets[key] = entry
                return AuthorityResult(False, 0, entry.blocked_until)

            entry.attempts.append(now)
            self._buckets[key] = entry
            return AuthorityResult(True, policy.max_attempts - len(entry.attempts))

    async def record_outcome(self, action: str, identifier: str, success: bool) -> None:
        stats = self._outcomes[self._key(action, identifier)]
        if success:
            stats.successes += 1
        else:
            stats.failures += 1

    def get_outcomes(self, action: str, identifier: str) -> OutcomeStats:
        return self._outcomes.get(self._key(action, identifier), OutcomeStats())

    async def reset(self, action: str, identifier: str) -> None:
        key = self._key(action, identifier)
        async with self._locks[key]:
            self._buckets.pop(key, None)


class RedisAuthorityBackend(AuthorityBackend):
    """Redis backend shared by every authority instance.

    Redis key format:
    - authority:attempts:{action}:{identifier} - sorted set of attempt timestamps
    - authority:blocked:{action}:{identifier} - blocked-until deadline (epoch ms)
    - authority:outcomes:{action}:{identifier} - hash of success/failure counts
    """

    KEY_PREFIX = "authority"
    OUTCOME_TTL_SECONDS = 86400 * 7

    name = "redis"

    def __init__(self, redis_client: Optional[Any] = None, redis_url: Optional[str] = None) -> None:
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url

    def _get_redis(self) -> Any:
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _make_key(self, kind: str, action: str, identifier: str) -> str:
        return f"{self.KEY_PREFIX}:{kind}:{action}:{identifier}"

    async def check_and_record(
        self, action: str, identifier: str, policy: RateLimitPolicy, now: int
    ) -> AuthorityResult:
        redis = self._get_redis()
        try:
            result = await redis.eval(
                CHECK_AND_RECORD_SCRIPT,
                2,  # Number of keys
                self._make_key("attempts", action, identifier),  # KEYS[1]
                self._make_key("blocked", action, identifier),  # KEYS[2]
                now,  # ARGV[1]
                policy.window_ms,  # ARGV[2]
                policy.max_attempts,  # ARGV[3]
                policy.block_duration_ms,  # ARGV[4]
                f"{now}-{uuid.uuid4().hex}",  # ARGV[5] unique member
            )
        except Exception as e:
            logger.error(
                f"Lua script execution failed: {e}",
                extra=get_log_context(action=action, identifier=identifier),
            )
            raise BackendUnavailableError() from e

        allowed = bool(int(result[0]))
        blocked_until = int(result[2]) or None
        return AuthorityResult(allowed, int(result[1]), blocked_until)

    async def record_outcome(self, action: str, identifier: str, success: bool) -> None:
        redis = self._get_redis()
        key = self._make_key("outcomes", action, identifier)
        try:
            await redis.hincrby(key, "successes" if success else "failures", 1)
            await redis.expire(key, self.OUTCOME_TTL_SECONDS)
        except Exception as e:
            raise BackendUnavailableError(f"Failed to record outcome: {e}") from e

    async def reset(self, action: str, identifier: str) -> None:
        redis = self._get_redis()
        try:
            await redis.delete(
                self._make_key("attempts", action, identifier),
                self._make_key("blocked", action, identifier),
            )
        except Exception as e:
            raise BackendUnavailableError(f"Failed to reset bucket: {e}") from e

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_backend(use_redis: Optional[bool] = None) -> AuthorityBackend:
    """Select the backend from settings unless ``use_redis`` forces one."""
    should_use_redis = use_redis if use_redis is not None else settings.redis_enabled
    if should_use_redis:
        logger.info("Using Redis authority backend")
        return RedisAuthorityBackend()
    logger.debug("Using in-memory authority backend")
    return InMemoryAuthorityBackend()
