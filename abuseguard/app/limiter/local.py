"""Client-side sliding window rate limiter.

Each bucket keeps the timestamps of recent attempts and an optional
``blocked_until`` deadline in a key-value store. When the bound policy
asks for it, the remote authority is consulted first and its verdict is
merged into the bucket before (or instead of) the local algorithm.

The local store is a soft guard: read and write faults are logged and the
bucket is treated as empty (fail open). Every path returns a decision.
"""

import json
from typing import Callable, Optional

from abuseguard.app.core.config import settings
from abuseguard.app.core.logging import get_log_context, get_logger
from abuseguard.app.core.utils import now_ms
from abuseguard.app.limiter.formatting import format_duration, format_time_remaining
from abuseguard.app.limiter.models import RateLimitDecision, RateLimitEntry, RateLimitPolicy
from abuseguard.app.limiter.store import KeyValueStore, get_store
from abuseguard.app.services.identifier import get_user_identifier
from abuseguard.app.services.remote_authority import (
    RemoteAuthorityBridge,
    RemoteVerdict,
    normalize_action,
)

logger = get_logger(__name__)


class SlidingWindowRateLimiter:
    """Gate-and-record limiter for one bucket.

    Args:
        action: Guarded action; used for the remote call and log context
        policy: Thresholds, window and block duration
        identifier: Caller identifier (see ``get_user_identifier``).
            Defaults to this process's device fingerprint.
        store: Bucket store, defaults to the global store
        bridge: Remote authority bridge, created lazily when the policy
            needs one
        clock: Returns the current time in epoch milliseconds
        key_prefix: Storage key prefix, defaults to settings
    """

    def __init__(
        self,
        action: str,
        policy: RateLimitPolicy,
        identifier: Optional[str] = None,
        store: Optional[KeyValueStore] = None,
        bridge: Optional[RemoteAuthorityBridge] = None,
        clock: Optional[Callable[[], int]] = None,
        key_prefix: Optional[str] = None,
    ) -> None:
        self.action = normalize_action(action)
        self.policy = policy
        self.identifier = identifier or get_user_identifier()
        self._store = store if store is not None else get_store()
        self._bridge = bridge
        self._clock = clock or now_ms
        prefix = key_prefix if key_prefix is not None else settings.rate_limit_key_prefix
        self.storage_key = f"{prefix}{self.action}:{self.identifier}"

    @property
    def uses_remote_authority(self) -> bool:
        return self.policy.use_remote_authority and settings.remote_authority_enabled

    def _get_bridge(self) -> RemoteAuthorityBridge:
        if self._bridge is None:
            self._bridge = RemoteAuthorityBridge(clock=self._clock)
        return self._bridge

    def _log_context(self) -> dict:
        return get_log_context(
            action=self.action, identifier=self.identifier, bucket=self.storage_key
        )

    def _load(self) -> RateLimitEntry:
        try:
            stored = self._store.get(self.storage_key)
        except Exception as e:
            logger.error(f"Failed to read rate limit bucket: {type(e).__name__}: {e}", extra=self._log_context())
            return RateLimitEntry()
        if not stored:
            return RateLimitEntry()
        try:
            return RateLimitEntry.from_dict(json.loads(stored))
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too
            logger.error(f"Discarding corrupted rate limit bucket: {e}", extra=self._log_context())
            return RateLimitEntry()

    def _save(self, entry: RateLimitEntry) -> None:
        try:
            self._store.set(self.storage_key, json.dumps(entry.to_dict()))
        except Exception as e:
            logger.error(f"Failed to persist rate limit bucket: {type(e).__name__}: {e}", extra=self._log_context())

    def _blocked(self, blocked_until: int, now: int, message: Optional[str] = None) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            reset_at=blocked_until,
            blocked_until=blocked_until,
            message=message or (
                f"Too many attempts. Try again in {format_time_remaining(blocked_until, now)}."
            ),
        )

    def _refresh(self, entry: RateLimitEntry, now: int) -> RateLimitEntry:
        """Drop an expired block and prune the window.

        Once ``blocked_until`` has passed the bucket starts over from an
        empty window.
        """
        if entry.blocked_until is not None and not entry.is_blocked(now):
            entry = RateLimitEntry()
        entry.prune(now, self.policy.window_ms)
        return entry

    def _merge_remote_denial(self, verdict: RemoteVerdict, now: int) -> RateLimitDecision:
        entry = self._load()
        entry.block(verdict.blocked_until)
        self._save(entry)
        logger.info("Bucket blocked by remote authority", extra=self._log_context())
        return RateLimitDecision(
            allowed=False,
            remaining=verdict.remaining,
            reset_at=entry.blocked_until,
            blocked_until=entry.blocked_until,
            message=verdict.message,
        )

    def _merge_remote_allow(self, verdict: RemoteVerdict, now: int) -> RateLimitDecision:
        entry = self._load()
        entry = self._refresh(entry, now)
        entry.attempts.append(now)
        self._save(entry)
        return RateLimitDecision(
            allowed=True,
            remaining=verdict.remaining,
            reset_at=now + self.policy.window_ms,
            message=verdict.message,
        )

    def _check_local(self, now: int) -> RateLimitDecision:
        entry = self._load()
        if entry.is_blocked(now):
            return self._blocked(entry.blocked_until, now)

        entry = self._refresh(entry, now)

        if len(entry.attempts) >= self.policy.max_attempts:
            entry.block(now + self.policy.block_duration_ms)
            self._save(entry)
            logger.info("Bucket blocked after reaching the attempt limit", extra=self._log_context())
            return self._blocked(
                entry.blocked_until,
                now,
                message=f"Limit exceeded. Blocked for {format_duration(self.policy.block_duration_ms)}.",
            )

        entry.attempts.append(now)
        self._save(entry)

        remaining = self.policy.max_attempts - len(entry.attempts)
        return RateLimitDecision(
            allowed=True,
            remaining=remaining,
            reset_at=entry.attempts[0] + self.policy.window_ms,
            message=f"{remaining} attempts remaining.",
        )

    async def check(self) -> RateLimitDecision:
        """Decide whether the next attempt is allowed and record it if so."""
        now = self._clock()

        if self.uses_remote_authority:
            verdict = await self._get_bridge().check_remote(
                self.action, self.identifier, self.policy.block_duration_ms
            )
            if verdict.is_denial:
                return self._merge_remote_denial(verdict, now)
            if not verdict.degraded:
                return self._merge_remote_allow(verdict, now)
            if not verdict.allowed:
                # fail-closed deployment; nothing is persisted
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=now + self.policy.window_ms,
                    message=verdict.message,
                )
            logger.debug("Falling back to local-only evaluation", extra=self._log_context())

        return self._check_local(now)

    def get_status(self) -> RateLimitDecision:
        """Evaluate the bucket without recording an attempt or blocking it."""
        now = self._clock()
        entry = self._load()
        if entry.is_blocked(now):
            return self._blocked(entry.blocked_until, now)

        entry = self._refresh(entry, now)
        remaining = max(0, self.policy.max_attempts - len(entry.attempts))
        oldest = entry.attempts[0] if entry.attempts else now
        decision = RateLimitDecision(
            allowed=remaining > 0,
            remaining=remaining,
            reset_at=oldest + self.policy.window_ms,
        )
        if decision.is_low(settings.rate_limit_warning_threshold):
            decision.message = f"Warning: {remaining} attempts remaining."
        return decision

    def reset(self) -> None:
        """Forget the bucket entirely, e.g. after a successful login."""
        try:
            self._store.remove(self.storage_key)
        except Exception as e:
            logger.error(f"Failed to reset rate limit bucket: {type(e).__name__}: {e}", extra=self._log_context())
        else:
            logger.debug("Bucket reset", extra=self._log_context())
