"""Rate limiting data models.

This module contains dataclasses for policies, persisted bucket state
and the decisions returned to callers. All timestamps are epoch
milliseconds.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional

from abuseguard.app.core.utils import ms_to_datetime


def _is_timestamp(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


@dataclass(frozen=True)
class RateLimitPolicy:
    """Immutable limiter configuration bound to an action.

    Attributes:
        max_attempts: Attempts allowed inside one window
        window_ms: Sliding window length
        block_duration_ms: Block length once the threshold is hit
            (defaults to twice the window)
        use_remote_authority: Consult the remote authority before the
            local algorithm
    """
    max_attempts: int
    window_ms: int
    block_duration_ms: Optional[int] = None
    use_remote_authority: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.block_duration_ms is None:
            object.__setattr__(self, "block_duration_ms", self.window_ms * 2)
        elif self.block_duration_ms <= 0:
            raise ValueError("block_duration_ms must be positive")


@dataclass
class RateLimitEntry:
    """Persisted state of one bucket (sliding window)."""
    attempts: list[int] = field(default_factory=list)
    blocked_until: Optional[int] = None

    def is_blocked(self, now: int) -> bool:
        return self.blocked_until is not None and self.blocked_until > now

    def prune(self, now: int, window_ms: int) -> None:
        """Drop attempts older than the window ``[now - window_ms, now]``."""
        window_start = now - window_ms
        self.attempts = [ts for ts in self.attempts if ts >= window_start]

    def block(self, until: int) -> None:
        """Block until ``until`` without ever shortening an existing block."""
        if self.blocked_until is None or until > self.blocked_until:
            self.blocked_until = until

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"attempts": list(self.attempts)}
        if self.blocked_until is not None:
            data["blockedUntil"] = self.blocked_until
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "RateLimitEntry":
        """Create from the persisted JSON shape.

        Raises:
            ValueError: If the payload does not have the bucket shape.
        """
        if not isinstance(data, dict):
            raise ValueError("bucket payload must be an object")
        attempts = data.get("attempts", [])
        if not isinstance(attempts, list) or not all(_is_timestamp(ts) for ts in attempts):
            raise ValueError("attempts must be a list of timestamps")
        blocked_until = data.get("blockedUntil")
        if blocked_until is not None and not _is_timestamp(blocked_until):
            raise ValueError("blockedUntil must be a timestamp")
        return cls(
            attempts=sorted(int(ts) for ts in attempts),
            blocked_until=int(blocked_until) if blocked_until is not None else None,
        )


@dataclass
class RateLimitDecision:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: int
    blocked_until: Optional[int] = None
    message: Optional[str] = None

    @property
    def is_blocked(self) -> bool:
        return not self.allowed

    def is_low(self, threshold: int) -> bool:
        """True when the action is still allowed but close to the limit."""
        return self.allowed and 0 < self.remaining <= threshold

    def to_dict(self) -> dict:
        """Convert to the camelCase wire shape with ISO-8601 timestamps."""
        data: dict[str, Any] = {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "resetAt": ms_to_datetime(self.reset_at).isoformat(),
        }
        if self.blocked_until is not None:
            data["blockedUntil"] = ms_to_datetime(self.blocked_until).isoformat()
        if self.message is not None:
            data["message"] = self.message
        return data
