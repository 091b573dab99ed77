"""Checking several presets for the same caller at once."""

import asyncio
from typing import Callable, Iterable, Optional

from abuseguard.app.limiter.local import SlidingWindowRateLimiter
from abuseguard.app.limiter.models import RateLimitDecision
from abuseguard.app.limiter.presets import RateLimitAction, create_rate_limiter
from abuseguard.app.limiter.store import KeyValueStore
from abuseguard.app.services.identifier import ClientEnvironment
from abuseguard.app.services.remote_authority import RemoteAuthorityBridge


class MultiRateLimiter:
    """Group of limiters that must all allow an action.

    Useful when one user action counts against more than one limit, for
    example signing content is both SIGN_CONTENT and GENERIC.
    """

    def __init__(
        self,
        actions: Iterable[RateLimitAction | str],
        email: Optional[str] = None,
        environment: Optional[ClientEnvironment] = None,
        identifier: Optional[str] = None,
        store: Optional[KeyValueStore] = None,
        bridge: Optional[RemoteAuthorityBridge] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.limiters: list[SlidingWindowRateLimiter] = [
            create_rate_limiter(
                action,
                email=email,
                environment=environment,
                identifier=identifier,
                store=store,
                bridge=bridge,
                clock=clock,
            )
            for action in actions
        ]
        if not self.limiters:
            raise ValueError("MultiRateLimiter needs at least one action")

    async def check_all(self) -> RateLimitDecision:
        """Check every limiter; return the first denial, else the first decision."""
        results = await asyncio.gather(*(limiter.check() for limiter in self.limiters))
        for result in results:
            if not result.allowed:
                return result
        return results[0]

    def get_statuses(self) -> list[RateLimitDecision]:
        return [limiter.get_status() for limiter in self.limiters]

    def is_any_blocked(self) -> bool:
        return any(not status.allowed for status in self.get_statuses())

    def reset_all(self) -> None:
        for limiter in self.limiters:
            limiter.reset()
