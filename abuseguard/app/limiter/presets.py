"""Policy presets bound to the guarded actions."""

from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from abuseguard.app.core.config import settings
from abuseguard.app.core.logging import get_logger
from abuseguard.app.exceptions import StoreError, UnknownActionError
from abuseguard.app.limiter.local import SlidingWindowRateLimiter
from abuseguard.app.limiter.models import RateLimitPolicy
from abuseguard.app.limiter.store import KeyValueStore, get_store
from abuseguard.app.services.identifier import ClientEnvironment, get_user_identifier
from abuseguard.app.services.remote_authority import RemoteAuthorityBridge

logger = get_logger(__name__)

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS


class RateLimitAction(str, Enum):
    """Actions guarded by the limiter."""
    LOGIN = "login"
    REGISTER = "register"
    SIGN_CONTENT = "sign_content"
    VERIFY_CERTIFICATE = "verify_certificate"
    RESET_PASSWORD = "reset_password"
    GENERIC = "generic"


RATE_LIMIT_PRESETS: Mapping[RateLimitAction, RateLimitPolicy] = MappingProxyType({
    RateLimitAction.LOGIN: RateLimitPolicy(
        max_attempts=5,
        window_ms=MINUTE_MS,
        block_duration_ms=15 * MINUTE_MS,
        use_remote_authority=True,
    ),
    RateLimitAction.REGISTER: RateLimitPolicy(
        max_attempts=3,
        window_ms=HOUR_MS,
        block_duration_ms=24 * HOUR_MS,
        use_remote_authority=True,
    ),
    RateLimitAction.SIGN_CONTENT: RateLimitPolicy(
        max_attempts=10,
        window_ms=HOUR_MS,
        block_duration_ms=2 * HOUR_MS,
        use_remote_authority=True,
    ),
    # Verification is read-only, local enforcement is enough
    RateLimitAction.VERIFY_CERTIFICATE: RateLimitPolicy(
        max_attempts=20,
        window_ms=MINUTE_MS,
        block_duration_ms=10 * MINUTE_MS,
        use_remote_authority=False,
    ),
    RateLimitAction.RESET_PASSWORD: RateLimitPolicy(
        max_attempts=3,
        window_ms=HOUR_MS,
        block_duration_ms=6 * HOUR_MS,
        use_remote_authority=True,
    ),
    RateLimitAction.GENERIC: RateLimitPolicy(
        max_attempts=10,
        window_ms=MINUTE_MS,
        block_duration_ms=5 * MINUTE_MS,
        use_remote_authority=False,
    ),
})


def resolve_action(action: RateLimitAction | str) -> RateLimitAction:
    """Map a name (``"login"``, ``"LOGIN"``) or enum member to the enum.

    Raises:
        UnknownActionError: If no preset exists for ``action``.
    """
    if isinstance(action, RateLimitAction):
        return action
    try:
        return RateLimitAction(str(action).strip().lower())
    except ValueError:
        raise UnknownActionError(str(action)) from None


def get_policy(action: RateLimitAction | str) -> RateLimitPolicy:
    """Return the preset policy for ``action``."""
    return RATE_LIMIT_PRESETS[resolve_action(action)]


def create_rate_limiter(
    action: RateLimitAction | str,
    email: Optional[str] = None,
    environment: Optional[ClientEnvironment] = None,
    identifier: Optional[str] = None,
    store: Optional[KeyValueStore] = None,
    bridge: Optional[RemoteAuthorityBridge] = None,
    clock: Optional[Callable[[], int]] = None,
) -> SlidingWindowRateLimiter:
    """Build a limiter for ``action`` using its preset.

    The bucket identifier is ``identifier`` when given, otherwise it is
    derived from ``email`` and ``environment``.

    Example:
        >>> limiter = create_rate_limiter("login", email="user@example.com")
        >>> decision = await limiter.check()
    """
    resolved = resolve_action(action)
    return SlidingWindowRateLimiter(
        action=resolved.value,
        policy=RATE_LIMIT_PRESETS[resolved],
        identifier=identifier or get_user_identifier(email, environment),
        store=store,
        bridge=bridge,
        clock=clock,
    )


def clear_all_rate_limiters(store: Optional[KeyValueStore] = None) -> int:
    """Remove every persisted bucket (logout, test cleanup).

    Returns:
        Number of buckets removed.
    """
    store = store if store is not None else get_store()
    prefix = settings.rate_limit_key_prefix
    removed = 0
    try:
        for key in store.keys(prefix):
            store.remove(key)
            removed += 1
    except StoreError as e:
        logger.error(f"Failed to clear rate limit buckets after {removed} removals: {e}")
    return removed
