"""Human-readable countdowns for blocked decisions."""

import math
from typing import Optional

from abuseguard.app.core.utils import now_ms


def format_duration(duration_ms: int, now_label: str = "now") -> str:
    """Render a duration as ``"2h 15m"``, ``"4m 10s"`` or ``"45s"``.

    Partial seconds round up so a countdown never shows ``0s`` while the
    block is still active.
    """
    if duration_ms <= 0:
        return now_label

    seconds = math.ceil(duration_ms / 1000)
    minutes = seconds // 60
    hours = minutes // 60

    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_time_remaining(
    target_ms: int,
    now: Optional[int] = None,
    now_label: str = "now",
) -> str:
    """Render the time left until ``target_ms`` (epoch milliseconds).

    Args:
        target_ms: Deadline, typically ``reset_at`` or ``blocked_until``
        now: Reference time, defaults to the wall clock
        now_label: Text returned once the deadline has passed
            (``"agora"`` for Portuguese UIs)
    """
    if now is None:
        now = now_ms()
    return format_duration(target_ms - now, now_label=now_label)
