"""Pseudo-identity derivation for rate limit buckets.

The identifier biases a bucket toward "this device" (and "this account"
when an email is known) without cookies or authentication. The hash is
deliberately weak: collisions are acceptable, the value only has to be
stable for the same inputs.
"""

import locale
import platform
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def hash_string(value: str) -> str:
    """Non-cryptographic 32-bit rolling hash rendered in base 36.

    ``h = h * 31 + unit`` over the UTF-16 code units, wrapped to a signed
    32-bit integer; the absolute value is rendered. Matches what browser
    clients compute for the same input.
    """
    h = 0
    data = value.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def _header_int(headers: Mapping[str, str], name: str) -> int:
    try:
        return int(headers.get(name, 0))
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class ClientEnvironment:
    """Attributes available before authentication."""
    user_agent: str = ""
    language: str = ""
    color_depth: int = 0
    screen_width: int = 0
    screen_height: int = 0
    timezone_offset: int = 0  # minutes, UTC minus local time

    def components(self) -> list[str]:
        return [
            self.user_agent,
            self.language,
            str(self.color_depth),
            str(self.screen_width),
            str(self.screen_height),
            str(self.timezone_offset),
        ]

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "ClientEnvironment":
        """Build the environment from HTTP request headers.

        Screen and timezone hints are read from ``X-Client-*`` headers
        sent by the front end; missing or garbled values count as 0.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        accept_language = lowered.get("accept-language", "")
        language = accept_language.split(",")[0].split(";")[0].strip()
        return cls(
            user_agent=lowered.get("user-agent", ""),
            language=language,
            color_depth=_header_int(lowered, "x-client-color-depth"),
            screen_width=_header_int(lowered, "x-client-screen-width"),
            screen_height=_header_int(lowered, "x-client-screen-height"),
            timezone_offset=_header_int(lowered, "x-client-timezone-offset"),
        )

    @classmethod
    def current(cls) -> "ClientEnvironment":
        """Environment of the running process (CLI and service callers)."""
        lang = locale.getlocale()[0] or ""
        offset = datetime.now().astimezone().utcoffset()
        offset_minutes = int(offset.total_seconds() // 60) if offset is not None else 0
        return cls(
            user_agent=(
                f"python/{platform.python_version()} "
                f"({platform.system()} {platform.release()}; {platform.machine()})"
            ),
            language=lang.replace("_", "-"),
            timezone_offset=-offset_minutes,
        )


def fingerprint(environment: Optional[ClientEnvironment] = None) -> str:
    """Hash the environment attributes into a short device fingerprint."""
    env = environment or ClientEnvironment.current()
    return hash_string("|".join(env.components()))


def get_user_identifier(
    email: Optional[str] = None,
    environment: Optional[ClientEnvironment] = None,
) -> str:
    """Return the bucket identifier for the caller.

    With an email: ``hash(lowercased email) + "_" + fingerprint``, so the
    same device is limited per account. Without one: the fingerprint.
    """
    device = fingerprint(environment)
    if email and email.strip():
        return f"{hash_string(email.strip().lower())}_{device}"
    return device
