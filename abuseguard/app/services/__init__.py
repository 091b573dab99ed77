"""Services package for abuseguard.

This package provides:
- Caller identifier derivation (device fingerprint, hashed email)
- The bridge to the remote rate limit authority
"""

from abuseguard.app.services.identifier import (
    ClientEnvironment,
    fingerprint,
    get_user_identifier,
    hash_string,
)
from abuseguard.app.services.remote_authority import (
    RemoteAuthorityBridge,
    RemoteVerdict,
    normalize_action,
)

__all__ = [
    "ClientEnvironment",
    "fingerprint",
    "get_user_identifier",
    "hash_string",
    "RemoteAuthorityBridge",
    "RemoteVerdict",
    "normalize_action",
]
