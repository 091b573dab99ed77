"""Custom exceptions for abuseguard."""


class AbuseGuardException(Exception):
    """Base class for abuseguard exceptions with HTTP status code.

    The status code is only meaningful for the remote authority service;
    the client-side limiter never lets these reach its caller.
    """
    status_code: int = 500

    def __init__(self, message: str = "Abuse guard error"):
        self.message = message
        super().__init__(message)


class StoreError(AbuseGuardException):
    """Raised by a key-value store when it cannot read or write a value."""

    def __init__(self, key: str, detail: str = "storage unavailable"):
        self.key = key
        super().__init__(f"Store error for {key!r}: {detail}")


class RemoteAuthorityError(AbuseGuardException):
    """Raised when the remote authority cannot produce a usable verdict.

    Covers transport errors, unexpected status codes and malformed payloads.
    """
    status_code = 502

    def __init__(self, detail: str, status: int | None = None):
        self.status = status
        super().__init__(detail)


class UnknownActionError(AbuseGuardException, ValueError):
    """Raised when an action name does not match any preset.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Unknown rate limit action: {action!r}")


class RateLimitExceededError(AbuseGuardException):
    """Raised by the remote authority when a bucket is over quota.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        blocked_until_ms: int,
        remaining: int = 0,
        detail: str | None = None,
    ):
        self.blocked_until_ms = blocked_until_ms
        self.remaining = remaining
        super().__init__(detail or "Too many attempts. Please try again later.")


class BackendUnavailableError(AbuseGuardException):
    """Raised by the remote authority when its storage backend fails.

    Maps to HTTP 503 so clients apply their own fallback policy.
    """
    status_code = 503

    def __init__(self, detail: str = "Rate limit backend unavailable"):
        super().__init__(detail)
