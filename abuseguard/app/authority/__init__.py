"""Reference remote authority (server-side rate limiter)."""
