from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Remote authority (server-side rate limiter) settings
    remote_authority_enabled: bool = True  # Global switch, presets opt in individually
    remote_authority_url: str = "http://localhost:8000/check-rate-limit"
    remote_authority_api_key: str = ""
    remote_fail_closed: bool = (
        False  # If True, deny actions when the remote authority is unreachable
    )
    remote_fallback_remaining: int = 5  # Reported remaining on a fail-open verdict

    # Local rate limit storage
    rate_limit_storage_backend: Literal["memory", "file", "redis"] = "memory"
    rate_limit_storage_path: str = ".abuseguard/rate_limits.json"
    rate_limit_key_prefix: str = "rate_limit_"
    rate_limit_warning_threshold: int = 2  # remaining <= threshold shows an advisory

    # HTTP Client connection pool settings
    httpx_timeout: float = 10.0  # Default timeout for all operations
    httpx_connect_timeout: float = 5.0  # Time to establish connection
    httpx_read_timeout: float = 10.0  # Time to read response data
    httpx_write_timeout: float = 5.0  # Time to send request data
    httpx_pool_timeout: float = 5.0  # Time to acquire connection from pool
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 20
    httpx_max_keepalive_connections: int = 5

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    @field_validator("remote_fallback_remaining", "rate_limit_warning_threshold")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate counters are not negative."""
        if v < 0:
            raise ValueError("value must be zero or greater")
        return v

    @field_validator(
        "httpx_timeout",
        "httpx_connect_timeout",
        "httpx_read_timeout",
        "httpx_write_timeout",
        "httpx_pool_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("rate_limit_key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("rate_limit_key_prefix must not be empty")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
