"""Reference remote authority service.

Exposes ``POST /check-rate-limit`` implementing the wire contract the
client bridge speaks, backed by an in-memory or Redis store.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from abuseguard.app.authority.backends import AuthorityBackend, create_backend
from abuseguard.app.authority.request_id import RequestIdMiddleware
from abuseguard.app.core.config import settings
from abuseguard.app.core.logging import get_log_context, get_logger, setup_logging
from abuseguard.app.core.utils import ms_to_datetime, now_ms
from abuseguard.app.exceptions import (
    AbuseGuardException,
    RateLimitExceededError,
    UnknownActionError,
)
from abuseguard.app.limiter.formatting import format_time_remaining
from abuseguard.app.limiter.presets import RateLimitAction, get_policy, resolve_action


class CheckRateLimitRequest(BaseModel):
    """Body of ``POST /check-rate-limit``."""
    action: str = Field(..., min_length=1, max_length=64)
    identifier: str = Field(..., min_length=1, max_length=256)
    record: bool = False
    success: Optional[bool] = None


def create_app(
    backend: Optional[AuthorityBackend] = None,
    clock: Optional[Callable[[], int]] = None,
) -> FastAPI:
    """Create and configure the remote authority application.

    Args:
        backend: Storage backend, selected from settings when omitted
        clock: Returns epoch milliseconds, for tests

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)
    authority_backend = backend or create_backend()
    clock = clock or now_ms

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(f"Remote authority started with {authority_backend.name} backend")
        yield
        await authority_backend.close()
        logger.info("Remote authority shutdown complete")

    app = FastAPI(
        title="AbuseGuard Remote Authority",
        description="Authoritative rate limiter for login, registration, password reset and signing",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.backend = authority_backend
    app.add_middleware(RequestIdMiddleware)

    @app.post("/check-rate-limit")
    async def check_rate_limit(body: CheckRateLimitRequest, request: Request) -> dict[str, Any]:
        """Check-and-record an attempt, or record an attempt's outcome."""
        action = resolve_action(body.action)
        policy = get_policy(action)
        log_extra = get_log_context(
            request_id=getattr(request.state, "request_id", None),
            action=action.value,
            identifier=body.identifier,
        )

        if body.record:
            success = bool(body.success)
            await authority_backend.record_outcome(action.value, body.identifier, success)
            if success and action is RateLimitAction.LOGIN:
                await authority_backend.reset(action.value, body.identifier)
            logger.info(f"Recorded {action.value} outcome success={success}", extra=log_extra)
            return {"recorded": True}

        now = clock()
        result = await authority_backend.check_and_record(action.value, body.identifier, policy, now)
        if not result.allowed:
            logger.info(f"Denied {action.value} until {result.blocked_until}", extra=log_extra)
            raise RateLimitExceededError(
                blocked_until_ms=result.blocked_until,
                detail=(
                    "Too many attempts. Try again in "
                    f"{format_time_remaining(result.blocked_until, now)}."
                ),
            )

        return {
            "allowed": True,
            "remaining": result.remaining,
            "message": f"{result.remaining} attempts remaining.",
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "backend": authority_backend.name}

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Return the structured denial with HTTP 429."""
        retry_after = max(1, (exc.blocked_until_ms - clock() + 999) // 1000)
        return JSONResponse(
            status_code=429,
            content={
                "allowed": False,
                "remaining": exc.remaining,
                "blockedUntil": ms_to_datetime(exc.blocked_until_ms).isoformat(),
                "message": exc.message,
            },
            headers={"Retry-After": str(retry_after)},
        )

    @app.exception_handler(UnknownActionError)
    async def unknown_action_handler(request: Request, exc: UnknownActionError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "unknown_action", "message": exc.message},
        )

    @app.exception_handler(AbuseGuardException)
    async def abuse_guard_exception_handler(request: Request, exc: AbuseGuardException) -> JSONResponse:
        """Map remaining domain exceptions to their status codes."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(
            f"Request failed: {exc.message}",
            extra=get_log_context(request_id=request_id),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "backend_unavailable" if exc.status_code == 503 else "internal_error",
                "message": exc.message if settings.debug or exc.status_code < 500 else "Rate limit service unavailable",
                "request_id": request_id,
            },
        )

    return app


# Create the application instance
app = create_app()
