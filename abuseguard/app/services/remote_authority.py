"""Bridge to the authoritative server-side rate limiter.

The remote authority is consulted before the local sliding window. Its
explicit denials are authoritative; any other failure degrades to a
fail-open verdict (or fail-closed when configured) so a broken secondary
layer never locks users out of the primary feature.

Wire contract:
    request:  {"action": "<lowercase>", "identifier": "..."}
              plus {"record": true, "success": bool} for outcome reports
    allowed:  200 {"allowed": true, "remaining": int, "message"?: str}
    denied:   200 {"allowed": false, "remaining": 0, "blockedUntil"?: ISO, "message"?: str}
              or 429 carrying the same fields in its body
"""

import asyncio
import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncGenerator, Callable, Optional

import httpx

from abuseguard.app.core.config import settings
from abuseguard.app.core.http_client import create_http_client, get_http_client, has_http_client
from abuseguard.app.core.logging import get_log_context, get_logger
from abuseguard.app.exceptions import RemoteAuthorityError
from abuseguard.app.core.utils import datetime_to_ms, now_ms

logger = get_logger(__name__)

DEFAULT_BLOCK_DURATION_MS = 15 * 60 * 1000


def normalize_action(action: Any) -> str:
    """Canonical lowercase action name (accepts enum members)."""
    return str(getattr(action, "value", action)).strip().lower()


def parse_timestamp(value: Any) -> Optional[int]:
    """Parse an ISO-8601 string or epoch-ms number into epoch milliseconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return datetime_to_ms(parsed)
    return None


def _parse_remaining(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value):
        return 0
    return max(0, int(value))


@dataclass
class RemoteVerdict:
    """Verdict of one remote authority round-trip.

    Attributes:
        allowed: Whether the remote permits the action
        remaining: Attempts left as reported by the remote
        message: User-facing message from the remote, if any
        blocked_until: Epoch ms deadline of an explicit denial
        degraded: True when the remote gave no usable answer and the
            verdict is the configured fallback
    """
    allowed: bool
    remaining: int
    message: Optional[str] = None
    blocked_until: Optional[int] = None
    degraded: bool = False

    @property
    def is_denial(self) -> bool:
        """True only for an explicit, authoritative denial."""
        return not self.allowed and not self.degraded


class RemoteAuthorityBridge:
    """Client for the remote authority's check-rate-limit endpoint.

    Each call issues exactly one request; there is no retry and no timeout
    beyond the transport's own.
    """

    DENIED_MESSAGE = "Too many attempts. Please try again later."
    FAIL_OPEN_MESSAGE = "Verification unavailable, allowing action"
    FAIL_CLOSED_MESSAGE = "Verification unavailable, action denied"

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        fail_closed: Optional[bool] = None,
        fallback_remaining: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.url = url or settings.remote_authority_url
        self._api_key = api_key if api_key is not None else settings.remote_authority_api_key
        self._client = client
        self.fail_closed = (
            fail_closed if fail_closed is not None else settings.remote_fail_closed
        )
        self.fallback_remaining = (
            fallback_remaining
            if fallback_remaining is not None
            else settings.remote_fallback_remaining
        )
        self._clock = clock or now_ms
        self._background_tasks: set[asyncio.Task] = set()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
            headers["apikey"] = self._api_key
        return headers

    @asynccontextmanager
    async def _client_context(self) -> AsyncGenerator[httpx.AsyncClient, None]:
        if self._client is not None:
            yield self._client
        elif has_http_client():
            yield get_http_client()
        else:
            async with create_http_client() as client:
                yield client

    async def _post(self, payload: dict) -> httpx.Response:
        async with self._client_context() as client:
            return await client.post(self.url, json=payload, headers=self._headers())

    def _fallback(self) -> RemoteVerdict:
        if self.fail_closed:
            return RemoteVerdict(
                allowed=False,
                remaining=0,
                message=self.FAIL_CLOSED_MESSAGE,
                degraded=True,
            )
        return RemoteVerdict(
            allowed=True,
            remaining=self.fallback_remaining,
            message=self.FAIL_OPEN_MESSAGE,
            degraded=True,
        )

    def _denial(self, data: Any, now: int, block_duration_ms: int) -> RemoteVerdict:
        body = data if isinstance(data, dict) else {}
        blocked_until = parse_timestamp(body.get("blockedUntil"))
        if blocked_until is None or blocked_until <= now:
            blocked_until = now + block_duration_ms
        message = body.get("message")
        return RemoteVerdict(
            allowed=False,
            remaining=_parse_remaining(body.get("remaining")),
            message=message if isinstance(message, str) and message else self.DENIED_MESSAGE,
            blocked_until=blocked_until,
        )

    async def _request_verdict(
        self, action: str, identifier: str, now: int, block_duration_ms: int
    ) -> RemoteVerdict:
        try:
            response = await self._post({"action": action, "identifier": identifier})
        except httpx.HTTPError as e:
            raise RemoteAuthorityError(f"transport error: {type(e).__name__}: {e}") from e

        try:
            return self._interpret(response, now, block_duration_ms)
        except (ValueError, TypeError, OverflowError) as e:
            raise RemoteAuthorityError(
                f"malformed response: {type(e).__name__}: {e}", response.status_code
            ) from e

    def _interpret(
        self, response: httpx.Response, now: int, block_duration_ms: int
    ) -> RemoteVerdict:
        if response.status_code == 429:
            try:
                data = response.json()
            except ValueError:
                data = {}
            return self._denial(data, now, block_duration_ms)

        if not response.is_success:
            raise RemoteAuthorityError(
                f"unexpected status {response.status_code}", status=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteAuthorityError("response body is not JSON", response.status_code) from e
        if not isinstance(data, dict) or not isinstance(data.get("allowed"), bool):
            raise RemoteAuthorityError("response has no boolean 'allowed'", response.status_code)

        if not data["allowed"]:
            return self._denial(data, now, block_duration_ms)

        message = data.get("message")
        return RemoteVerdict(
            allowed=True,
            remaining=_parse_remaining(data.get("remaining")),
            message=message if isinstance(message, str) else None,
        )

    async def check_remote(
        self,
        action: Any,
        identifier: str,
        block_duration_ms: int = DEFAULT_BLOCK_DURATION_MS,
    ) -> RemoteVerdict:
        """Ask the remote authority whether ``identifier`` may perform ``action``.

        Args:
            action: Action name or preset enum member, normalized to lowercase
            identifier: Derived caller identifier
            block_duration_ms: Local block length, used as the deadline when a
                denial carries no ``blockedUntil``

        Returns:
            RemoteVerdict; never raises for transport or payload faults.
        """
        canonical = normalize_action(action)
        now = self._clock()
        started = time.perf_counter()
        try:
            verdict = await self._request_verdict(canonical, identifier, now, block_duration_ms)
        except RemoteAuthorityError as e:
            logger.warning(
                f"Remote authority unavailable, using {'fail-closed' if self.fail_closed else 'fail-open'} fallback: {e}",
                extra=get_log_context(
                    action=canonical,
                    identifier=identifier,
                    remote_status=e.status,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                ),
            )
            return self._fallback()

        log_extra = get_log_context(
            action=canonical,
            identifier=identifier,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        if verdict.allowed:
            logger.debug(f"Remote authority allowed {canonical}, remaining={verdict.remaining}", extra=log_extra)
        else:
            logger.info(f"Remote authority denied {canonical} until {verdict.blocked_until}", extra=log_extra)
        return verdict

    async def record_outcome(
        self, identifier: str, succeeded: bool, action: Any = "login"
    ) -> None:
        """Report the final outcome of an attempt. Best-effort, never raises."""
        canonical = normalize_action(action)
        try:
            response = await self._post({
                "action": canonical,
                "identifier": identifier,
                "record": True,
                "success": succeeded,
            })
            response.raise_for_status()
            logger.debug(
                f"Recorded {canonical} outcome success={succeeded}",
                extra=get_log_context(action=canonical, identifier=identifier),
            )
        except Exception as e:
            logger.warning(
                f"Failed to record {canonical} outcome: {type(e).__name__}: {e}",
                extra=get_log_context(action=canonical, identifier=identifier),
            )

    def record_outcome_background(
        self, identifier: str, succeeded: bool, action: Any = "login"
    ) -> asyncio.Task:
        """Schedule ``record_outcome`` without waiting for it.

        Must be called from a running event loop.
        """
        task = asyncio.get_running_loop().create_task(
            self.record_outcome(identifier, succeeded, action)
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task
