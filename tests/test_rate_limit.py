"""Tests for the local sliding window limiter."""

import json
from unittest.mock import AsyncMock, Mock

import pytest

from abuseguard.app.exceptions import StoreError
from abuseguard.app.limiter import (
    InMemoryStore,
    RateLimitDecision,
    RateLimitEntry,
    RateLimitPolicy,
    SlidingWindowRateLimiter,
)

LOGIN_LIKE = RateLimitPolicy(
    max_attempts=5,
    window_ms=60_000,
    block_duration_ms=900_000,
    use_remote_authority=False,
)


@pytest.fixture
def limiter(store, clock):
    return SlidingWindowRateLimiter(
        "login", LOGIN_LIKE, identifier="device-1", store=store, clock=clock
    )


class TestRateLimitPolicy:
    """Tests for policy validation."""

    def test_block_duration_defaults_to_twice_window(self):
        policy = RateLimitPolicy(max_attempts=3, window_ms=1000)
        assert policy.block_duration_ms == 2000
        assert policy.use_remote_authority is False

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0, "window_ms": 1000},
            {"max_attempts": 1, "window_ms": 0},
            {"max_attempts": 1, "window_ms": 1000, "block_duration_ms": -5},
        ],
    )
    def test_invalid_policy_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RateLimitPolicy(**kwargs)


class TestSlidingWindow:
    """Tests for check() on a local-only policy."""

    @pytest.mark.asyncio
    async def test_allows_up_to_max_then_blocks(self, limiter, clock):
        """Five checks one second apart pass, the sixth is blocked."""
        remaining = []
        for i in range(5):
            if i:
                clock.advance(1000)
            result = await limiter.check()
            assert result.allowed is True
            remaining.append(result.remaining)
        assert remaining == [4, 3, 2, 1, 0]

        result = await limiter.check()
        assert result.allowed is False
        assert result.remaining == 0
        assert result.blocked_until == clock.now + 900_000
        assert result.reset_at == result.blocked_until
        assert "15m" in result.message

    @pytest.mark.asyncio
    async def test_reset_at_tracks_oldest_attempt(self, limiter, clock):
        first = clock.now
        await limiter.check()
        clock.advance(5000)
        result = await limiter.check()
        assert result.reset_at == first + 60_000

    @pytest.mark.asyncio
    async def test_stays_blocked_until_deadline(self, limiter, clock):
        for _ in range(6):
            result = await limiter.check()
        blocked_until = result.blocked_until

        clock.advance(900_000 - 1)
        result = await limiter.check()
        assert result.allowed is False
        assert result.blocked_until == blocked_until
        assert result.message == "Too many attempts. Try again in 1s."

    @pytest.mark.asyncio
    async def test_block_expires_exactly_at_deadline(self, limiter, clock):
        """At blocked_until the bucket starts over from an empty window."""
        for _ in range(6):
            await limiter.check()

        clock.advance(900_000)
        result = await limiter.check()
        assert result.allowed is True
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_expired_block_clears_attempts_even_with_short_block(self, store, clock):
        policy = RateLimitPolicy(max_attempts=2, window_ms=60_000, block_duration_ms=10_000)
        limiter = SlidingWindowRateLimiter("generic", policy, identifier="x", store=store, clock=clock)
        for _ in range(3):
            await limiter.check()

        clock.advance(10_000)
        result = await limiter.check()
        assert result.allowed is True
        assert result.remaining == 1

    @pytest.mark.asyncio
    async def test_window_boundary_is_inclusive(self, limiter, clock):
        await limiter.check()
        clock.advance(30_000)
        for _ in range(4):
            await limiter.check()

        # The first attempt sits exactly on the window edge and still counts
        clock.advance(30_000)
        result = await limiter.check()
        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_old_attempts_slide_out(self, limiter, clock):
        await limiter.check()
        clock.advance(30_000)
        for _ in range(4):
            await limiter.check()

        clock.advance(30_001)
        result = await limiter.check()
        assert result.allowed is True
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_buckets_are_independent(self, store, clock):
        first = SlidingWindowRateLimiter("login", LOGIN_LIKE, identifier="a", store=store, clock=clock)
        second = SlidingWindowRateLimiter("login", LOGIN_LIKE, identifier="b", store=store, clock=clock)
        for _ in range(6):
            await first.check()

        assert (await first.check()).allowed is False
        assert (await second.check()).allowed is True

    @pytest.mark.asyncio
    async def test_persisted_layout(self, limiter, store, clock):
        await limiter.check()
        assert limiter.storage_key == "rate_limit_login:device-1"
        data = json.loads(store.get(limiter.storage_key))
        assert data == {"attempts": [clock.now]}

        for _ in range(5):
            await limiter.check()
        data = json.loads(store.get(limiter.storage_key))
        assert data["blockedUntil"] == clock.now + 900_000


class TestGetStatus:
    """Tests for the non-consuming status view."""

    @pytest.mark.asyncio
    async def test_status_does_not_consume(self, limiter):
        for _ in range(10):
            status = limiter.get_status()
        assert status.allowed is True
        assert status.remaining == 5

        results = [await limiter.check() for _ in range(6)]
        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]

    @pytest.mark.asyncio
    async def test_status_never_promotes_to_blocked(self, limiter, store):
        for _ in range(5):
            await limiter.check()

        status = limiter.get_status()
        assert status.allowed is False
        assert status.remaining == 0
        assert status.blocked_until is None
        assert "blockedUntil" not in json.loads(store.get(limiter.storage_key))

    @pytest.mark.asyncio
    async def test_status_while_blocked(self, limiter, clock):
        for _ in range(6):
            await limiter.check()
        status = limiter.get_status()
        assert status.allowed is False
        assert status.blocked_until == clock.now + 900_000

    @pytest.mark.asyncio
    async def test_low_remaining_adds_advisory(self, limiter):
        for _ in range(3):
            await limiter.check()
        status = limiter.get_status()
        assert status.remaining == 2
        assert status.message == "Warning: 2 attempts remaining."

    def test_fresh_bucket_has_no_message(self, limiter, clock):
        status = limiter.get_status()
        assert status.message is None
        assert status.reset_at == clock.now + 60_000


class TestReset:
    """Tests for reset()."""

    @pytest.mark.asyncio
    async def test_reset_forgives_block(self, limiter, store):
        for _ in range(6):
            await limiter.check()

        limiter.reset()
        assert store.get(limiter.storage_key) is None
        result = await limiter.check()
        assert result.allowed is True
        assert result.remaining == 4

    def test_reset_swallows_store_errors(self, clock):
        store = Mock(spec=InMemoryStore)
        store.remove.side_effect = StoreError("k", "boom")
        limiter = SlidingWindowRateLimiter("login", LOGIN_LIKE, identifier="x", store=store, clock=clock)
        limiter.reset()
        store.remove.assert_called_once_with(limiter.storage_key)


class TestPersistenceFaults:
    """The local store fails open."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "stored",
        [
            "not json",
            "[1, 2]",
            '{"attempts": "x"}',
            '{"attempts": [1], "blockedUntil": "soon"}',
            '{"attempts": [Infinity]}',
            '{"attempts": [NaN]}',
            '{"attempts": [1], "blockedUntil": Infinity}',
        ],
    )
    async def test_corrupted_bucket_treated_as_empty(self, limiter, store, stored):
        store.set(limiter.storage_key, stored)
        result = await limiter.check()
        assert result.allowed is True
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_unavailable_store_fails_open(self, clock):
        store = Mock(spec=InMemoryStore)
        store.get.side_effect = StoreError("k", "quota exceeded")
        store.set.side_effect = StoreError("k", "quota exceeded")
        limiter = SlidingWindowRateLimiter("login", LOGIN_LIKE, identifier="x", store=store, clock=clock)

        result = await limiter.check()
        assert isinstance(result, RateLimitDecision)
        assert result.allowed is True
        assert limiter.get_status().allowed is True

    def test_status_ignores_non_finite_bucket(self, limiter, store):
        store.set(limiter.storage_key, '{"attempts": [1], "blockedUntil": Infinity}')
        status = limiter.get_status()
        assert status.allowed is True
        assert status.remaining == 5

    @pytest.mark.asyncio
    async def test_store_raising_other_errors_fails_open(self, clock):
        store = Mock(spec=InMemoryStore)
        store.get.side_effect = OSError("disk unavailable")
        store.set.side_effect = OSError("disk unavailable")
        store.remove.side_effect = OSError("disk unavailable")
        limiter = SlidingWindowRateLimiter("login", LOGIN_LIKE, identifier="x", store=store, clock=clock)

        result = await limiter.check()
        assert result.allowed is True
        assert result.remaining == 4
        assert limiter.get_status().allowed is True
        limiter.reset()
        store.remove.assert_called_once_with(limiter.storage_key)


class TestRateLimitEntry:
    """Tests for the bucket model."""

    def test_block_never_shortens(self):
        entry = RateLimitEntry(blocked_until=5000)
        entry.block(3000)
        assert entry.blocked_until == 5000
        entry.block(8000)
        assert entry.blocked_until == 8000

    def test_round_trip_keeps_wire_names(self):
        entry = RateLimitEntry.from_dict({"attempts": [3, 1, 2], "blockedUntil": 10})
        assert entry.attempts == [1, 2, 3]
        assert entry.to_dict() == {"attempts": [1, 2, 3], "blockedUntil": 10}

    @pytest.mark.parametrize(
        "payload",
        [
            {"attempts": [float("inf")]},
            {"attempts": [float("nan")]},
            {"attempts": [], "blockedUntil": float("inf")},
        ],
    )
    def test_non_finite_timestamps_rejected(self, payload):
        with pytest.raises(ValueError):
            RateLimitEntry.from_dict(payload)


class TestRateLimitDecision:
    """Tests for RateLimitDecision."""

    def test_to_dict_uses_iso_timestamps(self):
        decision = RateLimitDecision(
            allowed=False, remaining=0, reset_at=0, blocked_until=0, message="wait"
        )
        assert decision.to_dict() == {
            "allowed": False,
            "remaining": 0,
            "resetAt": "1970-01-01T00:00:00+00:00",
            "blockedUntil": "1970-01-01T00:00:00+00:00",
            "message": "wait",
        }

    @pytest.mark.parametrize(
        ("allowed", "remaining", "expected"),
        [(True, 2, True), (True, 3, False), (True, 0, False), (False, 1, False)],
    )
    def test_is_low(self, allowed, remaining, expected):
        decision = RateLimitDecision(allowed=allowed, remaining=remaining, reset_at=0)
        assert decision.is_low(2) is expected
