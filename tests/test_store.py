"""Tests for bucket stores."""

from unittest.mock import MagicMock, patch

import pytest

from abuseguard.app.exceptions import StoreError
from abuseguard.app.limiter import RateLimitPolicy, SlidingWindowRateLimiter
from abuseguard.app.limiter.store import (
    InMemoryStore,
    JsonFileStore,
    RedisStore,
    get_store,
)


class TestInMemoryStore:
    """Tests for InMemoryStore."""

    def test_get_set_remove(self):
        store = InMemoryStore()
        assert store.get("k") is None
        store.set("k", "v")
        assert store.get("k") == "v"
        store.remove("k")
        store.remove("k")
        assert store.get("k") is None

    def test_keys_by_prefix(self):
        store = InMemoryStore()
        store.set("rate_limit_a", "1")
        store.set("rate_limit_b", "2")
        store.set("other", "3")
        assert sorted(store.keys("rate_limit_")) == ["rate_limit_a", "rate_limit_b"]


class TestJsonFileStore:
    """Tests for JsonFileStore."""

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "state" / "buckets.json"
        JsonFileStore(path).set("rate_limit_login:x", '{"attempts": [1]}')

        reopened = JsonFileStore(path)
        assert reopened.get("rate_limit_login:x") == '{"attempts": [1]}'
        assert reopened.keys("rate_limit_") == ["rate_limit_login:x"]

    def test_missing_file_is_empty(self, tmp_path):
        store = JsonFileStore(tmp_path / "absent.json")
        assert store.get("k") is None
        assert store.keys() == []

    def test_remove(self, tmp_path):
        store = JsonFileStore(tmp_path / "s.json")
        store.set("a", "1")
        store.set("b", "2")
        store.remove("a")
        assert store.keys() == ["b"]

    @pytest.mark.parametrize("content", ["{broken", "[1, 2, 3]"])
    def test_corrupted_document_raises(self, tmp_path, content):
        path = tmp_path / "s.json"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(StoreError):
            JsonFileStore(path).get("k")

    def test_undecodable_bytes_raise_store_error(self, tmp_path):
        path = tmp_path / "s.json"
        path.write_bytes(b'{"k": "\xff\xfe"}')
        with pytest.raises(StoreError):
            JsonFileStore(path).get("k")

    @pytest.mark.asyncio
    async def test_limiter_fails_open_on_undecodable_file(self, tmp_path, clock):
        path = tmp_path / "s.json"
        path.write_bytes(b"\xff\xfe\x00garbage")
        limiter = SlidingWindowRateLimiter(
            "login",
            RateLimitPolicy(max_attempts=5, window_ms=60_000),
            identifier="x",
            store=JsonFileStore(path),
            clock=clock,
        )

        result = await limiter.check()
        assert result.allowed is True
        assert result.remaining == 4


class TestRedisStore:
    """Tests for RedisStore with a mocked client."""

    def test_operations_delegate_to_client(self):
        client = MagicMock()
        client.get.return_value = b'{"attempts": []}'
        client.scan_iter.return_value = iter([b"rate_limit_a", "rate_limit_b"])
        store = RedisStore(redis_client=client)

        assert store.get("rate_limit_a") == '{"attempts": []}'
        store.set("rate_limit_a", "{}")
        store.remove("rate_limit_a")
        assert store.keys("rate_limit_") == ["rate_limit_a", "rate_limit_b"]

        client.set.assert_called_once_with("rate_limit_a", "{}")
        client.delete.assert_called_once_with("rate_limit_a")
        client.scan_iter.assert_called_once_with(match="rate_limit_*")

    def test_client_errors_become_store_errors(self):
        client = MagicMock()
        client.get.side_effect = ConnectionError("refused")
        store = RedisStore(redis_client=client)
        with pytest.raises(StoreError):
            store.get("k")


class TestGetStore:
    """Tests for the global store factory."""

    def test_singleton(self):
        assert get_store("memory") is get_store()

    def test_backend_selection(self, tmp_path):
        with patch("abuseguard.app.core.config.settings") as mock_settings:
            mock_settings.rate_limit_storage_backend = "file"
            mock_settings.rate_limit_storage_path = str(tmp_path / "s.json")
            assert isinstance(get_store(force_new=True), JsonFileStore)

            mock_settings.redis_url = "redis://localhost:6379/0"
            assert isinstance(get_store("redis", force_new=True), RedisStore)
