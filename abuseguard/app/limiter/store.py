"""Key-value store abstraction for persisted rate limit buckets.

The limiter only needs ``get``/``set``/``remove`` on string values, plus
``keys`` for bulk cleanup. Backends raise ``StoreError`` on any I/O or
decoding fault; the limiter decides how to recover.
"""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from abuseguard.app.exceptions import StoreError


class KeyValueStore(ABC):
    """Abstract base class for bucket stores."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored string, or None if the key is absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove ``key``. Removing a missing key is not an error."""

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """List stored keys starting with ``prefix``."""


class InMemoryStore(KeyValueStore):
    """Process-local store backed by a dictionary.

    Data is lost when the process exits. Mainly used in tests and for
    single-process deployments.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]


class JsonFileStore(KeyValueStore):
    """Store persisted as a single JSON object on disk.

    Every write rewrites the file through a temporary file and
    ``os.replace`` so a crash never leaves a half-written document.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as e:
            raise StoreError(str(self._path), f"read failed: {e}") from e
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreError(str(self._path), f"corrupted document: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(str(self._path), "document is not an object")
        return {str(k): str(v) for k, v in data.items()}

    def _dump(self, data: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StoreError(str(self._path), f"write failed: {e}") from e

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._dump(data)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [k for k in self._load() if k.startswith(prefix)]


class RedisStore(KeyValueStore):
    """Redis-backed store, shared by every process pointing at the same DB.

    This backend requires the 'redis' package to be installed.
    """

    def __init__(self, redis_client: Optional[Any] = None, redis_url: Optional[str] = None) -> None:
        self._redis = redis_client
        self._redis_url = redis_url

    def _get_client(self) -> Any:
        if self._redis is None:
            import redis

            self._redis = redis.Redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    def get(self, key: str) -> Optional[str]:
        try:
            value = self._get_client().get(key)
        except Exception as e:
            raise StoreError(key, f"redis get failed: {e}") from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> None:
        try:
            self._get_client().set(key, value)
        except Exception as e:
            raise StoreError(key, f"redis set failed: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self._get_client().delete(key)
        except Exception as e:
            raise StoreError(key, f"redis delete failed: {e}") from e

    def keys(self, prefix: str = "") -> list[str]:
        try:
            found = self._get_client().scan_iter(match=f"{prefix}*")
            return [k.decode("utf-8") if isinstance(k, bytes) else k for k in found]
        except Exception as e:
            raise StoreError(prefix, f"redis scan failed: {e}") from e

    def close(self) -> None:
        if self._redis is not None:
            self._redis.close()
            self._redis = None


# Global store instance (singleton pattern)
_store_instance: KeyValueStore | None = None


def get_store(backend: str | None = None, force_new: bool = False) -> KeyValueStore:
    """Get or create the global bucket store.

    Args:
        backend: 'memory', 'file', 'redis', or None to use
            ``settings.rate_limit_storage_backend``.
        force_new: If True, create a new instance even if one exists.

    Returns:
        A KeyValueStore instance.
    """
    global _store_instance

    if _store_instance is not None and not force_new:
        return _store_instance

    from abuseguard.app.core.config import settings

    backend = backend or settings.rate_limit_storage_backend
    if backend == "redis":
        _store_instance = RedisStore(redis_url=settings.redis_url)
    elif backend == "file":
        _store_instance = JsonFileStore(settings.rate_limit_storage_path)
    else:
        _store_instance = InMemoryStore()
    return _store_instance


def reset_store() -> None:
    """Reset the global store instance.

    This is primarily useful for testing.
    """
    global _store_instance
    _store_instance = None
