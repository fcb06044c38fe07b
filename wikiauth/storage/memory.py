from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from wikiauth.logging import get_logger
from wikiauth.storage.models import utcnow


class MemoryKV:
    """In-memory key-value store with per-key expiry.

    Mirrors the Redis contract closely enough for tests and local development:
    expired keys vanish on read, and ``list_keys`` never reports them. The
    clock is injectable so tests can move time forward without sleeping.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock or utcnow
        self._data: Dict[str, Tuple[str, Optional[datetime]]] = {}
        # RLock so helper methods can re-enter while holding the lock
        self._data_lock = threading.RLock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            return self._live(key)

    async def put(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._clock() + timedelta(seconds=max(1, int(ttl_seconds)))
        with self._data_lock:
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        with self._data_lock:
            self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> List[str]:
        with self._data_lock:
            return sorted(
                key
                for key in list(self._data)
                if key.startswith(prefix) and self._live(key) is not None
            )

    async def close(self) -> None:
        with self._data_lock:
            self._data.clear()

    def ttl(self, key: str) -> Optional[int]:
        """Seconds until ``key`` expires; ``None`` for missing or persistent keys."""
        with self._data_lock:
            if self._live(key) is None:
                return None
            _, expires_at = self._data[key]
            if expires_at is None:
                return None
            return int((expires_at - self._clock()).total_seconds())


__all__ = ["MemoryKV"]
