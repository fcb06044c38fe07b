from __future__ import annotations

import json
from typing import Any, List, Optional, Protocol


class KeyValueStore(Protocol):
    """Minimal contract of a distributed KV store with per-key TTL.

    No operation spans more than one key, and callers must assume every call
    is a separate network round trip that can fail independently.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def put(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self, prefix: str) -> List[str]: ...

    async def close(self) -> None: ...


class Namespace:
    """Prefix-scoped view over a shared store.

    ``users`` and ``sessions`` live in the same Redis database but never see
    each other's keys.
    """

    def __init__(self, store: KeyValueStore, name: str) -> None:
        self.store = store
        self.name = name
        self._prefix = f"{name}:"

    def _key(self, key: str) -> str:
        return self._prefix + key

    async def get(self, key: str) -> Optional[str]:
        return await self.store.get(self._key(key))

    async def put(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> None:
        await self.store.put(self._key(key), value, ttl_seconds=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.store.delete(self._key(key))

    async def list_keys(self, prefix: str) -> List[str]:
        keys = await self.store.list_keys(self._key(prefix))
        return [k[len(self._prefix):] for k in keys]

    async def get_json(self, key: str) -> Optional[dict]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry - treat as missing
            return None
        return data if isinstance(data, dict) else None

    async def put_json(
        self, key: str, value: dict[str, Any], *, ttl_seconds: Optional[int] = None
    ) -> None:
        await self.put(key, json.dumps(value), ttl_seconds=ttl_seconds)


__all__ = ["KeyValueStore", "Namespace"]
