from __future__ import annotations

import time
from typing import Callable, Optional

from ..ports.store import KeyValueStore, Lock


class MemoryStore(KeyValueStore):
    """
    Process-local store with the same expiry semantics as the shared one.
    Constructed once per process and injected; survives only as long as the process.
    """

    kind = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[str]:
        hit = self._data.get(key)
        if hit is None:
            return None
        value, expires_at = hit
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class LocalLock(Lock):
    """Always granted: with no shared store there is no other writer to exclude."""

    async def acquire(self, key: str, ttl_seconds: int) -> bool:
        return True

    async def release(self, key: str) -> None:
        return None
