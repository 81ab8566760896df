from __future__ import annotations

from typing import Optional, Protocol


class KeyValueStore(Protocol):
    """Port for a string-keyed, string-valued store with expiry."""

    kind: str

    async def get(self, key: str) -> Optional[str]:
        """Return the stored text or None when missing/expired."""

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store `value` under `key`, expiring after ttl_seconds if given."""

    async def delete(self, key: str) -> None:
        """Remove `key`; missing keys are not an error."""


class Lock(Protocol):
    """Advisory mutual exclusion around one aggregation key."""

    async def acquire(self, key: str, ttl_seconds: int) -> bool:
        """Atomically take the lock if free; True when taken."""

    async def release(self, key: str) -> None:
        """Drop the lock."""
