from __future__ import annotations

from typing import Any, Awaitable, Optional, TypeVar

import httpx
from upstash_redis.asyncio import Redis
from upstash_redis.errors import UpstashError

from ..domain.errors import PersistenceError
from ..ports.store import KeyValueStore, Lock

T = TypeVar("T")


class UpstashStore(KeyValueStore):
    """Shared store on Upstash Redis (REST), through the upstash-redis async client."""

    kind = "upstash"

    def __init__(self, url: str, token: str, *, redis: Optional[Any] = None) -> None:
        self.redis = redis if redis is not None else Redis(url=url, token=token)

    async def _run(self, op: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except (UpstashError, httpx.HTTPError) as e:
            raise PersistenceError(f"upstash {op} failed: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        v = await self._run("GET", self.redis.get(key))
        return None if v is None else str(v)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            await self._run("SET", self.redis.set(key, value, ex=int(ttl_seconds)))
        else:
            await self._run("SET", self.redis.set(key, value))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        res = await self._run("SET NX", self.redis.set(key, value, nx=True, ex=int(ttl_seconds)))
        # the client reports success as True (or the raw "OK"), a held key as None
        return res is True or res == "OK"

    async def delete(self, key: str) -> None:
        await self._run("DEL", self.redis.delete(key))

    async def aclose(self) -> None:
        await self.redis.close()


class UpstashLock(Lock):
    """SET NX EX on the shared store; contention across processes is real here."""

    def __init__(self, store: UpstashStore) -> None:
        self.store = store

    async def acquire(self, key: str, ttl_seconds: int) -> bool:
        return await self.store.set_if_absent(key, "1", ttl_seconds)

    async def release(self, key: str) -> None:
        await self.store.delete(key)
