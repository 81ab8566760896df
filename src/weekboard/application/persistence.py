from __future__ import annotations

import json
import logging
from typing import Any, Optional

from ..domain.errors import PersistenceError
from ..domain.models import AggregationState, Cursor, WeekBucket
from ..domain.value_types import Address, WeekMs
from ..ports.store import KeyValueStore, Lock

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 60 * 60 * 24 * 21   # 3 weeks
RESPONSE_TTL_SECONDS = 60 * 60
LOCK_TTL_SECONDS = 30


# ---- state <-> JSON (uint256 values and block numbers as decimal strings) ----

def _cursor_to_json(c: Cursor) -> dict[str, Any]:
    return {
        "fromBlock": str(c.from_block),
        "toBlock": None if c.to_block is None else str(c.to_block),
        "processedBlock": str(c.processed_block),
        "complete": c.complete,
    }


def _cursor_from_json(d: dict[str, Any]) -> Cursor:
    to = d.get("toBlock")
    return Cursor(
        from_block=int(d["fromBlock"]),
        to_block=None if to is None else int(to),
        processed_block=int(d["processedBlock"]),
        complete=d.get("complete") is True,
    )


def _bucket_to_json(b: WeekBucket) -> dict[str, Any]:
    return {"weekMs": b.week_ms, "entries": [[a, str(p)] for a, p in b.totals.items()]}


def _bucket_from_json(d: dict[str, Any]) -> WeekBucket:
    totals: dict[Address, int] = {}
    for addr, pts in d["entries"]:
        a = str(addr).lower()
        if len(a) != 42 or not a.startswith("0x"):
            raise ValueError(f"bad address in state: {addr!r}")
        v = int(pts)
        if v < 0:
            raise ValueError(f"negative total for {a}")
        totals[Address(a)] = v
    return WeekBucket(WeekMs(int(d["weekMs"])), totals)


def serialize_state(state: AggregationState) -> dict[str, Any]:
    return {
        "schemaVersion": state.schema_version,
        "currentWeekMs": state.current_week_ms,
        "lastWeekMs": state.last_week_ms,
        "currentCursor": _cursor_to_json(state.current_cursor),
        "previousCursor": _cursor_to_json(state.previous_cursor),
        "latestBlock": str(state.latest_block),
        "weeks": [_bucket_to_json(state.current), _bucket_to_json(state.previous)],
        "updatedAt": state.updated_at,
    }


def deserialize_state(raw: Any) -> Optional[AggregationState]:
    """Rebuild state from its JSON form; None for anything unusable (forces a backfill)."""
    if not isinstance(raw, dict):
        return None
    try:
        weeks = {}
        for w in raw.get("weeks") or []:
            b = _bucket_from_json(w)
            weeks[b.week_ms] = b
        cur_ms, last_ms = int(raw["currentWeekMs"]), int(raw["lastWeekMs"])
        return AggregationState(
            schema_version=int(raw.get("schemaVersion") or 0),
            current=weeks.get(cur_ms) or WeekBucket(WeekMs(cur_ms)),
            previous=weeks.get(last_ms) or WeekBucket(WeekMs(last_ms)),
            current_cursor=_cursor_from_json(raw["currentCursor"]),
            previous_cursor=_cursor_from_json(raw["previousCursor"]),
            latest_block=int(raw.get("latestBlock") or 0),
            updated_at=int(raw.get("updatedAt") or 0),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("discarding unreadable persisted state: %s", e)
        return None


class StateRepository:
    """
    Aggregation state, formatted response and lock under one key prefix:
      <prefix>:state  <prefix>:resp  <prefix>:lock
    """

    def __init__(
        self,
        store: KeyValueStore,
        lock: Lock,
        *,
        prefix: str = "weekboard:lb:v6",
        state_ttl_s: int = STATE_TTL_SECONDS,
        response_ttl_s: int = RESPONSE_TTL_SECONDS,
        lock_ttl_s: int = LOCK_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.lock = lock
        self.state_key = f"{prefix}:state"
        self.response_key = f"{prefix}:resp"
        self.lock_key = f"{prefix}:lock"
        self.state_ttl_s = state_ttl_s
        self.response_ttl_s = response_ttl_s
        self.lock_ttl_s = lock_ttl_s

    @property
    def store_kind(self) -> str:
        return self.store.kind

    async def _get_json(self, key: str) -> Any:
        text = await self.store.get(key)
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            logger.warning("ignoring non-JSON value under %s", key)
            return None

    async def _set_json(self, key: str, value: Any, ttl_s: int) -> None:
        try:
            text = json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"cannot serialize value for {key}: {e}") from e
        await self.store.set(key, text, ttl_s)

    async def load_state(self) -> Optional[AggregationState]:
        return deserialize_state(await self._get_json(self.state_key))

    async def save_state(self, state: AggregationState) -> None:
        await self._set_json(self.state_key, serialize_state(state), self.state_ttl_s)

    async def load_response(self) -> Optional[dict[str, Any]]:
        v = await self._get_json(self.response_key)
        return v if isinstance(v, dict) else None

    async def save_response(self, payload: dict[str, Any]) -> None:
        await self._set_json(self.response_key, payload, self.response_ttl_s)

    async def acquire_lock(self) -> bool:
        return await self.lock.acquire(self.lock_key, self.lock_ttl_s)

    async def release_lock(self) -> None:
        await self.lock.release(self.lock_key)
