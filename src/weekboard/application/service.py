from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from ..domain.deadline import Deadline
from ..domain.errors import AggregationError, PersistenceError
from ..domain.models import AggregationState
from ..domain.ranking import rank_totals
from ..domain.value_types import Address
from ..ports.names import NameResolver
from .aggregation import AggregationEngine
from .formatting import FormatOptions, format_payload
from .persistence import StateRepository
from .utils import now_ms

logger = logging.getLogger(__name__)

ERROR_HINT = (
    "If this persists: (1) configure UPSTASH_REDIS_REST_URL/UPSTASH_REDIS_REST_TOKEN so state survives "
    "restarts, (2) set RPC_URL to a full-history Base RPC, and (3) set BASESCAN_API_KEY so the "
    "explorer logs API can take over backfills."
)


class LeaderboardService:
    """
    Caller-facing read: cached response when fresh, otherwise lock -> update ->
    persist -> respond. Never raises; failures become {"ok": False, ...}.
    """

    def __init__(
        self,
        *,
        engine: AggregationEngine,
        repo: StateRepository,
        names: Optional[NameResolver] = None,
        max_seconds: float = 8.5,
        max_top: int = 100,
        names_reserve_s: float = 0.5,
        persist_partial: bool = False,
        clock_ms: Callable[[], int] = now_ms,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.repo = repo
        self.names = names
        self.max_seconds = max_seconds
        self.max_top = max_top
        self.names_reserve_s = names_reserve_s
        self.persist_partial = persist_partial
        self._clock_ms = clock_ms
        self._monotonic = monotonic

    async def _resolve_names(self, state: AggregationState, deadline: Deadline) -> Optional[dict[Address, str]]:
        if self.names is None or deadline.remaining() <= self.names_reserve_s:
            return None
        addrs: set[Address] = set()
        for bucket in (state.current, state.previous):
            addrs.update(a for a, _ in rank_totals(bucket.totals)[:self.max_top])
        try:
            return await self.names.resolve(sorted(addrs))
        except Exception:
            logger.warning("name resolution failed; serving raw addresses", exc_info=True)
            return None

    async def read(self, *, refresh: bool = False, include_names: bool = False) -> dict[str, Any]:
        deadline = Deadline(self.max_seconds, clock=self._monotonic)
        locked = False
        try:
            if not refresh:
                cached = await self.repo.load_response()
                if cached:
                    return cached

            locked = await self.repo.acquire_lock()
            if not locked:
                cached = await self.repo.load_response()
                if cached:
                    return {**cached, "meta": {**(cached.get("meta") or {}), "busy": True}}
                logger.warning("update lock is held elsewhere; updating without it")

            state = await self.repo.load_state()
            try:
                updated = await self.engine.update(state, self._clock_ms(), deadline)
            except AggregationError as e:
                if self.persist_partial and e.partial is not None:
                    logger.info("persisting partial progress after failure")
                    await self.repo.save_state(e.partial)
                raise

            names = await self._resolve_names(updated, deadline) if include_names else None
            payload = format_payload(updated, FormatOptions(
                max_top=self.max_top, names=names, store_kind=self.repo.store_kind,
            ))
            await self.repo.save_state(updated)
            await self.repo.save_response(payload)
            return payload
        except Exception as e:
            logger.exception("leaderboard read failed")
            return {"ok": False, "error": str(e) or type(e).__name__, "hint": ERROR_HINT}
        finally:
            if locked:
                try:
                    await self.repo.release_lock()
                except PersistenceError:
                    logger.warning("could not release update lock", exc_info=True)
