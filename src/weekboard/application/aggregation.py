from __future__ import annotations

import copy
import logging
from typing import Iterable, Optional

from ..domain.deadline import Deadline
from ..domain.decoding import decode_log
from ..domain.errors import AggregationError
from ..domain.models import SCHEMA_VERSION, AggregationState, Cursor, LogRecord, WeekBucket
from ..domain.ranking import prune_to_top
from ..domain.value_types import PlanKind, WeekMs
from ..domain.weeks import WEEK_MS, week_start_ms, weeks_between
from ..ports.chain import ChainReader, LogSource
from .block_time import BlockTimeResolver

logger = logging.getLogger(__name__)


def _consistent(s: AggregationState) -> bool:
    if s.last_week_ms != s.current_week_ms - WEEK_MS:
        return False
    if week_start_ms(s.current_week_ms) != s.current_week_ms:
        return False
    cc, pc = s.current_cursor, s.previous_cursor
    if cc.to_block is not None or pc.to_block is None:
        return False
    if pc.processed_block > pc.to_block or pc.processed_block < pc.from_block - 1:
        return False
    return cc.processed_block >= cc.from_block - 1


class AggregationEngine:
    """
    Owns the two-week window. Each `update` establishes state (backfill, rollover
    or steady), then advances the current-week cursor and, budget permitting,
    the previous-week cursor.
    """

    def __init__(
        self,
        *,
        chain: ChainReader,
        source: LogSource,
        resolver: BlockTimeResolver,
        prune_keep: int = 250,
        previous_reserve_s: float = 0.25,
    ) -> None:
        self.chain = chain
        self.source = source
        self.resolver = resolver
        self.prune_keep = prune_keep
        self.previous_reserve_s = previous_reserve_s

    # ---- planning ------------------------------------------------------------
    @staticmethod
    def plan(existing: Optional[AggregationState], now_ms: int) -> PlanKind:
        if existing is None or existing.schema_version < SCHEMA_VERSION:
            return "backfill"
        if not _consistent(existing):
            return "backfill"
        gap = weeks_between(existing.current_week_ms, week_start_ms(now_ms))
        if gap == 0:
            return "steady"
        if gap == 1:
            return "rollover"
        return "backfill"

    async def cold_backfill(self, now_ms: int, latest_block: int,
                            deadline: Optional[Deadline] = None) -> AggregationState:
        cur_ms = week_start_ms(now_ms)
        prev_ms = WeekMs(cur_ms - WEEK_MS)
        cur_from = await self.resolver.boundary_block(cur_ms // 1000, latest_block, deadline)
        prev_from = await self.resolver.boundary_block(prev_ms // 1000, latest_block, deadline)
        prev_to = cur_from - 1
        logger.info("backfill week=%d: previous [%d,%d], current [%d,latest=%d]",
                    cur_ms, prev_from, prev_to, cur_from, latest_block)
        return AggregationState(
            schema_version=SCHEMA_VERSION,
            current=WeekBucket(cur_ms),
            previous=WeekBucket(prev_ms),
            current_cursor=Cursor(from_block=cur_from, to_block=None, processed_block=cur_from - 1),
            previous_cursor=Cursor(from_block=prev_from, to_block=prev_to,
                                   processed_block=min(prev_from - 1, prev_to)),
            latest_block=latest_block,
            updated_at=now_ms,
        )

    @staticmethod
    def rollover(old: AggregationState) -> AggregationState:
        """Shift one week: old current totals become previous, scanning resumes at the old frontier."""
        cc = old.current_cursor
        frontier = cc.processed_block
        return AggregationState(
            schema_version=SCHEMA_VERSION,
            current=WeekBucket(WeekMs(old.current_week_ms + WEEK_MS)),
            previous=WeekBucket(old.current_week_ms, dict(old.current.totals)),
            # already scanned; later old-week logs arrive through the current cursor
            current_cursor=Cursor(from_block=frontier + 1, to_block=None, processed_block=frontier),
            previous_cursor=Cursor(from_block=min(cc.from_block, frontier + 1), to_block=frontier,
                                   processed_block=frontier, complete=True),
            latest_block=old.latest_block,
            updated_at=old.updated_at,
        )

    # ---- advancing -----------------------------------------------------------
    @staticmethod
    def merge(state: AggregationState, logs: Iterable[LogRecord]) -> int:
        """Add each decodable log to the bucket of the week it names; returns merged count."""
        merged = 0
        for log in logs:
            c = decode_log(log, state.tracked_weeks)
            if c is None:
                continue
            bucket = state.bucket_for(c.week_ms)
            if bucket is None:
                continue
            bucket.add(c.address, c.points)
            merged += 1
        return merged

    async def _advance(self, state: AggregationState, cursor: Cursor, range_end: int,
                       deadline: Deadline, label: str) -> None:
        start = cursor.next_block
        if start > range_end:
            cursor.complete = True
            return
        result = await self.source.fetch_logs(start, range_end, deadline)
        merged = self.merge(state, result.logs)
        cursor.advance(result, range_end)
        logger.info("%s cursor [%d,%d]: %d logs, %d merged, processed=%d complete=%s",
                    label, start, range_end, len(result.logs), merged,
                    cursor.processed_block, cursor.complete)

    def _finish(self, state: AggregationState, now_ms: int) -> AggregationState:
        for b in (state.current, state.previous):
            b.totals = prune_to_top(b.totals, self.prune_keep)
        state.updated_at = now_ms
        return state

    async def update(self, existing: Optional[AggregationState], now_ms: int,
                     deadline: Deadline) -> AggregationState:
        try:
            latest = await self.chain.latest_block(deadline=deadline)
            kind = self.plan(existing, now_ms)
            logger.info("aggregation plan: %s (latest block %d)", kind, latest)
            if kind == "backfill" or existing is None:
                state = await self.cold_backfill(now_ms, latest, deadline)
            elif kind == "rollover":
                state = self.rollover(copy.deepcopy(existing))
            else:
                state = copy.deepcopy(existing)
        except Exception as e:
            raise AggregationError(f"could not establish state: {e}") from e

        # a lagging endpoint must not pull the open-ended cursor backwards
        state.latest_block = max(state.latest_block, latest)
        try:
            await self._advance(state, state.current_cursor, state.latest_block, deadline, "current")
            pc = state.previous_cursor
            if not pc.complete and pc.to_block is not None:
                if deadline.remaining() > self.previous_reserve_s:
                    await self._advance(state, pc, pc.to_block, deadline, "previous")
                else:
                    logger.info("previous cursor deferred: %.2fs left", deadline.remaining())
        except Exception as e:
            raise AggregationError(f"cursor advance failed: {e}", partial=self._finish(state, now_ms)) from e
        return self._finish(state, now_ms)
