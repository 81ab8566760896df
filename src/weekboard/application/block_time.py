from __future__ import annotations

import logging
from typing import Optional

from ..domain.deadline import Deadline
from ..domain.errors import DeadlineExceeded, ProviderError
from ..ports.chain import BlockTimeLookup, ChainReader

logger = logging.getLogger(__name__)


class BlockTimeResolver:
    """UNIX timestamp -> first block at/after it (indexer lookup, RPC binary search fallback)."""

    def __init__(
        self,
        chain: ChainReader,
        lookup: Optional[BlockTimeLookup] = None,
        *,
        safety_buffer: int = 2_000,
    ) -> None:
        self.chain = chain
        self.lookup = lookup
        self.safety_buffer = safety_buffer

    async def block_at_or_after(self, timestamp_sec: int, latest_block: Optional[int] = None,
                                deadline: Optional[Deadline] = None) -> int:
        deadline = deadline or Deadline.never()
        if self.lookup is not None:
            try:
                return await self.lookup.block_by_time(timestamp_sec, "after", deadline=deadline)
            except DeadlineExceeded:
                raise
            except ProviderError as e:
                logger.warning("block-by-time lookup failed for ts=%d, using binary search: %s", timestamp_sec, e)
        latest = latest_block if latest_block is not None else await self.chain.latest_block(deadline=deadline)
        return await self.binary_search(timestamp_sec, latest, deadline)

    async def binary_search(self, timestamp_sec: int, latest_block: int,
                            deadline: Optional[Deadline] = None) -> int:
        """Smallest block in [0, latest_block] with timestamp >= target; latest_block if none."""
        deadline = deadline or Deadline.never()
        lo, hi, ans = 0, latest_block, latest_block
        while lo <= hi:
            if deadline.expired():
                raise DeadlineExceeded(f"block search for ts={timestamp_sec} stopped at [{lo},{hi}]")
            mid = (lo + hi) // 2
            if await self.chain.block_timestamp(mid, deadline=deadline) >= timestamp_sec:
                ans = mid
                hi = mid - 1
            else:
                lo = mid + 1
        return ans

    async def boundary_block(self, timestamp_sec: int, latest_block: Optional[int] = None,
                             deadline: Optional[Deadline] = None) -> int:
        """Resolved block minus the safety buffer (floored at genesis), so boundary logs are never missed."""
        b = await self.block_at_or_after(timestamp_sec, latest_block, deadline)
        return max(0, b - self.safety_buffer)
