from __future__ import annotations

from typing import Optional, Protocol

from ..domain.deadline import Deadline
from ..domain.models import FetchResult


class LogSource(Protocol):
    """Port for any strategy that can list the tracked event logs for a block range."""

    name: str

    async def fetch_logs(self, from_block: int, to_block: int, deadline: Deadline) -> FetchResult:
        """Return logs for [from_block, to_block] inclusive.

        On deadline, stop early with complete=False and last_scanned_block set to
        the last block whose logs are all included. Never partially scanned.
        """


class ChainReader(Protocol):
    """Port for the minimal block queries the engine needs.

    Both calls raise DeadlineExceeded once `deadline` has run out.
    """

    async def latest_block(self, deadline: Optional[Deadline] = None) -> int:
        """Return the latest block number."""

    async def block_timestamp(self, block_number: int, deadline: Optional[Deadline] = None) -> int:
        """Return the block's UNIX timestamp in seconds."""


class BlockTimeLookup(Protocol):
    """Port for an indexer's direct time -> block lookup."""

    async def block_by_time(self, timestamp_sec: int, closest: str = "after",
                            deadline: Optional[Deadline] = None) -> int:
        """Return the block closest to timestamp_sec in the given direction."""
