from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

from .value_types import Address, WeekMs

SCHEMA_VERSION = 6


@dataclass(slots=True, frozen=True)
class LogRecord:
    address: Address
    topics: tuple[str, ...]            # lowercased with 0x
    data_hex: str                      # hex with 0x (or "0x")
    block_number: int
    tx_hash: str
    log_index: int
    block_timestamp: Optional[int] = None


@dataclass(slots=True, frozen=True)
class FetchResult:
    logs: list[LogRecord]
    last_scanned_block: int
    complete: bool


@dataclass(slots=True, frozen=True)
class DecodedPayload:
    points: int
    week_ms: int


@dataclass(slots=True, frozen=True)
class Contribution:
    address: Address
    points: int
    week_ms: WeekMs


@dataclass(slots=True)
class WeekBucket:
    week_ms: WeekMs
    totals: dict[Address, int] = field(default_factory=dict)

    def add(self, address: Address, points: int) -> None:
        self.totals[address] = self.totals.get(address, 0) + points

    def size(self) -> int:
        return len(self.totals)


@dataclass(slots=True)
class Cursor:
    from_block: int
    to_block: Optional[int]            # None = open-ended (current week)
    processed_block: int
    complete: bool = False

    @property
    def next_block(self) -> int:
        return self.processed_block + 1

    def upper_bound(self, latest_block: int) -> int:
        return latest_block if self.to_block is None else self.to_block

    def advance(self, result: FetchResult, range_end: int) -> None:
        """Apply a fetch over [next_block, range_end]; never moves backwards."""
        if result.complete:
            self.processed_block = max(self.processed_block, range_end)
            self.complete = True
        else:
            scanned = min(result.last_scanned_block, range_end)
            self.processed_block = max(self.processed_block, scanned)
            self.complete = False


@dataclass(slots=True)
class AggregationState:
    schema_version: int
    current: WeekBucket
    previous: WeekBucket
    current_cursor: Cursor
    previous_cursor: Cursor
    latest_block: int
    updated_at: int = 0

    @property
    def current_week_ms(self) -> WeekMs:
        return self.current.week_ms

    @property
    def last_week_ms(self) -> WeekMs:
        return self.previous.week_ms

    @property
    def tracked_weeks(self) -> tuple[WeekMs, WeekMs]:
        return (self.current.week_ms, self.previous.week_ms)

    def bucket_for(self, week_ms: int) -> Optional[WeekBucket]:
        if week_ms == self.current.week_ms:
            return self.current
        if week_ms == self.previous.week_ms:
            return self.previous
        return None

    @property
    def complete(self) -> bool:
        return self.current_cursor.complete and self.previous_cursor.complete
