from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ..domain.models import AggregationState, Cursor, WeekBucket
from ..domain.ranking import rank_totals
from ..domain.value_types import Address


@dataclass(slots=True, frozen=True)
class FormatOptions:
    max_top: int = 100
    names: Optional[Mapping[Address, str]] = None
    store_kind: str = "memory"
    extra_meta: Mapping[str, Any] = field(default_factory=dict)


def _ranked(bucket: WeekBucket, opts: FormatOptions) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for rank, (addr, pts) in enumerate(rank_totals(bucket.totals)[:opts.max_top], start=1):
        row: dict[str, Any] = {"rank": rank, "address": addr, "points": str(pts)}
        if opts.names is not None and addr in opts.names:
            row["name"] = opts.names[addr]
        out.append(row)
    return out


def _cursor_meta(c: Cursor) -> dict[str, Any]:
    return {
        "fromBlock": str(c.from_block),
        "toBlock": None if c.to_block is None else str(c.to_block),
        "processedBlock": str(c.processed_block),
        "complete": c.complete,
    }


def format_payload(state: AggregationState, opts: FormatOptions = FormatOptions()) -> dict[str, Any]:
    """Ranked top-N for both weeks plus progress metadata; points as decimal strings."""
    return {
        "ok": True,
        "weekStart": state.current_week_ms,
        "prevWeekStart": state.last_week_ms,
        "weekly": _ranked(state.current, opts),
        "lastWeek": _ranked(state.previous, opts),
        "meta": {
            "schemaVersion": state.schema_version,
            "weeklyUsers": state.current.size(),
            "lastWeekUsers": state.previous.size(),
            "latestBlock": str(state.latest_block),
            "currentWeek": _cursor_meta(state.current_cursor),
            "previousWeek": _cursor_meta(state.previous_cursor),
            "completeCurWeek": state.current_cursor.complete,
            "completePrevWeek": state.previous_cursor.complete,
            "complete": state.complete,
            "store": opts.store_kind,
            "updatedAt": state.updated_at,
            **dict(opts.extra_meta),
        },
    }
