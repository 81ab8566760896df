from __future__ import annotations
from typing import Mapping

from .value_types import Address


def _rank_key(item: tuple[Address, int]) -> tuple[int, str]:
    # points descending; equal totals fall back to address ascending
    return (-item[1], item[0])


def rank_totals(totals: Mapping[Address, int]) -> list[tuple[Address, int]]:
    return sorted(totals.items(), key=_rank_key)


def prune_to_top(totals: Mapping[Address, int], keep: int) -> dict[Address, int]:
    if keep < 0:
        raise ValueError("keep must be >= 0")
    if len(totals) <= keep:
        return dict(totals)
    return dict(rank_totals(totals)[:keep])
