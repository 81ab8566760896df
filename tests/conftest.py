from __future__ import annotations

import json
from typing import Callable, Optional

import httpx
import pytest

from weekboard.application.aggregation import AggregationEngine
from weekboard.application.block_time import BlockTimeResolver
from weekboard.domain.deadline import Deadline
from weekboard.domain.decoding import action_tag_topic, encode_payload, event_topic0
from weekboard.domain.models import FetchResult, LogRecord
from weekboard.domain.value_types import Address
from weekboard.domain.weeks import WEEK_MS

CONTRACT = Address("0xb331328f506f2d35125e367a190e914b1b6830cf")
TOPIC0 = event_topic0()
TAG = action_tag_topic()

# Monday 2024-01-01 00:00:00 UTC
W = 1_704_067_200_000
PREV_W = W - WEEK_MS

# fake chain: 2s blocks, block 1_000_000 lands exactly on W
BLOCK_AT_W = 1_000_000
GENESIS_TS = W // 1000 - 2 * BLOCK_AT_W

ALICE = Address("0x" + "a1" * 20)
BOB = Address("0x" + "b2" * 20)
CAROL = Address("0x" + "c3" * 20)


class ManualClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeChain:
    def __init__(self, latest: int) -> None:
        self.latest = latest
        self.timestamp_calls = 0

    async def latest_block(self, deadline: Optional[Deadline] = None) -> int:
        return self.latest

    async def block_timestamp(self, block_number: int, deadline: Optional[Deadline] = None) -> int:
        self.timestamp_calls += 1
        return GENESIS_TS + 2 * block_number


class ScriptedSource:
    """Returns the configured logs inside the requested range; `stop_at` simulates a deadline cut."""

    name = "scripted"

    def __init__(self, logs: list[LogRecord] = (), *, stop_at: Optional[int] = None,
                 error: Optional[Exception] = None, fail_on_call: Optional[int] = None) -> None:
        self.logs = list(logs)
        self.stop_at = stop_at
        self.error = error
        self.fail_on_call = fail_on_call
        self.calls: list[tuple[int, int]] = []

    async def fetch_logs(self, from_block: int, to_block: int, deadline: Deadline) -> FetchResult:
        self.calls.append((from_block, to_block))
        if self.error is not None and (self.fail_on_call is None or self.fail_on_call == len(self.calls)):
            raise self.error
        if deadline.expired():
            return FetchResult([], from_block - 1, False)
        if self.stop_at is not None and self.stop_at < to_block:
            last, complete = max(self.stop_at, from_block - 1), False
        else:
            last, complete = to_block, True
        return FetchResult([l for l in self.logs if from_block <= l.block_number <= last], last, complete)


def user_topic(addr: str) -> str:
    return "0x" + "0" * 24 + addr[2:]


def make_log(user: str, points: int, week_ms: int, block: int, *,
             layout: str = "bytes", log_index: int = 0) -> LogRecord:
    return LogRecord(
        address=CONTRACT,
        topics=(TOPIC0, user_topic(user), TAG),
        data_hex=encode_payload(points, week_ms, layout=layout, timestamp=W // 1000 + block),
        block_number=block,
        tx_hash="0x" + f"{block:064x}",
        log_index=log_index,
    )


def make_engine(chain: FakeChain, source, *, prune_keep: int = 250) -> AggregationEngine:
    return AggregationEngine(chain=chain, source=source, resolver=BlockTimeResolver(chain), prune_keep=prune_keep)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def rpc_body(request: httpx.Request) -> dict:
    return json.loads(request.content)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()
