import asyncio

import httpx
import pytest

from weekboard.adapters.explorer_httpx import ExplorerClient, ExplorerLogSource
from weekboard.domain.deadline import Deadline
from weekboard.domain.errors import DeadlineExceeded, ProviderError

from conftest import ALICE, CONTRACT, TAG, TOPIC0, W, ManualClock, make_log, mock_client


def _wire(block: int, idx: int = 0) -> dict:
    l = make_log(ALICE, 3, W, block, log_index=idx)
    return {
        "address": l.address, "topics": list(l.topics), "data": l.data_hex,
        "blockNumber": hex(block), "timeStamp": hex(1_704_067_200 + block),
        "logIndex": hex(idx) if idx else "0x", "transactionHash": l.tx_hash,
    }


def _explorer_handler(blocks: list[int], *, max_window: int = 10_000, hook=None):
    """Etherscan-like getLogs over a fixed set of blocks (sorted, paged, windowed)."""
    records = [_wire(b, i) for i, b in enumerate(blocks)]
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        q = dict(request.url.params)
        requests.append(q)
        if hook is not None:
            r = hook(q, len(requests))
            if r is not None:
                return r
        fb, tb = int(q["fromBlock"]), int(q["toBlock"])
        page, offset = int(q["page"]), int(q["offset"])
        if page * offset > max_window:
            return httpx.Response(200, json={"status": "0", "message": "NOTOK", "result": "Result window is too large"})
        hits = [r for r in records if fb <= int(r["blockNumber"], 16) <= tb]
        chunk = hits[(page - 1) * offset: page * offset]
        if not chunk:
            return httpx.Response(200, json={"status": "0", "message": "No records found", "result": []})
        return httpx.Response(200, json={"status": "1", "message": "OK", "result": chunk})

    return handler, requests


def _source(handler, **kw) -> ExplorerLogSource:
    client = ExplorerClient("https://explorer.test/api", api_key="k", chain_id=8453, client=mock_client(handler))
    return ExplorerLogSource(client, contract=CONTRACT, topic0=TOPIC0, tag_topic=TAG,
                             rate_limit_pause_s=0, page_pause_s=0, **kw)


def test_paginates_until_short_page():
    handler, reqs = _explorer_handler([10, 11, 12, 13, 14])
    res = asyncio.run(_source(handler, page_size=2).fetch_logs(1, 100, Deadline.never()))
    assert res.complete and res.last_scanned_block == 100
    assert [l.block_number for l in res.logs] == [10, 11, 12, 13, 14]
    assert [q["page"] for q in reqs] == ["1", "2", "3"]
    q = reqs[0]
    assert q["topic0"] == TOPIC0 and q["topic2"] == TAG and q["topic0_2_opr"] == "and"
    assert q["address"] == CONTRACT and q["chainid"] == "8453" and q["apikey"] == "k"
    assert res.logs[0].block_timestamp == 1_704_067_210


def test_no_records_is_terminal_and_complete():
    handler, reqs = _explorer_handler([])
    res = asyncio.run(_source(handler).fetch_logs(1, 100, Deadline.never()))
    assert res.complete and res.logs == []
    assert len(reqs) == 1


def test_rate_limit_is_retried():
    def hook(q, n):
        if n == 1:
            return httpx.Response(200, json={"status": "0", "message": "NOTOK", "result": "Max rate limit reached"})
        if n == 2:
            return httpx.Response(429, text="slow down")
        return None

    handler, reqs = _explorer_handler([5], hook=hook)
    res = asyncio.run(_source(handler).fetch_logs(1, 100, Deadline.never()))
    assert res.complete and len(res.logs) == 1
    assert len(reqs) == 3


def test_other_errors_raise():
    def hook(q, n):
        return httpx.Response(200, json={"status": "0", "message": "NOTOK", "result": "Invalid API Key"})

    handler, _ = _explorer_handler([5], hook=hook)
    with pytest.raises(ProviderError) as ei:
        asyncio.run(_source(handler).fetch_logs(1, 100, Deadline.never()))
    assert ei.value.kind == "unknown"


def test_deadline_mid_pagination_drops_the_straddling_block():
    clock = ManualClock()

    def hook(q, n):
        clock.advance(1.0)
        return None

    handler, _ = _explorer_handler([10, 11, 11, 12], hook=hook)
    res = asyncio.run(_source(handler, page_size=2).fetch_logs(1, 100, Deadline(0.5, clock=clock)))
    assert not res.complete
    # block 11 may continue on the next page
    assert res.last_scanned_block == 10
    assert [l.block_number for l in res.logs] == [10]


def test_deadline_before_any_page_advances_nothing():
    handler, reqs = _explorer_handler([10])
    res = asyncio.run(_source(handler).fetch_logs(5, 100, Deadline(0)))
    assert not res.complete and res.last_scanned_block == 4 and res.logs == []
    assert reqs == []


def test_result_window_slides_forward():
    handler, reqs = _explorer_handler([1, 2, 3, 4, 5, 5, 6], max_window=4)
    res = asyncio.run(_source(handler, page_size=2, max_window=4).fetch_logs(1, 100, Deadline.never()))
    assert res.complete
    assert [l.block_number for l in res.logs] == [1, 2, 3, 4, 5, 5, 6]
    assert [(q["fromBlock"], q["page"]) for q in reqs] == [
        ("1", "1"), ("1", "2"), ("4", "1"), ("4", "2"), ("6", "1"),
    ]


def test_block_by_time():
    seen = {}

    def handler(request):
        seen.update(dict(request.url.params))
        return httpx.Response(200, json={"status": "1", "message": "OK", "result": "12345"})

    client = ExplorerClient("https://explorer.test/api", client=mock_client(handler))
    assert asyncio.run(client.block_by_time(1_704_067_200)) == 12345
    assert seen["module"] == "block" and seen["action"] == "getblocknobytime"
    assert seen["closest"] == "after" and seen["timestamp"] == "1704067200"


def test_block_by_time_failure_raises():
    def handler(request):
        return httpx.Response(200, json={"status": "0", "message": "NOTOK", "result": "Error! No closest block found"})

    client = ExplorerClient("https://explorer.test/api", client=mock_client(handler))
    with pytest.raises(ProviderError):
        asyncio.run(client.block_by_time(1))


def test_malformed_page_is_a_provider_error():
    def hook(q, n):
        return httpx.Response(200, json={"status": "1", "message": "OK", "result": [{"topics": [], "data": "0x"}]})

    handler, _ = _explorer_handler([5], hook=hook)
    with pytest.raises(ProviderError) as ei:
        asyncio.run(_source(handler).fetch_logs(1, 100, Deadline.never()))
    assert ei.value.kind == "unknown"


def test_request_timeout_is_capped_by_the_budget():
    seen = []

    def handler(request):
        seen.append(request.extensions["timeout"]["read"])
        return httpx.Response(200, json={"status": "1", "message": "OK", "result": "12345"})

    client = ExplorerClient("https://explorer.test/api", client=mock_client(handler), timeout_s=20)
    asyncio.run(client.block_by_time(1, deadline=Deadline(2.0, clock=ManualClock())))
    with pytest.raises(DeadlineExceeded):
        asyncio.run(client.block_by_time(1, deadline=Deadline(0)))
    assert seen == [2.0]
