import asyncio

import httpx

from weekboard.adapters.names_neynar import NeynarNames

from conftest import ALICE, BOB, CAROL, mock_client


def test_batches_and_both_response_shapes():
    batches = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-api-key"] == "key"
        addrs = request.url.params["addresses"].split(",")
        batches.append(addrs)
        if ALICE in addrs:
            return httpx.Response(200, json={"users": [
                {"username": "alice", "verified_addresses": {"eth_addresses": [ALICE.upper().replace("0X", "0x")]}},
            ]})
        return httpx.Response(200, json={BOB: [{"username": "bob"}], CAROL: []})

    names = NeynarNames("key", client=mock_client(handler), chunk_size=1)
    out = asyncio.run(names.resolve([BOB, ALICE, CAROL, ALICE]))
    assert out == {ALICE: "alice.farcaster.eth", BOB: "bob.farcaster.eth"}
    assert batches == [[ALICE], [BOB], [CAROL]]


def test_failed_batches_are_skipped():
    def handler(request):
        if BOB in request.url.params["addresses"]:
            return httpx.Response(502, text="bad gateway")
        if CAROL in request.url.params["addresses"]:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={ALICE: [{"username": "alice"}]})

    names = NeynarNames("key", client=mock_client(handler), chunk_size=1)
    assert asyncio.run(names.resolve([ALICE, BOB, CAROL])) == {ALICE: "alice.farcaster.eth"}
