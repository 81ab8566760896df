from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import httpx

from ..domain.deadline import Deadline
from ..domain.errors import DeadlineExceeded, ProviderError
from ..domain.models import FetchResult, LogRecord
from ..domain.value_types import Address, Topic
from ..ports.chain import BlockTimeLookup, LogSource
from .rpc_httpx import _int_auto, classify_http_status, classify_message, normalize_logs

logger = logging.getLogger(__name__)

ETHERSCAN_V2_URL = "https://api.etherscan.io/v2/api"
BASE_CHAIN_ID = 8453


class ExplorerClient(BlockTimeLookup):
    """
    Etherscan-compatible REST API (Etherscan v2 multichain, BaseScan, Routescan).
    Every non-success answer is raised as a classified ProviderError.
    """

    def __init__(
        self,
        base_url: str = ETHERSCAN_V2_URL,
        *,
        api_key: str = "",
        chain_id: Optional[int] = BASE_CHAIN_ID,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 20,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.chain_id = chain_id
        self.timeout_s = timeout_s
        self.client = client or httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(timeout_s),
            headers={"accept": "application/json"},
        )

    async def _get(self, params: dict[str, Any], deadline: Optional[Deadline] = None) -> dict[str, Any]:
        deadline = deadline or Deadline.never()
        if deadline.expired():
            raise DeadlineExceeded(f"explorer {params.get('action')}: budget exhausted", source="explorer")
        q = dict(params)
        if self.chain_id is not None:
            q["chainid"] = str(self.chain_id)
        if self.api_key:
            q["apikey"] = self.api_key
        try:
            r = await self.client.get(self.base_url, params=q, timeout=deadline.timeout(self.timeout_s))
        except httpx.TimeoutException as e:
            raise ProviderError("explorer timeout", kind="transient", source="explorer") from e
        except httpx.TransportError as e:
            raise ProviderError(f"explorer network failure: {e}", kind="transient", source="explorer") from e
        if r.status_code >= 400:
            raise ProviderError(f"explorer HTTP {r.status_code}: {r.text[:240]}",
                                kind=classify_http_status(r.status_code, r.text), source="explorer")
        try:
            j = r.json()
        except ValueError as e:
            raise ProviderError("explorer returned non-JSON", kind="unknown", source="explorer") from e
        if not isinstance(j, dict):
            raise ProviderError("explorer returned unexpected body", kind="unknown", source="explorer")
        return j

    @staticmethod
    def _failure(j: dict[str, Any], what: str) -> ProviderError:
        msg = str(j.get("message") or "")
        result_text = json.dumps(j.get("result", ""), default=str)
        kind = classify_message(f"{msg} {result_text}")
        # no block range to shrink here; only throttling is worth retrying
        if kind == "capability":
            kind = "unknown"
        return ProviderError(f"{what} error: {msg or result_text or 'unknown'}", kind=kind, source="explorer")

    async def logs_page(
        self,
        *,
        address: Address,
        topic0: Topic,
        tag_topic: Topic,
        from_block: int,
        to_block: int,
        page: int,
        offset: int,
        deadline: Optional[Deadline] = None,
    ) -> list[LogRecord]:
        j = await self._get({
            "module": "logs",
            "action": "getLogs",
            "fromBlock": str(from_block),
            "toBlock": str(to_block),
            "address": address,
            "topic0": topic0,
            "topic0_2_opr": "and",
            "topic2": tag_topic,
            "page": str(page),
            "offset": str(offset),
            "sort": "asc",
        }, deadline)
        status = str(j.get("status") or "")
        msg = str(j.get("message") or "")
        if status == "1":
            return normalize_logs(j.get("result"), "explorer getLogs")
        # no records is a normal terminal answer
        if status == "0" and "no records" in msg.lower():
            return []
        raise self._failure(j, "explorer getLogs")

    async def block_by_time(self, timestamp_sec: int, closest: str = "after",
                            deadline: Optional[Deadline] = None) -> int:
        j = await self._get({
            "module": "block",
            "action": "getblocknobytime",
            "timestamp": str(max(0, int(timestamp_sec))),
            "closest": closest,
        }, deadline)
        if str(j.get("status") or "") != "1":
            raise self._failure(j, "explorer block-by-time")
        return _int_auto(j.get("result"))

    async def aclose(self) -> None:
        await self.client.aclose()


class ExplorerLogSource(LogSource):
    """Paginated logs-by-topic scan. Pages come back sorted by block, ascending."""

    name = "explorer"

    def __init__(
        self,
        client: ExplorerClient,
        *,
        contract: Address,
        topic0: Topic,
        tag_topic: Topic,
        page_size: int = 1_000,
        max_window: int = 10_000,
        max_rate_limit_retries: int = 20,
        rate_limit_pause_s: float = 0.25,
        page_pause_s: float = 0.025,
    ) -> None:
        self.client = client
        self.contract = contract
        self.topic0 = topic0
        self.tag_topic = tag_topic
        self.page_size = page_size
        self.max_window = max_window
        self.max_rate_limit_retries = max_rate_limit_retries
        self.rate_limit_pause_s = rate_limit_pause_s
        self.page_pause_s = page_pause_s

    @staticmethod
    def _partial(out: list[LogRecord], from_block: int) -> FetchResult:
        # the highest block seen may continue on the next page: drop it and rescan it later
        if not out:
            return FetchResult([], from_block - 1, False)
        highest = max(l.block_number for l in out)
        kept = [l for l in out if l.block_number < highest]
        return FetchResult(kept, max(from_block - 1, highest - 1), False)

    async def fetch_logs(self, from_block: int, to_block: int, deadline: Deadline) -> FetchResult:
        if from_block > to_block:
            return FetchResult([], to_block, True)
        out: list[LogRecord] = []
        query_from = from_block
        page = 1
        throttled = 0
        while True:
            if deadline.expired():
                logger.info("explorer scan hit deadline on page %d from %d", page, query_from)
                return self._partial(out, from_block)
            try:
                logs = await self.client.logs_page(
                    address=self.contract, topic0=self.topic0, tag_topic=self.tag_topic,
                    from_block=query_from, to_block=to_block, page=page, offset=self.page_size,
                    deadline=deadline,
                )
            except ProviderError as e:
                if e.kind != "transient":
                    raise
                throttled += 1
                if throttled > self.max_rate_limit_retries:
                    raise
                logger.warning("explorer throttled (page %d), retrying: %s", page, e)
                await asyncio.sleep(deadline.clip(self.rate_limit_pause_s))
                continue
            throttled = 0
            out.extend(logs)
            if len(logs) < self.page_size:
                return FetchResult(out, to_block, True)
            if (page + 1) * self.page_size > self.max_window:
                # result window exhausted: restart paging at the highest block seen
                highest = max(l.block_number for l in logs)
                if highest <= query_from:
                    raise ProviderError(f"explorer window too small for block {highest}",
                                        kind="capability", source="explorer")
                out = [l for l in out if l.block_number < highest]
                query_from = highest
                page = 1
            else:
                page += 1
            await asyncio.sleep(deadline.clip(self.page_pause_s))
