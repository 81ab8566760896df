from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Sequence

import httpx

from ..domain.deadline import Deadline
from ..domain.errors import DeadlineExceeded, ProviderError
from ..domain.models import FetchResult, LogRecord
from ..domain.value_types import Address, ErrorKind, Topic
from ..ports.chain import ChainReader, LogSource

logger = logging.getLogger(__name__)

_RATE_LIMIT_HINTS = ("rate limit", "too many requests", "over rate limit", "exceeded the rate")
_REJECTED_HINTS   = ("freetier", "free tier", "ranges over 10000")
_CAPABILITY_HINTS = ("range is too large", "block range", "query returned more than",
                     "too many results", "response size", "limit")


def _to_hex_block(n: int) -> str: return hex(int(n))


def _int_auto(v: Any) -> int:
    """0x-hex, decimal strings, native ints; '0x'/''/None -> 0."""
    if v is None: return 0
    if isinstance(v, int): return v
    s = str(v).strip().lower()
    if s.startswith("0x"):
        return int(s, 16) if len(s) > 2 else 0
    return int(s) if s else 0


def classify_message(text: str) -> ErrorKind:
    t = (text or "").lower()
    if any(h in t for h in _REJECTED_HINTS):
        return "rejected"
    if any(h in t for h in _RATE_LIMIT_HINTS):
        return "transient"
    if "timeout" in t or "timed out" in t:
        return "transient"
    if any(h in t for h in _CAPABILITY_HINTS):
        return "capability"
    return "unknown"


def classify_http_status(status: int, body: str = "") -> ErrorKind:
    if status == 429:
        return "transient"
    kind = classify_message(body)
    if kind != "unknown":
        return kind
    if status >= 500:
        return "transient"
    return "unknown"


def classify_rpc_error(err: Any) -> ErrorKind:
    if isinstance(err, dict):
        if err.get("code") == 429:
            return "transient"
        text = f"{err.get('message', '')} {json.dumps(err.get('data', ''), default=str)}"
    else:
        text = str(err)
    return classify_message(text)


def normalize_log(rl: dict[str, Any]) -> LogRecord:
    """Shared by RPC and explorer responses (explorer uses the same field names)."""
    topics = tuple((t if isinstance(t, str) else t.decode()).lower() for t in (rl.get("topics") or []) if t)
    ts = rl.get("blockTimestamp") or rl.get("timeStamp")
    return LogRecord(
        address=Address(str(rl.get("address", "")).lower()),
        topics=topics,
        data_hex=str(rl.get("data") or "0x"),
        block_number=_int_auto(rl["blockNumber"]),
        tx_hash=(rl.get("transactionHash") or rl.get("transaction_hash") or "").lower(),
        log_index=_int_auto(rl.get("logIndex")),
        block_timestamp=_int_auto(ts) if ts is not None else None,
    )


def normalize_logs(rows: Any, source: str) -> list[LogRecord]:
    """Normalize one response batch; a malformed answer is a provider failure."""
    if rows is None:
        return []
    if not isinstance(rows, list):
        raise ProviderError(f"{source} returned {type(rows).__name__} instead of a log list",
                            kind="unknown", source=source)
    try:
        return [normalize_log(rl) for rl in rows]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ProviderError(f"{source} returned a malformed log: {e!r}", kind="unknown", source=source) from e


class JsonRpcPool:
    """JSON-RPC over a prioritized list of endpoints, rotating on failure."""

    def __init__(
        self,
        urls: Sequence[str],
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 20,
        max_conn: int = 16,
        tries: int = 6,
        backoff_s: float = 0.25,
        rotate_pause_s: float = 0.06,
    ) -> None:
        if not urls:
            raise ValueError("at least one RPC url is required")
        self.urls = list(urls)
        self.timeout_s = timeout_s
        self.tries = tries
        self.backoff_s = backoff_s
        self.rotate_pause_s = rotate_pause_s
        self.client = client or httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn//2)),
        )

    async def _post(self, url: str, method: str, params: list[Any], deadline: Deadline) -> Any:
        payload = {"jsonrpc":"2.0","id":1,"method":method,"params":params}
        try:
            r = await self.client.post(url, json=payload, timeout=deadline.timeout(self.timeout_s))
        except httpx.TimeoutException as e:
            raise ProviderError(f"{method} timeout at {url}", kind="transient", source=url) from e
        except httpx.TransportError as e:
            raise ProviderError(f"{method} network failure at {url}: {e}", kind="transient", source=url) from e
        if r.status_code >= 400:
            raise ProviderError(f"RPC HTTP {r.status_code}: {r.text[:240]}",
                                kind=classify_http_status(r.status_code, r.text), source=url)
        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError(f"{method} returned non-JSON from {url}", kind="unknown", source=url) from e
        err = data.get("error") if isinstance(data, dict) else None
        if err:
            raise ProviderError(f"RPC error: {json.dumps(err, default=str)[:240]}",
                                kind=classify_rpc_error(err), source=url)
        return data.get("result") if isinstance(data, dict) else None

    async def call(self, method: str, params: list[Any], *, deadline: Optional[Deadline] = None) -> Any:
        deadline = deadline or Deadline.never()
        last: Optional[ProviderError] = None
        for attempt in range(self.tries):
            if deadline.expired():
                raise DeadlineExceeded(f"{method}: budget exhausted after {attempt} attempt(s)") from last
            url = self.urls[attempt % len(self.urls)]
            try:
                return await self._post(url, method, params, deadline)
            except ProviderError as e:
                last = e
                # the caller adapts to these; another endpoint would only repeat them
                if e.kind in ("rejected", "capability"):
                    raise
                if e.kind == "transient":
                    logger.warning("%s transient failure at %s (attempt %d): %s", method, url, attempt + 1, e)
                    await asyncio.sleep(deadline.clip(self.backoff_s * (attempt + 1)))
                else:
                    logger.info("%s failed at %s, rotating: %s", method, url, e)
                    await asyncio.sleep(deadline.clip(self.rotate_pause_s))
        if last is None:
            raise ProviderError(f"{method}: no attempt made", kind="transient")
        raise last

    async def aclose(self) -> None:
        await self.client.aclose()


class RpcChain(ChainReader):
    def __init__(self, pool: JsonRpcPool) -> None:
        self.pool = pool

    async def latest_block(self, deadline: Optional[Deadline] = None) -> int:
        res = await self.pool.call("eth_blockNumber", [], deadline=deadline)
        return _int_auto(res)

    async def block_timestamp(self, block_number: int, deadline: Optional[Deadline] = None) -> int:
        b = await self.pool.call("eth_getBlockByNumber", [_to_hex_block(block_number), False], deadline=deadline)
        if not isinstance(b, dict) or not b.get("timestamp"):
            raise ProviderError(f"eth_getBlockByNumber({block_number}) missing timestamp", kind="unknown")
        return _int_auto(b["timestamp"])


class RpcLogSource(LogSource):
    """eth_getLogs over adaptive chunks; resumable through last_scanned_block."""

    name = "rpc"

    def __init__(
        self,
        pool: JsonRpcPool,
        *,
        contract: Address,
        topic0: Topic,
        tag_topic: Topic,
        initial_step: int = 8_000,
        min_step: int = 900,
        max_failures: int = 8,
        backoff_s: float = 0.25,
        shrink_pause_s: float = 0.12,
    ) -> None:
        self.pool = pool
        self.contract = contract
        self.topic0 = topic0
        self.tag_topic = tag_topic
        self.initial_step = initial_step
        self.min_step = min_step
        self.max_failures = max_failures
        self.backoff_s = backoff_s
        self.shrink_pause_s = shrink_pause_s

    async def _get_logs(self, from_block: int, to_block: int, deadline: Deadline) -> list[LogRecord]:
        flt = {
            "address": self.contract,
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
            "topics": [self.topic0, None, self.tag_topic],
        }
        res = await self.pool.call("eth_getLogs", [flt], deadline=deadline)
        return normalize_logs(res, "eth_getLogs")

    async def fetch_logs(self, from_block: int, to_block: int, deadline: Deadline) -> FetchResult:
        if from_block > to_block:
            return FetchResult([], to_block, True)
        out: list[LogRecord] = []
        step = self.initial_step
        last_scanned = from_block - 1
        failures = 0
        start = from_block
        while start <= to_block:
            if deadline.expired():
                logger.info("rpc scan hit deadline at %d (target %d)", last_scanned, to_block)
                return FetchResult(out, last_scanned, False)
            end = min(to_block, start + step - 1)
            try:
                logs = await self._get_logs(start, end, deadline)
            except ProviderError as e:
                if e.kind == "rejected":
                    raise
                failures += 1
                if failures > self.max_failures:
                    raise
                if e.kind == "transient":
                    logger.warning("eth_getLogs [%d,%d] transient failure, backing off: %s", start, end, e)
                    await asyncio.sleep(deadline.clip(self.backoff_s * failures))
                    continue
                new_step = max(self.min_step, step // 2)
                logger.info("eth_getLogs [%d,%d] %s; chunk %d -> %d", start, end, e.kind, step, new_step)
                step = new_step
                await asyncio.sleep(deadline.clip(self.shrink_pause_s))
                continue
            out.extend(logs)
            last_scanned = end
            start = end + 1
            failures = 0
        return FetchResult(out, last_scanned, True)
