from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..adapters.explorer_httpx import ExplorerClient, ExplorerLogSource
from ..adapters.names_neynar import NeynarNames
from ..adapters.rpc_httpx import JsonRpcPool, RpcChain, RpcLogSource
from ..adapters.store_memory import LocalLock, MemoryStore
from ..adapters.store_upstash import UpstashLock, UpstashStore
from ..config import Settings
from ..domain.decoding import action_tag_topic, event_topic0
from ..domain.value_types import Address
from ..ports.names import NameResolver
from ..ports.store import KeyValueStore, Lock
from .aggregation import AggregationEngine
from .block_time import BlockTimeResolver
from .persistence import StateRepository
from .scanning import FallbackLogSource
from .service import LeaderboardService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Everything built for one process; close it once on shutdown."""
    service: LeaderboardService
    repo: StateRepository
    _closers: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        for c in self._closers:
            try:
                await c.aclose()
            except Exception:
                logger.warning("failed to close %s", type(c).__name__, exc_info=True)


def build_store(settings: Settings) -> tuple[KeyValueStore, Lock]:
    if settings.has_shared_store:
        store = UpstashStore(settings.upstash_url, settings.upstash_token)
        return store, UpstashLock(store)
    logger.info("no shared store configured; using process memory")
    return MemoryStore(), LocalLock()


def build_runtime(settings: Settings) -> Runtime:
    contract = Address(settings.contract)
    topic0 = event_topic0(settings.event_signature)
    tag = action_tag_topic(settings.action_tag)

    pool = JsonRpcPool(settings.rpc_urls)
    explorer = ExplorerClient(settings.explorer_url, api_key=settings.explorer_api_key,
                              chain_id=settings.explorer_chain_id)
    chain = RpcChain(pool)
    source = FallbackLogSource(
        RpcLogSource(pool, contract=contract, topic0=topic0, tag_topic=tag,
                     initial_step=settings.initial_step, min_step=settings.min_step),
        ExplorerLogSource(explorer, contract=contract, topic0=topic0, tag_topic=tag,
                          page_size=settings.page_size),
    )
    engine = AggregationEngine(
        chain=chain,
        source=source,
        resolver=BlockTimeResolver(chain, explorer, safety_buffer=settings.safety_buffer),
        prune_keep=settings.prune_keep,
    )
    store, lock = build_store(settings)
    repo = StateRepository(store, lock, prefix=settings.key_prefix)
    names: NameResolver | None = NeynarNames(settings.neynar_api_key) if settings.neynar_api_key else None
    service = LeaderboardService(
        engine=engine, repo=repo, names=names,
        max_seconds=settings.max_seconds, max_top=settings.max_top,
        persist_partial=settings.persist_partial,
    )
    closers: list[Any] = [pool, explorer]
    if isinstance(store, UpstashStore):
        closers.append(store)
    if isinstance(names, NeynarNames):
        closers.append(names)
    return Runtime(service=service, repo=repo, _closers=closers)
