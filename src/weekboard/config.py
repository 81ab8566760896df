"""
Runtime configuration, read from the environment (and a local .env if present).

Shared store: set UPSTASH_REDIS_REST_URL / UPSTASH_REDIS_REST_TOKEN
(KV_REST_API_URL / KV_REST_API_TOKEN are accepted too). Without them the
leaderboard keeps state in process memory.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv
from eth_utils import is_address

DEFAULT_CONTRACT = "0xB331328F506f2D35125e367A190e914B1b6830cF"

# public Base RPCs first, so a restrictive free-tier URL in env can't block backfills
PUBLIC_BASE_RPCS = (
    "https://mainnet.base.org",
    "https://1rpc.io/base",
    "https://base.llamarpc.com",
)


def _csv(v: Optional[str]) -> list[str]:
    return [s.strip() for s in (v or "").split(",") if s.strip()]


def _flag(v: Optional[str]) -> bool:
    return (v or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(slots=True, frozen=True)
class Settings:
    contract: str = DEFAULT_CONTRACT.lower()
    rpc_urls: tuple[str, ...] = PUBLIC_BASE_RPCS
    explorer_url: str = "https://api.etherscan.io/v2/api"
    explorer_chain_id: Optional[int] = 8453
    explorer_api_key: str = ""
    upstash_url: str = ""
    upstash_token: str = ""
    neynar_api_key: str = ""
    key_prefix: str = "weekboard:lb:v6"
    max_seconds: float = 8.5
    prune_keep: int = 250
    max_top: int = 100
    persist_partial: bool = False
    event_signature: str = "ActionLogged(address,bytes32,uint256,bytes)"
    action_tag: str = "WEEKLY_ADD"
    initial_step: int = 8_000
    min_step: int = 900
    safety_buffer: int = 2_000
    page_size: int = 1_000

    def __post_init__(self) -> None:
        if not is_address(self.contract):
            raise ValueError(f"CONTRACT_ADDRESS is not an address: {self.contract!r}")
        if self.prune_keep < self.max_top:
            raise ValueError(f"prune_keep ({self.prune_keep}) must be >= max_top ({self.max_top})")
        if not self.rpc_urls:
            raise ValueError("at least one RPC url is required")
        if self.min_step < 1 or self.initial_step < self.min_step:
            raise ValueError("initial_step must be >= min_step >= 1")

    @property
    def has_shared_store(self) -> bool:
        return bool(self.upstash_url and self.upstash_token)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_dotenv()
            env = os.environ
        g = env.get
        urls: list[str] = []
        for u in [*PUBLIC_BASE_RPCS, g("RPC_URL", ""), *_csv(g("RPC_URLS"))]:
            if u and u not in urls:
                urls.append(u)
        chain_id = g("EXPLORER_CHAIN_ID", "8453").strip()
        return cls(
            contract=(g("CONTRACT_ADDRESS") or DEFAULT_CONTRACT).strip().lower(),
            rpc_urls=tuple(urls),
            explorer_url=g("EXPLORER_API_URL") or "https://api.etherscan.io/v2/api",
            explorer_chain_id=int(chain_id) if chain_id else None,
            explorer_api_key=g("BASESCAN_API_KEY") or g("BASESCAN_KEY") or "",
            upstash_url=g("UPSTASH_REDIS_REST_URL") or g("KV_REST_API_URL") or "",
            upstash_token=g("UPSTASH_REDIS_REST_TOKEN") or g("KV_REST_API_TOKEN") or "",
            neynar_api_key=g("NEYNAR_API_KEY", ""),
            key_prefix=g("LEADERBOARD_KEY_PREFIX") or "weekboard:lb:v6",
            max_seconds=float(g("LEADERBOARD_MAX_SECONDS") or 8.5),
            prune_keep=int(g("LEADERBOARD_PRUNE_KEEP") or 250),
            max_top=int(g("LEADERBOARD_MAX_TOP") or 100),
            persist_partial=_flag(g("LEADERBOARD_PERSIST_PARTIAL")),
        )
