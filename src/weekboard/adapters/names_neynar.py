from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx

from ..domain.value_types import Address
from ..ports.names import NameResolver

logger = logging.getLogger(__name__)

NEYNAR_BULK_BY_ADDRESS = "https://api.neynar.com/v2/farcaster/user/bulk-by-address"


def _display(username: str) -> str:
    return f"{username}.farcaster.eth"


def _parse_users(body: Any, wanted: set[str]) -> dict[Address, str]:
    out: dict[Address, str] = {}
    if not isinstance(body, dict):
        return out
    # older shape: {"users": [{username, verified_addresses: {eth_addresses: [...]}}]}
    for u in body.get("users") or []:
        uname = (u or {}).get("username")
        for a in ((u or {}).get("verified_addresses") or {}).get("eth_addresses") or []:
            a = str(a).lower()
            if uname and a in wanted and a not in out:
                out[Address(a)] = _display(uname)
    # current shape: {"0xaddr": [{username, ...}, ...]}
    for k, users in body.items():
        a = str(k).lower()
        if a in wanted and a not in out and isinstance(users, list) and users:
            uname = (users[0] or {}).get("username")
            if uname:
                out[Address(a)] = _display(uname)
    return out


class NeynarNames(NameResolver):
    def __init__(
        self,
        api_key: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        chunk_size: int = 200,
        timeout_s: float = 10,
    ) -> None:
        self.api_key = api_key
        self.chunk_size = chunk_size
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))

    async def resolve(self, addresses: Sequence[Address]) -> dict[Address, str]:
        uniq = sorted({str(a).lower() for a in addresses if a})
        out: dict[Address, str] = {}
        for i in range(0, len(uniq), self.chunk_size):
            chunk = uniq[i:i+self.chunk_size]
            try:
                r = await self.client.get(
                    NEYNAR_BULK_BY_ADDRESS,
                    params={"addresses": ",".join(chunk)},
                    headers={"accept": "application/json", "x-api-key": self.api_key},
                )
                if r.status_code >= 400:
                    logger.warning("neynar lookup HTTP %s for %d addresses", r.status_code, len(chunk))
                    continue
                out.update(_parse_users(r.json(), set(chunk)))
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("neynar lookup failed for %d addresses: %s", len(chunk), e)
        return out

    async def aclose(self) -> None:
        await self.client.aclose()
