from __future__ import annotations

from typing import Protocol, Sequence

from ..domain.value_types import Address


class NameResolver(Protocol):
    async def resolve(self, addresses: Sequence[Address]) -> dict[Address, str]:
        """Return a partial address -> display name mapping. Must not raise."""
