from __future__ import annotations

import logging
from typing import Optional

from ..domain.deadline import Deadline
from ..domain.errors import ProviderError
from ..domain.models import FetchResult
from ..ports.chain import LogSource

logger = logging.getLogger(__name__)


class FallbackLogSource(LogSource):
    """
    Try `primary`; if it raises, scan the same range with `secondary`.
    Whatever comes back is one strategy's own result, completeness included:
    a partial primary result is returned as-is and never topped up.
    """

    def __init__(self, primary: LogSource, secondary: Optional[LogSource] = None) -> None:
        self.primary = primary
        self.secondary = secondary
        self.name = primary.name if secondary is None else f"{primary.name}+{secondary.name}"

    async def fetch_logs(self, from_block: int, to_block: int, deadline: Deadline) -> FetchResult:
        if from_block > to_block:
            return FetchResult([], to_block, True)
        try:
            return await self.primary.fetch_logs(from_block, to_block, deadline)
        except ProviderError as e:
            if self.secondary is None:
                raise
            logger.warning("%s failed on [%d,%d] (%s: %s); falling back to %s",
                           self.primary.name, from_block, to_block, e.kind, e, self.secondary.name)
            try:
                return await self.secondary.fetch_logs(from_block, to_block, deadline)
            except ProviderError as e2:
                raise e2 from e
