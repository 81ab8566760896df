from __future__ import annotations
import time
from typing import Callable, Optional


class Deadline:
    """Wall-clock budget shared by every sub-fetch of one invocation."""

    def __init__(self, seconds: Optional[float], *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.at: Optional[float] = None if seconds is None else clock() + seconds

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> float:
        if self.at is None:
            return float("inf")
        return max(0.0, self.at - self._clock())

    def expired(self) -> bool:
        return self.at is not None and self._clock() >= self.at

    def clip(self, delay: float) -> float:
        """Shorten a sleep so it never runs past the deadline."""
        return max(0.0, min(delay, self.remaining()))

    def timeout(self, cap: float) -> float:
        """Per-request timeout: `cap`, shortened to what is left of the budget."""
        return min(cap, self.remaining())
