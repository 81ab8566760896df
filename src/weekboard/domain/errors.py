from __future__ import annotations

from typing import TYPE_CHECKING

from .value_types import ErrorKind

if TYPE_CHECKING:
    from .models import AggregationState


class ProviderError(RuntimeError):
    """A chain/indexer backend failure, classified once by the adapter that saw it.

    `kind` drives every retry decision downstream:
      - transient:  rate limit, timeout, network failure -> back off, same range
      - capability: range too large -> shrink the chunk
      - rejected:   provider refuses the range outright -> switch strategy
      - unknown:    anything else -> rotate endpoint
    """

    def __init__(self, message: str, *, kind: ErrorKind, source: str = "") -> None:
        super().__init__(message)
        self.kind: ErrorKind = kind
        self.source = source

    @property
    def retryable(self) -> bool:
        return self.kind in ("transient", "unknown")


class DecodeError(ValueError):
    """Malformed log payload. Never escapes the codec's public functions."""


class PersistenceError(RuntimeError):
    """Key-value store failure (transport, store-side error or bad payload)."""


class AggregationError(RuntimeError):
    """Unexpected failure while advancing cursors.

    `partial` is the working copy as of the last cursor advance that completed;
    the state passed into the engine is never mutated.
    """

    def __init__(self, message: str, *, partial: AggregationState | None = None) -> None:
        super().__init__(message)
        self.partial = partial


class DeadlineExceeded(ProviderError):
    """The invocation budget ran out before a blocking lookup could finish.

    Scan loops treat it like any transient failure and return their partial
    result; lookups with no partial answer (block resolution) let it propagate.
    """

    def __init__(self, message: str, *, source: str = "") -> None:
        super().__init__(message, kind="transient", source=source)
