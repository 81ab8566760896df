from __future__ import annotations
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed, lowercase, 40 hex chars
Topic   = NewType("Topic", str)     # 66-char 0x-hash
WeekMs  = NewType("WeekMs", int)    # Monday 00:00:00 UTC, ms since epoch
ErrorKind = Literal["transient", "capability", "rejected", "unknown"]
PlanKind  = Literal["backfill", "rollover", "steady"]
PayloadLayout = Literal["bytes", "timestamped"]
