"""
Injectable time source.

The reconciler, scoring engine and store take a Clock instead of reading the
wall clock directly, so tests can drive time deterministically.
"""
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


system_clock = SystemClock()
