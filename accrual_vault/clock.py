"""
Clock Module

Time sources for the ledger. Timestamps are whole seconds, the unit the
accrual rate is expressed in.
"""

import time


class SystemClock:
    """Wall-clock time in whole seconds"""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """
    Clock advanced explicitly by the caller

    Used by tests and simulations to step time deterministically.
    """

    def __init__(self, start: int = 0):
        if start < 0:
            raise ValueError("Clock cannot start before zero")
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        """Move time forward and return the new timestamp"""
        if seconds < 0:
            raise ValueError("Clock can only move forward")
        self._now += seconds
        return self._now

    def set(self, timestamp: int) -> None:
        """Jump to an absolute timestamp no earlier than the current one"""
        if timestamp < self._now:
            raise ValueError("Clock can only move forward")
        self._now = timestamp
