"""Time source used by polling loops, grace periods and leases."""

import time
from datetime import datetime, timezone


class Clock:
    """Wall clock plus blocking sleep. Swap for a simulated clock in tests."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


SYSTEM_CLOCK = Clock()
