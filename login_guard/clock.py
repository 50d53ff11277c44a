import time


class SystemClock:
    """Wall clock in integer epoch seconds. Swap for a fake in tests."""

    def now(self) -> int:
        return int(time.time())


system_clock = SystemClock()
