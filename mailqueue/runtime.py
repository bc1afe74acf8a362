"""
Clock and cooperative shutdown primitives shared by all queue loops.
"""

import asyncio
import time
from collections.abc import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


class RunningFlag:
    """
    Shared running flag checked by every loop between suspension points.

    Clearing the flag never interrupts work in progress; loops observe it
    after finishing their current unit of work. Interval sleeps wake early
    when the flag is cleared. One-shot operations run outside a started
    loop check `is_stopped` instead of `is_running`.
    """

    def __init__(self) -> None:
        self._running = False
        self._stopped = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_stopped(self) -> bool:
        """True once `stop()` was called; a never-started flag is not stopped."""
        return self._stopped.is_set()

    def start(self) -> None:
        self._running = True
        self._stopped.clear()

    def stop(self) -> None:
        self._running = False
        self._stopped.set()

    async def sleep(self, seconds: float) -> None:
        """Sleep for up to `seconds`, returning early once stopped."""
        if not self._running:
            return
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except TimeoutError:
            pass
