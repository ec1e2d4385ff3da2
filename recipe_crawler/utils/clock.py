"""Clock and sleep primitive shared by the pacer, health tracker, and executor."""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Time source. Inject a fake in tests for deterministic pacing."""

    def now(self) -> float:
        """Current time in seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``."""
        ...


class SystemClock:
    """Wall clock backed by time.time() and asyncio.sleep()."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.sleep(0)
