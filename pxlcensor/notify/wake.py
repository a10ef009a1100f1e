from __future__ import annotations

import asyncio


class WakeSignal:
    """Coalescing wake-up flag shared between notifiers and one worker.

    Any number of set() calls between two waits collapse into one wake-up;
    receivers must re-query the queue instead of trusting a count.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float | None = None) -> bool:
        if self._event.is_set():
            self._event.clear()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        self._event.clear()
        return True
