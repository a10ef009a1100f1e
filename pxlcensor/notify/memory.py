from __future__ import annotations

from dataclasses import dataclass, field

from pxlcensor.notify.wake import WakeSignal


@dataclass
class InMemoryJobNotifier:
    """Single-process notifier used in skeleton mode and tests."""

    subscribers: list[WakeSignal] = field(default_factory=list)
    published_total: int = 0

    async def publish(self) -> None:
        self.published_total += 1
        for signal in list(self.subscribers):
            signal.set()

    async def subscribe(self, signal: WakeSignal) -> None:
        if signal not in self.subscribers:
            self.subscribers.append(signal)

    async def unsubscribe(self, signal: WakeSignal) -> None:
        if signal in self.subscribers:
            self.subscribers.remove(signal)
