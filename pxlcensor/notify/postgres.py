from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from pxlcensor.notify.wake import WakeSignal
from pxlcensor.repositories.postgres import AsyncpgPoolManager, asyncpg_module

logger = logging.getLogger("runtime")

JOBS_CHANNEL = "jobs_channel"


@dataclass
class PostgresJobNotifier:
    """LISTEN/NOTIFY wake channel.

    Publishing goes through the shared pool. Listening needs a connection that
    stays out of the pool, so one is opened on the first subscribe and closed
    when the last subscriber leaves.
    """

    pool_manager: AsyncpgPoolManager
    dsn: str
    channel: str = JOBS_CHANNEL
    subscribers: list[WakeSignal] = field(default_factory=list)
    _listen_conn: Any | None = field(default=None, repr=False)

    async def publish(self) -> None:
        try:
            pool = self.pool_manager.acquire_pool()
            async with pool.acquire() as conn:
                await conn.execute("SELECT pg_notify($1, $2)", self.channel, "job")
        except Exception:
            # Polling picks the job up anyway.
            logger.warning("job notification failed", exc_info=True, extra={"detail": self.channel})

    async def subscribe(self, signal: WakeSignal) -> None:
        if signal in self.subscribers:
            return
        self.subscribers.append(signal)
        if self._listen_conn is None:
            if asyncpg_module is None:  # pragma: no cover
                raise RuntimeError("asyncpg is required for postgres notifications")
            self._listen_conn = await asyncpg_module.connect(dsn=self.dsn)
            await self._listen_conn.add_listener(self.channel, self._on_notification)
            logger.info("listening for job notifications", extra={"detail": self.channel})

    async def unsubscribe(self, signal: WakeSignal) -> None:
        if signal in self.subscribers:
            self.subscribers.remove(signal)
        if self.subscribers or self._listen_conn is None:
            return
        conn, self._listen_conn = self._listen_conn, None
        try:
            await conn.remove_listener(self.channel, self._on_notification)
        finally:
            await conn.close()

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        for signal in list(self.subscribers):
            signal.set()
