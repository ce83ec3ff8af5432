"""
Liveness Monitor for push connections.

Runs two independent periodic loops over the Client Registry:
- heartbeat: broadcast HEARTBEAT with the connected client count
- reap: drop connections that are stale or closed
"""

import asyncio
import logging
from typing import List, Optional

from .protocol import Envelope
from .registry import ClientRegistry

logger = logging.getLogger(__name__)


class LivenessMonitor:
    """Heartbeat and reaping schedule for a ClientRegistry."""

    def __init__(
        self,
        registry: ClientRegistry,
        heartbeat_interval: float = 30.0,
        reap_interval: float = 60.0
    ):
        self.registry = registry
        self.heartbeat_interval = heartbeat_interval
        self.reap_interval = reap_interval

        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def heartbeat_once(self) -> int:
        """Queue one HEARTBEAT round. Returns the number of clients it was queued for."""
        envelope = Envelope.heartbeat(clients=self.registry.size())
        queued = self.registry.broadcast(envelope)
        logger.debug(f"Heartbeat queued for {queued} clients")
        return queued

    async def reap_once(self) -> int:
        """Remove every stale or closed connection. Returns how many were removed."""
        reclaimable = self.registry.reclaimable()
        await asyncio.gather(*(
            self.registry.close_connection(conn, code=1011) for conn in reclaimable
        ))

        if reclaimable:
            logger.info(
                f"Reaped {len(reclaimable)} dead connections "
                f"({self.registry.size()} remaining)"
            )
        return len(reclaimable)

    async def start(self) -> None:
        """Start both loops."""
        if self._tasks:
            logger.warning("Liveness monitor is already running.")
            return

        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._tasks = [
            asyncio.create_task(
                self._run_every(
                    stop_event, self.heartbeat_interval, self.heartbeat_once, "heartbeat"
                )
            ),
            asyncio.create_task(
                self._run_every(stop_event, self.reap_interval, self.reap_once, "reap")
            ),
        ]
        logger.info(
            f"Liveness monitor started (heartbeat {self.heartbeat_interval}s, "
            f"reap {self.reap_interval}s)"
        )

    async def stop(self) -> None:
        """Stop both loops and wait for them to finish."""
        if self._stop_event is not None:
            self._stop_event.set()

        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._tasks.clear()
        logger.info("Liveness monitor stopped.")

    async def _run_every(
        self,
        stop_event: asyncio.Event,
        interval: float,
        tick,
        name: str
    ) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await tick()
            except Exception as e:
                logger.error(f"Liveness {name} tick failed: {e}", exc_info=True)


__all__ = [
    "LivenessMonitor",
]
