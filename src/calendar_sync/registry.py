"""
Client Registry for the calendar push channel.

Tracks every connected push client and fans envelopes out to them.
Each connection has its own outbox drained by a dedicated sender task,
so queuing an envelope never waits on the network. A send that fails or
exceeds the timeout marks only that connection stale.
"""

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Dict, List, Optional, Protocol

from .document import Document
from .exceptions import TransportFailure
from .protocol import Envelope

logger = logging.getLogger(__name__)


class PushSocket(Protocol):
    """The subset of a WebSocket the registry relies on."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionState(str, Enum):
    """Liveness state of a push connection."""
    CONNECTING = "CONNECTING"
    ALIVE = "ALIVE"
    STALE = "STALE"
    CLOSED = "CLOSED"


class Connection:
    """
    Handle for one live push client.

    State only moves forward: CONNECTING -> ALIVE -> STALE -> CLOSED.
    A stale or closed client has to reconnect to rejoin.
    """

    def __init__(self, socket: PushSocket, client_id: Optional[str] = None):
        self.socket = socket
        self.id = client_id or str(uuid.uuid4())
        self.state = ConnectionState.CONNECTING
        self.connected_at = time.time()
        self.last_heartbeat_ack: Optional[float] = None
        self.failed_sends = 0

        self.outbox: "asyncio.Queue[Envelope]" = asyncio.Queue()
        self.sender: Optional[asyncio.Task] = None

    @property
    def is_alive(self) -> bool:
        return self.state == ConnectionState.ALIVE

    def mark_alive(self) -> None:
        if self.state == ConnectionState.CONNECTING:
            self.state = ConnectionState.ALIVE

    def mark_stale(self) -> None:
        if self.state in (ConnectionState.CONNECTING, ConnectionState.ALIVE):
            self.state = ConnectionState.STALE

    def mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED

    def touch(self) -> None:
        """Record proof of life from the client."""
        if self.is_alive:
            self.last_heartbeat_ack = time.time()

    async def send(self, envelope: Envelope, timeout: float) -> None:
        """
        Send one envelope, bounded by ``timeout`` seconds.

        Raises:
            TransportFailure: The send raised or did not finish in time.
        """
        try:
            await asyncio.wait_for(
                self.socket.send_text(envelope.to_json()),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportFailure(
                f"Send to {self.id} timed out after {timeout}s"
            ) from e
        except Exception as e:
            raise TransportFailure(f"Send to {self.id} failed: {e}") from e

    def drop_pending(self) -> int:
        """Discard queued envelopes. Returns how many were dropped."""
        dropped = 0
        while True:
            try:
                self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            self.outbox.task_done()
            dropped += 1

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, state={self.state.value})"


class ClientRegistry:
    """
    Registry of connected push clients.

    Handles:
    1. Registering a client with INIT_DATA queued ahead of anything else.
    2. Per-connection ordered delivery off the caller's path.
    3. Marking clients stale on failed sends so the reaper can reclaim them.
    """

    def __init__(self, send_timeout: float = 5.0):
        """
        Args:
            send_timeout: Upper bound in seconds for any single send.
        """
        self.send_timeout = send_timeout
        self._connections: Dict[str, Connection] = {}

    def register(self, conn: Connection, document: Document) -> None:
        """
        Add a connection and queue its INIT_DATA snapshot.

        INIT_DATA is the first envelope in the connection's outbox, so it is
        delivered before any broadcast queued afterwards. If that send
        fails the connection turns stale and the reaper releases it.
        """
        self._connections[conn.id] = conn
        conn.outbox.put_nowait(Envelope.init_data(document))
        conn.mark_alive()
        conn.sender = asyncio.create_task(self._deliver(conn))

        logger.info(
            f"Client {conn.id} registered at v{document.version} "
            f"({self.size()} connected)"
        )

    def unregister(self, conn: Connection) -> None:
        """Remove a connection. Safe to call repeatedly or for unknown handles."""
        conn.mark_closed()
        if conn.sender is not None:
            conn.sender.cancel()
        conn.drop_pending()

        if self._connections.pop(conn.id, None) is not None:
            logger.info(
                f"Client {conn.id} unregistered after "
                f"{time.time() - conn.connected_at:.1f}s ({self.size()} connected)"
            )

    def send(self, conn: Connection, envelope: Envelope) -> bool:
        """
        Queue an envelope for one connection.

        Returns:
            True if queued; False if the connection is not alive.
        """
        if not conn.is_alive:
            return False
        conn.outbox.put_nowait(envelope)
        return True

    def broadcast(
        self,
        envelope: Envelope,
        exclude: Optional[Connection] = None
    ) -> int:
        """
        Queue an envelope for every alive connection except ``exclude``.

        Returns:
            Number of connections the envelope was queued for.
        """
        queued = sum(
            1 for conn in list(self._connections.values())
            if conn is not exclude and self.send(conn, envelope)
        )
        logger.debug(f"Broadcast {envelope.type.value} queued for {queued} clients")
        return queued

    async def flush(self) -> None:
        """Wait until every queued envelope has been sent or dropped."""
        await asyncio.gather(
            *(conn.outbox.join() for conn in self.connections())
        )

    async def _deliver(self, conn: Connection) -> None:
        """Send queued envelopes to one connection, in order, until a send fails."""
        while True:
            envelope = await conn.outbox.get()
            try:
                await conn.send(envelope, self.send_timeout)
            except TransportFailure as e:
                conn.failed_sends += 1
                conn.mark_stale()
                dropped = conn.drop_pending()
                logger.warning(
                    f"Marking client {conn.id} stale ({dropped} queued dropped): {e}"
                )
                return
            finally:
                conn.outbox.task_done()

    def size(self) -> int:
        """Number of registered connections, whatever their state."""
        return len(self._connections)

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def reclaimable(self) -> List[Connection]:
        """Connections that are stale or closed and awaiting removal."""
        return [
            conn for conn in self._connections.values()
            if conn.state in (ConnectionState.STALE, ConnectionState.CLOSED)
        ]

    def stats(self) -> Dict[str, int]:
        """Registered connections counted per state."""
        by_state = {state.value: 0 for state in ConnectionState}
        for conn in self._connections.values():
            by_state[conn.state.value] += 1
        return by_state

    async def close_connection(self, conn: Connection, code: int = 1000) -> None:
        """Unregister and best-effort close the underlying socket."""
        self.unregister(conn)
        try:
            await asyncio.wait_for(conn.socket.close(code=code), timeout=self.send_timeout)
        except Exception as e:
            logger.debug(f"Close of {conn.id} failed: {e}")

    async def close_all(self) -> None:
        """Close every connection (used on shutdown)."""
        connections = self.connections()
        await asyncio.gather(
            *(self.close_connection(conn, code=1001) for conn in connections)
        )
        if connections:
            logger.info(f"Closed {len(connections)} push connections")


__all__ = [
    "ClientRegistry",
    "Connection",
    "ConnectionState",
    "PushSocket",
]
