"""Dispatch of inbound push channel messages."""

import logging
from typing import Optional, Union

from .engine import SyncEngine
from .exceptions import DecodeError, InvalidFormat, PersistenceError, UnknownMessageType
from .protocol import INVALID_MESSAGE_FORMAT, Envelope, EnvelopeType
from .registry import Connection

logger = logging.getLogger(__name__)


class MessageHandler:
    """
    Handles one inbound frame at a time for a connection.

    A bad frame is answered with ERROR; it never closes the connection.
    """

    def __init__(self, engine: SyncEngine):
        self.engine = engine

    @property
    def registry(self):
        return self.engine.registry

    async def handle(self, conn: Connection, raw: Union[str, bytes]) -> Optional[Envelope]:
        """
        Process a raw frame from ``conn``.

        Returns:
            The envelope queued back to ``conn``, or None if there is no reply.
        """
        try:
            message = Envelope.from_json(raw)
        except DecodeError:
            logger.warning(f"Undecodable message from {conn.id}")
            return self._reply(conn, Envelope.error(INVALID_MESSAGE_FORMAT))
        except UnknownMessageType as e:
            logger.info(f"Ignoring message type {e.message_type!r} from {conn.id}")
            return None

        if message.type == EnvelopeType.PING:
            conn.touch()
            return self._reply(conn, Envelope.pong())

        if message.type == EnvelopeType.DATA_UPDATE:
            return await self._handle_data_update(conn, message)

        # Server-to-client types have no meaning when sent by a client
        logger.info(f"Ignoring {message.type.value} sent by client {conn.id}")
        return None

    async def _handle_data_update(self, conn: Connection, message: Envelope) -> Envelope:
        try:
            commit = await self.engine.apply(message.data, originator=conn)
        except InvalidFormat as e:
            logger.warning(f"Rejected DATA_UPDATE from {conn.id}: {e}")
            return self._reply(conn, Envelope.error(str(e)))
        except PersistenceError as e:
            return self._reply(conn, Envelope.error(str(e)))

        return self._reply(conn, Envelope.update_confirmed(commit))

    def _reply(self, conn: Connection, envelope: Envelope) -> Envelope:
        self.registry.send(conn, envelope)
        return envelope


__all__ = [
    "MessageHandler",
]
