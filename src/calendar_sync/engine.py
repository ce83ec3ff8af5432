"""
Synchronization Engine for the shared calendar document.

The engine is the only writer of the document. Every write, whether it
arrived over HTTP or over the push channel, runs through one serialized
critical section:

    validate -> assign version/lastModified -> persist -> swap -> broadcast

so commits get unique, strictly increasing versions and broadcasts are
queued in commit order. Broadcasting only queues envelopes; the network
sends happen on per-connection sender tasks outside the critical section.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .document import CommitInfo, Document, now_ms, validate_document
from .exceptions import PersistenceError
from .protocol import Envelope
from .registry import ClientRegistry, Connection
from .store import DocumentStore

logger = logging.getLogger(__name__)

HTTP_SOURCE = "http"


class SyncEngine:
    """
    Owner of the calendar document.

    Handles:
    1. Loading (or creating) the document at startup.
    2. Serialized, persisted, version-stamped writes.
    3. DATA_UPDATE fan-out after each commit.
    4. Registering push clients against a consistent snapshot.
    """

    def __init__(self, store: DocumentStore, registry: ClientRegistry):
        """
        Args:
            store: Durable storage for the document.
            registry: Push clients to notify after each commit.
        """
        self.store = store
        self.registry = registry

        self._document: Optional[Document] = None
        self._write_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._document is not None

    async def initialize(self) -> Document:
        """Load the persisted document, creating and saving one if absent."""
        document = await asyncio.to_thread(self.store.load)

        if document is None:
            document = Document.initial()
            await asyncio.to_thread(self.store.save, document)
            logger.info("Created initial calendar document")

        self._document = document
        logger.info(
            f"Sync engine ready at v{document.version} "
            f"({len(document.events)} events, {len(document.vacations)} vacations)"
        )
        return document

    def get(self) -> Document:
        """Current document snapshot. Never mutate it in place."""
        if self._document is None:
            raise RuntimeError("Sync engine is not initialized")
        return self._document

    async def apply(
        self,
        candidate: Any,
        originator: Optional[Connection] = None
    ) -> CommitInfo:
        """
        Validate, persist and publish a whole-document replacement.

        Args:
            candidate: Decoded JSON document from a client. Any client-sent
                ``version`` or ``lastModified`` is ignored.
            originator: Push connection the write came from; it is left
                out of the DATA_UPDATE broadcast. None for HTTP writes.

        Returns:
            CommitInfo with the assigned lastModified and version.

        Raises:
            InvalidFormat: Candidate failed shape validation.
            PersistenceError: The store failed; the document is unchanged.
        """
        validate_document(candidate)

        async with self._write_lock:
            current = self.get()
            document = Document.from_dict({
                **candidate,
                "lastModified": max(now_ms(), current.last_modified),
                "version": current.version + 1,
            })

            try:
                await asyncio.to_thread(self.store.save, document)
            except Exception as e:
                logger.error(
                    f"Failed to persist v{document.version}: {e}",
                    exc_info=True
                )
                raise PersistenceError(f"Failed to save data: {e}") from e

            self._document = document
            commit = CommitInfo(
                last_modified=document.last_modified,
                version=document.version
            )
            source = originator.id if originator is not None else HTTP_SOURCE
            logger.info(
                f"Committed v{commit.version} from {source}: "
                f"{len(document.events)} events, {len(document.vacations)} vacations"
            )

            self.registry.broadcast(
                Envelope.data_update(document, source=source),
                exclude=originator
            )

        return commit

    async def attach(self, conn: Connection) -> None:
        """Register a push client; its first message is INIT_DATA of the current document."""
        async with self._write_lock:
            self.registry.register(conn, self.get())

    def detach(self, conn: Connection) -> None:
        self.registry.unregister(conn)

    def stats(self) -> Dict[str, Any]:
        """Counts and metadata for the stats endpoint."""
        document = self.get()
        return {
            "totalEvents": len(document.events),
            "totalVacations": len(document.vacations),
            "lastModified": document.last_modified,
            "version": document.version,
            "fileSize": self.store.size_bytes(),
            "connectedClients": self.registry.size(),
        }


__all__ = [
    "SyncEngine",
    "HTTP_SOURCE",
]
