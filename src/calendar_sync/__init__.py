"""
Calendar Sync core.

Keeps one shared, versioned calendar document consistent across HTTP
callers and live push clients.

Components:
- document: Document model and shape validation
- store: DocumentStore interface and JSON file implementation
- protocol: push channel envelope and message types
- registry: connected push clients and best-effort fan-out
- engine: serialized writes, persistence and broadcast ordering
- monitor: heartbeat and stale-connection reaping
- handler: inbound push message dispatch
"""

from .document import (
    Document,
    CommitInfo,
    validate_document,
    now_ms,
)
from .exceptions import (
    SyncError,
    InvalidFormat,
    PersistenceError,
    DecodeError,
    UnknownMessageType,
    TransportFailure,
)
from .store import (
    DocumentStore,
    JsonFileStore,
)
from .protocol import (
    EnvelopeType,
    Envelope,
    INVALID_MESSAGE_FORMAT,
    decode_json,
)
from .registry import (
    ClientRegistry,
    Connection,
    ConnectionState,
)
from .engine import (
    SyncEngine,
    HTTP_SOURCE,
)
from .monitor import LivenessMonitor
from .handler import MessageHandler

__all__ = [
    # Document
    "Document",
    "CommitInfo",
    "validate_document",
    "now_ms",
    # Errors
    "SyncError",
    "InvalidFormat",
    "PersistenceError",
    "DecodeError",
    "UnknownMessageType",
    "TransportFailure",
    # Store
    "DocumentStore",
    "JsonFileStore",
    # Protocol
    "EnvelopeType",
    "Envelope",
    "INVALID_MESSAGE_FORMAT",
    "decode_json",
    # Registry
    "ClientRegistry",
    "Connection",
    "ConnectionState",
    # Engine
    "SyncEngine",
    "HTTP_SOURCE",
    # Monitor
    "LivenessMonitor",
    # Handler
    "MessageHandler",
]
