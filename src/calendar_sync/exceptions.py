"""Error taxonomy for the calendar sync core."""


class SyncError(Exception):
    """Base class for calendar sync errors."""


class InvalidFormat(SyncError, ValueError):
    """Candidate document failed shape validation (client fault)."""


class PersistenceError(SyncError):
    """The document store failed to save; in-memory state is unchanged."""


class DecodeError(SyncError, ValueError):
    """An inbound push message could not be decoded."""


class UnknownMessageType(SyncError):
    """An inbound push message carried a type this server does not handle."""

    def __init__(self, message_type: str):
        super().__init__(f"Unknown message type: {message_type}")
        self.message_type = message_type


class TransportFailure(SyncError):
    """A send to a single connection failed or timed out."""


__all__ = [
    "SyncError",
    "InvalidFormat",
    "PersistenceError",
    "DecodeError",
    "UnknownMessageType",
    "TransportFailure",
]
