"""
Push channel protocol for calendar sync.

Every frame on the push channel is one JSON object carrying a ``type``
and the fields that type requires:

    INIT_DATA         server -> client   data, timestamp
    DATA_UPDATE       both directions    data, source?, timestamp
    UPDATE_CONFIRMED  server -> sender   lastModified, version, timestamp
    HEARTBEAT         server -> all      clients, timestamp
    PING / PONG       client <-> server  timestamp
    ERROR             server -> sender   message, timestamp
"""

import json
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from .document import CommitInfo, Document, now_ms
from .exceptions import DecodeError, UnknownMessageType

logger = logging.getLogger(__name__)

INVALID_MESSAGE_FORMAT = "invalid message format"


def _reject_constant(token: str) -> Any:
    raise ValueError(f"Non-standard JSON value {token}")


def _parse_finite_float(token: str) -> float:
    value = float(token)
    if not math.isfinite(value):
        raise ValueError(f"Number out of range: {token}")
    return value


def decode_json(raw: Union[str, bytes]) -> Any:
    """
    Parse strict JSON.

    NaN, Infinity and numbers that overflow a float are rejected, so every
    decoded value can be serialized back to standard JSON.

    Raises:
        ValueError: Malformed or non-standard JSON, or undecodable bytes.
    """
    return json.loads(
        raw,
        parse_constant=_reject_constant,
        parse_float=_parse_finite_float,
    )


class EnvelopeType(str, Enum):
    """Message types exchanged over the push channel."""
    INIT_DATA = "INIT_DATA"
    DATA_UPDATE = "DATA_UPDATE"
    UPDATE_CONFIRMED = "UPDATE_CONFIRMED"
    HEARTBEAT = "HEARTBEAT"
    ERROR = "ERROR"
    PING = "PING"
    PONG = "PONG"


@dataclass
class Envelope:
    """
    A single push channel message.

    Only the fields relevant to ``type`` are serialized.
    """
    type: EnvelopeType
    data: Optional[Any] = None
    source: Optional[str] = None
    last_modified: Optional[int] = None
    version: Optional[int] = None
    clients: Optional[int] = None
    message: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def init_data(cls, document: Document) -> "Envelope":
        return cls(type=EnvelopeType.INIT_DATA, data=document.to_dict())

    @classmethod
    def data_update(
        cls,
        document: Document,
        source: Optional[str] = None
    ) -> "Envelope":
        return cls(
            type=EnvelopeType.DATA_UPDATE,
            data=document.to_dict(),
            source=source
        )

    @classmethod
    def update_confirmed(cls, commit: CommitInfo) -> "Envelope":
        return cls(
            type=EnvelopeType.UPDATE_CONFIRMED,
            last_modified=commit.last_modified,
            version=commit.version
        )

    @classmethod
    def heartbeat(cls, clients: int) -> "Envelope":
        return cls(type=EnvelopeType.HEARTBEAT, clients=clients)

    @classmethod
    def error(cls, message: str) -> "Envelope":
        return cls(type=EnvelopeType.ERROR, message=message)

    @classmethod
    def pong(cls) -> "Envelope":
        return cls(type=EnvelopeType.PONG)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation of the envelope."""
        payload: Dict[str, Any] = {"type": self.type.value}

        if self.type in (EnvelopeType.INIT_DATA, EnvelopeType.DATA_UPDATE):
            payload["data"] = self.data
            if self.source is not None:
                payload["source"] = self.source
        elif self.type == EnvelopeType.UPDATE_CONFIRMED:
            payload["lastModified"] = self.last_modified
            payload["version"] = self.version
        elif self.type == EnvelopeType.HEARTBEAT:
            payload["clients"] = self.clients
        elif self.type == EnvelopeType.ERROR:
            payload["message"] = self.message

        payload["timestamp"] = self.timestamp
        return payload

    def to_json(self) -> str:
        """Serializes the envelope to a JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Envelope":
        """
        Decode an inbound frame.

        Raises:
            DecodeError: Frame is not a JSON object with a string ``type``.
            UnknownMessageType: ``type`` is not one of EnvelopeType.
        """
        try:
            parsed = decode_json(raw)
        except ValueError as e:
            raise DecodeError(INVALID_MESSAGE_FORMAT) from e

        if not isinstance(parsed, dict) or not isinstance(parsed.get("type"), str):
            raise DecodeError(INVALID_MESSAGE_FORMAT)

        try:
            message_type = EnvelopeType(parsed["type"])
        except ValueError:
            raise UnknownMessageType(parsed["type"])

        timestamp = parsed.get("timestamp")
        return cls(
            type=message_type,
            data=parsed.get("data"),
            source=parsed.get("source"),
            timestamp=timestamp if isinstance(timestamp, int) else now_ms(),
        )


__all__ = [
    "EnvelopeType",
    "Envelope",
    "INVALID_MESSAGE_FORMAT",
    "decode_json",
]
