"""
Calendar Document model.

The Document is the single shared state synchronized across clients:
a map of events, a map of vacations, and the metadata the engine assigns
on every accepted write.
"""

import copy
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from .exceptions import InvalidFormat

RESERVED_KEYS = ("events", "vacations", "lastModified", "version")


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def _as_int(value: Any) -> int:
    # bool is an int subclass but never a valid counter
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def validate_document(candidate: Any) -> Dict[str, Any]:
    """
    Check that a candidate document has the required shape.

    Args:
        candidate: Decoded JSON value received from a client.

    Returns:
        The candidate, typed as a dict.

    Raises:
        InvalidFormat: If candidate is not an object, or its events or
            vacations entries are missing or not objects.
    """
    if not isinstance(candidate, dict):
        raise InvalidFormat("Invalid data format")
    if not isinstance(candidate.get("events"), dict) or not isinstance(
        candidate.get("vacations"), dict
    ):
        raise InvalidFormat("Missing required fields events and vacations")
    return candidate


@dataclass(frozen=True)
class Document:
    """
    Immutable snapshot of the shared calendar document.

    Attributes:
        events: Event-key to opaque event record.
        vacations: Vacation-key to opaque vacation record.
        last_modified: Engine-assigned commit time (ms since epoch).
        version: Commit counter, +1 per accepted write.
        extra: Unknown top-level keys, preserved on round-trip.
    """
    events: Dict[str, Any] = field(default_factory=dict)
    vacations: Dict[str, Any] = field(default_factory=dict)
    last_modified: int = 0
    version: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def initial(cls) -> "Document":
        """Document used when nothing has been persisted yet."""
        return cls(last_modified=now_ms(), version=1)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Document":
        """
        Build a Document from its wire/persisted form.

        The shape is validated; absent or non-integer ``version`` and
        ``lastModified`` are read as 0.
        """
        validate_document(data)
        return cls(
            events=copy.deepcopy(data["events"]),
            vacations=copy.deepcopy(data["vacations"]),
            last_modified=_as_int(data.get("lastModified")),
            version=_as_int(data.get("version")),
            extra={
                k: copy.deepcopy(v)
                for k, v in data.items()
                if k not in RESERVED_KEYS
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the wire/persisted form (a deep copy)."""
        data = copy.deepcopy(self.extra)
        data.update({
            "events": copy.deepcopy(self.events),
            "vacations": copy.deepcopy(self.vacations),
            "lastModified": self.last_modified,
            "version": self.version,
        })
        return data

    def counts(self) -> Dict[str, int]:
        return {"events": len(self.events), "vacations": len(self.vacations)}


@dataclass(frozen=True)
class CommitInfo:
    """Result of an accepted write."""
    last_modified: int
    version: int


__all__ = [
    "Document",
    "CommitInfo",
    "validate_document",
    "now_ms",
]
