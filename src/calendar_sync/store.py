"""
Document storage for the calendar sync engine.

The engine only needs two operations from storage: ``load`` the last
persisted document at startup, and ``save`` a new one on every commit.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from .document import Document

logger = logging.getLogger(__name__)


class DocumentStore(ABC):
    """Interface for durable document storage."""

    @abstractmethod
    def load(self) -> Optional[Document]:
        """Return the persisted document, or None if nothing was saved yet."""
        pass

    @abstractmethod
    def save(self, document: Document) -> int:
        """Persist the document. Returns the persisted lastModified."""
        pass

    def size_bytes(self) -> Optional[int]:
        """Size of the persisted representation, if known."""
        return None


class JsonFileStore(DocumentStore):
    """
    Stores the document as a single pretty-printed JSON file.

    Writes go to a temporary file in the same directory which then
    replaces the target, so readers never see a partially written file.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[Document]:
        if not self.path.exists():
            logger.info(f"No data file at {self.path}")
            return None

        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        document = Document.from_dict(raw)
        logger.info(
            f"Loaded data file {self.path}: "
            f"{len(document.events)} events, {len(document.vacations)} vacations, "
            f"v{document.version}"
        )
        return document

    def save(self, document: Document) -> int:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(
                    document.to_dict(), f, indent=2, ensure_ascii=False, allow_nan=False
                )
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug(f"Saved v{document.version} to {self.path}")
        return document.last_modified

    def size_bytes(self) -> Optional[int]:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return None


__all__ = [
    "DocumentStore",
    "JsonFileStore",
]
