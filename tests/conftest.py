"""Pytest fixtures for Calendar Sync tests."""
import asyncio
import json
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient

from src.api.server import create_app, limiter
from src.calendar_sync import (
    ClientRegistry,
    Connection,
    Document,
    DocumentStore,
    SyncEngine,
)
from src.core.config import Settings


# --- Fake sockets ---

class RecordingSocket:
    """Socket double that records every decoded frame it is sent."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.closed_with: Optional[int] = None

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]


class FailingSocket(RecordingSocket):
    """Socket double whose sends always fail."""

    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def send_text(self, data: str) -> None:
        self.attempts += 1
        raise ConnectionResetError("peer went away")


class StallingSocket(RecordingSocket):
    """Socket double whose sends never complete."""

    async def send_text(self, data: str) -> None:
        await asyncio.sleep(3600)


class MemoryStore(DocumentStore):
    """In-memory DocumentStore that can be told to fail."""

    def __init__(self, document: Optional[Document] = None):
        self.document = document
        self.saved: List[Document] = []
        self.fail = False

    def load(self) -> Optional[Document]:
        return self.document

    def save(self, document: Document) -> int:
        if self.fail:
            raise OSError("disk full")
        self.document = document
        self.saved.append(document)
        return document.last_modified

    def size_bytes(self) -> Optional[int]:
        return 42 if self.document is not None else None


# --- Core fixtures ---

@pytest.fixture
def store() -> MemoryStore:
    """Store pre-populated with a version 1 empty document."""
    return MemoryStore(Document(last_modified=1_000, version=1))


@pytest.fixture
def make_store():
    """Factory fixture for MemoryStore instances."""
    return MemoryStore


@pytest.fixture
async def registry() -> AsyncGenerator[ClientRegistry, None]:
    """Registry with a short send timeout; its sender tasks are stopped afterwards."""
    registry = ClientRegistry(send_timeout=0.2)
    yield registry
    await registry.close_all()


@pytest.fixture
async def engine(store: MemoryStore, registry: ClientRegistry) -> SyncEngine:
    engine = SyncEngine(store, registry)
    await engine.initialize()
    return engine


@pytest.fixture
def make_connection():
    """Factory fixture: make_connection("ok" | "failing" | "stalling")."""
    kinds = {
        "ok": RecordingSocket,
        "failing": FailingSocket,
        "stalling": StallingSocket,
    }

    def _make(kind: str = "ok", client_id: Optional[str] = None) -> Connection:
        return Connection(kinds[kind](), client_id=client_id)
    return _make


@pytest.fixture
def sample_document() -> Dict[str, Any]:
    """Candidate document as a client would send it."""
    return {
        "events": {"2024-05-01": {"person": "anna", "shift": "night"}},
        "vacations": {},
    }


# --- Application fixtures ---

@pytest.fixture(autouse=True)
def disable_rate_limiting() -> Generator[None, None, None]:
    """Disable rate limiting for tests."""
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        data_file=tmp_path / "data" / "calendar-data.json",
        environment="test",
        heartbeat_interval=3600.0,
        reap_interval=3600.0,
        send_timeout=1.0,
    )


@pytest.fixture
def test_client(test_settings: Settings) -> Generator[TestClient, None, None]:
    """Test client running the full lifespan against a temporary data file."""
    app = create_app(test_settings)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def failing_store() -> MemoryStore:
    return MemoryStore(Document(last_modified=1_000, version=1))


@pytest.fixture
def failing_store_client(
    test_settings: Settings,
    failing_store: MemoryStore,
) -> Generator[TestClient, None, None]:
    """Test client whose store can be switched to fail after startup."""
    app = create_app(test_settings, store=failing_store)
    with TestClient(app) as client:
        yield client
