"""Tests for the Synchronization Engine."""
import asyncio

import pytest

from src.calendar_sync import (
    ClientRegistry,
    ConnectionState,
    Document,
    InvalidFormat,
    PersistenceError,
    SyncEngine,
)


class TestInitialize:
    """Tests for SyncEngine.initialize."""

    @pytest.mark.asyncio
    async def test_loads_persisted_document(self, registry, make_store):
        persisted = Document(events={"e1": {}}, vacations={}, last_modified=10, version=9)
        engine = SyncEngine(make_store(persisted), registry)

        await engine.initialize()

        assert engine.get() == persisted

    @pytest.mark.asyncio
    async def test_creates_initial_document_when_absent(self, registry, make_store):
        store = make_store()
        engine = SyncEngine(store, registry)

        doc = await engine.initialize()

        assert doc.version == 1
        assert doc.events == {} and doc.vacations == {}
        assert store.saved == [doc]

    @pytest.mark.asyncio
    async def test_get_before_initialize(self, registry, make_store):
        engine = SyncEngine(make_store(), registry)
        assert not engine.initialized
        with pytest.raises(RuntimeError):
            engine.get()


class TestApply:
    """Tests for SyncEngine.apply."""

    @pytest.mark.asyncio
    async def test_increments_version_and_timestamp(self, engine, sample_document):
        before = engine.get()

        commit = await engine.apply(sample_document)

        after = engine.get()
        assert commit.version == before.version + 1
        assert after.version == commit.version
        assert commit.last_modified >= before.last_modified
        assert after.events == sample_document["events"]

    @pytest.mark.asyncio
    async def test_client_metadata_is_ignored(self, engine):
        commit = await engine.apply({
            "events": {},
            "vacations": {},
            "version": 500,
            "lastModified": 1,
        })

        assert commit.version == 2
        assert commit.last_modified > 1

    @pytest.mark.asyncio
    async def test_last_modified_never_goes_backwards(self, registry, make_store):
        future = 10 ** 15
        engine = SyncEngine(make_store(Document(last_modified=future, version=1)), registry)
        await engine.initialize()

        commit = await engine.apply({"events": {}, "vacations": {}})

        assert commit.last_modified == future

    @pytest.mark.asyncio
    async def test_whole_document_replace(self, engine):
        await engine.apply({"events": {"a": 1}, "vacations": {"v": 1}})
        await engine.apply({"events": {"b": 2}, "vacations": {}})

        doc = engine.get()
        assert doc.events == {"b": 2}
        assert doc.vacations == {}

    @pytest.mark.asyncio
    async def test_persists_before_commit(self, engine, store, sample_document):
        commit = await engine.apply(sample_document)
        assert store.saved[-1].version == commit.version

    @pytest.mark.asyncio
    async def test_invalid_format_leaves_state(self, engine, store):
        before = engine.get()
        saved = len(store.saved)

        with pytest.raises(InvalidFormat):
            await engine.apply(["not", "an", "object"])

        assert engine.get() is before
        assert len(store.saved) == saved

    @pytest.mark.asyncio
    async def test_persistence_failure_leaves_state(
        self, engine, store, make_connection, sample_document
    ):
        listener = make_connection()
        await engine.attach(listener)
        before = engine.get()
        store.fail = True

        with pytest.raises(PersistenceError):
            await engine.apply(sample_document)

        assert engine.get() is before
        await engine.registry.flush()
        assert listener.socket.types() == ["INIT_DATA"]

    @pytest.mark.asyncio
    async def test_concurrent_writes_are_serialized(self, engine, store):
        candidates = [
            {"events": {f"e{i}": {"n": i}}, "vacations": {}} for i in range(20)
        ]

        commits = await asyncio.gather(*(engine.apply(c) for c in candidates))

        versions = sorted(c.version for c in commits)
        assert versions == list(range(2, 22))
        assert [d.version for d in store.saved] == versions
        assert engine.get().version == 21


class TestBroadcastOnCommit:
    """Commits are pushed to connected clients."""

    @pytest.mark.asyncio
    async def test_http_write_reaches_every_client(
        self, engine, make_connection, sample_document
    ):
        a, b = make_connection(), make_connection()
        await engine.attach(a)
        await engine.attach(b)

        commit = await engine.apply(sample_document)
        await engine.registry.flush()

        for conn in (a, b):
            update = conn.socket.sent[-1]
            assert update["type"] == "DATA_UPDATE"
            assert update["source"] == "http"
            assert update["data"]["version"] == commit.version

    @pytest.mark.asyncio
    async def test_push_write_skips_originator(
        self, engine, make_connection, sample_document
    ):
        sender, other = make_connection(), make_connection()
        await engine.attach(sender)
        await engine.attach(other)

        await engine.apply(sample_document, originator=sender)
        await engine.registry.flush()

        assert sender.socket.types() == ["INIT_DATA"]
        assert other.socket.types() == ["INIT_DATA", "DATA_UPDATE"]
        assert other.socket.sent[-1]["source"] == sender.id

    @pytest.mark.asyncio
    async def test_broadcast_order_matches_commit_order(self, engine, make_connection):
        listener = make_connection()
        await engine.attach(listener)

        await asyncio.gather(*(
            engine.apply({"events": {str(i): i}, "vacations": {}}) for i in range(10)
        ))
        await engine.registry.flush()

        versions = [m["data"]["version"] for m in listener.socket.sent[1:]]
        assert versions == list(range(2, 12))

    @pytest.mark.asyncio
    async def test_failing_client_does_not_fail_write(
        self, engine, make_connection, sample_document
    ):
        good = make_connection()
        await engine.attach(good)
        broken = make_connection()
        await engine.attach(broken)
        await engine.registry.flush()
        broken.socket.send_text = _raise_on_send

        commit = await engine.apply(sample_document)
        await engine.registry.flush()

        assert commit.version == 2
        assert good.socket.sent[-1]["data"]["version"] == 2
        assert broken.state == ConnectionState.STALE

    @pytest.mark.asyncio
    async def test_stalled_client_does_not_block_writers(
        self, make_store, make_connection
    ):
        registry = ClientRegistry(send_timeout=5.0)
        engine = SyncEngine(make_store(Document(version=1)), registry)
        await engine.initialize()
        stalled, listener = make_connection("stalling"), make_connection()
        await engine.attach(stalled)
        await engine.attach(listener)

        started = asyncio.get_running_loop().time()
        commits = await asyncio.gather(
            engine.apply({"events": {"a": 1}, "vacations": {}}),
            engine.apply({"events": {"b": 2}, "vacations": {}}),
        )
        elapsed = asyncio.get_running_loop().time() - started

        assert elapsed < 1.0
        assert sorted(c.version for c in commits) == [2, 3]
        await asyncio.wait_for(listener.outbox.join(), timeout=1.0)
        assert [m["data"]["version"] for m in listener.socket.sent] == [1, 2, 3]
        await registry.close_all()


class TestAttach:
    """Registration happens against a consistent snapshot."""

    @pytest.mark.asyncio
    async def test_init_data_equals_current_document(self, engine, make_connection):
        await engine.apply({"events": {"x": 1}, "vacations": {}})
        conn = make_connection()

        await engine.attach(conn)
        await engine.registry.flush()

        assert len(conn.socket.sent) == 1
        assert conn.socket.sent[0]["type"] == "INIT_DATA"
        assert conn.socket.sent[0]["data"] == engine.get().to_dict()

    @pytest.mark.asyncio
    async def test_attach_during_writes_sees_init_first(self, engine, make_connection):
        conn = make_connection()
        writes = [
            engine.apply({"events": {str(i): i}, "vacations": {}}) for i in range(5)
        ]

        await asyncio.gather(engine.attach(conn), *writes)
        await engine.registry.flush()

        sent = conn.socket.sent
        assert sent[0]["type"] == "INIT_DATA"
        versions = [sent[0]["data"]["version"]] + [m["data"]["version"] for m in sent[1:]]
        assert versions == list(range(versions[0], 7))

    @pytest.mark.asyncio
    async def test_detach(self, engine, make_connection):
        conn = make_connection()
        await engine.attach(conn)
        engine.detach(conn)
        engine.detach(conn)
        assert engine.registry.size() == 0


class TestStats:
    """Tests for SyncEngine.stats."""

    @pytest.mark.asyncio
    async def test_stats(self, engine, make_connection):
        await engine.apply({"events": {"a": 1, "b": 2}, "vacations": {"v": 1}})
        await engine.attach(make_connection())

        stats = engine.stats()

        assert stats == {
            "totalEvents": 2,
            "totalVacations": 1,
            "lastModified": engine.get().last_modified,
            "version": 2,
            "fileSize": 42,
            "connectedClients": 1,
        }


async def _raise_on_send(data):
    raise BrokenPipeError("closed")
