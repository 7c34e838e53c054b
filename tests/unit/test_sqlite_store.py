"""
Unit tests for the SQLite document store.

Tests cover:
- Partition database lifecycle
- Point and batched reads
- Conditional writes with integer versions
- Queries across partition files
- Error translation
"""

import sqlite3
import tempfile
from contextlib import contextmanager
from pathlib import Path

import pytest

from docgraph.entity import Entity
from docgraph.errors import AccessDeniedError, NotFoundError, SerializationError
from docgraph.predicates import where
from docgraph.registry import SchemaRegistry
from docgraph.schema import EntityTypeDef, field
from docgraph.stores.sqlite import SqliteDocumentStore


def deny_writes(action, *args):
    if action in (sqlite3.SQLITE_INSERT, sqlite3.SQLITE_UPDATE, sqlite3.SQLITE_DELETE):
        return sqlite3.SQLITE_DENY
    return sqlite3.SQLITE_OK


class ReadOnlySqliteStore(SqliteDocumentStore):
    """Store whose connections refuse every data change."""

    @contextmanager
    def _get_connection(self, partition, create=False):
        with super()._get_connection(partition, create=create) as conn:
            conn.set_authorizer(deny_writes)
            yield conn


class TestSqliteDocumentStore:
    """Tests for SqliteDocumentStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def registry(self):
        registry = SchemaRegistry()
        registry.register(EntityTypeDef(name="Task", fields=(field("title", "str"),)))
        return registry

    @pytest.fixture
    def store(self, data_dir, registry):
        """Create a store instance."""
        return SqliteDocumentStore(data_dir, registry=registry)

    async def _create(self, store, key, partition, payload, type_name="Task"):
        result = await store.conditional_write(
            Entity(key, partition, payload, type_name=type_name), None
        )
        assert result.ok
        return result.entity

    @pytest.mark.asyncio
    async def test_initialize_partition(self, store, data_dir):
        """Initializing creates one database file."""
        await store.initialize_partition("tenant-1")
        assert await store.partition_exists("tenant-1")
        assert len(list(Path(data_dir).glob("partition_*.db"))) == 1

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        """Created documents start at version 1."""
        created = await self._create(store, "k1", "t1", {"title": "X", "color": "red"})
        assert created.version == "1"

        loaded = await store.get("k1", "t1")
        assert loaded.fields == {"title": "X"}
        assert loaded.extra == {"color": "red"}
        assert loaded.type_name == "Task"
        assert loaded.version == "1"

    @pytest.mark.asyncio
    async def test_get_missing_partition(self, store):
        """Unknown partition behaves like a missing key."""
        with pytest.raises(NotFoundError):
            await store.get("k1", "nowhere")
        found, missing = await store.get_many(["k1"], "nowhere")
        assert found == []
        assert missing == ["k1"]

    @pytest.mark.asyncio
    async def test_get_many(self, store):
        """get_many preserves request order and reports missing keys."""
        await self._create(store, "a", "t1", {"title": "A"})
        await self._create(store, "b", "t1", {"title": "B"})

        found, missing = await store.get_many(["b", "x", "a"], "t1")

        assert [e.key for e in found] == ["b", "a"]
        assert missing == ["x"]

    @pytest.mark.asyncio
    async def test_update_increments_version(self, store):
        """Each successful write increments the version."""
        created = await self._create(store, "k1", "t1", {"title": "X"})

        result = await store.conditional_write(created.evolve(title="Y"), created.version)

        assert result.ok
        assert result.version == "2"
        assert (await store.get("k1", "t1"))["title"] == "Y"

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, store):
        """A stale token returns a conflict and leaves data untouched."""
        created = await self._create(store, "k1", "t1", {"title": "X"})
        await store.conditional_write(created.evolve(title="Y"), created.version)

        result = await store.conditional_write(created.evolve(title="Z"), created.version)

        assert not result.ok
        assert result.error.expected_version == "1"
        assert result.error.current_version == "2"
        assert (await store.get("k1", "t1"))["title"] == "Y"

    @pytest.mark.asyncio
    async def test_create_existing_conflicts(self, store):
        """Creating an existing key is a conflict."""
        await self._create(store, "k1", "t1", {"title": "X"})
        result = await store.conditional_write(Entity("k1", "t1", {"title": "Y"}), None)
        assert not result.ok

    @pytest.mark.asyncio
    async def test_update_deleted_raises(self, store):
        """Updating a deleted document raises NotFoundError."""
        created = await self._create(store, "k1", "t1", {"title": "X"})
        assert await store.delete("k1", "t1")
        with pytest.raises(NotFoundError):
            await store.conditional_write(created, created.version)

    @pytest.mark.asyncio
    async def test_guarded_delete(self, store):
        """Delete with a stale or malformed token is refused."""
        await self._create(store, "k1", "t1", {"title": "X"})
        assert not await store.delete("k1", "t1", expected_version="7")
        assert not await store.delete("k1", "t1", expected_version="not-a-version")
        assert await store.delete("k1", "t1", expected_version="1")
        assert not await store.delete("k1", "nowhere")

    @pytest.mark.asyncio
    async def test_query_and_partitions(self, store):
        """Queries scan one or all partition files."""
        await self._create(store, "a", "t1", {"title": "A", "status": "open"})
        await self._create(store, "b", "t2", {"title": "B", "status": "open"})
        await self._create(store, "c", "t2", {"title": "C", "status": "done"})

        assert await store.list_partitions() == ["t1", "t2"]

        t2 = [e.key async for e in store.query(partition="t2")]
        assert t2 == ["b", "c"]

        open_all = [e.key async for e in store.query(where("status") == "open")]
        assert sorted(open_all) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_partition_names_round_trip(self, store):
        """Partition names survive sanitization of file names."""
        await self._create(store, "a", "acme/eu", {"title": "A"})
        await self._create(store, "b", "acme-eu", {"title": "B"})
        assert await store.list_partitions() == ["acme-eu", "acme/eu"]

    @pytest.mark.asyncio
    async def test_unserializable_payload(self, store):
        """Non-JSON payloads raise SerializationError."""
        with pytest.raises(SerializationError):
            await store.conditional_write(Entity("k1", "t1", {"title": object()}), None)

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await self._create(store, "a", "t1", {"title": "A"})
        assert await store.get_stats("t1") == {"documents": 1, "max_version": 1}
        assert await store.get_stats("nowhere") == {"documents": 0, "max_version": 0}

    @pytest.mark.asyncio
    async def test_denied_write_is_access_denied(self, data_dir, registry):
        """Statements SQLite refuses surface as AccessDeniedError."""
        store = ReadOnlySqliteStore(data_dir, registry=registry)

        with pytest.raises(AccessDeniedError) as exc_info:
            await store.conditional_write(Entity("a", "t1", {"title": "A"}, type_name="Task"), None)

        assert exc_info.value.code == "ACCESS_DENIED"
        assert await store.get_many(["a"], "t1") == ([], ["a"])

    def test_readonly_database_is_access_denied(self, store):
        """A read-only database file maps to AccessDeniedError."""
        with pytest.raises(AccessDeniedError):
            with store._translate_errors("a", "t1"):
                raise sqlite3.OperationalError("attempt to write a readonly database")
