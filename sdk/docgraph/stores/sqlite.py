"""
SQLite document store for docgraph.

This module stores documents in one SQLite database per partition:
- Documents with their JSON payloads and integer versions
- Partition metadata so file names never have to round-trip scope names

Invariants:
    - One SQLite file per partition
    - Conditional writes run inside BEGIN IMMEDIATE, so compare-and-set is atomic
    - The integer version increments by one on every successful write
    - Version tokens leave this module as opaque strings

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all write operations
    - Translate every sqlite3/json failure into a StoreError subclass

Table schema:
    documents:
        - partition TEXT
        - key TEXT
        - type_name TEXT (nullable)
        - payload_json TEXT
        - version INTEGER
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (partition, key)

    partition_info:
        - partition TEXT PRIMARY KEY
        - created_at INTEGER
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..entity import Entity
from ..errors import (
    AccessDeniedError,
    NotFoundError,
    SerializationError,
    StoreConnectionError,
    StoreError,
)
from ..predicates import Predicate
from ..registry import SchemaRegistry
from ..store import WriteResult, conflict_for

logger = logging.getLogger(__name__)


class PartitionNotFoundError(Exception):
    """Partition database does not exist."""

    pass


class SqliteDocumentStore:
    """Per-partition SQLite implementation of DocumentStore.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/docgraph")
        >>> result = await store.conditional_write(Entity("p1", "t1", {"n": 0}), None)
        >>> entity = await store.get("p1", "t1")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str | Path,
        registry: SchemaRegistry | None = None,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for SQLite database files
            registry: Optional registry used to split known/extension fields
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.registry = registry
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    def _get_db_path(self, partition: str) -> Path:
        """Get database file path for a partition."""
        # Sanitize to prevent path traversal; the digest keeps distinct scopes apart
        safe = "".join(c for c in partition if c.isalnum() or c in "-_")[:64]
        digest = hashlib.sha256(partition.encode("utf-8")).hexdigest()[:12]
        return self.data_dir / f"partition_{safe}_{digest}.db"

    @contextmanager
    def _get_connection(self, partition: str, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection for a partition.

        Raises:
            PartitionNotFoundError: If database doesn't exist and create=False
        """
        db_path = self._get_db_path(partition)

        if not create and not db_path.exists():
            raise PartitionNotFoundError(partition)

        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if create:
                self._create_schema(conn, partition)
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection, partition: str) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS partition_info (
                partition TEXT PRIMARY KEY,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                partition TEXT NOT NULL,
                key TEXT NOT NULL,
                type_name TEXT,
                payload_json TEXT NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (partition, key)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_type ON documents(partition, type_name);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)
        conn.execute(
            "INSERT OR IGNORE INTO partition_info (partition, created_at) VALUES (?, ?)",
            (partition, int(time.time() * 1000)),
        )

    @contextmanager
    def _translate_errors(self, key: str | None, partition: str) -> Iterator[None]:
        """Map backend exceptions onto the StoreError hierarchy."""
        try:
            yield
        except sqlite3.Error as e:
            message = str(e).lower()
            if "readonly" in message or "not authorized" in message:
                raise AccessDeniedError(str(e), key=key, partition=partition) from e
            if "locked" in message or "busy" in message or "unable to open" in message:
                raise StoreConnectionError(str(e), key=key, partition=partition) from e
            raise StoreError(str(e), key=key, partition=partition) from e
        except (TypeError, ValueError) as e:
            # json encode/decode failures
            raise SerializationError(str(e), key=key, partition=partition) from e

    def _row_to_entity(self, row: sqlite3.Row) -> Entity:
        return Entity.from_document(
            row["key"],
            row["partition"],
            json.loads(row["payload_json"]),
            type_name=row["type_name"],
            version=str(row["version"]),
            updated_at=row["updated_at"],
            registry=self.registry,
        )

    async def get(self, key: str, partition: str) -> Entity:
        """Point read.

        Raises:
            NotFoundError: If the key (or the whole partition) is absent
        """
        with self._translate_errors(key, partition):
            try:
                with self._get_connection(partition) as conn:
                    row = conn.execute(
                        "SELECT * FROM documents WHERE partition = ? AND key = ?",
                        (partition, key),
                    ).fetchone()
                    if row is None:
                        raise NotFoundError(key, partition)
                    return self._row_to_entity(row)
            except PartitionNotFoundError:
                raise NotFoundError(key, partition) from None

    async def get_many(self, keys: list[str], partition: str) -> tuple[list[Entity], list[str]]:
        """Batched read with a single IN query."""
        if not keys:
            return [], []

        with self._translate_errors(None, partition):
            try:
                with self._get_connection(partition) as conn:
                    placeholders = ",".join("?" * len(keys))
                    rows = conn.execute(
                        f"SELECT * FROM documents WHERE partition = ? AND key IN ({placeholders})",
                        (partition, *keys),
                    ).fetchall()
                    by_key = {row["key"]: self._row_to_entity(row) for row in rows}
            except PartitionNotFoundError:
                return [], list(keys)

        found = [by_key[k] for k in keys if k in by_key]
        missing = [k for k in keys if k not in by_key]
        return found, missing

    async def conditional_write(
        self,
        entity: Entity,
        expected_version: str | None,
    ) -> WriteResult:
        """Compare-and-set write.

        Args:
            entity: New state
            expected_version: Token from the last read, None to create

        Returns:
            WriteResult carrying the stored entity or a ConflictError
        """
        now = int(time.time() * 1000)
        key, partition = entity.key, entity.partition

        with self._translate_errors(key, partition):
            payload_json = json.dumps(entity.to_document())

            with self._get_connection(partition, create=True) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT version, created_at FROM documents WHERE partition = ? AND key = ?",
                        (partition, key),
                    ).fetchone()
                    current_version = str(row["version"]) if row else None

                    if expected_version is not None and row is None:
                        conn.execute("ROLLBACK")
                        raise NotFoundError(key, partition)

                    if current_version != expected_version:
                        conn.execute("ROLLBACK")
                        return conflict_for(entity, expected_version, current_version)

                    if row is None:
                        new_version = 1
                        conn.execute(
                            """
                            INSERT INTO documents (partition, key, type_name, payload_json,
                                                   version, created_at, updated_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?)
                            """,
                            (partition, key, entity.type_name, payload_json, new_version, now, now),
                        )
                    else:
                        new_version = row["version"] + 1
                        conn.execute(
                            """
                            UPDATE documents
                            SET type_name = ?, payload_json = ?, version = ?, updated_at = ?
                            WHERE partition = ? AND key = ? AND version = ?
                            """,
                            (
                                entity.type_name,
                                payload_json,
                                new_version,
                                now,
                                partition,
                                key,
                                row["version"],
                            ),
                        )

                    conn.execute("COMMIT")

                except Exception:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise

        logger.debug(
            "Document written",
            extra={"key": key, "partition": partition, "version": new_version},
        )
        stored = entity.copy()
        stored.version = str(new_version)
        stored.updated_at = now
        return WriteResult(entity=stored)

    async def query(
        self,
        predicate: Predicate | None = None,
        partition: str | None = None,
    ) -> AsyncIterator[Entity]:
        """Scan one partition or every partition file in key order."""
        scopes = [partition] if partition is not None else await self.list_partitions()
        for scope in scopes:
            with self._translate_errors(None, scope):
                try:
                    with self._get_connection(scope) as conn:
                        rows = conn.execute(
                            "SELECT * FROM documents WHERE partition = ? ORDER BY key",
                            (scope,),
                        ).fetchall()
                        entities = [self._row_to_entity(row) for row in rows]
                except PartitionNotFoundError:
                    entities = []

            for entity in entities:
                if predicate is None or predicate.matches(entity):
                    yield entity

    async def list_partitions(self) -> list[str]:
        """Partition scopes with a database file, sorted."""
        if not self.data_dir.exists():
            return []

        scopes: list[str] = []
        for db_path in sorted(self.data_dir.glob("partition_*.db")):
            with self._translate_errors(None, db_path.name):
                conn = sqlite3.connect(str(db_path), timeout=self.busy_timeout_ms / 1000.0)
                try:
                    scopes.extend(
                        row[0] for row in conn.execute("SELECT partition FROM partition_info")
                    )
                finally:
                    conn.close()
        return sorted(scopes)

    async def delete(
        self,
        key: str,
        partition: str,
        expected_version: str | None = None,
    ) -> bool:
        """Delete a document, optionally guarded by its version token."""
        with self._translate_errors(key, partition):
            try:
                with self._get_connection(partition) as conn:
                    if expected_version is None:
                        cursor = conn.execute(
                            "DELETE FROM documents WHERE partition = ? AND key = ?",
                            (partition, key),
                        )
                    else:
                        cursor = conn.execute(
                            "DELETE FROM documents WHERE partition = ? AND key = ? AND version = ?",
                            (partition, key, _parse_version(expected_version)),
                        )
                    return cursor.rowcount > 0
            except PartitionNotFoundError:
                return False

    async def initialize_partition(self, partition: str) -> None:
        """Create the database file and schema for a partition."""
        async with self._lock:
            with self._translate_errors(None, partition):
                with self._get_connection(partition, create=True):
                    logger.info("Initialized partition database", extra={"partition": partition})

    async def partition_exists(self, partition: str) -> bool:
        return self._get_db_path(partition).exists()

    async def get_stats(self, partition: str) -> dict[str, Any]:
        """Document count and highest version for a partition."""
        with self._translate_errors(None, partition):
            try:
                with self._get_connection(partition) as conn:
                    row = conn.execute(
                        "SELECT COUNT(*) AS documents, COALESCE(MAX(version), 0) AS max_version "
                        "FROM documents WHERE partition = ?",
                        (partition,),
                    ).fetchone()
                    return {"documents": row["documents"], "max_version": row["max_version"]}
            except PartitionNotFoundError:
                return {"documents": 0, "max_version": 0}


def _parse_version(token: str) -> int:
    """Tokens from this store are decimal integers; anything else never matches."""
    try:
        return int(token)
    except ValueError:
        return -1
