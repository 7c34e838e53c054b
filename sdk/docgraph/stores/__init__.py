"""
Document store adapters.

- InMemoryDocumentStore: process-local store for tests and development
- SqliteDocumentStore: one SQLite database per partition
"""

from .memory import InMemoryDocumentStore, StoreStats
from .sqlite import SqliteDocumentStore

__all__ = ["InMemoryDocumentStore", "SqliteDocumentStore", "StoreStats"]
