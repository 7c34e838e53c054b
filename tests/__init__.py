"""
DocGraph Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, temporary SQLite files)
- integration/: Integration tests (DocGraph facade over SQLite)
"""
