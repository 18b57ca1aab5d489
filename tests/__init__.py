"""
Wiki engine test suite.

This package contains:
- unit/: Unit tests (pure functions, in-memory table, temporary SQLite)
- integration/: Document, block and engine flows over the in-memory table
"""
