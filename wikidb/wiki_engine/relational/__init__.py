"""
Relational collaborator of the wiki engine.

Document rows, tags and the collection aggregate live in SQLite; the
versioning core depends only on the RelationalStore protocol.
"""

from .base import AGGREGATE_FIELDS, RelationalStore
from .sqlite_store import SqliteRelationalStore

__all__ = ["AGGREGATE_FIELDS", "RelationalStore", "SqliteRelationalStore"]
