"""
SQLite relational store for the wiki.

This module manages the SQLite database that stores:
- One searchable row per wiki document (title, collection, soft delete)
- Tags and document/tag associations
- The collection aggregate the external-data cache reads from

Invariants:
    - All writes run inside explicit transactions
    - Tag names are unique
    - Deleted documents keep their row with deleted_at set

How to change safely:
    - Schema migrations must be backward compatible
    - Keep aggregate field names in sync with relational.base.AGGREGATE_FIELDS
    - Use transactions for all write operations

Table schema:
    documents:
        - id TEXT PRIMARY KEY (Droplet)
        - title TEXT
        - collection_id INTEGER
        - created_by TEXT
        - created_at / updated_at / deleted_at INTEGER (Unix ms)

    tags:
        - id INTEGER PRIMARY KEY
        - name TEXT UNIQUE

    document_tags:
        - document_id TEXT
        - tag_id INTEGER
        - PRIMARY KEY (document_id, tag_id)

    collections, collection_chains, collection_marketplaces, collection_mintings:
        - the collection aggregate
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable

from ..errors import UpstreamTransientError, ValidationError
from .base import AGGREGATE_FIELDS

logger = logging.getLogger(__name__)

_COLLECTION_COLUMNS = (
    "name",
    "discord_url",
    "discord_updated_at",
    "twitter_url",
    "twitter_updated_at",
    "telegram_url",
    "telegram_updated_at",
    "website_url",
    "website_updated_at",
    "floor_price",
    "floor_price_currency",
    "floor_price_updated_at",
    "updated_at",
)


def _now_ms() -> int:
    return int(time.time() * 1000)


class SqliteRelationalStore:
    """SQLite implementation of the RelationalStore protocol.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteRelationalStore("/var/lib/wiki/wiki.db")
        >>> await store.initialize()
        >>> tag_id = await store.find_or_create_tag("defi")
        >>> await store.associate_tag("1000000000000100010001", tag_id)
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000, wal_mode: bool = True) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection with the store's pragmas.

        Yields:
            SQLite connection in autocommit mode (explicit transactions)
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                collection_id INTEGER,
                created_by TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                deleted_at INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_documents_title ON documents(title);

            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE
            );

            CREATE TABLE IF NOT EXISTS document_tags (
                document_id TEXT NOT NULL REFERENCES documents(id),
                tag_id INTEGER NOT NULL REFERENCES tags(id),
                created_at INTEGER NOT NULL,
                PRIMARY KEY (document_id, tag_id)
            );

            CREATE INDEX IF NOT EXISTS idx_document_tags_tag ON document_tags(tag_id);

            CREATE TABLE IF NOT EXISTS collections (
                id INTEGER PRIMARY KEY,
                name TEXT,
                discord_url TEXT,
                discord_updated_at TEXT,
                twitter_url TEXT,
                twitter_updated_at TEXT,
                telegram_url TEXT,
                telegram_updated_at TEXT,
                website_url TEXT,
                website_updated_at TEXT,
                floor_price REAL,
                floor_price_currency TEXT,
                floor_price_updated_at TEXT,
                category_id INTEGER,
                category_name TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS collection_chains (
                collection_id INTEGER NOT NULL REFERENCES collections(id),
                symbol TEXT NOT NULL,
                PRIMARY KEY (collection_id, symbol)
            );

            CREATE TABLE IF NOT EXISTS collection_marketplaces (
                collection_id INTEGER NOT NULL REFERENCES collections(id),
                marketplace_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                url TEXT,
                collection_url TEXT,
                logo_image TEXT,
                PRIMARY KEY (collection_id, marketplace_id)
            );

            CREATE TABLE IF NOT EXISTS collection_mintings (
                id INTEGER PRIMARY KEY,
                collection_id INTEGER NOT NULL REFERENCES collections(id),
                name TEXT,
                price REAL,
                price_updated_at TEXT,
                starts_at TEXT,
                starts_at_precision TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_collection_mintings
                ON collection_mintings(collection_id);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection() as conn:
                self._create_schema(conn)
        logger.info("Initialized wiki database", extra={"db_path": str(self.db_path)})

    # Documents

    async def create_document_row(
        self,
        document_id: str,
        title: str,
        created_by: str,
        collection_id: int | None = None,
    ) -> None:
        now = _now_ms()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT INTO documents (id, title, collection_id, created_by, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (document_id, title, collection_id, created_by, now, now),
                )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise ValidationError(
                    f"Document row already exists: {document_id}",
                    details={"document_id": document_id},
                ) from e
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug("Created document row", extra={"document_id": document_id})

    async def update_document_title(self, document_id: str, title: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE documents SET title = ?, updated_at = ? WHERE id = ?",
                (title, _now_ms(), document_id),
            )

    async def delete_document_row(self, document_id: str) -> None:
        """Soft-delete a document row."""
        now = _now_ms()
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE documents SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (now, now, document_id),
            )

    async def get_document_row(self, document_id: str) -> dict[str, Any] | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
            return dict(row) if row is not None else None

    # Tags

    async def find_or_create_tag(self, name: str) -> int:
        if not name:
            raise ValidationError("Tag name must not be empty")
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("INSERT OR IGNORE INTO tags (name) VALUES (?)", (name,))
                row = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return int(row["id"])

    async def associate_tag(self, document_id: str, tag_id: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO document_tags (document_id, tag_id, created_at)
                VALUES (?, ?, ?)
                """,
                (document_id, tag_id, _now_ms()),
            )

    async def dissociate_tag(self, document_id: str, tag_id: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "DELETE FROM document_tags WHERE document_id = ? AND tag_id = ?",
                (document_id, tag_id),
            )

    async def list_document_tags(self, document_id: str) -> list[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT t.name FROM document_tags dt
                JOIN tags t ON t.id = dt.tag_id
                WHERE dt.document_id = ?
                ORDER BY t.name
                """,
                (document_id,),
            ).fetchall()
            return [row["name"] for row in rows]

    # Collection aggregate

    async def upsert_collection(self, collection_id: int, **attributes: Any) -> None:
        """Insert or replace a collection aggregate.

        Args:
            collection_id: Collection identifier
            **attributes: Aggregate fields (see relational.base); list fields
                replace the stored lists
        """
        unknown = set(attributes) - AGGREGATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown aggregate fields: {sorted(unknown)}")

        category = attributes.get("category") or {}
        values = [attributes.get(column) for column in _COLLECTION_COLUMNS]

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                columns = (*_COLLECTION_COLUMNS, "category_id", "category_name")
                conn.execute(
                    f"""
                    INSERT INTO collections (id, {", ".join(columns)})
                    VALUES (?, {", ".join("?" for _ in columns)})
                    ON CONFLICT(id) DO UPDATE SET
                        {", ".join(f"{c} = excluded.{c}" for c in columns)}
                    """,
                    (collection_id, *values, category.get("id"), category.get("name")),
                )

                if "chains" in attributes:
                    conn.execute("DELETE FROM collection_chains WHERE collection_id = ?", (collection_id,))
                    conn.executemany(
                        "INSERT INTO collection_chains (collection_id, symbol) VALUES (?, ?)",
                        [(collection_id, chain["symbol"]) for chain in attributes["chains"]],
                    )

                if "marketplaces" in attributes:
                    conn.execute(
                        "DELETE FROM collection_marketplaces WHERE collection_id = ?", (collection_id,)
                    )
                    conn.executemany(
                        """
                        INSERT INTO collection_marketplaces
                            (collection_id, marketplace_id, name, url, collection_url, logo_image)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                collection_id,
                                m["id"],
                                m["name"],
                                m.get("url"),
                                m.get("collection_url"),
                                m.get("logo_image"),
                            )
                            for m in attributes["marketplaces"]
                        ],
                    )

                if "mintings" in attributes:
                    conn.execute("DELETE FROM collection_mintings WHERE collection_id = ?", (collection_id,))
                    conn.executemany(
                        """
                        INSERT INTO collection_mintings
                            (id, collection_id, name, price, price_updated_at, starts_at, starts_at_precision)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                m["id"],
                                collection_id,
                                m.get("name"),
                                m.get("price"),
                                m.get("price_updated_at"),
                                m.get("starts_at"),
                                m.get("starts_at_precision"),
                            )
                            for m in attributes["mintings"]
                        ],
                    )

                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def load_aggregate_fields(
        self,
        collection_id: int,
        fields: Iterable[str],
    ) -> dict[str, Any] | None:
        """Load only the requested aggregate fields of a collection.

        Args:
            collection_id: Collection identifier
            fields: Aggregate field names (see relational.base)

        Returns:
            Mapping of the requested fields, or None if the collection does not exist

        Raises:
            ValidationError: If an unknown field is requested
            UpstreamTransientError: If the database is locked or unavailable
        """
        fields = set(fields)
        unknown = fields - AGGREGATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown aggregate fields: {sorted(unknown)}")

        try:
            with self._get_connection() as conn:
                row = conn.execute("SELECT * FROM collections WHERE id = ?", (collection_id,)).fetchone()
                if row is None:
                    return None

                aggregate: dict[str, Any] = {
                    column: row[column] for column in _COLLECTION_COLUMNS if column in fields
                }

                if "category" in fields:
                    aggregate["category"] = (
                        {"id": row["category_id"], "name": row["category_name"]}
                        if row["category_id"] is not None
                        else None
                    )

                if "chains" in fields:
                    rows = conn.execute(
                        "SELECT symbol FROM collection_chains WHERE collection_id = ? ORDER BY symbol",
                        (collection_id,),
                    ).fetchall()
                    aggregate["chains"] = [{"symbol": r["symbol"]} for r in rows]

                if "marketplaces" in fields:
                    rows = conn.execute(
                        """
                        SELECT marketplace_id, name, url, collection_url, logo_image
                        FROM collection_marketplaces WHERE collection_id = ?
                        ORDER BY marketplace_id
                        """,
                        (collection_id,),
                    ).fetchall()
                    aggregate["marketplaces"] = [
                        {
                            "id": r["marketplace_id"],
                            "name": r["name"],
                            "url": r["url"],
                            "collection_url": r["collection_url"],
                            "logo_image": r["logo_image"],
                        }
                        for r in rows
                    ]

                if "mintings" in fields:
                    rows = conn.execute(
                        """
                        SELECT id, name, price, price_updated_at, starts_at, starts_at_precision
                        FROM collection_mintings WHERE collection_id = ?
                        ORDER BY id
                        """,
                        (collection_id,),
                    ).fetchall()
                    aggregate["mintings"] = [dict(r) for r in rows]

                return aggregate

        except sqlite3.OperationalError as e:
            raise UpstreamTransientError(
                f"Failed to load collection aggregate: {e}",
                details={"collection_id": collection_id},
            ) from e
