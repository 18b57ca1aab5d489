"""
Base protocol and types for the wiki table abstraction.

This module defines the WikiTable protocol that all key-value backends must
implement, along with the query page type and the backend factory.

Items are plain dicts keyed by raw attribute names (WikiPK, WikiSK, ...);
backends translate them to and from their wire format.

Invariants:
    - put() overwrites the whole item at its primary key
    - update_ext() never writes an item whose Version changed since it was read
    - batch_write() returns the items the backend did not process; callers
      retry exactly those
    - query() returns items in sort-key order (reversed when forward=False)

How to change safely:
    - Protocol changes require updating all implementations
    - Keep conditions limited to what DynamoDB key conditions can express
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
import logging

if TYPE_CHECKING:
    from ..config import EngineConfig

logger = logging.getLogger(__name__)

Item = dict[str, Any]


@dataclass
class QueryPage:
    """One page of query results.

    Attributes:
        items: Items in this page
        last_key: Primary key to pass as start_key for the next page, or None
    """

    items: list[Item] = field(default_factory=list)
    last_key: Item | None = None


@runtime_checkable
class WikiTable(Protocol):
    """Protocol for key-value table backends.

    Consistency contract:
        - get(consistent=True) observes every write acknowledged before it
        - Index queries are eventually consistent

    Example:
        >>> table = DynamoWikiTable(config.dynamo)
        >>> await table.connect()
        >>> await table.put({"WikiPK": "Document::1", "WikiSK": "Document::v_latest"})
        >>> item = await table.get("Document::1", "Document::v_latest")
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            UpstreamTransientError: If the endpoint cannot be reached
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def get(self, pk: str, sk: str, consistent: bool = False) -> Item | None:
        """Fetch one item by primary key; None if absent."""
        ...

    @abstractmethod
    async def put(self, item: Item) -> None:
        """Write one item, replacing any item with the same primary key."""
        ...

    @abstractmethod
    async def batch_write(self, items: list[Item]) -> list[Item]:
        """Write up to one chunk of items.

        Returns:
            Items the backend left unprocessed
        """
        ...

    @abstractmethod
    async def update_ext(self, pk: str, sk: str, ext: dict[str, Any], expected_version: str) -> bool:
        """Replace only the Ext attribute of an item whose Version still matches.

        Returns:
            False if the item is missing or now holds another Version
        """
        ...

    @abstractmethod
    async def query(
        self,
        pk: str,
        *,
        sk_prefix: str | None = None,
        sk_between: tuple[str, str] | None = None,
        sk_equals: str | None = None,
        index: str | None = None,
        forward: bool = True,
        limit: int | None = None,
        start_key: Item | None = None,
    ) -> QueryPage:
        """Query one partition of the table or of a secondary index.

        Args:
            pk: Partition key value
            sk_prefix: Sort key begins_with condition
            sk_between: Inclusive sort key bounds
            sk_equals: Exact sort key
            index: Secondary index name; None queries the table
            forward: Ascending sort-key order
            limit: Maximum items in the page
            start_key: last_key of the previous page
        """
        ...


async def query_all(table: WikiTable, pk: str, *, limit: int | None = None, **kwargs: Any) -> list[Item]:
    """Follow query pages until exhausted or until ``limit`` items are collected."""
    items: list[Item] = []
    start_key = None
    while True:
        remaining = None if limit is None else limit - len(items)
        page = await table.query(pk, limit=remaining, start_key=start_key, **kwargs)
        items.extend(page.items)
        if page.last_key is None or (limit is not None and len(items) >= limit):
            return items
        start_key = page.last_key


def create_wiki_table(config: "EngineConfig") -> WikiTable:
    """Factory function to create a wiki table from configuration.

    Args:
        config: Engine configuration

    Returns:
        Appropriate WikiTable implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .dynamodb import DynamoWikiTable
    from .memory import InMemoryWikiTable

    if config.store_backend == StoreBackend.DYNAMODB:
        return DynamoWikiTable(config.dynamo)
    elif config.store_backend == StoreBackend.MEMORY:
        return InMemoryWikiTable(gsi_name=config.dynamo.gsi_name)
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")
