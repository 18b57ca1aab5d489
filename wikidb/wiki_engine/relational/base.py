"""
Relational side of the wiki.

The wiki keeps searchable document rows, tags and the collection aggregate
in a relational database. The versioning core only needs the operations of
the RelationalStore protocol below.

Aggregate fields (keys of load_aggregate_fields results):
    name
    discord_url, discord_updated_at
    twitter_url, twitter_updated_at
    telegram_url, telegram_updated_at
    website_url, website_updated_at
    floor_price, floor_price_currency, floor_price_updated_at
    category          {"id", "name"} or None
    chains            [{"symbol"}]
    marketplaces      [{"id", "name", "url", "collection_url", "logo_image"}]
    mintings          [{"id", "name", "price", "price_updated_at", "starts_at", "starts_at_precision"}]
    updated_at

Invariants:
    - find_or_create_tag is idempotent per tag name
    - associate_tag and dissociate_tag are idempotent
    - load_aggregate_fields returns None when the collection does not exist
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Iterable, Protocol, runtime_checkable

AGGREGATE_FIELDS = frozenset(
    {
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
        "category",
        "chains",
        "marketplaces",
        "mintings",
        "updated_at",
    }
)


@runtime_checkable
class RelationalStore(Protocol):
    """Protocol for the relational collaborator."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create schema if missing."""
        ...

    @abstractmethod
    async def create_document_row(
        self,
        document_id: str,
        title: str,
        created_by: str,
        collection_id: int | None = None,
    ) -> None: ...

    @abstractmethod
    async def update_document_title(self, document_id: str, title: str) -> None: ...

    @abstractmethod
    async def delete_document_row(self, document_id: str) -> None: ...

    @abstractmethod
    async def find_or_create_tag(self, name: str) -> int:
        """Return the id of a tag, creating it if needed."""
        ...

    @abstractmethod
    async def associate_tag(self, document_id: str, tag_id: int) -> None: ...

    @abstractmethod
    async def dissociate_tag(self, document_id: str, tag_id: int) -> None: ...

    @abstractmethod
    async def list_document_tags(self, document_id: str) -> list[str]: ...

    @abstractmethod
    async def load_aggregate_fields(
        self,
        collection_id: int,
        fields: Iterable[str],
    ) -> dict[str, Any] | None:
        """Load the requested aggregate fields of a collection.

        Raises:
            UpstreamTransientError: If the database is temporarily unavailable
        """
        ...
