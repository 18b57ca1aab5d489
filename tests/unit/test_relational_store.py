"""
Unit tests for the SQLite relational store.

Tests cover:
- Document rows
- Tags and associations
- Collection aggregate upsert and partial loads
"""

import asyncio

import pytest

from wikidb.wiki_engine.errors import ValidationError
from wikidb.wiki_engine.relational.base import RelationalStore
from wikidb.wiki_engine.relational.sqlite_store import SqliteRelationalStore

DOC = "10274913512345482100012"


class TestSqliteRelationalStore:
    """Tests for SqliteRelationalStore."""

    def test_implements_protocol(self, relational):
        """The SQLite store satisfies RelationalStore."""
        assert isinstance(relational, RelationalStore)

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, data_dir):
        """Initializing twice keeps the schema."""
        store = SqliteRelationalStore(f"{data_dir}/nested/wiki.db", wal_mode=False)
        await store.initialize()
        await store.initialize()
        await store.create_document_row(DOC, "Apes", "user:1")
        assert (await store.get_document_row(DOC))["title"] == "Apes"

    @pytest.mark.asyncio
    async def test_document_row_lifecycle(self, relational):
        """Rows are created, retitled and soft-deleted."""
        await relational.create_document_row(DOC, "Apes", "user:1", collection_id=7)
        await relational.update_document_title(DOC, "Bored Apes")
        await relational.delete_document_row(DOC)

        row = await relational.get_document_row(DOC)
        assert row["title"] == "Bored Apes"
        assert row["collection_id"] == 7
        assert row["created_by"] == "user:1"
        assert row["deleted_at"] is not None

    @pytest.mark.asyncio
    async def test_duplicate_document_row(self, relational):
        """A document row can only be created once."""
        await relational.create_document_row(DOC, "Apes", "user:1")
        with pytest.raises(ValidationError):
            await relational.create_document_row(DOC, "Apes", "user:1")

    @pytest.mark.asyncio
    async def test_stores_share_one_database_file(self, data_dir):
        """Concurrent initialization is serialized; writes from either store are visible to both."""
        path = f"{data_dir}/shared/wiki.db"
        first = SqliteRelationalStore(path)
        second = SqliteRelationalStore(path)
        await asyncio.gather(first.initialize(), first.initialize())
        await second.initialize()

        tag_id = await first.find_or_create_tag("nft")
        await second.create_document_row(DOC, "Apes", "user:1")
        await second.associate_tag(DOC, tag_id)

        assert await first.list_document_tags(DOC) == ["nft"]
        assert await second.find_or_create_tag("nft") == tag_id

    @pytest.mark.asyncio
    async def test_find_or_create_tag(self, relational):
        """Tag lookup is idempotent per name."""
        first = await relational.find_or_create_tag("nft")
        again = await relational.find_or_create_tag("nft")
        other = await relational.find_or_create_tag("art")

        assert first == again
        assert first != other

    @pytest.mark.asyncio
    async def test_empty_tag_rejected(self, relational):
        """Tags need a name."""
        with pytest.raises(ValidationError):
            await relational.find_or_create_tag("")

    @pytest.mark.asyncio
    async def test_tag_associations(self, relational):
        """Associations are idempotent and listed by name."""
        await relational.create_document_row(DOC, "Apes", "user:1")
        nft = await relational.find_or_create_tag("nft")
        art = await relational.find_or_create_tag("art")

        await relational.associate_tag(DOC, nft)
        await relational.associate_tag(DOC, nft)
        await relational.associate_tag(DOC, art)
        assert await relational.list_document_tags(DOC) == ["art", "nft"]

        await relational.dissociate_tag(DOC, nft)
        await relational.dissociate_tag(DOC, nft)
        assert await relational.list_document_tags(DOC) == ["art"]

    @pytest.mark.asyncio
    async def test_aggregate_partial_load(self, relational):
        """Only the requested aggregate fields are returned."""
        await relational.upsert_collection(
            7,
            name="Apes",
            discord_url="https://discord.gg/apes",
            category={"id": 3, "name": "PFP"},
            marketplaces=[{"id": 1, "name": "OpenSea", "url": "https://opensea.io"}],
        )

        aggregate = await relational.load_aggregate_fields(7, ["discord_url", "category", "marketplaces"])

        assert aggregate == {
            "discord_url": "https://discord.gg/apes",
            "category": {"id": 3, "name": "PFP"},
            "marketplaces": [
                {
                    "id": 1,
                    "name": "OpenSea",
                    "url": "https://opensea.io",
                    "collection_url": None,
                    "logo_image": None,
                }
            ],
        }

    @pytest.mark.asyncio
    async def test_upsert_replaces_lists(self, relational):
        """Upserting again replaces child lists."""
        await relational.upsert_collection(7, chains=[{"symbol": "ETH"}, {"symbol": "SOL"}])
        await relational.upsert_collection(7, chains=[{"symbol": "MATIC"}])

        aggregate = await relational.load_aggregate_fields(7, ["chains"])
        assert aggregate == {"chains": [{"symbol": "MATIC"}]}

    @pytest.mark.asyncio
    async def test_missing_collection(self, relational):
        """Unknown collections load as None."""
        assert await relational.load_aggregate_fields(404, ["name"]) is None

    @pytest.mark.asyncio
    async def test_unknown_fields(self, relational):
        """Unknown aggregate fields are rejected."""
        with pytest.raises(ValidationError):
            await relational.load_aggregate_fields(7, ["price"])
        with pytest.raises(ValidationError):
            await relational.upsert_collection(7, price=1)
