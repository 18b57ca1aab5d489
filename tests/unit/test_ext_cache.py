"""
Unit tests for the external-data cache.

Tests cover:
- TTL expiry rules
- Key-info to external field mapping
- Refresh from the SQLite collection aggregate
- Retries of transient aggregate failures
"""

from datetime import datetime, timedelta, timezone

import pytest

from wikidb.wiki_engine.config import ExtCacheConfig
from wikidb.wiki_engine.errors import UpstreamTransientError, ValidationError
from wikidb.wiki_engine.vcs.ext import (
    CacheEntry,
    ExtField,
    ExternalDataCache,
    ext_fields_for_key_info,
    ext_map_from_raw,
    ext_map_to_raw,
    is_expired,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


async def no_sleep(_seconds):
    return None


class FlakyAggregate:
    """Relational stand-in whose aggregate loads fail a given number of times."""

    def __init__(self, failures, aggregate=None):
        self.failures = failures
        self.aggregate = aggregate or {"name": "Apes", "updated_at": "2024-02-01T00:00:00+00:00"}
        self.calls = 0

    async def load_aggregate_fields(self, collection_id, fields):
        self.calls += 1
        if self.calls <= self.failures:
            raise UpstreamTransientError("database is locked")
        return {key: value for key, value in self.aggregate.items() if key in fields}


class TestExpiry:
    """Tests for is_expired."""

    def test_never_fetched(self):
        """Entries without cached_at are expired."""
        assert is_expired(ExtField.CL_NAME, CacheEntry())
        assert is_expired(ExtField.CL_NAME, None)

    def test_ttl_is_strict(self):
        """An entry exactly at its TTL is still fresh."""
        entry = CacheEntry(cache=1.5, cached_at=NOW - timedelta(minutes=10))
        assert not is_expired(ExtField.CL_FLOOR_PRICE, entry, NOW)
        assert is_expired(ExtField.CL_FLOOR_PRICE, entry, NOW + timedelta(milliseconds=1))

    def test_day_ttl(self):
        """Links are cached for a day."""
        entry = CacheEntry(cache="x", cached_at=NOW - timedelta(hours=23))
        assert not is_expired(ExtField.CL_DISCORD, entry, NOW)
        assert is_expired(ExtField.CL_DISCORD, entry, NOW + timedelta(hours=2))

    def test_collection_id_never_expires(self):
        """The collection id has no TTL once fetched."""
        entry = CacheEntry(cache=7, cached_at=NOW - timedelta(days=3650))
        assert not is_expired(ExtField.CL_ID, entry, NOW)

    def test_unknown_field(self):
        """Unknown field names are rejected."""
        with pytest.raises(ValidationError):
            is_expired("ExtNope", CacheEntry(cached_at=NOW), NOW)


class TestKeyInfoMapping:
    """Tests for ext_fields_for_key_info."""

    def test_mapping(self):
        """Key-info names map to their external fields."""
        fields = ext_fields_for_key_info(["KIClTwitter", "KIClFloorprice", "KIClTeam"])
        assert fields == {ExtField.CL_TWITTER, ExtField.CL_FLOOR_PRICE}

    def test_unknown_name(self):
        """Unknown key-info names are rejected."""
        with pytest.raises(ValidationError):
            ext_fields_for_key_info(["KIClNope"])

    def test_raw_map(self):
        """External maps persist timestamps as ISO strings."""
        external = {"ExtClName": CacheEntry("Apes", NOW, NOW - timedelta(days=1))}
        raw = ext_map_to_raw(external)

        assert raw["ExtClName"]["CachedAt"] == "2024-03-01T12:00:00.000Z"
        assert ext_map_from_raw(raw) == external
        assert ext_map_to_raw(None) is None


class TestExternalDataCache:
    """Tests for ExternalDataCache against SQLite."""

    @pytest.fixture
    def cache(self, relational):
        return ExternalDataCache(relational, clock=lambda: NOW, sleep=no_sleep)

    def test_get_expired_builds_load_spec(self, cache):
        """Only expired fields contribute aggregate columns."""
        external = {
            "ExtClId": CacheEntry(7, NOW),
            "ExtClTwitter": CacheEntry(),
            "ExtClName": CacheEntry("Apes", NOW),
        }
        expired, spec = cache.get_expired(external)

        assert expired == {ExtField.CL_TWITTER}
        assert spec.collection_id == 7
        assert spec.fields == frozenset({"twitter_url", "twitter_updated_at"})

    def test_nothing_expired(self, cache):
        """Fresh maps need no load."""
        assert cache.get_expired({"ExtClName": CacheEntry("Apes", NOW)}) == (set(), None)
        assert cache.get_expired(None) == (set(), None)

    @pytest.mark.asyncio
    async def test_refresh_from_aggregate(self, cache, relational):
        """Expired fields are recomputed from the collection aggregate."""
        await relational.upsert_collection(
            7,
            name="Apes",
            twitter_url="https://twitter.com/apes",
            twitter_updated_at="2024-02-01T00:00:00+00:00",
            floor_price=1.5,
            floor_price_currency="ETH",
            floor_price_updated_at="2024-02-29T00:00:00+00:00",
            chains=[{"symbol": "ETH"}],
        )
        external = {
            "ExtClId": CacheEntry(7),
            "ExtClTwitter": CacheEntry(),
            "ExtClFloorPrice": CacheEntry(),
            "ExtClChains": CacheEntry(),
        }

        refreshed, names = await cache.refresh(external)

        assert names == {ExtField.CL_ID, ExtField.CL_TWITTER, ExtField.CL_FLOOR_PRICE, ExtField.CL_CHAINS}
        assert refreshed["ExtClId"].cache == 7
        assert refreshed["ExtClTwitter"].cache == "https://twitter.com/apes"
        assert refreshed["ExtClTwitter"].updated_at == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert refreshed["ExtClFloorPrice"].cache == {"floorPrice": 1.5, "floorPriceCurrency": {"symbol": "ETH"}}
        assert refreshed["ExtClChains"].cache == [{"symbol": "ETH"}]
        assert all(entry.cached_at == NOW for entry in refreshed.values())

    @pytest.mark.asyncio
    async def test_refresh_keeps_fresh_entries(self, cache):
        """Fresh entries are returned untouched."""
        fresh = CacheEntry("Old name", NOW - timedelta(hours=1))
        refreshed, names = await cache.refresh({"ExtClName": fresh})

        assert names == set()
        assert refreshed["ExtClName"] is fresh

    @pytest.mark.asyncio
    async def test_missing_collection(self, cache):
        """A missing collection caches None values."""
        refreshed, _ = await cache.refresh({"ExtClId": CacheEntry(99), "ExtClDiscord": CacheEntry()})

        assert refreshed["ExtClId"].cache == 99
        assert refreshed["ExtClDiscord"] == CacheEntry(cache=None, cached_at=NOW, updated_at=None)

    @pytest.mark.asyncio
    async def test_minting_prices(self, cache, relational):
        """Minting prices keep priced rounds and their latest update time."""
        await relational.upsert_collection(
            7,
            mintings=[
                {"id": 1, "name": "Presale", "price": 0.05, "price_updated_at": "2024-01-01T00:00:00+00:00"},
                {"id": 2, "name": "Public", "price": 0.08, "price_updated_at": "2024-01-05T00:00:00+00:00"},
                {"id": 3, "name": "TBA", "price": None},
            ],
        )
        refreshed, _ = await cache.refresh({"ExtClId": CacheEntry(7, NOW), "ExtClMintingPrices": CacheEntry()})

        entry = refreshed["ExtClMintingPrices"]
        assert [price["id"] for price in entry.cache] == [1, 2]
        assert entry.updated_at == datetime(2024, 1, 5, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_load_retries_transient_failures(self):
        """Transient aggregate failures are retried."""
        relational = FlakyAggregate(failures=2)
        cache = ExternalDataCache(relational, ExtCacheConfig(fetch_attempts=3), clock=lambda: NOW, sleep=no_sleep)

        refreshed, _ = await cache.refresh({"ExtClId": CacheEntry(7, NOW), "ExtClName": CacheEntry()})

        assert relational.calls == 3
        assert refreshed["ExtClName"].cache == "Apes"

    @pytest.mark.asyncio
    async def test_load_gives_up(self):
        """The last transient failure surfaces."""
        relational = FlakyAggregate(failures=5)
        cache = ExternalDataCache(relational, ExtCacheConfig(fetch_attempts=2), clock=lambda: NOW, sleep=no_sleep)

        with pytest.raises(UpstreamTransientError):
            await cache.refresh({"ExtClId": CacheEntry(7, NOW), "ExtClName": CacheEntry()})
        assert relational.calls == 2
