"""
External-data cache.

Documents and key-info blocks show values that live outside the wiki, in the
collection aggregate of the relational store (discord link, floor price,
minting prices, ...). Each such value is an external field with its own TTL,
stored inline on the item as a CacheEntry:

    cache       value, or None when the upstream has none
    cached_at   when it was fetched; None means never fetched
    updated_at  when the upstream last changed it

Refreshing follows three steps so that one aggregate load serves every
expired field:

    get_expired(external)        -> expired names + AggregateLoadSpec
    load(spec)                   -> aggregate mapping (or None)
    recompute(external, ...)     -> new map, only expired entries replaced

Invariants:
    - An entry is expired iff cached_at is None or now > cached_at + TTL
    - Fresh entries are never replaced
    - Fields without a TTL (the collection id) never expire once fetched

How to change safely:
    - Adding a field requires a TTL, its aggregate columns and a compute rule
    - Key-info names map to fields in KEY_INFO_EXTS; unknown names are rejected
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping

from ..config import ExtCacheConfig
from ..errors import UpstreamTransientError, ValidationError
from ..relational.base import RelationalStore

logger = logging.getLogger(__name__)


class ExtField(str, Enum):
    """External fields cached on wiki items."""

    CL_ID = "ExtClId"
    CL_NAME = "ExtClName"
    CL_DISCORD = "ExtClDiscord"
    CL_TWITTER = "ExtClTwitter"
    CL_TELEGRAM = "ExtClTelegram"
    CL_WEBSITE = "ExtClWebsite"
    CL_CHAINS = "ExtClChains"
    CL_MARKETPLACES = "ExtClMarketplaces"
    CL_CATEGORY = "ExtClCategory"
    CL_FLOOR_PRICE = "ExtClFloorPrice"
    CL_MINTING_PRICES = "ExtClMintingPrices"


class KeyInfoName(str, Enum):
    """Names of key-info blocks of collection documents."""

    CATEGORY = "KIClCategory"
    DISCORD = "KIClDiscord"
    FLOOR_PRICE = "KIClFloorprice"
    HISTORY = "KIClHistory"
    MARKETPLACES = "KIClMarketplaces"
    MINTING_PRICES = "KIClMintingPrices"
    TEAM = "KIClTeam"
    TWITTER = "KIClTwitter"


KEY_INFO_EXTS: dict[KeyInfoName, tuple[ExtField, ...]] = {
    KeyInfoName.CATEGORY: (ExtField.CL_CATEGORY,),
    KeyInfoName.DISCORD: (ExtField.CL_DISCORD,),
    KeyInfoName.FLOOR_PRICE: (ExtField.CL_FLOOR_PRICE,),
    KeyInfoName.HISTORY: (),
    KeyInfoName.MARKETPLACES: (ExtField.CL_MARKETPLACES,),
    KeyInfoName.MINTING_PRICES: (ExtField.CL_MINTING_PRICES,),
    KeyInfoName.TEAM: (),
    KeyInfoName.TWITTER: (ExtField.CL_TWITTER,),
}

_DAY = timedelta(days=1)

EXT_MAX_AGE: dict[ExtField, timedelta | None] = {
    ExtField.CL_ID: None,
    ExtField.CL_NAME: _DAY,
    ExtField.CL_DISCORD: _DAY,
    ExtField.CL_TWITTER: _DAY,
    ExtField.CL_TELEGRAM: _DAY,
    ExtField.CL_WEBSITE: _DAY,
    ExtField.CL_CHAINS: _DAY,
    ExtField.CL_MARKETPLACES: _DAY,
    ExtField.CL_CATEGORY: _DAY,
    ExtField.CL_FLOOR_PRICE: timedelta(minutes=10),
    ExtField.CL_MINTING_PRICES: timedelta(minutes=30),
}

EXT_AGGREGATE_FIELDS: dict[ExtField, tuple[str, ...]] = {
    ExtField.CL_ID: (),
    ExtField.CL_NAME: ("name", "updated_at"),
    ExtField.CL_DISCORD: ("discord_url", "discord_updated_at"),
    ExtField.CL_TWITTER: ("twitter_url", "twitter_updated_at"),
    ExtField.CL_TELEGRAM: ("telegram_url", "telegram_updated_at"),
    ExtField.CL_WEBSITE: ("website_url", "website_updated_at"),
    ExtField.CL_CHAINS: ("chains", "updated_at"),
    ExtField.CL_MARKETPLACES: ("marketplaces", "updated_at"),
    ExtField.CL_CATEGORY: ("category", "updated_at"),
    ExtField.CL_FLOOR_PRICE: ("floor_price", "floor_price_currency", "floor_price_updated_at"),
    ExtField.CL_MINTING_PRICES: ("mintings",),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_time(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class CacheEntry:
    """Cached value of one external field."""

    cache: Any = None
    cached_at: datetime | None = None
    updated_at: datetime | None = None

    def to_raw(self) -> dict[str, Any]:
        return {
            "Cache": self.cache,
            "CachedAt": format_time(self.cached_at),
            "UpdatedAt": format_time(self.updated_at),
        }

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | None) -> CacheEntry:
        raw = raw or {}
        return cls(
            cache=raw.get("Cache"),
            cached_at=parse_time(raw.get("CachedAt")),
            updated_at=parse_time(raw.get("UpdatedAt")),
        )


ExternalMap = dict[str, CacheEntry]


def ext_map_to_raw(external: Mapping[str, CacheEntry] | None) -> dict[str, Any] | None:
    if external is None:
        return None
    return {name: entry.to_raw() for name, entry in external.items()}


def ext_map_from_raw(raw: Mapping[str, Any] | None) -> ExternalMap | None:
    if raw is None:
        return None
    return {name: CacheEntry.from_raw(entry) for name, entry in raw.items()}


def to_ext_field(name: str | ExtField) -> ExtField:
    try:
        return ExtField(name)
    except ValueError:
        raise ValidationError(f"Unknown external field: {name}", details={"name": str(name)})


def ext_fields_for_key_info(names: Iterable[str]) -> set[ExtField]:
    """External fields required by a set of key-info block names.

    Raises:
        ValidationError: If a key-info name is unknown
    """
    fields: set[ExtField] = set()
    for name in names:
        try:
            fields.update(KEY_INFO_EXTS[KeyInfoName(name)])
        except ValueError:
            raise ValidationError(f"Unknown key info name: {name}", details={"name": name})
    return fields


def is_expired(name: str | ExtField, entry: CacheEntry | None, now: datetime | None = None) -> bool:
    """Whether an entry must be refetched."""
    if entry is None or entry.cached_at is None:
        return True
    max_age = EXT_MAX_AGE.get(to_ext_field(name))
    if max_age is None:
        return False
    return (now or utcnow()) > entry.cached_at + max_age


@dataclass(frozen=True)
class AggregateLoadSpec:
    """Which aggregate columns to load for which collection."""

    collection_id: int | None
    fields: frozenset[str]


def _collection_id(external: Mapping[str, CacheEntry]) -> int | None:
    entry = external.get(ExtField.CL_ID.value)
    return entry.cache if entry is not None else None


def _minting_prices(mintings: list[dict[str, Any]] | None) -> tuple[Any, datetime | None]:
    prices = [
        {
            "id": m["id"],
            "name": m.get("name"),
            "price": m["price"],
            "priceUpdatedAt": m["price_updated_at"],
            "startsAt": m.get("starts_at"),
            "startsAtPrecision": m.get("starts_at_precision"),
        }
        for m in mintings or []
        if m.get("price") is not None and m.get("price_updated_at")
    ]
    updated = [parse_time(p["priceUpdatedAt"]) for p in prices]
    return prices, max(updated) if updated else None


def compute_value(name: ExtField, aggregate: Mapping[str, Any], current: CacheEntry | None) -> tuple[Any, datetime | None]:
    """Value and upstream update time of one field from a loaded aggregate."""
    if name == ExtField.CL_ID:
        return (current.cache if current else None), None
    if name == ExtField.CL_NAME:
        return aggregate.get("name"), parse_time(aggregate.get("updated_at"))
    if name in (ExtField.CL_DISCORD, ExtField.CL_TWITTER, ExtField.CL_TELEGRAM, ExtField.CL_WEBSITE):
        url_field, updated_field = EXT_AGGREGATE_FIELDS[name]
        return aggregate.get(url_field), parse_time(aggregate.get(updated_field))
    if name == ExtField.CL_CHAINS:
        return [{"symbol": c["symbol"]} for c in aggregate.get("chains") or []], parse_time(aggregate.get("updated_at"))
    if name == ExtField.CL_MARKETPLACES:
        marketplaces = [
            {
                "id": m["id"],
                "name": m["name"],
                "url": m.get("url"),
                "collectionUrl": m.get("collection_url"),
                "logoImage": m.get("logo_image"),
            }
            for m in aggregate.get("marketplaces") or []
        ]
        return marketplaces, parse_time(aggregate.get("updated_at"))
    if name == ExtField.CL_CATEGORY:
        return aggregate.get("category"), parse_time(aggregate.get("updated_at"))
    if name == ExtField.CL_FLOOR_PRICE:
        price, currency = aggregate.get("floor_price"), aggregate.get("floor_price_currency")
        value = None
        if price is not None and currency:
            value = {"floorPrice": price, "floorPriceCurrency": {"symbol": currency}}
        return value, parse_time(aggregate.get("floor_price_updated_at"))
    if name == ExtField.CL_MINTING_PRICES:
        return _minting_prices(aggregate.get("mintings"))
    raise ValidationError(f"Unknown external field: {name}")


class ExternalDataCache:
    """Refreshes expired external fields from the collection aggregate.

    Example:
        >>> cache = ExternalDataCache(relational_store)
        >>> external, refreshed = await cache.refresh(document.external)
    """

    def __init__(
        self,
        relational: RelationalStore,
        config: ExtCacheConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.relational = relational
        self.config = config or ExtCacheConfig()
        self._clock = clock
        self._sleep = sleep

    def now(self) -> datetime:
        return self._clock()

    def get_expired(
        self,
        external: Mapping[str, CacheEntry] | None,
        now: datetime | None = None,
    ) -> tuple[set[ExtField], AggregateLoadSpec | None]:
        """Find expired fields and the aggregate columns needed to refresh them.

        Returns:
            Expired field names and a load spec, or None when nothing needs loading
        """
        if not external:
            return set(), None
        now = now or self.now()
        expired = {to_ext_field(name) for name, entry in external.items() if is_expired(name, entry, now)}
        if not expired:
            return expired, None

        columns = frozenset(column for name in expired for column in EXT_AGGREGATE_FIELDS[name])
        return expired, AggregateLoadSpec(collection_id=_collection_id(external), fields=columns)

    async def load(self, spec: AggregateLoadSpec | None) -> Mapping[str, Any] | None:
        """Load the aggregate once, retrying transient upstream failures.

        Raises:
            UpstreamTransientError: If every attempt fails
        """
        if spec is None or spec.collection_id is None or not spec.fields:
            return None

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.relational.load_aggregate_fields(spec.collection_id, spec.fields)
            except UpstreamTransientError as e:
                if attempt >= self.config.fetch_attempts:
                    logger.error(
                        "Collection aggregate load failed",
                        extra={"collection_id": spec.collection_id, "attempts": attempt},
                    )
                    raise
                logger.warning(
                    "Collection aggregate load failed, retrying",
                    extra={"collection_id": spec.collection_id, "attempt": attempt, "error": str(e)},
                )
                await self._sleep(self.config.retry_delay_ms / 1000)

    def recompute(
        self,
        external: Mapping[str, CacheEntry],
        expired: Iterable[ExtField],
        aggregate: Mapping[str, Any] | None,
        now: datetime | None = None,
    ) -> ExternalMap:
        """Return a new map with only the expired entries replaced."""
        now = now or self.now()
        result = dict(external)
        for name in expired:
            current = external.get(name.value)
            if aggregate is None and name != ExtField.CL_ID:
                result[name.value] = CacheEntry(cache=None, cached_at=now, updated_at=None)
                continue
            value, updated_at = compute_value(name, aggregate or {}, current)
            result[name.value] = CacheEntry(cache=value, cached_at=now, updated_at=updated_at)
        return result

    async def refresh(self, external: Mapping[str, CacheEntry] | None) -> tuple[ExternalMap | None, set[ExtField]]:
        """Refresh every expired entry with one aggregate load.

        Returns:
            A refreshed copy of the map and the names that were refreshed
        """
        if external is None:
            return None, set()
        now = self.now()
        expired, spec = self.get_expired(external, now)
        if not expired:
            return dict(external), expired
        aggregate = await self.load(spec)
        logger.debug(
            "Refreshed external fields",
            extra={"fields": sorted(name.value for name in expired), "found": aggregate is not None},
        )
        return self.recompute(external, expired, aggregate, now), expired
