"""
Versioned entity state machine.

Documents and blocks share the same in-memory model: a map of loaded
versions, a map of built (public) views, and two cursors:

    latest_version    version currently known to be the latest
    selected_version  version that build() and get_item() use by default

Version tokens resolve against those cursors:

    VersionToken.LATEST    -> latest_version   (NotLoadedError if unknown)
    VersionToken.SELECTED  -> selected_version (NotSelectedError if unknown)
    "<droplet>"            -> that version

Invariants:
    - Every item and build in the maps belongs to this entity's id
    - At most one item in item_map has is_latest set
    - Maps are per instance; entities never share state

How to change safely:
    - Subclasses own storage access; this module never touches a table
    - Keep set_item the only way to move the latest cursor
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Generic, Mapping, Protocol, TypeVar

from ..errors import IdMismatchError, NotFoundError, NotLoadedError, NotSelectedError

logger = logging.getLogger(__name__)


class VersionToken(str, Enum):
    """Symbolic versions accepted wherever a concrete version is."""

    LATEST = "latest"
    SELECTED = "selected"


class VersionedItem(Protocol):
    """Attributes every versioned item exposes."""

    id: str
    version: str
    is_latest: bool


ItemT = TypeVar("ItemT", bound=VersionedItem)
BuildT = TypeVar("BuildT")


class VersionedEntity(ABC, Generic[ItemT, BuildT]):
    """Base of versioned wiki entities.

    Subclasses implement decoding, encoding, loading and building; this base
    keeps the item/build caches and the latest/selected cursors consistent.
    """

    kind = "entity"

    def __init__(self, entity_id: str) -> None:
        self.id = entity_id
        self.item_map: dict[str, ItemT] = {}
        self.build_map: dict[str, BuildT] = {}
        self.latest_version: str | None = None
        self.selected_version: str | None = None

    def resolve_version(self, version: str | VersionToken = VersionToken.SELECTED) -> str:
        """Resolve a version token to a concrete version.

        Raises:
            NotLoadedError: LATEST requested before the latest version is known
            NotSelectedError: SELECTED requested before any version is selected
        """
        if version == VersionToken.LATEST:
            if self.latest_version is None:
                raise NotLoadedError(
                    f"Latest version of {self.kind} {self.id} is not loaded",
                    details={"id": self.id},
                )
            return self.latest_version
        if version == VersionToken.SELECTED:
            if self.selected_version is None:
                raise NotSelectedError(
                    f"No version of {self.kind} {self.id} is selected",
                    details={"id": self.id},
                )
            return self.selected_version
        return str(version)

    def _check_id(self, item_id: str) -> None:
        if item_id != self.id:
            logger.error(
                "Item attached to the wrong entity",
                extra={"kind": self.kind, "entity_id": self.id, "item_id": item_id},
            )
            raise IdMismatchError(self.id, item_id)

    def set_item(self, item: ItemT, select: bool = True, is_latest: bool | None = None) -> ItemT:
        """Cache an item version.

        Args:
            item: Item to cache
            select: Move the selected cursor to this version
            is_latest: Override the item's latest flag before caching

        Raises:
            IdMismatchError: If the item belongs to another entity
        """
        self._check_id(item.id)
        if is_latest is not None:
            item.is_latest = is_latest

        if item.is_latest:
            previous = self.item_map.get(self.latest_version) if self.latest_version else None
            if previous is not None and previous.version != item.version:
                previous.is_latest = False
            self.latest_version = item.version

        self.item_map[item.version] = item
        if select:
            self.selected_version = item.version
        return item

    def set_build(self, version: str, build: BuildT) -> BuildT:
        """Cache the public view of a version.

        Raises:
            IdMismatchError: If the build belongs to another entity
        """
        build_id = build.get("id") if isinstance(build, Mapping) else getattr(build, "id", self.id)
        self._check_id(build_id)
        self.build_map[version] = build
        return build

    def has_version(self, version: str | VersionToken = VersionToken.SELECTED) -> bool:
        try:
            return self.resolve_version(version) in self.item_map
        except (NotLoadedError, NotSelectedError):
            return False

    def get_item(self, version: str | VersionToken = VersionToken.SELECTED) -> ItemT:
        """Return a cached item version.

        Raises:
            NotFoundError: If the version is not loaded
        """
        resolved = self.resolve_version(version)
        item = self.item_map.get(resolved)
        if item is None:
            raise NotFoundError(
                f"Version {resolved} of {self.kind} {self.id} is not loaded",
                details={"id": self.id, "version": resolved},
            )
        return item

    def select(self, version: str | VersionToken) -> ItemT:
        """Move the selected cursor to a loaded version."""
        item = self.get_item(version)
        self.selected_version = item.version
        return item

    @abstractmethod
    def to_item(self, raw: Mapping[str, Any]) -> ItemT:
        """Decode a raw table item."""

    @abstractmethod
    def to_raw_item(self, item: ItemT, latest: bool = False) -> dict[str, Any]:
        """Encode an item; latest=True encodes the latest pointer record."""

    @abstractmethod
    async def load_item(self, version: str | VersionToken, consistent: bool = False) -> ItemT:
        """Fetch one version from the table and cache it."""

    @abstractmethod
    def build(self, version: str | VersionToken = VersionToken.SELECTED) -> BuildT:
        """Produce the public view of a version."""
