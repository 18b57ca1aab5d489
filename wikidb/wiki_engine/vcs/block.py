"""
Wiki blocks.

A block is one piece of document content (header, paragraph, key-info box,
...). Every change produces a new immutable block version stored under the
document partition, keyed by the document version that introduced it, plus
a rewritten latest pointer:

    Document::{docId} / Block::v_{documentVersion}::{blockId}   version item
    Document::{docId} / Block::v_latest::{blockId}              latest pointer
    BlockHistory::{docId} / Block::{blockId}::v_{version}       history index

Invariants:
    - A block version is written once and never changed
    - The KeyInfo name of a block never changes
    - Verification counts restart at zero on every new version
    - An unchanged update writes nothing

How to change safely:
    - Raw attribute names are persisted; add new ones, never rename
    - Bump SCHEMA_VERSION when the raw layout changes
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..droplet import get_iso
from ..errors import InvalidKeyError, NotFoundError
from ..keys import (
    GSI_PK_ATTR,
    GSI_SK_ATTR,
    LATEST,
    PK_ATTR,
    SK_ATTR,
    block_gsi_pk,
    block_gsi_sk,
    block_history_prefix,
    block_range,
    block_sk,
    document_pk,
    parse_block_sk,
    parse_document_pk,
)
from ..models import BlockRequest, BlockType
from ..store.base import query_all
from .context import WikiContext
from .diff import (
    UNSET,
    AuditAction,
    KeyInfo,
    compare_data,
    compare_ext,
    compare_key_info,
    compare_value,
    has_changes,
)
from .entity import VersionedEntity, VersionToken
from .ext import CacheEntry, ExternalMap, ext_fields_for_key_info, ext_map_from_raw, ext_map_to_raw

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


@dataclass
class VerificationCount:
    verify: int = 0
    be_aware: int = 0


@dataclass
class BlockDiff:
    """Per-attribute actions of one block version."""

    type: AuditAction = AuditAction.NO_CHANGE
    data: AuditAction = AuditAction.NO_CHANGE
    key_info: AuditAction = AuditAction.NO_CHANGE
    external: dict[str, AuditAction] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        scalar = (self.type, self.data, self.key_info)
        return any(action != AuditAction.NO_CHANGE for action in scalar) or has_changes(self.external)

    def to_raw(self) -> dict[str, Any]:
        return {
            "Type": self.type.value,
            "Data": self.data.value,
            "KeyInfo": self.key_info.value,
            "Ext": {name: action.value for name, action in self.external.items()},
        }

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | None) -> BlockDiff:
        raw = raw or {}
        return cls(
            type=AuditAction(raw.get("Type", "-")),
            data=AuditAction(raw.get("Data", "-")),
            key_info=AuditAction(raw.get("KeyInfo", "-")),
            external={name: AuditAction(action) for name, action in (raw.get("Ext") or {}).items()},
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data.value,
            "keyInfo": self.key_info.value,
            "external": {name: action.value for name, action in self.external.items()},
        }


@dataclass
class BlockItem:
    """One version of a block."""

    id: str
    document_id: str
    document_version: str
    version: str
    type: BlockType
    data: dict[str, Any] | None = None
    key_info: KeyInfo | None = None
    external: ExternalMap | None = None
    is_latest: bool = False
    action: AuditAction = AuditAction.CREATE
    diff: BlockDiff = field(default_factory=BlockDiff)
    verification_count: VerificationCount = field(default_factory=VerificationCount)
    audited_by: str = ""
    schema: int = SCHEMA_VERSION


def _select_external(
    names: list[str] | None,
    *sources: Mapping[str, CacheEntry] | None,
) -> ExternalMap | None:
    if names is None:
        return None
    result: ExternalMap = {}
    for name in names:
        entry = next((s[name] for s in sources if s and name in s), None)
        result[name] = copy.deepcopy(entry) if entry is not None else CacheEntry()
    return result


class WikiBlock(VersionedEntity[BlockItem, dict]):
    """Versioned block of one document.

    Example:
        >>> block = WikiBlock(ctx, document_id)
        >>> await block.create(request, document_version, audited_by="user:1")
        >>> changed, item = await block.update(request, next_version, audited_by="user:1")
    """

    kind = "block"

    def __init__(self, ctx: WikiContext, document_id: str, block_id: str | None = None) -> None:
        super().__init__(block_id or ctx.droplets.generate())
        self.ctx = ctx
        self.document_id = document_id

    # Encoding

    def to_raw_item(self, item: BlockItem, latest: bool = False) -> dict[str, Any]:
        raw: dict[str, Any] = {
            PK_ATTR: document_pk(item.document_id),
            SK_ATTR: block_sk(item.id, LATEST if latest else item.document_version),
            GSI_PK_ATTR: block_gsi_pk(item.document_id),
            GSI_SK_ATTR: block_gsi_sk(item.id, LATEST if latest else item.version),
            "Type": item.type.value,
            "Version": item.version,
            "DocumentVersion": item.document_version,
            "IsLatest": latest,
            "Action": item.action.value,
            "Diff": item.diff.to_raw(),
            "VfCntPosVr": item.verification_count.verify,
            "VfCntNegBA": item.verification_count.be_aware,
            "AuditedBy": item.audited_by,
            "Schema": item.schema,
        }
        if item.data is not None:
            raw["Data"] = item.data
        if item.key_info is not None:
            raw["KeyInfo"] = item.key_info.to_raw()
        if item.external is not None:
            raw["Ext"] = ext_map_to_raw(item.external)
        return raw

    def to_item(self, raw: Mapping[str, Any]) -> BlockItem:
        """Decode a raw block item.

        Raises:
            InvalidKeyError: If keys are malformed or a latest pointer lacks its versions
        """
        try:
            document_id = parse_document_pk(raw.get(PK_ATTR))
            sort_key = parse_block_sk(raw.get(SK_ATTR))
            is_latest = sort_key.document_version == LATEST
            version = raw.get("Version")
            document_version = raw.get("DocumentVersion") or (None if is_latest else sort_key.document_version)
            if not version or not document_version:
                raise InvalidKeyError(
                    "Block item lacks its version attributes",
                    details={"pk": raw.get(PK_ATTR), "sk": raw.get(SK_ATTR)},
                )
        except InvalidKeyError as e:
            logger.error("Corrupt block item", extra={"error": e.message, **e.details})
            raise

        return BlockItem(
            id=sort_key.block_id,
            document_id=document_id,
            document_version=document_version,
            version=version,
            type=BlockType(raw["Type"]),
            data=raw.get("Data"),
            key_info=KeyInfo.from_raw(raw.get("KeyInfo")),
            external=ext_map_from_raw(raw.get("Ext")),
            is_latest=is_latest,
            action=AuditAction(raw.get("Action", AuditAction.CREATE.value)),
            diff=BlockDiff.from_raw(raw.get("Diff")),
            verification_count=VerificationCount(
                verify=int(raw.get("VfCntPosVr", 0)),
                be_aware=int(raw.get("VfCntNegBA", 0)),
            ),
            audited_by=raw.get("AuditedBy", ""),
            schema=int(raw.get("Schema", SCHEMA_VERSION)),
        )

    # Loading

    async def load_item(self, version: str | VersionToken = VersionToken.LATEST, consistent: bool = False) -> BlockItem:
        """Fetch a block version (latest pointer or history index) and cache it.

        Raises:
            NotFoundError: If the version does not exist
        """
        table = self.ctx.table
        if version == VersionToken.LATEST:
            raw = await table.get(document_pk(self.document_id), block_sk(self.id, LATEST), consistent=consistent)
        else:
            page = await table.query(
                block_gsi_pk(self.document_id),
                sk_equals=block_gsi_sk(self.id, str(version)),
                index=self.ctx.gsi_name,
                limit=1,
            )
            raw = page.items[0] if page.items else None

        if raw is None:
            raise NotFoundError(
                f"Block {self.id} version {version} not found",
                details={"document_id": self.document_id, "block_id": self.id, "version": str(version)},
            )
        return self.set_item(self.to_item(raw))

    load = load_item

    async def history(self, limit: int | None = None, forward: bool = False) -> list[BlockItem]:
        """Every stored version of this block, newest first by default."""
        raws = await query_all(
            self.ctx.table,
            block_gsi_pk(self.document_id),
            sk_prefix=block_history_prefix(self.id),
            index=self.ctx.gsi_name,
            forward=forward,
            limit=limit,
        )
        items = [self.to_item(raw) for raw in raws]
        for item in items:
            self.set_item(item, select=False, is_latest=item.version == self.latest_version)
        return items

    @classmethod
    async def load_range(cls, ctx: WikiContext, document_id: str, start: str, end: str) -> dict[str, WikiBlock]:
        """Load every block version written between two document versions.

        Returns:
            Blocks by id, each with all versions in the range cached
        """
        raws = await query_all(ctx.table, document_pk(document_id), sk_between=block_range(start, end))
        blocks: dict[str, WikiBlock] = {}
        for raw in raws:
            block_id = parse_block_sk(raw.get(SK_ATTR)).block_id
            block = blocks.get(block_id)
            if block is None:
                block = blocks[block_id] = cls(ctx, document_id, block_id)
            block.set_item(block.to_item(raw), select=False)
        return blocks

    # Writing

    async def _save(self, item: BlockItem) -> BlockItem:
        await self.ctx.write_versions([self.to_raw_item(item)], [self.to_raw_item(item, latest=True)])
        item.is_latest = True
        return self.set_item(item)

    async def _current(self) -> BlockItem:
        if self.latest_version is None or self.latest_version not in self.item_map:
            await self.load_item(VersionToken.LATEST, consistent=True)
        return self.get_item(VersionToken.LATEST)

    @staticmethod
    def _requested_ext_names(request: BlockRequest, key_info: KeyInfo | None) -> list[str] | None:
        if request.external is not None:
            return [name.value for name in request.external]
        if key_info is not None:
            return sorted(name.value for name in ext_fields_for_key_info([key_info.name]))
        return None

    async def create(
        self,
        request: BlockRequest,
        document_version: str,
        audited_by: str,
        external: Mapping[str, CacheEntry] | None = None,
    ) -> BlockItem:
        """Create the first version of this block.

        Args:
            request: Requested block state
            document_version: Document version introducing the block
            audited_by: Actor making the change
            external: Cache entries to copy for the block's external fields
        """
        key_info = KeyInfo(request.key_info.name, request.key_info.label) if request.key_info else None
        block_external = _select_external(self._requested_ext_names(request, key_info), external)

        item = BlockItem(
            id=self.id,
            document_id=self.document_id,
            document_version=document_version,
            version=self.ctx.droplets.generate(),
            type=request.type,
            data=request.data,
            key_info=key_info,
            external=block_external,
            action=AuditAction.CREATE,
            diff=BlockDiff(
                type=AuditAction.CREATE,
                data=AuditAction.CREATE if request.data is not None else AuditAction.NO_CHANGE,
                key_info=AuditAction.CREATE if key_info is not None else AuditAction.NO_CHANGE,
                external={name: AuditAction.CREATE for name in block_external or {}},
            ),
            audited_by=audited_by,
        )
        await self._save(item)
        logger.debug(
            "Created block",
            extra={"document_id": self.document_id, "block_id": self.id, "version": item.version},
        )
        return item

    async def update(
        self,
        request: BlockRequest,
        document_version: str,
        audited_by: str,
        external: Mapping[str, CacheEntry] | None = None,
    ) -> tuple[bool, BlockItem]:
        """Diff a requested state against the latest version.

        Returns:
            (changed, item): the new version, or the current one when nothing changed

        Raises:
            NotFoundError: If the block was deleted
            ValidationError: If the KeyInfo name would change
        """
        current = await self._current()
        if current.action == AuditAction.DELETE:
            raise NotFoundError(f"Block {self.id} was deleted", details={"block_id": self.id})

        requested_key_info = request.value("key_info")
        if requested_key_info is not UNSET and requested_key_info is not None:
            requested_key_info = KeyInfo(requested_key_info.name, requested_key_info.label)

        type_ = compare_value(request.value("type"), current.type)
        data = compare_data(request.value("data"), current.data)
        key_info = compare_key_info(requested_key_info, current.key_info)

        requested_ext: Any = UNSET
        if "external" in request.model_fields_set:
            names = None if request.external is None else [name.value for name in request.external]
            requested_ext = _select_external(names, current.external, external)
        ext = compare_ext(requested_ext, current.external)

        diff = BlockDiff(type=type_.action, data=data.action, key_info=key_info.action, external=ext.action)
        if not diff.changed:
            return False, current

        item = BlockItem(
            id=self.id,
            document_id=self.document_id,
            document_version=document_version,
            version=self.ctx.droplets.generate(),
            type=type_.data,
            data=data.data,
            key_info=key_info.data,
            external=ext.data,
            action=AuditAction.UPDATE,
            diff=diff,
            audited_by=audited_by,
        )
        await self._save(item)
        logger.debug(
            "Updated block",
            extra={"document_id": self.document_id, "block_id": self.id, "version": item.version},
        )
        return True, item

    async def delete(self, document_version: str, audited_by: str) -> BlockItem:
        """Write a tombstone version of this block.

        Raises:
            NotFoundError: If the block is already deleted
        """
        current = await self._current()
        if current.action == AuditAction.DELETE:
            raise NotFoundError(f"Block {self.id} was deleted", details={"block_id": self.id})

        item = BlockItem(
            id=self.id,
            document_id=self.document_id,
            document_version=document_version,
            version=self.ctx.droplets.generate(),
            type=current.type,
            key_info=current.key_info,
            action=AuditAction.DELETE,
            diff=BlockDiff(),
            audited_by=audited_by,
        )
        return await self._save(item)

    # Building

    def build(
        self,
        version: str | VersionToken = VersionToken.SELECTED,
        transposed: bool = False,
        external: Mapping[str, CacheEntry] | None = None,
    ) -> dict[str, Any]:
        """Public view of a block version.

        Args:
            version: Version to build
            transposed: Whether the block moved in the referencing version
            external: Fresher cache entries (the document's) preferred over the block's own
        """
        item = self.get_item(version)
        resolved = None
        if item.external is not None:
            resolved = {
                name: (external[name] if external and name in external else entry).cache
                for name, entry in item.external.items()
            }

        build = {
            "id": item.id,
            "type": item.type.value,
            "data": item.data,
            "keyInfo": {"name": item.key_info.name, "label": item.key_info.label} if item.key_info else None,
            "external": resolved,
            "verificationCount": {
                "verify": item.verification_count.verify,
                "beAware": item.verification_count.be_aware,
            },
            "version": item.version,
            "documentVersion": item.document_version,
            "isLatest": item.is_latest,
            "action": item.action.value,
            "diff": item.diff.to_public(),
            "transposed": transposed,
            "auditedBy": item.audited_by,
            "createdAt": get_iso(item.id),
            "auditedAt": get_iso(item.version),
        }
        return self.set_build(item.version, build)
