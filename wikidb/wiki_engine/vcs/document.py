"""
Wiki documents.

A document version holds scalar attributes (type, title, tags), cached
external fields and two trees of block references (key info and content).
Versions are immutable; a separate latest pointer is rewritten after each
new version:

    Document::{docId} / Document::v_{version}   version item
    Document::{docId} / Document::v_latest      latest pointer (explicit Version attribute)

Blocks referenced by a version are found with one range query: every
version stores buildVersionRange = [start, end], the smallest and largest
document version under which any of its referenced block versions was
written.

Write order of a create:
    1. the relational document row, then its tag associations
    2. block versions and block latest pointers
    3. the document version item (retrying batch write)
    4. the document latest pointer (single put)

An update runs steps 2 to 4, then mirrors the title and tag changes to the
relational store.

Refreshed external fields are written back by a conditional update of the
pointer's Ext attribute only, applied while the pointer still holds the
version they were loaded from.

Invariants:
    - Version items are never rewritten
    - An update that changes nothing writes nothing
    - The latest pointer of a version that is not latest is never written
    - Deleted documents keep their history; the latest version is a tombstone

How to change safely:
    - Raw attribute names are persisted; add new ones, never rename
    - Keep block writes ahead of the document version that references them
    - Bump SCHEMA_VERSION when the raw layout changes
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from ..droplet import get_iso
from ..errors import InvalidKeyError, NotFoundError, ValidationError
from ..keys import (
    LATEST,
    PK_ATTR,
    SK_ATTR,
    document_pk,
    document_sk,
    document_version_prefix,
    parse_document_pk,
    parse_document_sk,
)
from ..models import (
    BlockRequest,
    DocumentCreateRequest,
    DocumentType,
    DocumentUpdateRequest,
    parse_request,
)
from ..store.base import query_all
from .block import WikiBlock
from .context import WikiContext
from .diff import (
    UNSET,
    AuditAction,
    BlockRef,
    RequestedNode,
    StructureDiff,
    StructureResult,
    compare_ext,
    compare_structure,
    compare_tags,
    compare_value,
    has_changes,
    summarize_structure,
    walk_refs,
)
from .entity import VersionedEntity, VersionToken
from .ext import CacheEntry, ExternalMap, ExtField, ext_fields_for_key_info, ext_map_from_raw, ext_map_to_raw

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


@dataclass
class DocumentDiff:
    """Per-attribute actions of one document version."""

    type: AuditAction = AuditAction.NO_CHANGE
    title: AuditAction = AuditAction.NO_CHANGE
    key_info: StructureDiff = field(default_factory=StructureDiff)
    content: StructureDiff = field(default_factory=StructureDiff)
    tags: dict[str, AuditAction] = field(default_factory=dict)
    external: dict[str, AuditAction] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return (
            self.type != AuditAction.NO_CHANGE
            or self.title != AuditAction.NO_CHANGE
            or self.key_info.changed
            or self.content.changed
            or has_changes(self.tags)
            or has_changes(self.external)
        )

    def to_raw(self) -> dict[str, Any]:
        return {
            "Type": self.type.value,
            "Title": self.title.value,
            "KeyInfo": self.key_info.to_raw(),
            "Content": self.content.to_raw(),
            "Tags": {tag: action.value for tag, action in self.tags.items()},
            "Ext": {name: action.value for name, action in self.external.items()},
        }

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | None) -> DocumentDiff:
        raw = raw or {}
        return cls(
            type=AuditAction(raw.get("Type", "-")),
            title=AuditAction(raw.get("Title", "-")),
            key_info=StructureDiff.from_raw(raw.get("KeyInfo")),
            content=StructureDiff.from_raw(raw.get("Content")),
            tags={tag: AuditAction(action) for tag, action in (raw.get("Tags") or {}).items()},
            external={name: AuditAction(action) for name, action in (raw.get("Ext") or {}).items()},
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "title": self.title.value,
            "keyInfo": self.key_info.to_raw(),
            "content": self.content.to_raw(),
            "tags": {tag: action.value for tag, action in self.tags.items()},
            "external": {name: action.value for name, action in self.external.items()},
        }


@dataclass
class DocumentItem:
    """One version of a document."""

    id: str
    version: str
    type: DocumentType
    title: str
    key_info: list[BlockRef] = field(default_factory=list)
    content: list[BlockRef] = field(default_factory=list)
    tags: set[str] = field(default_factory=set)
    external: ExternalMap | None = None
    is_latest: bool = False
    action: AuditAction = AuditAction.CREATE
    diff: DocumentDiff = field(default_factory=DocumentDiff)
    audited_by: str = ""
    audit_comment: str | None = None
    build_version_range: tuple[str, str] = ("", "")
    schema: int = SCHEMA_VERSION

    def refs(self) -> list[BlockRef]:
        """Every block reference of this version, at any depth."""
        return list(walk_refs([*self.key_info, *self.content]))


def _walk_requests(requests: Iterable[BlockRequest]) -> Iterable[BlockRequest]:
    for request in requests:
        yield request
        yield from _walk_requests(request.children)


class WikiDocument(VersionedEntity[DocumentItem, dict]):
    """Versioned wiki document.

    Example:
        >>> document = WikiDocument(ctx)
        >>> await document.create({"type": "collection#", "title": "Apes"}, audited_by="user:1")
        >>> changed, item = await WikiDocument(ctx, document.id).update({"title": "Apes!"}, audited_by="user:2")
    """

    kind = "document"

    def __init__(self, ctx: WikiContext, document_id: str | None = None) -> None:
        super().__init__(document_id or ctx.droplets.generate())
        self.ctx = ctx
        self.blocks: dict[str, WikiBlock] = {}
        self._background: set[asyncio.Task] = set()

    # Encoding

    def to_raw_item(self, item: DocumentItem, latest: bool = False) -> dict[str, Any]:
        """Encode a version item, or its latest pointer when latest=True.

        Raises:
            ValidationError: If a latest pointer is requested for a version that is not latest
        """
        if latest and not item.is_latest:
            raise ValidationError(
                "Cannot write the latest pointer of a version that is not latest",
                code="NOT_LATEST",
                details={"document_id": item.id, "version": item.version},
            )
        start, end = item.build_version_range
        raw: dict[str, Any] = {
            PK_ATTR: document_pk(item.id),
            SK_ATTR: document_sk(LATEST if latest else item.version),
            "Type": item.type.value,
            "Title": item.title,
            "KeyInfo": [ref.to_raw() for ref in item.key_info],
            "Content": [ref.to_raw() for ref in item.content],
            "Tags": sorted(item.tags),
            "Version": item.version,
            "IsLatest": latest,
            "Action": item.action.value,
            "Diff": item.diff.to_raw(),
            "AuditedBy": item.audited_by,
            "BuildVersionStart": start,
            "BuildVersionEnd": end,
            "Schema": item.schema,
        }
        if item.audit_comment is not None:
            raw["AuditComment"] = item.audit_comment
        if item.external is not None:
            raw["Ext"] = ext_map_to_raw(item.external)
        return raw

    def to_item(self, raw: Mapping[str, Any]) -> DocumentItem:
        """Decode a raw document item.

        Raises:
            InvalidKeyError: If keys are malformed or a latest pointer lacks its Version
        """
        try:
            document_id = parse_document_pk(raw.get(PK_ATTR))
            sk_version = parse_document_sk(raw.get(SK_ATTR))
            is_latest = sk_version == LATEST
            version = raw.get("Version") if is_latest else sk_version
            if not version:
                raise InvalidKeyError(
                    "Latest document pointer lacks its Version attribute",
                    details={"pk": raw.get(PK_ATTR), "sk": raw.get(SK_ATTR)},
                )
            if not is_latest and raw.get("Version") not in (None, sk_version):
                raise InvalidKeyError(
                    "Document version attribute does not match its sort key",
                    details={"sk": raw.get(SK_ATTR), "version": raw.get("Version")},
                )
        except InvalidKeyError as e:
            logger.error("Corrupt document item", extra={"error": e.message, **e.details})
            raise

        return DocumentItem(
            id=document_id,
            version=version,
            type=DocumentType(raw["Type"]),
            title=raw.get("Title", ""),
            key_info=[BlockRef.from_raw(ref) for ref in raw.get("KeyInfo") or []],
            content=[BlockRef.from_raw(ref) for ref in raw.get("Content") or []],
            tags=set(raw.get("Tags") or []),
            external=ext_map_from_raw(raw.get("Ext")),
            is_latest=is_latest,
            action=AuditAction(raw.get("Action", AuditAction.CREATE.value)),
            diff=DocumentDiff.from_raw(raw.get("Diff")),
            audited_by=raw.get("AuditedBy", ""),
            audit_comment=raw.get("AuditComment"),
            build_version_range=(raw.get("BuildVersionStart", version), raw.get("BuildVersionEnd", version)),
            schema=int(raw.get("Schema", SCHEMA_VERSION)),
        )

    # Loading

    async def load_item(
        self,
        version: str | VersionToken = VersionToken.LATEST,
        consistent: bool = False,
        select: bool = True,
    ) -> DocumentItem:
        """Fetch one document version and cache it.

        Raises:
            NotFoundError: If the latest pointer or the version does not exist
        """
        key = LATEST if version == VersionToken.LATEST else str(version)
        raw = await self.ctx.table.get(document_pk(self.id), document_sk(key), consistent=consistent)
        if raw is None:
            raise NotFoundError(
                f"Document {self.id} version {key} not found",
                code="LATEST_NOT_FOUND" if key == LATEST else "VERSION_NOT_FOUND",
                details={"document_id": self.id, "version": key},
            )
        item = self.to_item(raw)
        return self.set_item(item, select=select, is_latest=True if item.version == self.latest_version else None)

    async def load(
        self,
        version: str | VersionToken = VersionToken.LATEST,
        consistent: bool = False,
        select: bool = True,
        load_blocks: bool = True,
        refresh_external: bool = True,
        reconcile: bool = False,
    ) -> DocumentItem:
        """Load a version, its blocks and, for the latest version, fresh external fields.

        Args:
            version: LATEST or a concrete version
            consistent: Strongly consistent read of the document item
            select: Select the loaded version
            load_blocks: Load every block version the item references
            refresh_external: Refresh expired external fields of the latest version
                and write the refreshed pointer back in the background
            reconcile: Repair a latest pointer that lags behind the newest version first

        Raises:
            NotFoundError: If the version or a referenced block version is missing
            InvalidKeyError: If a stored key is corrupt
        """
        if reconcile and version == VersionToken.LATEST:
            await self.reconcile()

        item = await self.load_item(version, consistent=consistent, select=select)

        if refresh_external and item.is_latest and item.external:
            refreshed, names = await self.ctx.ext_cache.refresh(item.external)
            if names:
                item.external = refreshed
                self._write_back(item)

        if load_blocks:
            await self.load_blocks(item.version)
        return item

    async def load_blocks(self, version: str | VersionToken = VersionToken.SELECTED) -> dict[str, WikiBlock]:
        """Load the blocks referenced by a loaded version with one range query.

        Raises:
            NotFoundError: If a referenced block version is missing
        """
        item = self.get_item(version)
        refs = item.refs()
        if not refs:
            return {}

        start, end = item.build_version_range
        loaded = await WikiBlock.load_range(self.ctx, self.id, start, end)
        for block_id, block in loaded.items():
            existing = self.blocks.get(block_id)
            if existing is None:
                self.blocks[block_id] = block
            else:
                for block_item in block.item_map.values():
                    existing.item_map.setdefault(block_item.version, block_item)

        for ref in refs:
            block = self._require_block(ref, item)
            if item.is_latest:
                block.set_item(block.item_map[ref.version], select=False, is_latest=True)
        return {ref.id: self.blocks[ref.id] for ref in refs}

    def _require_block(self, ref: BlockRef, item: DocumentItem) -> WikiBlock:
        block = self.blocks.get(ref.id)
        if block is None or ref.version not in block.item_map:
            logger.error(
                "Referenced block version not found",
                extra={"document_id": self.id, "version": item.version, "block_id": ref.id, "block_version": ref.version},
            )
            raise NotFoundError(
                f"Block {ref.id} version {ref.version} of document {self.id} not found",
                code="BUILD_BLOCK_NOT_FOUND",
                details={"document_id": self.id, "block_id": ref.id, "block_version": ref.version},
            )
        return block

    async def history(self, limit: int | None = None) -> list[DocumentItem]:
        """Stored versions of this document, newest first."""
        raws = await query_all(
            self.ctx.table,
            document_pk(self.id),
            sk_prefix=document_version_prefix(),
            forward=False,
            limit=limit,
        )
        items = [self.to_item(raw) for raw in raws]
        for item in items:
            self.set_item(item, select=False, is_latest=True if item.version == self.latest_version else None)
        return items

    async def reconcile(self) -> bool:
        """Rewrite the latest pointer if a newer version item exists.

        A crash between a version write and its pointer write leaves the
        pointer one version behind; this repairs it from the version item.

        Returns:
            True if the pointer was rewritten
        """
        table = self.ctx.table
        page = await table.query(document_pk(self.id), sk_prefix=document_version_prefix(), forward=False, limit=1)
        if not page.items:
            return False

        newest = self.to_item(page.items[0])
        pointer = await table.get(document_pk(self.id), document_sk(LATEST), consistent=True)
        pointer_version = pointer.get("Version") if pointer else None
        if pointer_version is not None and pointer_version >= newest.version:
            return False

        logger.warning(
            "Latest pointer behind newest version, repairing",
            extra={"document_id": self.id, "pointer_version": pointer_version, "newest_version": newest.version},
        )
        newest.is_latest = True
        await table.put(self.to_raw_item(newest, latest=True))
        self.set_item(newest, select=False)
        return True

    def _write_back(self, item: DocumentItem) -> None:
        task = asyncio.create_task(self._write_back_external(item.version, ext_map_to_raw(item.external)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_back_external(self, version: str, ext: dict[str, Any]) -> None:
        try:
            await self._update_pointer_ext(version, ext)
        except Exception as e:
            logger.warning(
                "Failed to write refreshed external fields back",
                extra={"document_id": self.id, "error": str(e)},
            )

    async def _update_pointer_ext(self, version: str, ext: dict[str, Any]) -> None:
        written = await self.ctx.table.update_ext(document_pk(self.id), document_sk(LATEST), ext, version)
        if not written:
            logger.info(
                "Skipped external write-back, latest pointer moved",
                extra={"document_id": self.id, "version": version},
            )

    @property
    def pending_background(self) -> bool:
        return bool(self._background)

    async def wait_background(self) -> None:
        """Wait for pending write-backs (testing and shutdown helper)."""
        if self._background:
            await asyncio.gather(*list(self._background))

    # Building

    def build(self, version: str | VersionToken = VersionToken.SELECTED) -> dict[str, Any]:
        """Public view of a version with every referenced block resolved.

        Raises:
            NotFoundError: If a referenced block version is not loaded
        """
        item = self.get_item(version)
        build = {
            "id": item.id,
            "version": item.version,
            "isLatest": item.is_latest,
            "type": item.type.value,
            "title": item.title,
            "keyInfo": self._build_refs(item.key_info, item),
            "content": self._build_refs(item.content, item),
            "tags": sorted(item.tags),
            "external": {name: entry.cache for name, entry in item.external.items()} if item.external else None,
            "action": item.action.value,
            "diff": item.diff.to_public(),
            "auditedBy": item.audited_by,
            "auditComment": item.audit_comment,
            "createdAt": get_iso(item.id),
            "auditedAt": get_iso(item.version),
        }
        return self.set_build(item.version, build)

    def _build_refs(self, refs: list[BlockRef], item: DocumentItem) -> list[dict[str, Any]]:
        built = []
        for ref in refs:
            block = self._require_block(ref, item)
            view = dict(block.build(ref.version, transposed=ref.diff.transposed, external=item.external))
            view["children"] = self._build_refs(ref.children, item)
            built.append(view)
        return built

    # Writing

    async def _save(self, item: DocumentItem) -> DocumentItem:
        item.is_latest = True
        await self.ctx.write_versions([self.to_raw_item(item)], [self.to_raw_item(item, latest=True)])
        return self.set_item(item)

    def _key_info_names(self, requests: list[BlockRequest] | None, refs: list[BlockRef]) -> set[str]:
        if requests is UNSET:
            names = set()
            for ref in walk_refs(refs):
                block_item = self.blocks[ref.id].item_map[ref.version]
                if block_item.key_info is not None:
                    names.add(block_item.key_info.name)
            return names

        names = set()
        for request in _walk_requests(requests):
            if request.key_info is not None:
                names.add(request.key_info.name)
            elif request.id is not None and request.id in self.blocks:
                block = self.blocks[request.id]
                current = block.item_map.get(block.latest_version) if block.latest_version else None
                if current is not None and current.key_info is not None:
                    names.add(current.key_info.name)
        return names

    async def _refreshed_external(
        self,
        key_info_names: set[str],
        current: ExternalMap | None,
        collection_id: int | None = None,
    ) -> tuple[ExternalMap | None, dict[str, AuditAction]]:
        fields = {name.value for name in ext_fields_for_key_info(key_info_names)}
        if collection_id is not None:
            fields.add(ExtField.CL_ID.value)
        elif current and ExtField.CL_ID.value in current:
            fields.add(ExtField.CL_ID.value)

        if current is None and not fields:
            return None, {}

        current = current or {}
        requested = {name: current.get(name) or CacheEntry() for name in fields}
        if collection_id is not None:
            requested[ExtField.CL_ID.value] = CacheEntry(cache=collection_id)
        compared = compare_ext(requested if fields else None, current)
        refreshed, _ = await self.ctx.ext_cache.refresh(compared.data)
        return refreshed, compared.action

    async def _create_blocks(
        self,
        requests: list[BlockRequest],
        document_version: str,
        audited_by: str,
        external: ExternalMap | None,
    ) -> list[BlockRef]:
        planned: list[tuple[BlockRequest, WikiBlock]] = []

        def plan(nodes: list[BlockRequest]) -> list[BlockRef]:
            refs = []
            for request in nodes:
                block = WikiBlock(self.ctx, self.id)
                self.blocks[block.id] = block
                planned.append((request, block))
                refs.append(BlockRef(block.id, "", StructureDiff(AuditAction.CREATE), plan(request.children)))
            return refs

        refs = plan(requests)
        items = await asyncio.gather(
            *(block.create(request, document_version, audited_by, external) for request, block in planned)
        )
        versions = {item.id: item.version for item in items}
        for ref in walk_refs(refs):
            ref.version = versions[ref.id]
        return refs

    async def create(self, request: Mapping[str, Any] | DocumentCreateRequest, audited_by: str) -> DocumentItem:
        """Create the first version of this document.

        Raises:
            ValidationError: If the request is invalid or references existing blocks
        """
        request = parse_request(DocumentCreateRequest, request)
        if self.item_map:
            raise ValidationError(f"Document {self.id} already exists", details={"document_id": self.id})
        for block_request in _walk_requests([*request.key_info, *request.content]):
            if block_request.id is not None:
                raise ValidationError(
                    "New documents cannot reference existing blocks",
                    details={"block_id": block_request.id},
                )

        version = self.ctx.droplets.generate()
        external, ext_actions = await self._refreshed_external(
            self._key_info_names(request.key_info, []),
            None,
            collection_id=request.collection_id,
        )

        await self.ctx.relational.create_document_row(self.id, request.title, audited_by, request.collection_id)
        for tag in request.tags:
            await self.ctx.relational.associate_tag(self.id, await self.ctx.relational.find_or_create_tag(tag))

        key_info = await self._create_blocks(request.key_info, version, audited_by, external)
        content = await self._create_blocks(request.content, version, audited_by, external)

        tags = set(request.tags)
        item = DocumentItem(
            id=self.id,
            version=version,
            type=request.type,
            title=request.title,
            key_info=key_info,
            content=content,
            tags=tags,
            external=external,
            action=AuditAction.CREATE,
            diff=DocumentDiff(
                type=AuditAction.CREATE,
                title=AuditAction.CREATE,
                key_info=StructureDiff(AuditAction.CREATE),
                content=StructureDiff(AuditAction.CREATE),
                tags={tag: AuditAction.CREATE for tag in tags},
                external=ext_actions,
            ),
            audited_by=audited_by,
            audit_comment=request.audit_comment,
            build_version_range=(version, version),
        )
        await self._save(item)

        logger.info(
            "Created document",
            extra={"document_id": self.id, "version": version, "blocks": len(item.refs()), "audited_by": audited_by},
        )
        return item

    def _plan_structure(
        self,
        requests: list[BlockRequest] | None,
        current: list[BlockRef],
        other: list[BlockRef],
        new_blocks: dict[str, BlockRequest],
        existing: dict[str, BlockRequest],
    ) -> StructureResult:
        if requests is UNSET:
            return compare_structure(UNSET, current)

        known = {ref.id for ref in walk_refs(current)}
        elsewhere = {ref.id for ref in walk_refs(other)}

        def to_nodes(nodes: list[BlockRequest]) -> list[RequestedNode]:
            result = []
            for request in nodes:
                if request.id is None:
                    block = WikiBlock(self.ctx, self.id)
                    self.blocks[block.id] = block
                    new_blocks[block.id] = request
                    block_id = block.id
                elif request.id in elsewhere:
                    raise ValidationError(
                        "Blocks cannot move between keyInfo and content",
                        details={"block_id": request.id},
                    )
                elif request.id not in known:
                    raise ValidationError(
                        f"Block {request.id} is not part of document {self.id}",
                        details={"block_id": request.id},
                    )
                else:
                    existing[request.id] = request
                    block_id = request.id
                result.append(RequestedNode(block_id, to_nodes(request.children)))
            return result

        return compare_structure(to_nodes(requests), current)

    async def update(
        self,
        request: Mapping[str, Any] | DocumentUpdateRequest,
        audited_by: str,
    ) -> tuple[bool, DocumentItem]:
        """Diff a requested state against the latest version and write a new one if anything changed.

        Returns:
            (changed, item): the new latest version, or the current one when nothing changed

        Raises:
            NotFoundError: If the document does not exist or was deleted
            ValidationError: If the request is invalid or renames a KeyInfo
        """
        request = parse_request(DocumentUpdateRequest, request)
        current = await self.load(
            VersionToken.LATEST,
            consistent=True,
            refresh_external=False,
            reconcile=self.ctx.reconcile_on_load,
        )
        if current.action == AuditAction.DELETE:
            raise NotFoundError(f"Document {self.id} was deleted", details={"document_id": self.id})

        type_ = compare_value(request.value("type"), current.type)
        title = compare_value(request.value("title"), current.title)
        tags = compare_tags(request.value("tags"), current.tags)

        requested_key_info = request.value("key_info")
        external, ext_actions = await self._refreshed_external(
            self._key_info_names(requested_key_info, current.key_info),
            current.external,
        )

        new_blocks: dict[str, BlockRequest] = {}
        existing: dict[str, BlockRequest] = {}
        key_info = self._plan_structure(requested_key_info, current.key_info, current.content, new_blocks, existing)
        content = self._plan_structure(request.value("content"), current.content, current.key_info, new_blocks, existing)

        # Nothing structural requested and every scalar unchanged
        if not new_blocks and not existing and not key_info.deleted and not content.deleted:
            diff = DocumentDiff(
                type=type_.action,
                title=title.action,
                key_info=key_info.diff,
                content=content.diff,
                tags=tags.action,
                external=ext_actions,
            )
            if not diff.changed:
                await self._write_back_unchanged(current, external)
                return False, current

        version = self.ctx.droplets.generate()
        versions = await self._apply_blocks(version, audited_by, external, new_blocks, existing, key_info, content)

        for result in (key_info, content):
            for ref in walk_refs(result.refs):
                if ref.id in versions:
                    new_version, changed = versions[ref.id]
                    ref.version = new_version
                    if changed and ref.diff.action == AuditAction.NO_CHANGE:
                        ref.diff = StructureDiff(AuditAction.UPDATE, ref.diff.transposed)
            result.diff = summarize_structure(result.refs, result.deleted)

        diff = DocumentDiff(
            type=type_.action,
            title=title.action,
            key_info=key_info.diff,
            content=content.diff,
            tags=tags.action,
            external=ext_actions,
        )
        if not diff.changed:
            await self._write_back_unchanged(current, external)
            return False, current

        refs = list(walk_refs([*key_info.refs, *content.refs]))
        document_versions = [self.blocks[ref.id].item_map[ref.version].document_version for ref in refs]
        build_range = (min(document_versions), max(document_versions)) if document_versions else (version, version)

        item = DocumentItem(
            id=self.id,
            version=version,
            type=type_.data,
            title=title.data,
            key_info=key_info.refs,
            content=content.refs,
            tags=tags.data,
            external=external,
            action=AuditAction.UPDATE,
            diff=diff,
            audited_by=audited_by,
            audit_comment=request.audit_comment,
            build_version_range=build_range,
        )
        await self._save(item)

        if title.action != AuditAction.NO_CHANGE:
            await self.ctx.relational.update_document_title(self.id, title.data)
        await self._sync_tags(tags.action)

        logger.info(
            "Updated document",
            extra={"document_id": self.id, "version": version, "audited_by": audited_by},
        )
        return True, item

    async def _apply_blocks(
        self,
        version: str,
        audited_by: str,
        external: ExternalMap | None,
        new_blocks: dict[str, BlockRequest],
        existing: dict[str, BlockRequest],
        key_info: StructureResult,
        content: StructureResult,
    ) -> dict[str, tuple[str, bool]]:
        """Create, update and delete child blocks concurrently.

        Returns:
            New block version and whether it changed, by block id
        """

        async def create(block_id: str, request: BlockRequest) -> tuple[str, str, bool]:
            item = await self.blocks[block_id].create(request, version, audited_by, external)
            return block_id, item.version, True

        async def update(block_id: str, request: BlockRequest) -> tuple[str, str, bool]:
            changed, item = await self.blocks[block_id].update(request, version, audited_by, external)
            return block_id, item.version, changed

        async def delete(block_id: str) -> tuple[str, str, bool]:
            item = await self.blocks[block_id].delete(version, audited_by)
            return block_id, item.version, True

        results = await asyncio.gather(
            *(create(block_id, request) for block_id, request in new_blocks.items()),
            *(update(block_id, request) for block_id, request in existing.items()),
            *(delete(ref.id) for ref in [*key_info.deleted, *content.deleted]),
        )
        return {block_id: (block_version, changed) for block_id, block_version, changed in results}

    async def _write_back_unchanged(self, current: DocumentItem, external: ExternalMap | None) -> None:
        if external is not None and external != current.external:
            current.external = external
            await self._update_pointer_ext(current.version, ext_map_to_raw(external))

    async def _sync_tags(self, actions: Mapping[str, AuditAction]) -> None:
        relational = self.ctx.relational
        for tag, action in sorted(actions.items()):
            if action == AuditAction.CREATE:
                await relational.associate_tag(self.id, await relational.find_or_create_tag(tag))
            elif action == AuditAction.DELETE:
                await relational.dissociate_tag(self.id, await relational.find_or_create_tag(tag))

    async def delete(self, audited_by: str, audit_comment: str | None = None) -> DocumentItem:
        """Write a tombstone version and remove the document from the relational side.

        Raises:
            NotFoundError: If the document does not exist or is already deleted
        """
        current = await self.load(
            VersionToken.LATEST,
            consistent=True,
            load_blocks=False,
            refresh_external=False,
            reconcile=self.ctx.reconcile_on_load,
        )
        if current.action == AuditAction.DELETE:
            raise NotFoundError(f"Document {self.id} was deleted", details={"document_id": self.id})

        version = self.ctx.droplets.generate()
        item = DocumentItem(
            id=self.id,
            version=version,
            type=current.type,
            title=current.title,
            action=AuditAction.DELETE,
            diff=DocumentDiff(),
            audited_by=audited_by,
            audit_comment=audit_comment,
            build_version_range=(version, version),
        )
        await self._save(item)

        await self._sync_tags({tag: AuditAction.DELETE for tag in current.tags})
        await self.ctx.relational.delete_document_row(self.id)

        logger.info("Deleted document", extra={"document_id": self.id, "version": version, "audited_by": audited_by})
        return item
