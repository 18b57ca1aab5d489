"""
Wiki engine entry point.

This module wires configuration, the key-value table, the relational store,
the Droplet generator and the external-data cache into one WikiContext and
exposes document operations on top of it.

Lifecycle:
    1. Load configuration from the environment
    2. Connect the table and initialize the relational schema
    3. Serve create/get/update/delete/history/reconcile calls
    4. Wait for background write-backs and close the table on stop

Invariants:
    - One WikiContext (and one Droplet generator) per engine
    - Operations fail with StoreError before start()
    - Latest reads of a deleted document raise NotFoundError

How to change safely:
    - Keep WikiDocument the only writer of document and block items
    - New operations should build a fresh WikiDocument per call
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import json_log_formatter

from .config import EngineConfig
from .droplet import DropletGenerator
from .errors import NotFoundError, StoreError
from .relational.base import RelationalStore
from .relational.sqlite_store import SqliteRelationalStore
from .store.base import WikiTable, create_wiki_table
from .vcs.block import WikiBlock
from .vcs.context import WikiContext
from .vcs.diff import AuditAction
from .vcs.document import WikiDocument
from .vcs.entity import VersionToken
from .vcs.ext import ExternalDataCache

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class WikiEngine:
    """Document operations over a configured table and relational store.

    Attributes:
        config: Engine configuration
        table: Key-value table
        relational: Relational store
        ctx: Shared context handed to every entity

    Example:
        >>> engine = WikiEngine(EngineConfig.from_env())
        >>> await engine.start()
        >>> build = await engine.create_document({"type": "term#", "title": "Floor"}, audited_by="user:1")
        >>> await engine.stop()
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        table: WikiTable | None = None,
        relational: RelationalStore | None = None,
        droplets: DropletGenerator | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration (loaded from env if not provided)
            table: Table override, otherwise built from the configured backend
            relational: Relational store override, otherwise SQLite at the configured path
            droplets: Droplet generator override
        """
        self.config = config or EngineConfig.from_env()
        self.table = table or create_wiki_table(self.config)
        self.relational = relational or SqliteRelationalStore(
            self.config.relational.db_path,
            busy_timeout_ms=self.config.relational.busy_timeout_ms,
        )
        self.ctx = WikiContext(
            table=self.table,
            relational=self.relational,
            droplets=droplets or DropletGenerator(self.config.droplet.machine_tag),
            ext_cache=ExternalDataCache(self.relational, self.config.ext_cache),
            batch=self.config.batch,
            gsi_name=self.config.dynamo.gsi_name,
            reconcile_on_load=self.config.reconcile_on_load,
        )
        self._documents: list[WikiDocument] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Connect the table and prepare the relational schema."""
        if self._running:
            logger.warning("Wiki engine already running")
            return

        logger.info("Starting wiki engine")
        self.config.log_config()
        await self.table.connect()
        await self.relational.initialize()
        self._running = True
        logger.info(
            "Wiki engine started",
            extra={"machine_tag": self.ctx.droplets.machine_tag},
        )

    async def stop(self) -> None:
        """Flush background write-backs and close the table."""
        if not self._running:
            return

        logger.info("Stopping wiki engine")
        await self.wait_background()
        await self.table.close()
        self._running = False
        logger.info("Wiki engine stopped")

    async def __aenter__(self) -> WikiEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def wait_background(self) -> None:
        """Wait for every pending external-field write-back."""
        documents, self._documents = self._documents, []
        for document in documents:
            await document.wait_background()

    def _check_running(self) -> None:
        if not self._running:
            raise StoreError("Wiki engine is not started", code="NOT_STARTED")

    def _document(self, document_id: str | None = None) -> WikiDocument:
        self._check_running()
        return WikiDocument(self.ctx, document_id)

    # Operations

    async def create_document(self, payload: Mapping[str, Any], audited_by: str) -> dict[str, Any]:
        """Create a document and return its first build.

        Raises:
            ValidationError: If the payload is invalid
        """
        document = self._document()
        await document.create(payload, audited_by)
        return document.build()

    async def get_document(self, document_id: str, version: str | None = None) -> dict[str, Any]:
        """Build a document version, the latest one when version is None.

        Raises:
            NotFoundError: If the document or version does not exist, or the document was deleted
        """
        document = self._document(document_id)
        if version is None:
            item = await document.load(VersionToken.LATEST)
            if item.action == AuditAction.DELETE:
                raise NotFoundError(
                    f"Document {document_id} was deleted",
                    details={"document_id": document_id},
                )
        else:
            await document.load(version)
        if document.pending_background:
            self._documents.append(document)
        return document.build()

    async def update_document(
        self,
        document_id: str,
        payload: Mapping[str, Any],
        audited_by: str,
    ) -> tuple[bool, dict[str, Any]]:
        """Apply an update and return (changed, latest build).

        Raises:
            NotFoundError: If the document does not exist or was deleted
            ValidationError: If the payload is invalid
        """
        document = self._document(document_id)
        changed, item = await document.update(payload, audited_by)
        return changed, document.build(item.version)

    async def delete_document(
        self,
        document_id: str,
        audited_by: str,
        audit_comment: str | None = None,
    ) -> dict[str, Any]:
        """Delete a document and return the tombstone build.

        Raises:
            NotFoundError: If the document does not exist or was already deleted
        """
        document = self._document(document_id)
        item = await document.delete(audited_by, audit_comment)
        return document.build(item.version)

    async def document_history(self, document_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Summaries of stored document versions, newest first."""
        document = self._document(document_id)
        items = await document.history(limit)
        return [
            {
                "version": item.version,
                "action": item.action.value,
                "title": item.title,
                "diff": item.diff.to_public(),
                "auditedBy": item.audited_by,
                "auditComment": item.audit_comment,
            }
            for item in items
        ]

    async def block_history(
        self,
        document_id: str,
        block_id: str,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Builds of stored block versions, newest first."""
        self._check_running()
        block = WikiBlock(self.ctx, document_id, block_id)
        items = await block.history(limit)
        return [block.build(item.version) for item in items]

    async def reconcile_document(self, document_id: str) -> bool:
        """Repair a stale latest pointer; True if it was rewritten."""
        return await self._document(document_id).reconcile()
