"""
Shared collaborators of wiki entities.

A WikiContext bundles what every document and block needs: the table, the
relational store, the Droplet generator and the external-data cache. The
engine builds one per process; tests build one around in-memory stores.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..config import BatchWriteConfig
from ..droplet import DropletGenerator
from ..relational.base import RelationalStore
from ..store.base import WikiTable
from ..store.batch import batch_write
from .ext import ExternalDataCache

logger = logging.getLogger(__name__)


@dataclass
class WikiContext:
    """Collaborators of wiki entities.

    Attributes:
        table: Key-value table holding versions and latest pointers
        relational: Relational store for rows, tags and aggregates
        droplets: Generator of ids and versions
        ext_cache: External-data cache
        batch: Batch write retry settings
        gsi_name: Name of the block-history index
        reconcile_on_load: Repair stale latest pointers before updates
    """

    table: WikiTable
    relational: RelationalStore
    droplets: DropletGenerator
    ext_cache: ExternalDataCache
    batch: BatchWriteConfig = field(default_factory=BatchWriteConfig)
    gsi_name: str = "WikiGSI-index"
    reconcile_on_load: bool = True

    async def write_versions(self, versions: list[dict[str, Any]], latest: list[dict[str, Any]]) -> None:
        """Write immutable version items, then their latest pointers.

        Version items go through the retrying batch writer; each pointer is a
        single put issued only after every version item has landed.
        """
        if versions:
            await batch_write(self.table, versions, self.batch)
        for item in latest:
            await self.table.put(item)
