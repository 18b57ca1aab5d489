"""
In-memory wiki table implementation for testing.

This module provides a simple in-memory table backend for:
- Unit tests
- Integration tests
- Local development without DynamoDB

Invariants:
    - All data is lost on process exit
    - Query ordering and pagination behave like the DynamoDB backend
    - Stored items are copied on the way in and out

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with WikiTable protocol
    - Add features to help with testing scenarios (fault injection, write log)
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from ..errors import StoreError
from ..keys import GSI_PK_ATTR, GSI_SK_ATTR, PK_ATTR, SK_ATTR
from .base import Item, QueryPage

logger = logging.getLogger(__name__)


class InMemoryWikiTable:
    """In-memory implementation of WikiTable for testing.

    Besides the protocol, it records every written item and can be told to
    leave batch items unprocessed or to fail the next call of an operation.

    Attributes:
        gsi_name: Name answered by index queries
        write_log: Every item written, in order (puts and batch items)
        calls: Number of calls per operation

    Example:
        >>> table = InMemoryWikiTable()
        >>> await table.connect()
        >>> await table.put({"WikiPK": "Document::1", "WikiSK": "Document::v_latest"})
        >>> len(table.write_log)
        1
    """

    def __init__(self, gsi_name: str = "WikiGSI-index") -> None:
        self.gsi_name = gsi_name
        self._items: dict[tuple[str, str], Item] = {}
        self._lock = asyncio.Lock()
        self._connected = False
        self._unprocessed_plan: list[int] = []
        self._failures: dict[str, list[Exception]] = {}
        self.write_log: list[Item] = []
        self.calls: dict[str, int] = {"get": 0, "put": 0, "batch_write": 0, "update_ext": 0, "query": 0}

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("In-memory wiki table connected")

    async def close(self) -> None:
        self._connected = False

    def _check_connected(self) -> None:
        if not self._connected:
            raise StoreError("In-memory wiki table is not connected")

    def _raise_injected(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    @staticmethod
    def _key(item: Item) -> tuple[str, str]:
        try:
            return item[PK_ATTR], item[SK_ATTR]
        except KeyError as e:
            raise StoreError(f"Item is missing key attribute {e}") from e

    async def get(self, pk: str, sk: str, consistent: bool = False) -> Item | None:
        self._check_connected()
        async with self._lock:
            self.calls["get"] += 1
            self._raise_injected("get")
            item = self._items.get((pk, sk))
            return copy.deepcopy(item) if item is not None else None

    async def put(self, item: Item) -> None:
        self._check_connected()
        async with self._lock:
            self.calls["put"] += 1
            self._raise_injected("put")
            stored = copy.deepcopy(item)
            self._items[self._key(stored)] = stored
            self.write_log.append(copy.deepcopy(item))

    async def batch_write(self, items: list[Item]) -> list[Item]:
        self._check_connected()
        async with self._lock:
            self.calls["batch_write"] += 1
            self._raise_injected("batch_write")

            skip = self._unprocessed_plan.pop(0) if self._unprocessed_plan else 0
            skip = min(skip, len(items))
            processed, unprocessed = items[: len(items) - skip], items[len(items) - skip :]

            for item in processed:
                stored = copy.deepcopy(item)
                self._items[self._key(stored)] = stored
                self.write_log.append(copy.deepcopy(item))
            return [copy.deepcopy(item) for item in unprocessed]

    async def update_ext(self, pk: str, sk: str, ext: dict[str, Any], expected_version: str) -> bool:
        self._check_connected()
        async with self._lock:
            self.calls["update_ext"] += 1
            self._raise_injected("update_ext")
            item = self._items.get((pk, sk))
            if item is None or item.get("Version") != expected_version:
                return False
            item["Ext"] = copy.deepcopy(ext)
            self.write_log.append(copy.deepcopy(item))
            return True

    def _index_attrs(self, index: str | None) -> tuple[str, str]:
        if index is None:
            return PK_ATTR, SK_ATTR
        if index != self.gsi_name:
            raise StoreError(f"Unknown index: {index}")
        return GSI_PK_ATTR, GSI_SK_ATTR

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
        self._check_connected()
        pk_attr, sk_attr = self._index_attrs(index)

        def sort_key(item: Item) -> tuple[str, str, str]:
            return item[sk_attr], item[PK_ATTR], item[SK_ATTR]

        async with self._lock:
            self.calls["query"] += 1
            self._raise_injected("query")
            matches = []
            for item in self._items.values():
                if item.get(pk_attr) != pk or sk_attr not in item:
                    continue
                sk = item[sk_attr]
                if sk_prefix is not None and not sk.startswith(sk_prefix):
                    continue
                if sk_between is not None and not sk_between[0] <= sk <= sk_between[1]:
                    continue
                if sk_equals is not None and sk != sk_equals:
                    continue
                matches.append(item)

            matches.sort(key=sort_key, reverse=not forward)

            if start_key is not None:
                marker = (start_key[sk_attr], start_key[PK_ATTR], start_key[SK_ATTR])
                if forward:
                    matches = [item for item in matches if sort_key(item) > marker]
                else:
                    matches = [item for item in matches if sort_key(item) < marker]

            last_key = None
            if limit is not None and len(matches) > limit:
                matches = matches[:limit]
                last = matches[-1]
                last_key = {PK_ATTR: last[PK_ATTR], SK_ATTR: last[SK_ATTR]}
                if index is not None:
                    last_key.update({pk_attr: last[pk_attr], sk_attr: last[sk_attr]})

            return QueryPage(items=[copy.deepcopy(item) for item in matches], last_key=last_key)

    # Testing helpers

    def leave_unprocessed(self, *counts: int) -> None:
        """Leave the last N items of upcoming batch calls unprocessed, one count per call."""
        self._unprocessed_plan.extend(counts)

    def fail_next(self, operation: str, error: Exception) -> None:
        """Raise ``error`` from the next call of ``operation``."""
        self._failures.setdefault(operation, []).append(error)

    def clear_log(self) -> None:
        self.write_log.clear()
        for operation in self.calls:
            self.calls[operation] = 0

    def remove(self, pk: str, sk: str) -> None:
        self._items.pop((pk, sk), None)

    def raw(self, pk: str, sk: str) -> Item | None:
        """Stored item without copying rules or call accounting."""
        item = self._items.get((pk, sk))
        return copy.deepcopy(item) if item is not None else None

    def all_items(self) -> list[Item]:
        return [copy.deepcopy(item) for _, item in sorted(self._items.items())]

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"InMemoryWikiTable(items={len(self._items)}, writes={len(self.write_log)})"
