"""
Chunked batch writes with exponential backoff.

BatchWrite calls accept at most 25 items and may leave part of a request
unprocessed under throttling. This module splits item lists into chunks and
keeps re-sending exactly the unprocessed items of each chunk:

    attempt 1  -> send chunk
    attempt n  -> wait delay, send what came back unprocessed
    delay      -> base, 2*base, 4*base, ... capped at max

Invariants:
    - Items are written in chunk order; a chunk finishes before the next starts
    - Only unprocessed items are re-sent
    - With max_attempts=None the utility retries until every item is written

How to change safely:
    - Keep the default unbounded; callers rely on "returns means written"
    - Transient exceptions from the table propagate; only partial results retry
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..config import BatchWriteConfig
from ..errors import UpstreamTransientError
from .base import Item, WikiTable

logger = logging.getLogger(__name__)


@dataclass
class BatchWriteResult:
    """Outcome of a batch write.

    Attributes:
        items: Number of items written
        chunks: Number of chunks
        calls: Number of BatchWrite calls issued
        retried_items: Items re-sent after being left unprocessed
    """

    items: int = 0
    chunks: int = 0
    calls: int = 0
    retried_items: int = 0


def chunked(items: list[Item], size: int) -> list[list[Item]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [items[i : i + size] for i in range(0, len(items), size)]


async def batch_write(
    table: WikiTable,
    items: list[Item],
    config: BatchWriteConfig | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> BatchWriteResult:
    """Write items in chunks, retrying unprocessed items with backoff.

    Args:
        table: Target table
        items: Items to write
        config: Chunk size, delays and optional attempt cap
        sleep: Awaitable sleep, injectable for tests

    Returns:
        BatchWriteResult with call accounting

    Raises:
        UpstreamTransientError: If max_attempts is set and items remain
            unprocessed after the last attempt
    """
    config = config or BatchWriteConfig()
    result = BatchWriteResult(items=len(items))

    for chunk in chunked(items, config.chunk_size):
        result.chunks += 1
        pending = chunk
        delay_ms = config.base_delay_ms
        attempts = 0

        while pending:
            attempts += 1
            result.calls += 1
            pending = await table.batch_write(pending)
            if not pending:
                break

            if config.max_attempts is not None and attempts >= config.max_attempts:
                logger.error(
                    "Batch write gave up with unprocessed items",
                    extra={"unprocessed": len(pending), "attempts": attempts},
                )
                raise UpstreamTransientError(
                    f"{len(pending)} items still unprocessed after {attempts} attempts",
                    details={"unprocessed": len(pending), "attempts": attempts},
                )

            result.retried_items += len(pending)
            logger.warning(
                "Batch write left items unprocessed, retrying",
                extra={"unprocessed": len(pending), "attempt": attempts, "delay_ms": delay_ms},
            )
            await sleep(delay_ms / 1000)
            delay_ms = min(delay_ms * 2, config.max_delay_ms)

    return result
