"""
Unit tests for chunked batch writes with backoff.
"""

import pytest

from wikidb.wiki_engine.config import BatchWriteConfig
from wikidb.wiki_engine.errors import UpstreamTransientError
from wikidb.wiki_engine.store.batch import batch_write, chunked


def make_items(count):
    return [{"WikiPK": "Document::1", "WikiSK": f"Document::v_{i:04d}"} for i in range(count)]


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestChunked:
    """Tests for chunked."""

    def test_chunk_sizes(self):
        """Items split into chunks of at most the given size."""
        assert [len(chunk) for chunk in chunked(make_items(60), 25)] == [25, 25, 10]

    def test_empty(self):
        """No items means no chunks."""
        assert chunked([], 25) == []

    def test_invalid_size(self):
        """Chunk size must be positive."""
        with pytest.raises(ValueError):
            chunked(make_items(1), 0)


class TestBatchWrite:
    """Tests for batch_write."""

    @pytest.mark.asyncio
    async def test_writes_all_chunks(self, table):
        """Every item lands, one call per chunk without throttling."""
        result = await batch_write(table, make_items(60))

        assert len(table) == 60
        assert result.chunks == 3
        assert result.calls == 3
        assert result.retried_items == 0

    @pytest.mark.asyncio
    async def test_resends_only_unprocessed(self, table):
        """Only unprocessed items are re-sent, with doubling delays."""
        table.leave_unprocessed(3, 1)
        sleep = RecordingSleep()

        result = await batch_write(
            table,
            make_items(10),
            BatchWriteConfig(base_delay_ms=500, max_delay_ms=16000),
            sleep=sleep,
        )

        assert len(table) == 10
        assert len(table.write_log) == 10
        assert result.calls == 3
        assert result.retried_items == 4
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_delay_is_capped(self, table):
        """Backoff never exceeds the configured ceiling."""
        table.leave_unprocessed(1, 1, 1, 1)
        sleep = RecordingSleep()

        await batch_write(table, make_items(2), BatchWriteConfig(base_delay_ms=100, max_delay_ms=300), sleep=sleep)

        assert sleep.delays == [0.1, 0.2, 0.3, 0.3]

    @pytest.mark.asyncio
    async def test_unbounded_by_default(self, table):
        """Without a cap the utility keeps retrying until everything lands."""
        table.leave_unprocessed(*([1] * 20))

        result = await batch_write(table, make_items(1), BatchWriteConfig(base_delay_ms=0), sleep=RecordingSleep())

        assert len(table) == 1
        assert result.calls == 21

    @pytest.mark.asyncio
    async def test_max_attempts(self, table):
        """An attempt cap surfaces UpstreamTransientError."""
        table.leave_unprocessed(2, 2, 2)

        with pytest.raises(UpstreamTransientError) as exc_info:
            await batch_write(
                table,
                make_items(5),
                BatchWriteConfig(max_attempts=3),
                sleep=RecordingSleep(),
            )
        assert exc_info.value.details == {"unprocessed": 2, "attempts": 3}
        assert len(table) == 3

    @pytest.mark.asyncio
    async def test_table_errors_propagate(self, table):
        """Exceptions from the table are not retried."""
        table.fail_next("batch_write", UpstreamTransientError("throttled"))

        with pytest.raises(UpstreamTransientError):
            await batch_write(table, make_items(2), sleep=RecordingSleep())
