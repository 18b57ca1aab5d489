"""
Shared fixtures for the wiki engine tests.

Every fixture builds fresh state: a connected in-memory table, a SQLite
relational store in a temporary directory and a WikiContext around both.
"""

import tempfile

import pytest
import pytest_asyncio

from wikidb.wiki_engine.config import BatchWriteConfig
from wikidb.wiki_engine.droplet import DropletGenerator
from wikidb.wiki_engine.relational.sqlite_store import SqliteRelationalStore
from wikidb.wiki_engine.store.memory import InMemoryWikiTable
from wikidb.wiki_engine.vcs.context import WikiContext
from wikidb.wiki_engine.vcs.ext import ExternalDataCache

MACHINE_TAG = 4242


async def no_sleep(_seconds):
    return None


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest_asyncio.fixture
async def table():
    """Connected in-memory wiki table."""
    table = InMemoryWikiTable()
    await table.connect()
    yield table
    await table.close()


@pytest_asyncio.fixture
async def relational(data_dir):
    """Initialized SQLite relational store."""
    store = SqliteRelationalStore(f"{data_dir}/wiki.db", wal_mode=False)
    await store.initialize()
    return store


@pytest.fixture
def droplets():
    return DropletGenerator(machine_tag=MACHINE_TAG)


@pytest.fixture
def ctx(table, relational, droplets):
    """WikiContext with fast retries."""
    return WikiContext(
        table=table,
        relational=relational,
        droplets=droplets,
        ext_cache=ExternalDataCache(relational, sleep=no_sleep),
        batch=BatchWriteConfig(base_delay_ms=1, max_delay_ms=4),
    )
