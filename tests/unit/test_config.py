"""
Unit tests for engine configuration.
"""

import pytest

from wikidb.wiki_engine.config import (
    BatchWriteConfig,
    DropletConfig,
    EngineConfig,
    StoreBackend,
)
from wikidb.wiki_engine.store.base import create_wiki_table
from wikidb.wiki_engine.store.memory import InMemoryWikiTable


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self, monkeypatch):
        """Defaults need only the environment that is always present."""
        for name in (
            "WIKI_STORE_BACKEND",
            "WIKI_BATCH_CHUNK_SIZE",
            "WIKI_BATCH_MAX_ATTEMPTS",
            "DROPLET_MACHINE_TAG",
            "WIKI_RECONCILE_ON_LOAD",
        ):
            monkeypatch.delenv(name, raising=False)

        config = EngineConfig.from_env()

        assert config.store_backend == StoreBackend.DYNAMODB
        assert config.dynamo.table_name == "Wiki"
        assert config.dynamo.gsi_name == "WikiGSI-index"
        assert config.batch == BatchWriteConfig()
        assert config.batch.max_attempts is None
        assert config.droplet.machine_tag is None
        assert config.reconcile_on_load is True

    def test_from_env(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv("WIKI_STORE_BACKEND", "memory")
        monkeypatch.setenv("WIKI_BATCH_CHUNK_SIZE", "10")
        monkeypatch.setenv("WIKI_BATCH_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("DROPLET_MACHINE_TAG", "4321")
        monkeypatch.setenv("WIKI_EXT_FETCH_ATTEMPTS", "2")
        monkeypatch.setenv("WIKI_RECONCILE_ON_LOAD", "false")

        config = EngineConfig.from_env()

        assert config.store_backend == StoreBackend.MEMORY
        assert config.batch.chunk_size == 10
        assert config.batch.max_attempts == 5
        assert config.droplet.machine_tag == 4321
        assert config.ext_cache.fetch_attempts == 2
        assert config.reconcile_on_load is False

    def test_invalid_backend(self, monkeypatch):
        """Unknown backends are rejected."""
        monkeypatch.setenv("WIKI_STORE_BACKEND", "cassandra")
        with pytest.raises(ValueError):
            EngineConfig.from_env()

    @pytest.mark.parametrize(
        "config",
        [
            EngineConfig(batch=BatchWriteConfig(chunk_size=26)),
            EngineConfig(batch=BatchWriteConfig(chunk_size=0)),
            EngineConfig(batch=BatchWriteConfig(base_delay_ms=100, max_delay_ms=50)),
            EngineConfig(batch=BatchWriteConfig(max_attempts=0)),
            EngineConfig(droplet=DropletConfig(machine_tag=99)),
        ],
    )
    def test_validate_rejects(self, config):
        """Inconsistent settings fail validation."""
        with pytest.raises(ValueError):
            config.validate()

    def test_memory_backend_factory(self):
        """The memory backend builds an in-memory table."""
        table = create_wiki_table(EngineConfig(store_backend=StoreBackend.MEMORY))
        assert isinstance(table, InMemoryWikiTable)
