"""
Configuration management for the wiki engine.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for the table and region
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Batch write defaults mirror DynamoDB limits; do not raise chunk_size past 25
    - Changing TTL defaults changes upstream load; coordinate with the data team
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

# DynamoDB refuses BatchWriteItem requests with more than 25 items
MAX_BATCH_CHUNK = 25


class StoreBackend(Enum):
    """Supported key-value table backends."""

    DYNAMODB = "dynamodb"
    MEMORY = "memory"


def _optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return int(value)


@dataclass(frozen=True)
class DynamoConfig:
    """DynamoDB table configuration.

    Attributes:
        table_name: Name of the wiki table
        gsi_name: Name of the block-history global secondary index
        region: AWS region
        endpoint_url: Custom endpoint (for DynamoDB Local / LocalStack)
        access_key_id: AWS access key (optional, uses IAM role if not set)
        secret_access_key: AWS secret key (optional)
    """

    table_name: str = "Wiki"
    gsi_name: str = "WikiGSI-index"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> DynamoConfig:
        """Load configuration from environment variables."""
        return cls(
            table_name=os.getenv("WIKI_TABLE_NAME", "Wiki"),
            gsi_name=os.getenv("WIKI_GSI_NAME", "WikiGSI-index"),
            region=os.getenv("AWS_REGION", "us-east-1"),
            endpoint_url=os.getenv("DYNAMODB_ENDPOINT_URL"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class RelationalConfig:
    """Relational store configuration.

    Attributes:
        db_path: Path of the SQLite database holding documents, tags and collections
        busy_timeout_ms: SQLite busy timeout
    """

    db_path: str = "/var/lib/wiki/wiki.db"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> RelationalConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("WIKI_DB_PATH", "/var/lib/wiki/wiki.db"),
            busy_timeout_ms=int(os.getenv("WIKI_DB_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class BatchWriteConfig:
    """Batch write retry configuration.

    Attributes:
        chunk_size: Items per BatchWrite call
        base_delay_ms: First backoff delay after unprocessed items
        max_delay_ms: Backoff ceiling; the delay doubles until it reaches this
        max_attempts: Calls allowed per chunk; None retries until everything lands
    """

    chunk_size: int = MAX_BATCH_CHUNK
    base_delay_ms: int = 500
    max_delay_ms: int = 16000
    max_attempts: int | None = None

    @classmethod
    def from_env(cls) -> BatchWriteConfig:
        """Load configuration from environment variables."""
        return cls(
            chunk_size=int(os.getenv("WIKI_BATCH_CHUNK_SIZE", str(MAX_BATCH_CHUNK))),
            base_delay_ms=int(os.getenv("WIKI_BATCH_BASE_DELAY_MS", "500")),
            max_delay_ms=int(os.getenv("WIKI_BATCH_MAX_DELAY_MS", "16000")),
            max_attempts=_optional_int("WIKI_BATCH_MAX_ATTEMPTS"),
        )


@dataclass(frozen=True)
class ExtCacheConfig:
    """External-data cache configuration.

    Attributes:
        fetch_attempts: Attempts for one aggregate load before giving up
        retry_delay_ms: Delay between aggregate load attempts
    """

    fetch_attempts: int = 3
    retry_delay_ms: int = 200

    @classmethod
    def from_env(cls) -> ExtCacheConfig:
        """Load configuration from environment variables."""
        return cls(
            fetch_attempts=int(os.getenv("WIKI_EXT_FETCH_ATTEMPTS", "3")),
            retry_delay_ms=int(os.getenv("WIKI_EXT_RETRY_DELAY_MS", "200")),
        )


@dataclass(frozen=True)
class DropletConfig:
    """Droplet generator configuration.

    Attributes:
        machine_tag: Fixed 4-digit machine tag; random in 1000-9999 when unset
    """

    machine_tag: int | None = None

    @classmethod
    def from_env(cls) -> DropletConfig:
        """Load configuration from environment variables."""
        return cls(machine_tag=_optional_int("DROPLET_MACHINE_TAG"))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        store_backend: Which key-value table backend to use
        dynamo: DynamoDB configuration (if store_backend is DYNAMODB)
        relational: Relational store configuration
        batch: Batch write retry configuration
        ext_cache: External-data cache configuration
        droplet: Droplet generator configuration
        observability: Observability configuration
        reconcile_on_load: Repair a stale latest pointer before updates
    """

    store_backend: StoreBackend = StoreBackend.DYNAMODB
    dynamo: DynamoConfig = field(default_factory=DynamoConfig)
    relational: RelationalConfig = field(default_factory=RelationalConfig)
    batch: BatchWriteConfig = field(default_factory=BatchWriteConfig)
    ext_cache: ExtCacheConfig = field(default_factory=ExtCacheConfig)
    droplet: DropletConfig = field(default_factory=DropletConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    reconcile_on_load: bool = True

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Returns:
            EngineConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("WIKI_STORE_BACKEND", "dynamodb").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid WIKI_STORE_BACKEND '{backend_str}'. Must be one of: dynamodb, memory"
            )

        config = cls(
            store_backend=store_backend,
            dynamo=DynamoConfig.from_env(),
            relational=RelationalConfig.from_env(),
            batch=BatchWriteConfig.from_env(),
            ext_cache=ExtCacheConfig.from_env(),
            droplet=DropletConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            reconcile_on_load=os.getenv("WIKI_RECONCILE_ON_LOAD", "true").lower() == "true",
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store_backend == StoreBackend.DYNAMODB and not self.dynamo.table_name:
            raise ValueError("WIKI_TABLE_NAME is required when WIKI_STORE_BACKEND=dynamodb")

        if not 1 <= self.batch.chunk_size <= MAX_BATCH_CHUNK:
            raise ValueError(f"WIKI_BATCH_CHUNK_SIZE must be between 1 and {MAX_BATCH_CHUNK}")
        if self.batch.base_delay_ms < 0 or self.batch.max_delay_ms < self.batch.base_delay_ms:
            raise ValueError("WIKI_BATCH_MAX_DELAY_MS must be >= WIKI_BATCH_BASE_DELAY_MS >= 0")
        if self.batch.max_attempts is not None and self.batch.max_attempts < 1:
            raise ValueError("WIKI_BATCH_MAX_ATTEMPTS must be >= 1 when set")

        if self.ext_cache.fetch_attempts < 1:
            raise ValueError("WIKI_EXT_FETCH_ATTEMPTS must be >= 1")

        tag = self.droplet.machine_tag
        if tag is not None and not 1000 <= tag <= 9999:
            raise ValueError("DROPLET_MACHINE_TAG must be a 4-digit number (1000-9999)")

        if self.batch.max_attempts is None:
            logger.info("Batch writes retry unprocessed items without an attempt cap")

        if self.relational.db_path != ":memory:":
            parent = os.path.dirname(self.relational.db_path)
            if parent and not os.path.exists(parent):
                logger.warning(
                    f"Database directory does not exist: {parent}. "
                    "It will be created on startup."
                )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "table_name": self.dynamo.table_name
                if self.store_backend == StoreBackend.DYNAMODB
                else None,
                "region": self.dynamo.region,
                "endpoint_url": self.dynamo.endpoint_url,
                "db_path": self.relational.db_path,
                "batch_chunk_size": self.batch.chunk_size,
                "batch_max_attempts": self.batch.max_attempts,
                "reconcile_on_load": self.reconcile_on_load,
                "log_level": self.observability.log_level,
            },
        )
