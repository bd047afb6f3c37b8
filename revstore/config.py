"""
Configuration management for revstore.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Invalid values are reported together by CoreConfig.validate()

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names prefixed with REVSTORE_ (except the
      shared LOG_LEVEL / LOG_FORMAT)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

LOG_FORMATS = ("json", "text")


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_file: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "./data"
    db_file: str = "revstore.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("REVSTORE_DATA_DIR", "./data"),
            db_file=os.getenv("REVSTORE_DB_FILE", "revstore.db"),
            wal_mode=os.getenv("REVSTORE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("REVSTORE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("REVSTORE_CACHE_SIZE_PAGES", "-64000")),
        )


@dataclass(frozen=True)
class FeedConfig:
    """Feed pagination configuration.

    Attributes:
        page_size: Items per page when the caller gives no limit
        max_page_size: Upper bound on a requested limit
    """

    page_size: int = 10
    max_page_size: int = 100

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables."""
        return cls(
            page_size=int(os.getenv("REVSTORE_FEED_PAGE_SIZE", "10")),
            max_page_size=int(os.getenv("REVSTORE_FEED_MAX_PAGE_SIZE", "100")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Metadata sync configuration.

    Attributes:
        lookup_timeout_s: Seconds to wait for one adapter lookup
    """

    lookup_timeout_s: float = 10.0

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(lookup_timeout_s=float(os.getenv("REVSTORE_SYNC_TIMEOUT_S", "10")))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

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


@dataclass
class CoreConfig:
    """Complete revstore configuration.

    Attributes:
        storage: Local storage configuration
        feed: Feed pagination configuration
        sync: Metadata sync configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> CoreConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            feed=FeedConfig.from_env(),
            sync=SyncConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: Listing every invalid setting.
        """
        problems = []
        if not self.storage.db_file:
            problems.append("REVSTORE_DB_FILE must not be empty")
        if self.storage.busy_timeout_ms < 0:
            problems.append("REVSTORE_BUSY_TIMEOUT_MS must be >= 0")
        if self.feed.page_size < 1:
            problems.append("REVSTORE_FEED_PAGE_SIZE must be >= 1")
        if self.feed.max_page_size < self.feed.page_size:
            problems.append("REVSTORE_FEED_MAX_PAGE_SIZE must be >= REVSTORE_FEED_PAGE_SIZE")
        if self.sync.lookup_timeout_s <= 0:
            problems.append("REVSTORE_SYNC_TIMEOUT_S must be > 0")
        if self.observability.log_format not in LOG_FORMATS:
            problems.append(f"LOG_FORMAT must be one of {LOG_FORMATS}")
        if not isinstance(logging.getLevelName(self.observability.log_level.upper()), int):
            problems.append(f"Unknown LOG_LEVEL '{self.observability.log_level}'")
        if problems:
            raise ValueError("Invalid configuration: " + "; ".join(problems))

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "revstore configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "db_file": self.storage.db_file,
                "wal_mode": self.storage.wal_mode,
                "feed_page_size": self.feed.page_size,
                "sync_timeout_s": self.sync.lookup_timeout_s,
                "log_level": self.observability.log_level,
            },
        )
