"""
Configuration management for replicadb.

Every setting can be supplied through environment variables prefixed with
``REPLICADB_``. Typed configuration classes carry the defaults and the
validation rules.

Invariants:
    - All settings have sensible defaults for local development
    - Configuration objects are immutable once built
    - The sync defaults match the documented protocol: batch size 10,
      interval 5000ms, 5 retries before abandonment

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() and the dataclass defaults in agreement
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StorageBackend(Enum):
    """Supported object store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class PushConfig:
    """Push phase configuration.

    Attributes:
        batch_size: Maximum outbox events sent to the push handler per call
    """

    batch_size: int = 10

    @classmethod
    def from_env(cls) -> PushConfig:
        """Load configuration from environment variables."""
        return cls(batch_size=int(os.getenv("REPLICADB_PUSH_BATCH_SIZE", "10")))


@dataclass(frozen=True)
class PullConfig:
    """Pull phase configuration (no tunables yet)."""

    @classmethod
    def from_env(cls) -> PullConfig:
        """Load configuration from environment variables."""
        return cls()


@dataclass(frozen=True)
class ScheduleConfig:
    """Sync scheduling configuration.

    Attributes:
        interval_ms: Fixed delay between the end of one cycle and the next
        max_retries: Attempts before an outbox event is abandoned
    """

    interval_ms: int = 5000
    max_retries: int = 5

    @classmethod
    def from_env(cls) -> ScheduleConfig:
        """Load configuration from environment variables."""
        return cls(
            interval_ms=int(os.getenv("REPLICADB_SYNC_INTERVAL_MS", "5000")),
            max_retries=int(os.getenv("REPLICADB_SYNC_MAX_RETRIES", "5")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Sync protocol configuration.

    Attributes:
        push: Push phase settings
        pull: Pull phase settings
        schedule: Scheduler settings
    """

    push: PushConfig = field(default_factory=PushConfig)
    pull: PullConfig = field(default_factory=PullConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            push=PushConfig.from_env(),
            pull=PullConfig.from_env(),
            schedule=ScheduleConfig.from_env(),
        )

    def validate(self) -> None:
        """Validate sync settings.

        Raises:
            ValueError: If a setting is out of range
        """
        errors = []
        if self.push.batch_size <= 0:
            errors.append("push.batch_size must be positive")
        if self.schedule.interval_ms < 0:
            errors.append("schedule.interval_ms must be non-negative")
        if self.schedule.max_retries <= 0:
            errors.append("schedule.max_retries must be positive")
        if errors:
            raise ValueError("Configuration errors: " + "; ".join(errors))


@dataclass(frozen=True)
class OutboxConfig:
    """Outbox configuration.

    Attributes:
        enabled: Whether tracked models record outbox events at all
        retention_days: Age after which synced events are pruned
        default_batch_limit: Batch size used when callers pass no limit
    """

    enabled: bool = True
    retention_days: int = 7
    default_batch_limit: int = 20

    @classmethod
    def from_env(cls) -> OutboxConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("REPLICADB_OUTBOX_ENABLED", "true").lower() == "true",
            retention_days=int(os.getenv("REPLICADB_OUTBOX_RETENTION_DAYS", "7")),
            default_batch_limit=int(os.getenv("REPLICADB_OUTBOX_BATCH_LIMIT", "20")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Object store configuration.

    Attributes:
        backend: Which backend to use
        path: SQLite database file (sqlite backend only)
        busy_timeout_ms: SQLite busy timeout
    """

    backend: StorageBackend = StorageBackend.MEMORY
    path: str = "./replicadb.sqlite"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            backend=StorageBackend(os.getenv("REPLICADB_STORAGE_BACKEND", "memory")),
            path=os.getenv("REPLICADB_SQLITE_PATH", "./replicadb.sqlite"),
            busy_timeout_ms=int(os.getenv("REPLICADB_SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json or text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("REPLICADB_LOG_LEVEL", "INFO"),
            log_format=os.getenv("REPLICADB_LOG_FORMAT", "json"),
        )


@dataclass(frozen=True)
class ReplicaConfig:
    """Complete replicadb configuration.

    Aggregates all configuration sections.

    Example:
        >>> config = ReplicaConfig.from_env()
        >>> config.sync.schedule.interval_ms
        5000
    """

    sync: SyncConfig = field(default_factory=SyncConfig)
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ReplicaConfig:
        """Load complete configuration from environment variables."""
        return cls(
            sync=SyncConfig.from_env(),
            outbox=OutboxConfig.from_env(),
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

    def validate(self) -> None:
        """Validate configuration.

        Raises:
            ValueError: If configuration is invalid
        """
        self.sync.validate()
        errors = []
        if self.outbox.retention_days < 0:
            errors.append("outbox.retention_days must be non-negative")
        if self.outbox.default_batch_limit <= 0:
            errors.append("outbox.default_batch_limit must be positive")
        if self.storage.backend == StorageBackend.SQLITE and not self.storage.path:
            errors.append("storage.path is required for the sqlite backend")
        if self.observability.log_format not in ("json", "text"):
            errors.append("observability.log_format must be 'json' or 'text'")
        if errors:
            raise ValueError("Configuration errors: " + "; ".join(errors))

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "replicadb configuration",
            extra={
                "push_batch_size": self.sync.push.batch_size,
                "sync_interval_ms": self.sync.schedule.interval_ms,
                "max_retries": self.sync.schedule.max_retries,
                "outbox_enabled": self.outbox.enabled,
                "retention_days": self.outbox.retention_days,
                "storage_backend": self.storage.backend.value,
                "log_level": self.observability.log_level,
            },
        )
