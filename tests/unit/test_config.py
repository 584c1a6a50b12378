"""
Unit tests for configuration loading and validation.
"""

import logging

import json_log_formatter
import pytest

from replicadb.config import (
    OutboxConfig,
    PushConfig,
    ReplicaConfig,
    ScheduleConfig,
    StorageBackend,
    SyncConfig,
)
from replicadb.observability import setup_logging


class TestDefaults:
    def test_sync_defaults(self):
        config = ReplicaConfig()
        assert config.sync.push.batch_size == 10
        assert config.sync.schedule.interval_ms == 5000
        assert config.sync.schedule.max_retries == 5

    def test_outbox_and_storage_defaults(self):
        config = ReplicaConfig()
        assert config.outbox.enabled is True
        assert config.outbox.retention_days == 7
        assert config.storage.backend == StorageBackend.MEMORY

    def test_configs_are_frozen(self):
        config = PushConfig()
        with pytest.raises(AttributeError):
            config.batch_size = 3


class TestFromEnv:
    def test_reads_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("REPLICADB_PUSH_BATCH_SIZE", "25")
        monkeypatch.setenv("REPLICADB_SYNC_INTERVAL_MS", "100")
        monkeypatch.setenv("REPLICADB_SYNC_MAX_RETRIES", "3")
        monkeypatch.setenv("REPLICADB_OUTBOX_ENABLED", "false")
        monkeypatch.setenv("REPLICADB_STORAGE_BACKEND", "sqlite")
        monkeypatch.setenv("REPLICADB_SQLITE_PATH", "/tmp/r.sqlite")

        config = ReplicaConfig.from_env()

        assert config.sync.push.batch_size == 25
        assert config.sync.schedule.interval_ms == 100
        assert config.sync.schedule.max_retries == 3
        assert config.outbox.enabled is False
        assert config.storage.backend == StorageBackend.SQLITE
        assert config.storage.path == "/tmp/r.sqlite"

    def test_unknown_backend_raises(self, monkeypatch):
        monkeypatch.setenv("REPLICADB_STORAGE_BACKEND", "postgres")
        with pytest.raises(ValueError):
            ReplicaConfig.from_env()


class TestValidate:
    def test_defaults_are_valid(self):
        ReplicaConfig().validate()

    def test_collects_sync_errors(self):
        config = SyncConfig(push=PushConfig(batch_size=0), schedule=ScheduleConfig(max_retries=0))
        with pytest.raises(ValueError) as exc:
            config.validate()
        assert "push.batch_size" in str(exc.value)
        assert "schedule.max_retries" in str(exc.value)

    def test_outbox_limits(self):
        config = ReplicaConfig(outbox=OutboxConfig(default_batch_limit=0))
        with pytest.raises(ValueError, match="default_batch_limit"):
            config.validate()


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        handler = setup_logging(ReplicaConfig())
        assert isinstance(handler.formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger().level == logging.INFO

    def test_text_format_and_level(self):
        from replicadb.config import ObservabilityConfig

        config = ReplicaConfig(observability=ObservabilityConfig(log_level="debug", log_format="text"))
        handler = setup_logging(config)
        assert not isinstance(handler.formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger().level == logging.DEBUG
