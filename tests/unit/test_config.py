"""
Unit tests for environment-based configuration.
"""

import pytest

from backend.vaultsync_server.config import (
    HttpConfig,
    ServerConfig,
    StorageConfig,
    SyncConfig,
)


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        for name in ("SYNC_RETENTION_DAYS", "SYNC_MAX_ATTEMPTS", "HTTP_PORT", "LOG_FORMAT"):
            monkeypatch.delenv(name, raising=False)

        config = ServerConfig.from_env()

        assert config.storage.data_dir == str(tmp_path)
        assert config.sync.retention_days == 7
        assert config.sync.max_attempts is None
        assert config.http.port == 8080
        assert config.notifications.subscriber_buffer == 100
        assert config.observability.log_format == "json"

    def test_sync_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("SYNC_RETENTION_DAYS", "14")
        monkeypatch.setenv("SYNC_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("SYNC_BACKOFF_BASE_MS", "1000")
        monkeypatch.setenv("SYNC_RETRY_UNSUPPORTED", "false")
        monkeypatch.setenv("SYNC_CLEANUP_ENABLED", "FALSE")

        config = SyncConfig.from_env()

        assert config.retention_days == 14
        assert config.max_attempts == 5
        assert config.backoff_base_ms == 1000
        assert config.retry_unsupported is False
        assert config.cleanup_enabled is False

    def test_storage_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("SQLITE_BUSY_TIMEOUT_MS", "250")

        config = StorageConfig.from_env()

        assert config.wal_mode is False
        assert config.busy_timeout_ms == 250

    def test_cors_origins_split(self, monkeypatch):
        monkeypatch.setenv("HTTP_CORS_ORIGINS", "https://a.example, https://b.example,")

        config = HttpConfig.from_env()

        assert config.cors_origins == ("https://a.example", "https://b.example")

    @pytest.mark.parametrize(
        "sync",
        [
            SyncConfig(retention_days=0),
            SyncConfig(max_attempts=0),
            SyncConfig(backoff_base_ms=-1),
        ],
    )
    def test_invalid_sync_config(self, sync, tmp_path):
        config = ServerConfig(storage=StorageConfig(data_dir=str(tmp_path)), sync=sync)

        with pytest.raises(ValueError):
            config.validate()

    def test_invalid_log_format(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValueError):
            ServerConfig.from_env()
