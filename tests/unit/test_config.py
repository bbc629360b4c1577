"""Tests for configuration loading and storage path resolution."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from retina_offline.config import OfflineConfig, SyncConfig, get_config, load_config_from_file
from retina_offline.storage import StoragePathResolver


class TestOfflineConfig:
    """Test suite for OfflineConfig."""

    def test_defaults(self) -> None:
        config = OfflineConfig()

        assert config.sync.remote_url == "http://localhost:3000"
        assert config.sync.max_concurrency == 4
        assert config.storage.quota_bytes == 512 * 1024 * 1024
        assert config.storage.path.endswith("offline.duckdb")
        assert config.connectivity.hysteresis_seconds == 2.0

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test nested values are read from RETINA_OFFLINE_* variables."""
        monkeypatch.setenv("RETINA_OFFLINE_SYNC__MAX_CONCURRENCY", "7")
        monkeypatch.setenv("RETINA_OFFLINE_SYNC__REMOTE_URL", "https://sync.example.org")
        monkeypatch.setenv("RETINA_OFFLINE_DEBUG", "true")

        config = OfflineConfig()

        assert config.sync.max_concurrency == 7
        assert config.sync.remote_url == "https://sync.example.org"
        assert config.debug is True

    def test_metrics_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        assert OfflineConfig().metrics_port is None

        monkeypatch.setenv("RETINA_OFFLINE_METRICS_PORT", "9464")

        assert OfflineConfig().metrics_port == 9464

    def test_store_path_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("RETINA_OFFLINE_STORE_PATH", str(tmp_path / "custom.duckdb"))

        assert OfflineConfig().storage.path == str(tmp_path / "custom.duckdb")

    def test_jitter_must_keep_schedule_non_decreasing(self) -> None:
        with pytest.raises(ValidationError, match="jitter_ratio"):
            SyncConfig(backoff_multiplier=1.5, jitter_ratio=0.8)

    def test_cap_below_base_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SyncConfig(backoff_base_seconds=10.0, backoff_cap_seconds=1.0)


class TestConfigFile:
    """Test suite for YAML configuration files."""

    def test_get_config_from_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "offline.yaml"
        config_file.write_text(
            "storage:\n"
            f"  path: {tmp_path / 'store.duckdb'}\n"
            "sync:\n"
            "  remote_url: https://sync.example.org\n"
            "  max_concurrency: 2\n"
        )

        config = get_config(str(config_file))

        assert config.storage.path == str(tmp_path / "store.duckdb")
        assert config.sync.remote_url == "https://sync.example.org"
        assert config.sync.max_concurrency == 2

    def test_missing_file_yields_defaults(self, tmp_path: Path) -> None:
        assert load_config_from_file(str(tmp_path / "absent.yaml")) == {}
        assert get_config(str(tmp_path / "absent.yaml")).sync.max_concurrency == 4

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "broken.yaml"
        config_file.write_text("sync: [unclosed\n")

        assert load_config_from_file(str(config_file)) == {}


class TestStoragePathResolver:
    """Test suite for StoragePathResolver."""

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RETINA_OFFLINE_ENV", "container")
        monkeypatch.delenv("RETINA_OFFLINE_DATA_PATH", raising=False)

        resolver = StoragePathResolver()

        assert resolver.env == "container"
        assert resolver.base_path == Path("/data/retina-offline")

    def test_test_environment_detected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("RETINA_OFFLINE_ENV", raising=False)
        monkeypatch.delenv("RETINA_OFFLINE_DATA_PATH", raising=False)
        monkeypatch.setattr(Path, "exists", lambda self: False)

        assert StoragePathResolver().env == "test"

    def test_development_uses_project_dir(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("RETINA_OFFLINE_DATA_PATH", raising=False)
        monkeypatch.delenv("RETINA_OFFLINE_STORE_PATH", raising=False)

        resolver = StoragePathResolver(env="development", project_dir=tmp_path)

        assert resolver.get_store_path() == tmp_path / ".retina-offline" / "data" / "offline.duckdb"

    def test_xdg_data_home(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
        monkeypatch.delenv("RETINA_OFFLINE_DATA_PATH", raising=False)
        monkeypatch.setattr("retina_offline.storage.path_resolver.IS_WINDOWS", False)

        assert StoragePathResolver(env="local").base_path == tmp_path / "retina-offline"
