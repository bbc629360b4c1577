"""Tests for the application lifecycle."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import pytest

from retina_offline.config import OfflineConfig
from retina_offline.main import OfflineApplication
from retina_offline.models import CapturedImage
from retina_offline.service import OfflineStorageService


class TestOfflineApplication:
    """Test suite for OfflineApplication."""

    @pytest.fixture
    def application(self, tmp_path: Path, remote) -> OfflineApplication:
        config = OfflineConfig(storage={"path": str(tmp_path / "offline.duckdb"), "ephemeral_retention_days": 0})
        service = OfflineStorageService.from_config(config, remote=remote)
        return OfflineApplication(config=config, service=service, retention_interval_seconds=0.01)

    @pytest.mark.asyncio
    async def test_runs_until_shutdown_signal(self, application: OfflineApplication) -> None:
        """Test the service is up while running and disposed after shutdown."""
        task = asyncio.create_task(application.run())
        await asyncio.sleep(0.05)

        assert application.service.store.conn is not None
        assert application.service.is_online() is True

        application._handle_shutdown(signal.SIGTERM)
        await asyncio.wait_for(task, timeout=2.0)

        assert application.shutdown_event.is_set()
        assert application.service.store.conn is None

    @pytest.mark.asyncio
    async def test_retention_sweep(self, application: OfflineApplication) -> None:
        """Test captured images past retention are evicted in the background."""
        task = asyncio.create_task(application.run())
        await asyncio.sleep(0.02)

        await application.service.save_captured_image(CapturedImage(id="i1", content=b"jpeg"))
        await asyncio.sleep(0.1)
        usage = await application.service.storage_usage()

        application.shutdown_event.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert usage.ephemeral.count == 0

    @pytest.mark.asyncio
    async def test_metrics_server_started_when_port_configured(
        self, tmp_path: Path, remote, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        ports: list[int] = []
        monkeypatch.setattr("retina_offline.main.start_metrics_server", lambda port: ports.append(port))
        config = OfflineConfig(storage={"path": str(tmp_path / "offline.duckdb")}, metrics_port=9464)
        application = OfflineApplication(
            config=config, service=OfflineStorageService.from_config(config, remote=remote)
        )

        task = asyncio.create_task(application.run())
        await asyncio.sleep(0.05)
        application.shutdown_event.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert ports == [9464]
