"""Retina offline main entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any

from retina_offline.config import OfflineConfig, get_config
from retina_offline.observability import start_metrics_server
from retina_offline.service import OfflineStorageService

logger = logging.getLogger(__name__)


class OfflineApplication:
    """Long-running offline storage process with lifecycle management.

    Attributes:
        config: Loaded configuration
        service: The offline storage service
        shutdown_event: Event for graceful shutdown
        retention_interval_seconds: Period of ephemeral retention sweeps
    """

    def __init__(
        self,
        config: OfflineConfig | None = None,
        service: OfflineStorageService | None = None,
        retention_interval_seconds: float = 3600.0,
    ) -> None:
        """Initialize application.

        Args:
            config: Configuration (loaded from the environment if omitted)
            service: Prebuilt service (built from ``config`` if omitted)
            retention_interval_seconds: Period of ephemeral retention sweeps
        """
        self.config = config or get_config()
        self.service = service or OfflineStorageService.from_config(self.config)
        self.retention_interval_seconds = retention_interval_seconds
        self.shutdown_event = asyncio.Event()
        self._retention_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the service and block until a shutdown signal arrives."""
        logger.info("Starting retina offline application")
        await self.service.init()
        if self.config.metrics_port is not None:
            start_metrics_server(port=self.config.metrics_port)
        self._retention_task = asyncio.get_running_loop().create_task(self._retention_loop())

        logger.info("Setting up signal handlers for graceful shutdown")
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signum, self._handle_shutdown, signum)

        logger.info("Retina offline application started")
        logger.info(f"   Store: {self.config.storage.path}")
        logger.info(f"   Remote: {self.config.sync.remote_url}")
        logger.info(f"   Online: {self.service.is_online()}")

        try:
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Application cancelled")

    def _handle_shutdown(self, signum: int, _frame: Any = None) -> None:
        """Handle shutdown signal.

        Args:
            signum: Signal number (SIGINT or SIGTERM)
            _frame: Current stack frame (unused)
        """
        signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
        logger.info(f"Received {signal_name} signal, initiating graceful shutdown")
        self.shutdown_event.set()

    async def stop(self) -> None:
        """Stop the retention sweeps, let a running sync pass finish, and close the store."""
        logger.info("Initiating graceful shutdown")
        if self._retention_task is not None:
            self._retention_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._retention_task
            self._retention_task = None

        await self.service.dispose()
        logger.info("Retina offline application shutdown complete")

    async def run(self) -> None:
        """Start, wait for shutdown, then stop."""
        try:
            await self.start()
        finally:
            await self.stop()

    async def _retention_loop(self) -> None:
        while True:
            try:
                evicted = await self.service.evict_ephemeral()
                if evicted:
                    logger.info(f"Retention sweep evicted {evicted} captured images")
            except Exception as e:
                logger.error(f"Retention sweep failed: {e}")
            await asyncio.sleep(self.retention_interval_seconds)


if __name__ == "__main__":
    config = get_config()
    logging.basicConfig(level=logging.DEBUG if config.debug else logging.INFO)
    asyncio.run(OfflineApplication(config=config).run())
