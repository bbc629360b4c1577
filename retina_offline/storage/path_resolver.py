"""Storage path resolver for the offline store.

Environment-aware path resolution with XDG Base Directory compliance for
local installs, containers, development checkouts, and test runs.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Final

logger = logging.getLogger(__name__)

APP_NAME: Final = "retina-offline"

IS_WINDOWS: Final = sys.platform == "win32"
IS_MACOS: Final = sys.platform == "darwin"


class StoragePathResolver:
    """Resolves storage paths based on deployment environment."""

    def __init__(self, env: str | None = None, project_dir: Path | None = None) -> None:
        """Initialize path resolver.

        Args:
            env: Force specific environment ('local', 'container', 'development', 'test')
            project_dir: Current project directory (defaults to cwd)
        """
        self.env = env or self._detect_environment()
        self.project_dir = project_dir or Path.cwd()
        self.base_path = self._resolve_base_path()

    def _detect_environment(self) -> str:
        """Auto-detect deployment environment."""
        if env_var := os.getenv("RETINA_OFFLINE_ENV"):
            return env_var

        if Path("/.dockerenv").exists():
            return "container"

        if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
            return "test"

        return "local"

    def _resolve_base_path(self) -> Path:
        """Resolve base storage path by environment.

        Returns:
            Base directory for the offline store
        """
        if override := os.getenv("RETINA_OFFLINE_DATA_PATH"):
            return Path(override)

        if self.env == "container":
            return Path("/data") / APP_NAME

        elif self.env == "local":
            return self._get_xdg_data_path()

        elif self.env == "development":
            return self.project_dir / ".retina-offline" / "data"

        elif self.env == "test":
            return Path("/tmp") / APP_NAME / "test"

        else:
            logger.warning(f"Unknown environment '{self.env}', using local data paths")
            return self._get_xdg_data_path()

    def _get_xdg_data_path(self) -> Path:
        """Get XDG data directory path."""
        if IS_WINDOWS:
            local_app_data = os.getenv("LOCALAPPDATA")
            if local_app_data:
                return Path(local_app_data) / APP_NAME
            return Path.home() / f".{APP_NAME}" / "data"

        xdg_data = os.getenv("XDG_DATA_HOME")
        if xdg_data:
            return Path(xdg_data) / APP_NAME

        if IS_MACOS:
            return Path.home() / "Library" / "Application Support" / APP_NAME
        return Path.home() / ".local" / "share" / APP_NAME

    def get_store_path(self) -> Path:
        """Get the local store database path.

        Returns:
            Path to offline.duckdb
        """
        if override := os.getenv("RETINA_OFFLINE_STORE_PATH"):
            return Path(override)

        return self.base_path / "offline.duckdb"
