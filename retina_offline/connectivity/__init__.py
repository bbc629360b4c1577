"""Connectivity monitoring."""

from retina_offline.connectivity.monitor import ConnectivityMonitor

__all__ = ["ConnectivityMonitor"]
