"""Observability module for Prometheus metrics."""

from retina_offline.observability.metrics import (
    generate_metrics,
    get_metrics_registry,
    record_corrupt_record,
    record_pass,
    record_push,
    set_online,
    start_metrics_server,
    update_store_usage,
)

__all__ = [
    "generate_metrics",
    "get_metrics_registry",
    "record_corrupt_record",
    "record_pass",
    "record_push",
    "set_online",
    "start_metrics_server",
    "update_store_usage",
]
