"""Prometheus metrics for the offline store and sync coordinator.

Metrics exposed:
    - retina_offline_sync_pushes_total: Push attempts by entity type and outcome
    - retina_offline_sync_passes_total: Completed sync passes by trigger
    - retina_offline_sync_push_duration_seconds: Push latency histogram
    - retina_offline_corrupt_records_total: Rows skipped because they failed to deserialize
    - retina_offline_online: 1 while the connectivity monitor reports Online
    - retina_offline_store_items / retina_offline_store_bytes: Usage per category
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Literal

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

logger = logging.getLogger(__name__)

_registry: CollectorRegistry | None = None
_registry_lock = Lock()


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the singleton registry for retina_offline metrics."""
    global _registry

    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = CollectorRegistry()
                logger.debug("Created Prometheus metrics registry")

    return _registry


sync_pushes_total: Counter = Counter(
    name="retina_offline_sync_pushes_total",
    documentation="Push attempts by entity type and outcome",
    labelnames=["entity_type", "outcome"],
    registry=get_metrics_registry(),
)

sync_passes_total: Counter = Counter(
    name="retina_offline_sync_passes_total",
    documentation="Completed sync passes by trigger",
    labelnames=["trigger"],
    registry=get_metrics_registry(),
)

sync_push_duration_seconds: Histogram = Histogram(
    name="retina_offline_sync_push_duration_seconds",
    documentation="Time spent on a single push attempt",
    labelnames=["entity_type"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=get_metrics_registry(),
)

corrupt_records_total: Counter = Counter(
    name="retina_offline_corrupt_records_total",
    documentation="Stored rows skipped because they failed to deserialize",
    labelnames=["entity_type"],
    registry=get_metrics_registry(),
)

online_state: Gauge = Gauge(
    name="retina_offline_online",
    documentation="1 while the connectivity monitor reports Online",
    registry=get_metrics_registry(),
)

store_items: Gauge = Gauge(
    name="retina_offline_store_items",
    documentation="Stored item count by category",
    labelnames=["category"],
    registry=get_metrics_registry(),
)

store_bytes: Gauge = Gauge(
    name="retina_offline_store_bytes",
    documentation="Stored payload bytes by category",
    labelnames=["category"],
    registry=get_metrics_registry(),
)


def record_push(
    entity_type: str,
    outcome: Literal["acked", "transient", "timeout", "rejected"],
    duration_seconds: float | None = None,
) -> None:
    """Record one push attempt."""
    sync_pushes_total.labels(entity_type=entity_type, outcome=outcome).inc()
    if duration_seconds is not None:
        sync_push_duration_seconds.labels(entity_type=entity_type).observe(duration_seconds)


def record_pass(trigger: str) -> None:
    sync_passes_total.labels(trigger=trigger).inc()


def record_corrupt_record(entity_type: str) -> None:
    corrupt_records_total.labels(entity_type=entity_type).inc()


def set_online(online: bool) -> None:
    online_state.set(1 if online else 0)


def update_store_usage(category: str, count: int, size_bytes: int) -> None:
    """Publish the usage of one storage category."""
    store_items.labels(category=category).set(count)
    store_bytes.labels(category=category).set(size_bytes)


def generate_metrics() -> bytes:
    """Generate Prometheus text exposition for the retina_offline registry.

    Embedders serving their own HTTP endpoint return this body with
    ``prometheus_client.CONTENT_TYPE_LATEST``.
    """
    return generate_latest(get_metrics_registry())


def start_metrics_server(port: int = 8000, addr: str = "0.0.0.0") -> None:
    """Serve the retina_offline registry on ``/metrics`` from a background thread.

    Args:
        port: Port to listen on
        addr: Address to bind to
    """
    start_http_server(port=port, addr=addr, registry=get_metrics_registry())
    logger.info(f"Prometheus metrics server started on http://{addr}:{port}/metrics")
