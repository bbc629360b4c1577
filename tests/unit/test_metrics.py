"""Tests for Prometheus metrics export."""

from __future__ import annotations

from retina_offline.observability import generate_metrics, get_metrics_registry, record_pass, set_online


class TestMetricsExport:
    """Test suite for the retina_offline metrics registry."""

    def test_generate_metrics_includes_registry_samples(self) -> None:
        record_pass("manual")
        set_online(True)

        text = generate_metrics().decode("utf-8")

        assert 'retina_offline_sync_passes_total{trigger="manual"}' in text
        assert "retina_offline_online 1.0" in text

    def test_registry_is_isolated_from_default(self) -> None:
        from prometheus_client import REGISTRY

        assert get_metrics_registry() is not REGISTRY
        assert REGISTRY.get_sample_value("retina_offline_online") is None
