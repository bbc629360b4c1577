"""Pytest configuration and shared fixtures for retina_offline tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from retina_offline.connectivity import ConnectivityMonitor
from retina_offline.models import DetectionResult, SyncEnvelope, TrainingSession
from retina_offline.storage import LocalStore
from retina_offline.sync import BackoffPolicy


class FakeRemote:
    """In-memory remote implementing both the push transport and the health probe.

    ``script`` maps an entity id to the outcomes of its next pushes: an
    exception instance is raised, ``HANG`` blocks until cancelled, and
    ``None`` acknowledges. Pushes without a scripted outcome are acknowledged.
    """

    HANG = "hang"

    def __init__(self, reachable: bool = True, delay: float = 0.0) -> None:
        self.reachable = reachable
        self.delay = delay
        self.script: dict[str, list[Any]] = {}
        self.received: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[str] = []
        self.probe_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def push(self, envelope: SyncEnvelope) -> None:
        self.calls.append(envelope.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcomes = self.script.get(envelope.id)
            outcome = outcomes.pop(0) if outcomes else None
            if outcome == self.HANG:
                await asyncio.sleep(3600)
            elif isinstance(outcome, BaseException):
                raise outcome
            self.received[(envelope.entity_type.value, envelope.id)] = envelope.payload
        finally:
            self.in_flight -= 1

    async def probe(self) -> bool:
        self.probe_calls += 1
        return self.reachable


def _detection(**overrides: Any) -> DetectionResult:
    fields: dict[str, Any] = {
        "image_id": "img-1",
        "disease_type": "glaucoma",
        "result": {"label": "positive"},
        "confidence": 0.91,
    }
    fields.update(overrides)
    return DetectionResult(**fields)


def _training(**overrides: Any) -> TrainingSession:
    fields: dict[str, Any] = {
        "disease_type": "glaucoma",
        "dataset_ref": "datasets/glaucoma-2024",
        "metrics": {"accuracy": 0.88},
    }
    fields.update(overrides)
    return TrainingSession(**fields)


@pytest.fixture
async def store() -> LocalStore:
    """Fresh in-memory local store."""
    local_store = LocalStore(database_path=":memory:")
    await local_store.initialize()
    yield local_store
    await local_store.close()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
async def online_monitor(remote: FakeRemote) -> ConnectivityMonitor:
    """Monitor that has already settled Online (before anyone subscribed)."""
    monitor = ConnectivityMonitor(probe=remote, hysteresis_seconds=0.0, reprobe_interval_seconds=60.0)
    await monitor.init()
    assert monitor.is_online()
    yield monitor
    await monitor.dispose()


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    """Millisecond backoff without jitter."""
    return BackoffPolicy(base=0.01, cap=0.02, multiplier=2.0, jitter_ratio=0.0)


@pytest.fixture
def make_detection() -> Callable[..., DetectionResult]:
    """Factory for valid detection results; keyword arguments override fields."""
    return _detection


@pytest.fixture
def make_training() -> Callable[..., TrainingSession]:
    """Factory for valid training sessions; keyword arguments override fields."""
    return _training
