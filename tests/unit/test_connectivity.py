"""Tests for the connectivity monitor."""

from __future__ import annotations

import asyncio

import pytest

from retina_offline.connectivity import ConnectivityMonitor
from retina_offline.scheduling import ManualScheduler


class TestConnectivityMonitor:
    """Test suite for ConnectivityMonitor on a virtual clock."""

    @pytest.fixture
    def scheduler(self) -> ManualScheduler:
        return ManualScheduler()

    @pytest.fixture
    def monitor(self, remote, scheduler: ManualScheduler) -> ConnectivityMonitor:
        return ConnectivityMonitor(
            probe=remote,
            scheduler=scheduler,
            hysteresis_seconds=2.0,
            reprobe_interval_seconds=30.0,
        )

    @pytest.mark.asyncio
    async def test_init_online_when_probe_succeeds(self, monitor: ConnectivityMonitor, remote) -> None:
        await monitor.init()

        assert monitor.is_online() is True
        assert remote.probe_calls == 1

    @pytest.mark.asyncio
    async def test_init_offline_when_platform_offline(self, remote, scheduler: ManualScheduler) -> None:
        """Test no probe is sent while the platform reports offline."""
        monitor = ConnectivityMonitor(probe=remote, scheduler=scheduler, initial_platform_online=False)

        await monitor.init()

        assert monitor.is_online() is False
        assert remote.probe_calls == 0

    @pytest.mark.asyncio
    async def test_captive_portal_reprobes(
        self, monitor: ConnectivityMonitor, remote, scheduler: ManualScheduler
    ) -> None:
        """Test platform-online with a failing probe stays offline and re-probes."""
        remote.reachable = False
        await monitor.init()
        events: list[bool] = []
        monitor.subscribe(events.append)

        assert monitor.is_online() is False

        await scheduler.advance(29.0)
        assert remote.probe_calls == 1

        remote.reachable = True
        await scheduler.advance(1.0)

        assert remote.probe_calls == 2
        assert monitor.is_online() is True
        assert events == [True]

    @pytest.mark.asyncio
    async def test_flapping_is_debounced(self, monitor: ConnectivityMonitor, scheduler: ManualScheduler) -> None:
        """Test a burst of platform events yields a single transition."""
        await monitor.init()
        events: list[bool] = []
        monitor.subscribe(events.append)

        monitor.handle_platform_event(False)
        await scheduler.advance(1.0)
        monitor.handle_platform_event(True)
        await scheduler.advance(1.0)
        monitor.handle_platform_event(False)
        await scheduler.advance(1.9)

        assert events == []
        assert monitor.is_online() is True

        await scheduler.advance(0.2)

        assert events == [False]
        assert monitor.is_online() is False

    @pytest.mark.asyncio
    async def test_flap_back_to_same_state_publishes_nothing(
        self, monitor: ConnectivityMonitor, scheduler: ManualScheduler, remote
    ) -> None:
        await monitor.init()
        events: list[bool] = []
        monitor.subscribe(events.append)

        monitor.handle_platform_event(False)
        await scheduler.advance(0.5)
        monitor.handle_platform_event(True)
        await scheduler.advance(5.0)

        assert events == []
        assert monitor.is_online() is True
        assert remote.probe_calls == 2

    @pytest.mark.asyncio
    async def test_online_requires_probe(
        self, remote, scheduler: ManualScheduler
    ) -> None:
        """Test a platform online event is confirmed by a probe before publishing."""
        monitor = ConnectivityMonitor(
            probe=remote, scheduler=scheduler, hysteresis_seconds=2.0, initial_platform_online=False
        )
        await monitor.init()
        events: list[bool] = []
        monitor.subscribe(events.append)

        monitor.handle_platform_event(True)
        await scheduler.advance(2.0)

        assert remote.probe_calls == 1
        assert events == [True]

    @pytest.mark.asyncio
    async def test_probe_exception_means_offline(self, scheduler: ManualScheduler) -> None:
        class ExplodingProbe:
            async def probe(self) -> bool:
                raise OSError("network unreachable")

        monitor = ConnectivityMonitor(probe=ExplodingProbe(), scheduler=scheduler)

        await monitor.init()

        assert monitor.is_online() is False

    @pytest.mark.asyncio
    async def test_handlers_run_in_order_and_are_isolated(
        self, monitor: ConnectivityMonitor, scheduler: ManualScheduler
    ) -> None:
        """Test a failing handler does not prevent later handlers from running."""
        await monitor.init()
        calls: list[str] = []

        def first(online: bool) -> None:
            calls.append("first")
            raise RuntimeError("handler bug")

        monitor.subscribe(first)
        monitor.subscribe(lambda online: calls.append("second"))

        monitor.handle_platform_event(False)
        await scheduler.advance(2.0)

        assert calls == ["first", "second"]

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(
        self, monitor: ConnectivityMonitor, scheduler: ManualScheduler
    ) -> None:
        await monitor.init()
        events: list[bool] = []
        unsubscribe = monitor.subscribe(events.append)

        unsubscribe()
        unsubscribe()
        monitor.handle_platform_event(False)
        await scheduler.advance(2.0)

        assert events == []

    @pytest.mark.asyncio
    async def test_check_now(self, monitor: ConnectivityMonitor, remote) -> None:
        """Test a manual check publishes the probe result immediately."""
        remote.reachable = False
        await monitor.init()
        assert monitor.is_online() is False

        remote.reachable = True

        assert await monitor.check_now() is True
        assert monitor.is_online() is True

    @pytest.mark.asyncio
    async def test_dispose_cancels_timers(
        self, monitor: ConnectivityMonitor, remote, scheduler: ManualScheduler
    ) -> None:
        remote.reachable = False
        await monitor.init()
        monitor.handle_platform_event(True)
        assert scheduler.pending == 1

        await monitor.dispose()
        monitor.handle_platform_event(False)

        assert scheduler.pending == 0
        await scheduler.advance(60.0)
        assert remote.probe_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_failed_probes_arm_one_reprobe(self, scheduler: ManualScheduler) -> None:
        """Test check_now() racing a background probe leaves a single re-probe timer."""

        class GatedProbe:
            def __init__(self) -> None:
                self.gate = asyncio.Event()
                self.calls = 0

            async def probe(self) -> bool:
                self.calls += 1
                await self.gate.wait()
                return False

        probe = GatedProbe()
        monitor = ConnectivityMonitor(
            probe=probe,
            scheduler=scheduler,
            hysteresis_seconds=2.0,
            reprobe_interval_seconds=30.0,
            initial_platform_online=False,
        )
        await monitor.init()
        monitor.handle_platform_event(True)
        await scheduler.advance(2.0)

        check = asyncio.create_task(monitor.check_now())
        await scheduler.advance(0.0)
        assert probe.calls == 2

        probe.gate.set()
        assert await check is False
        await scheduler.advance(0.0)

        assert scheduler.pending == 1
        await monitor.dispose()
