"""Connectivity monitor: debounced Online/Offline signal.

The platform connectivity flag is necessary but not sufficient (it stays true
behind a captive portal), so Online is only declared after an active probe of
the health endpoint succeeds. Raw platform flips are debounced so flaky
networks do not trigger a burst of sync passes.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import TYPE_CHECKING

from retina_offline.observability import set_online
from retina_offline.scheduling import LoopScheduler, Scheduler

if TYPE_CHECKING:
    from collections.abc import Callable

    from retina_offline.scheduling import ScheduledTask
    from retina_offline.sync.remote import HealthProbe

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Publishes Online/Offline transitions to subscribers.

    Handlers are plain callables receiving the new state (True for Online).
    They run in subscription order on the event loop that observed the
    transition; a failing handler is logged and does not stop the others.
    """

    def __init__(
        self,
        probe: HealthProbe,
        scheduler: Scheduler | None = None,
        hysteresis_seconds: float = 2.0,
        reprobe_interval_seconds: float = 30.0,
        initial_platform_online: bool = True,
    ) -> None:
        """Initialize connectivity monitor.

        Args:
            probe: Health probe used to confirm the network path
            scheduler: Scheduler for debounce and re-probe timers
            hysteresis_seconds: How long a platform flip must hold before it counts
            reprobe_interval_seconds: Re-probe period while the platform reports
                online but the probe fails
            initial_platform_online: Platform flag at startup
        """
        self.probe = probe
        self.scheduler = scheduler or LoopScheduler()
        self.hysteresis_seconds = hysteresis_seconds
        self.reprobe_interval_seconds = reprobe_interval_seconds

        self._platform_online = initial_platform_online
        self._online = False
        self._handlers: list[tuple[int, Callable[[bool], None]]] = []
        self._tokens = itertools.count()
        self._debounce: ScheduledTask | None = None
        self._reprobe: ScheduledTask | None = None
        self._probe_task: asyncio.Task[bool] | None = None
        self._disposed = False

    async def init(self) -> None:
        """Establish the initial state; probes once if the platform reports online."""
        self._disposed = False
        set_online(False)
        if self._platform_online:
            await self._probe_and_publish()
        logger.info(f"Connectivity monitor initialized ({'online' if self._online else 'offline'})")

    async def dispose(self) -> None:
        """Cancel timers and in-flight probes and drop all subscribers."""
        self._disposed = True
        self._cancel_timers()
        if self._probe_task and not self._probe_task.done():
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
        self._probe_task = None
        self._handlers.clear()
        logger.info("Connectivity monitor disposed")

    def subscribe(self, handler: Callable[[bool], None]) -> Callable[[], None]:
        """Register a transition handler.

        Returns:
            A function that removes this subscription (idempotent)
        """
        token = next(self._tokens)
        self._handlers.append((token, handler))

        def unsubscribe() -> None:
            self._handlers = [(t, h) for t, h in self._handlers if t != token]

        return unsubscribe

    def is_online(self) -> bool:
        return self._online

    def handle_platform_event(self, online: bool) -> None:
        """Feed a raw platform connectivity event.

        The event only takes effect once no further event arrived for
        ``hysteresis_seconds``.
        """
        if self._disposed:
            return
        self._platform_online = online
        self._cancel_timers()
        self._debounce = self.scheduler.call_later(self.hysteresis_seconds, self._settle)

    async def check_now(self) -> bool:
        """Probe immediately and publish the result.

        Returns:
            The resulting Online state
        """
        if self._reprobe is not None:
            self._reprobe.cancel()
            self._reprobe = None
        return await self._probe_and_publish()

    def _settle(self) -> None:
        self._debounce = None
        if self._platform_online:
            self._start_probe()
        else:
            self._publish(False)

    def _start_probe(self) -> None:
        self._reprobe = None
        if self._disposed or (self._probe_task and not self._probe_task.done()):
            return
        self._probe_task = asyncio.get_running_loop().create_task(self._probe_and_publish())

    async def _probe_and_publish(self) -> bool:
        try:
            reachable = await self.probe.probe()
        except Exception as e:
            logger.warning(f"Health probe raised {e.__class__.__name__}: {e}")
            reachable = False

        # A platform drop during the probe is settled by its own debounce.
        if self._disposed or not self._platform_online:
            return False

        self._publish(reachable)
        if not reachable:
            logger.info(
                f"Platform reports online but health probe failed; "
                f"re-probing in {self.reprobe_interval_seconds}s"
            )
            # A concurrent check_now() may already have armed a re-probe.
            if self._reprobe is not None:
                self._reprobe.cancel()
            self._reprobe = self.scheduler.call_later(self.reprobe_interval_seconds, self._start_probe)
        return reachable

    def _publish(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        set_online(online)
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")

        for _, handler in list(self._handlers):
            try:
                handler(online)
            except Exception as e:
                logger.error(f"Connectivity handler {handler!r} failed: {e}", exc_info=True)

    def _cancel_timers(self) -> None:
        for task in (self._debounce, self._reprobe):
            if task is not None:
                task.cancel()
        self._debounce = None
        self._reprobe = None
