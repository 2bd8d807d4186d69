"""Supervisor spawning one route monitor per in-flight route."""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable, Iterable
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from hzpp_delays.config import get_settings
from hzpp_delays.domain import Route, RouteKey, Station
from hzpp_delays.logging import bind_route_context, get_logger
from hzpp_delays.services.delays.channel import RouteChannel, get_route_channel
from hzpp_delays.services.delays.fetcher import StatusFetcher
from hzpp_delays.services.delays.monitor import MonitorState, RouteMonitor, utcnow
from hzpp_delays.services.store import PersistenceError, RouteStore

logger = get_logger(__name__)


class MonitorSupervisor:
    """Recovers unfinished routes on start, then monitors every ingested route.

    Usage:
        supervisor = MonitorSupervisor(store, fetcher, channel)
        await supervisor.start()   # launches background task
        await supervisor.stop()    # cancels it and every route monitor

    Each route is claimed by its ``(id, expected_start_time)`` key while its
    monitor runs, so no route ever has two writers.
    """

    def __init__(
        self,
        store: RouteStore,
        fetcher: StatusFetcher,
        channel: RouteChannel,
        *,
        poll_interval_sec: Optional[float] = None,
        timeout_hours: Optional[int] = None,
        stale_finish_hours: Optional[int] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._fetcher = fetcher
        self._channel = channel
        self._clock = clock
        self.poll_interval_sec = (
            poll_interval_sec
            if poll_interval_sec is not None
            else settings.monitor_poll_interval_sec
        )
        self.timeout = timedelta(
            hours=timeout_hours if timeout_hours is not None else settings.monitor_timeout_hours
        )
        self.stale_finish_after = timedelta(
            hours=stale_finish_hours
            if stale_finish_hours is not None
            else settings.stale_finish_hours
        )
        self.batch_size = batch_size if batch_size is not None else settings.supervisor_batch_size
        self._upstream_tz = ZoneInfo(settings.upstream_timezone)

        self._stations: dict[str, Station] = {}
        self._active: dict[RouteKey, asyncio.Task[None]] = {}
        self._outcomes: Counter[str] = Counter()
        self._spawned = 0
        self._discarded = 0
        self._rejected = 0
        self._recovered = False
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_monitors(self) -> int:
        return len(self._active)

    def is_monitored(self, key: RouteKey) -> bool:
        return key in self._active

    async def start(self) -> None:
        """Start the background supervisor loop."""
        if self._running:
            logger.warning("Supervisor already running, ignoring start request")
            return

        self._running = True
        self._task = asyncio.create_task(self.run(), name="monitor-supervisor")
        self._task.add_done_callback(self._on_run_done)
        logger.info("Monitor supervisor started", poll_interval_sec=self.poll_interval_sec)

    async def stop(self) -> None:
        """Cancel the supervisor loop and every route monitor."""
        if not self._running and not self._active and self._task is None:
            return

        self._running = False
        tasks = list(self._active.values())
        if self._task and not self._task.done():
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        with suppress(asyncio.CancelledError):
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        logger.info("Monitor supervisor stopped", cancelled_monitors=len(tasks))

    async def run(self) -> None:
        """Recover unfinished routes, then spawn monitors for ingested batches until closed."""
        await self._recover()

        while True:
            routes = await self._channel.receive_many(self.batch_size)
            if routes is None:
                break

            await self._refresh_stations()
            spawned = self.spawn_all(routes)
            logger.info("Received ingested routes", route_count=len(routes), spawned=spawned)

        logger.info("Route channel closed, no more routes will be received")

    def spawn_all(self, routes: Iterable[Route]) -> int:
        """Spawn monitors for ``routes``. Returns how many were spawned."""
        spawned = 0
        for route in routes:
            try:
                if self.spawn(route):
                    spawned += 1
            except Exception as exc:
                logger.error("Failed to spawn route monitor", route_id=route.id, exc_info=exc)
        return spawned

    def spawn(self, route: Route) -> bool:
        """Spawn a monitor for ``route`` unless it is over or already claimed."""
        if route.expected_end_time < self._clock():
            logger.info(
                "Route already over, discarding",
                route_id=route.id,
                route_number=route.route_number,
                expected_end_time=route.expected_end_time.isoformat(),
            )
            self._discarded += 1
            return False

        key = route.key
        if self.is_monitored(key):
            logger.warning(
                "Route is already monitored, ignoring duplicate",
                route_id=route.id,
                expected_start_time=route.expected_start_time.isoformat(),
            )
            self._rejected += 1
            return False

        monitor = self._create_monitor(route)
        task = asyncio.create_task(
            self._run_monitor(monitor),
            name=f"monitor:{route.id}:{route.expected_start_time.isoformat()}",
        )
        self._active[key] = task
        task.add_done_callback(lambda done, key=key: self._release(key, done))
        self._spawned += 1
        return True

    async def get_status(self) -> dict[str, Any]:
        """Get current supervisor status for the health endpoint."""
        return {
            "running": self._running,
            "recovered": self._recovered,
            "active_monitors": len(self._active),
            "spawned": self._spawned,
            "discarded": self._discarded,
            "rejected_duplicates": self._rejected,
            "outcomes": dict(self._outcomes),
            "queued_batches": self._channel.qsize(),
            "poll_interval_sec": self.poll_interval_sec,
        }

    def _create_monitor(self, route: Route) -> RouteMonitor:
        return RouteMonitor(
            route,
            self._stations,
            self._store,
            self._fetcher,
            poll_interval_sec=self.poll_interval_sec,
            timeout=self.timeout,
            stale_finish_after=self.stale_finish_after,
            upstream_tz=self._upstream_tz,
            clock=self._clock,
        )

    async def _run_monitor(self, monitor: RouteMonitor) -> None:
        log = bind_route_context(logger, monitor.route)
        try:
            state = await monitor.run()
        except Exception as exc:
            log.error(
                "Route monitor failed unexpectedly",
                state=monitor.state.value,
                exc_info=exc,
            )
            self._outcomes["failed"] += 1
            return

        self._outcomes[state.value] += 1
        if state is not MonitorState.DISCARDED:
            log.info("Route monitor finished", state=state.value, poll_count=monitor.poll_count)

    def _release(self, key: RouteKey, task: asyncio.Task[None]) -> None:
        if self._active.get(key) is task:
            del self._active[key]

    def _on_run_done(self, task: asyncio.Task[None]) -> None:
        if self._task is task:
            self._running = False
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Monitor supervisor loop crashed", exc_info=exc)
        else:
            logger.info("Monitor supervisor loop finished", active_monitors=len(self._active))

    async def _recover(self) -> None:
        """Load stations and unfinished routes, retrying until the store answers."""
        while True:
            try:
                self._stations = await self._store.get_stations()
                routes = await self._store.get_unfinished_routes_with_stops()
                break
            except PersistenceError as exc:
                logger.error(
                    "Failed to load unfinished routes, retrying",
                    error=str(exc),
                    retry_in_sec=self.poll_interval_sec,
                )
            except Exception as exc:
                logger.error(
                    "Unexpected error loading unfinished routes, retrying",
                    retry_in_sec=self.poll_interval_sec,
                    exc_info=exc,
                )
            await asyncio.sleep(self.poll_interval_sec)

        spawned = self.spawn_all(routes)
        self._recovered = True
        logger.info(
            "Recovered unfinished routes",
            route_count=len(routes),
            spawned=spawned,
            station_count=len(self._stations),
        )

    async def _refresh_stations(self) -> None:
        try:
            self._stations = await self._store.get_stations()
        except PersistenceError as exc:
            logger.warning("Keeping previous station map", error=str(exc))


_supervisor_instance: MonitorSupervisor | None = None


def get_supervisor() -> MonitorSupervisor:
    """Get or create the singleton supervisor wired from settings."""
    global _supervisor_instance
    if _supervisor_instance is None:
        settings = get_settings()
        fetcher = StatusFetcher(
            settings.delay_api_url,
            headers=settings.delay_auth_header,
            timeout_sec=settings.delay_fetch_timeout_sec,
            max_concurrent=settings.delay_max_concurrent_fetches,
        )
        _supervisor_instance = MonitorSupervisor(
            RouteStore(batch_size=settings.store_batch_size),
            fetcher,
            get_route_channel(),
        )
    return _supervisor_instance


def reset_supervisor() -> None:
    """Reset the singleton (for testing)."""
    global _supervisor_instance
    _supervisor_instance = None
