"""Per-route delay monitor.

One ``RouteMonitor`` follows one route through its lifecycle::

    SCHEDULED -> AWAITING_START -> POLLING -> COMPLETED | ABANDONED | TIMED_OUT
        \\-> DISCARDED (route already over when spawned)

While polling it downloads the delay page every ``poll_interval_sec``,
parses it, finds the stop the page refers to and records real start, end,
arrival and departure times. Each real time is written at most once, and is
only marked as recorded after the write succeeded.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Protocol

from hzpp_delays.domain import Route, Station
from hzpp_delays.logging import bind_route_context, get_logger
from hzpp_delays.services.delays.fetcher import StatusFetchError
from hzpp_delays.services.delays.matcher import find_current_stop
from hzpp_delays.services.delays.parser import (
    UPSTREAM_TZ,
    Phase,
    StatusParseError,
    StatusSentinel,
    TrainStatus,
    parse_status,
)
from hzpp_delays.services.store import PersistenceError

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 60
DEFAULT_TIMEOUT = timedelta(hours=12)
DEFAULT_STALE_FINISH_AFTER = timedelta(hours=12)


class MonitorState(str, Enum):
    """Lifecycle of one route monitor; the last four states are terminal."""

    SCHEDULED = "scheduled"
    AWAITING_START = "awaiting_start"
    POLLING = "polling"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    TIMED_OUT = "timed_out"
    DISCARDED = "discarded"


TERMINAL_STATES = frozenset(
    {
        MonitorState.COMPLETED,
        MonitorState.ABANDONED,
        MonitorState.TIMED_OUT,
        MonitorState.DISCARDED,
    }
)


class StatusSource(Protocol):
    async def fetch_status(self, route_number: int) -> str: ...


class RealTimeWriter(Protocol):
    async def update_route_real_times(
        self,
        route_id: str,
        expected_start_time: datetime,
        real_start: datetime | None,
        real_end: datetime | None,
    ) -> None: ...

    async def update_stop_real_arrival(
        self,
        route_id: str,
        route_expected_start_time: datetime,
        sequence: int,
        real_arrival: datetime,
    ) -> None: ...

    async def update_stop_real_departure(
        self,
        route_id: str,
        route_expected_start_time: datetime,
        sequence: int,
        real_departure: datetime,
    ) -> None: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RouteMonitor:
    """Tracks one route's real times against its timetable."""

    def __init__(
        self,
        route: Route,
        stations: Mapping[str, Station],
        store: RealTimeWriter,
        fetcher: StatusSource,
        *,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        timeout: timedelta = DEFAULT_TIMEOUT,
        stale_finish_after: timedelta = DEFAULT_STALE_FINISH_AFTER,
        upstream_tz: tzinfo = UPSTREAM_TZ,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.route = route
        self._stations = stations
        self._store = store
        self._fetcher = fetcher
        self._poll_interval = poll_interval_sec
        self._timeout = timeout
        self._stale_finish_after = stale_finish_after
        self._upstream_tz = upstream_tz
        self._clock = clock

        self.state = MonitorState.SCHEDULED
        self.poll_count = 0
        self._log = bind_route_context(logger, route)

    @property
    def deadline(self) -> datetime:
        """Instant after which monitoring gives up."""
        return self.route.expected_end_time + self._timeout

    async def run(self) -> MonitorState:
        """Wait for the route to start, then poll until a terminal state."""
        now = self._clock()
        if self.route.expected_end_time < now:
            self._log.info(
                "Route already over, discarding",
                expected_end_time=self.route.expected_end_time.isoformat(),
            )
            self._transition(MonitorState.DISCARDED)
            return self.state

        self._transition(MonitorState.AWAITING_START)
        seconds_until_start = (self.route.expected_start_time - now).total_seconds()
        self._log.info("Waiting for route to start", seconds_until_start=int(seconds_until_start))
        if seconds_until_start > 0:
            await asyncio.sleep(seconds_until_start)

        self._transition(MonitorState.POLLING)
        while True:
            if self._clock() > self.deadline:
                self._log.warning(
                    "Route monitoring timed out",
                    start_observed=self.route.real_start_time is not None,
                    end_observed=self.route.real_end_time is not None,
                    poll_count=self.poll_count,
                )
                self._transition(MonitorState.TIMED_OUT)
                break

            try:
                await self.poll_once()
            except PersistenceError as exc:
                self._log.error("Failed to persist real times, retrying next poll", error=str(exc))

            if self.state in TERMINAL_STATES:
                break
            await asyncio.sleep(self._poll_interval)

        return self.state

    async def poll_once(self) -> None:
        """Run one poll cycle: fetch, parse and apply the delay page."""
        self.poll_count += 1
        try:
            body = await self._fetcher.fetch_status(self.route.route_number)
            status = parse_status(body, self._upstream_tz)
        except (StatusFetchError, StatusParseError) as exc:
            self._log.error(
                "Failed to get train status",
                error=str(exc),
                cause=str(exc.__cause__) if exc.__cause__ else None,
            )
            return

        if status is StatusSentinel.INFRASTRUCTURE_ERROR:
            self._log.warning("Delay page reported an infrastructure error")
            return
        if status is StatusSentinel.NOT_EVIDENTED:
            self._log.info("Train is not in the registry, abandoning route")
            self._transition(MonitorState.ABANDONED)
            return

        await self.handle_status(status)

    async def handle_status(self, status: TrainStatus) -> None:
        """Apply a parsed status to the route.

        Raises:
            PersistenceError: If a write fails; nothing is marked as recorded.
        """
        minutes_late = status.delay.minutes_late
        if minutes_late is None:
            self._log.info(
                "No usable delay yet",
                phase=status.phase.value,
                delay=status.delay.kind.value,
            )
            return

        if status.phase is Phase.FORMED:
            return

        if status.phase in (Phase.DEPARTING_FROM_STATION, Phase.ARRIVING):
            await self._record_start(minutes_late)
            await self._record_stop_time(status, minutes_late)
            return

        age = self._clock() - status.reported_at
        if age > self._stale_finish_after:
            self._log.info(
                "Ignoring stale finish report",
                reported_at=status.reported_at.isoformat(),
                age_hours=round(age.total_seconds() / 3600, 1),
            )
            return

        await self._record_stop_time(status, minutes_late)
        if self.route.real_start_time is None:
            self._log.info("Route finished before a start was observed, still polling")
            return

        await self._record_end(minutes_late)
        if self.route.is_finished:
            self._transition(MonitorState.COMPLETED)

    async def _record_start(self, minutes_late: int) -> None:
        route = self.route
        if route.real_start_time is not None:
            return

        real_start = route.expected_start_time + timedelta(minutes=minutes_late)
        await self._store.update_route_real_times(
            route.id, route.expected_start_time, real_start, route.real_end_time
        )
        route.real_start_time = real_start
        self._log.info(
            "Recorded real start time",
            real_start_time=real_start.isoformat(),
            minutes_late=minutes_late,
        )

    async def _record_end(self, minutes_late: int) -> None:
        route = self.route
        if route.real_end_time is not None:
            return

        real_end = route.expected_end_time + timedelta(minutes=minutes_late)
        await self._store.update_route_real_times(
            route.id, route.expected_start_time, route.real_start_time, real_end
        )
        route.real_end_time = real_end
        self._log.info(
            "Recorded real end time",
            real_end_time=real_end.isoformat(),
            minutes_late=minutes_late,
        )

    async def _record_stop_time(self, status: TrainStatus, minutes_late: int) -> None:
        stop = find_current_stop(self.route.stops, self._stations, status.station)
        if stop is None:
            self._log.warning("No stop matches reported station", station=status.station)
            return

        delta = timedelta(minutes=minutes_late)
        if status.phase is Phase.DEPARTING_FROM_STATION:
            if stop.real_departure is not None:
                return
            real_departure = stop.expected_departure + delta
            await self._store.update_stop_real_departure(
                self.route.id, self.route.expected_start_time, stop.sequence, real_departure
            )
            stop.real_departure = real_departure
            self._log.info(
                "Recorded real departure",
                sequence=stop.sequence,
                station=status.station,
                real_departure=real_departure.isoformat(),
            )
            return

        if stop.real_arrival is not None:
            return
        real_arrival = stop.expected_arrival + delta
        await self._store.update_stop_real_arrival(
            self.route.id, self.route.expected_start_time, stop.sequence, real_arrival
        )
        stop.real_arrival = real_arrival
        self._log.info(
            "Recorded real arrival",
            sequence=stop.sequence,
            station=status.station,
            real_arrival=real_arrival.isoformat(),
        )

    def _transition(self, state: MonitorState) -> None:
        self._log.debug("Monitor state change", previous=self.state.value, state=state.value)
        self.state = state
