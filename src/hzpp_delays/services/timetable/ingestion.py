"""Periodic ingestion of today's routes from the planner."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from hzpp_delays.config import get_settings
from hzpp_delays.domain import Route
from hzpp_delays.logging import get_logger
from hzpp_delays.services.delays.channel import RouteChannel, get_route_channel
from hzpp_delays.services.store import PersistenceError, RouteStore
from hzpp_delays.services.timetable.planner import (
    PlannerClient,
    PlannerDataError,
    PlannerFetchError,
    planner_route_to_domain,
)

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionJob:
    """Fetches today's timetable, stores new routes and hands them to the supervisor.

    Usage:
        job = IngestionJob(store, channel)
        await job.start()   # runs every ``ingestion_interval_sec``
        await job.stop()

        # Or run a single ingestion:
        report = await job.run_once()
    """

    def __init__(
        self,
        store: RouteStore,
        channel: RouteChannel,
        client: Optional[PlannerClient] = None,
        *,
        interval_sec: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._channel = channel
        self._client = client or PlannerClient(
            routes_url=settings.planner_routes_url,
            stations_url=settings.planner_stations_url,
            timeout_sec=settings.planner_fetch_timeout_sec,
        )
        self._interval = (
            interval_sec if interval_sec is not None else settings.ingestion_interval_sec
        )
        self._tz = ZoneInfo(settings.upstream_timezone)
        self._clock = clock

        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._run_count = 0
        self._last_run_at: datetime | None = None
        self._last_report: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic ingestion loop."""
        if self._running:
            logger.warning("Ingestion already running, ignoring start request")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Ingestion job started", interval_sec=self._interval)

    async def stop(self) -> None:
        """Stop the periodic ingestion loop."""
        if not self._running:
            return

        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("Ingestion job stopped")

    async def run_once(self) -> dict[str, Any]:
        """Fetch, convert, store and forward today's routes.

        Returns:
            Report dict with counts for this run.
        """
        run_id = str(uuid.uuid4())[:8]
        self._run_count += 1
        self._last_run_at = self._clock()
        day = self._last_run_at.astimezone(self._tz).date()

        logger.info("Starting ingestion", run_id=run_id, day=day.isoformat())

        planner_stations = await self._client.fetch_stations()
        planner_routes = await self._client.fetch_routes(day)
        known_station_ids = {s.stop_id for s in planner_stations}

        routes: list[Route] = []
        skipped = 0
        for planner_route in planner_routes:
            try:
                route = planner_route_to_domain(planner_route, day, self._tz)
            except PlannerDataError as exc:
                logger.warning(
                    "Skipping malformed route",
                    run_id=run_id,
                    route_id=planner_route.route_id,
                    error=str(exc),
                )
                skipped += 1
                continue

            unknown = {s.station_id for s in route.stops} - known_station_ids
            if unknown:
                logger.warning(
                    "Skipping route with unknown stations",
                    run_id=run_id,
                    route_id=route.id,
                    station_ids=sorted(unknown),
                )
                skipped += 1
                continue
            routes.append(route)

        stations_inserted = await self._store.insert_stations(
            [s.to_station() for s in planner_stations]
        )
        saved = await self._store.insert_routes_with_stops(routes)
        if saved:
            await self._channel.send(saved)

        report: dict[str, Any] = {
            "run_id": run_id,
            "day": day.isoformat(),
            "stations_fetched": len(planner_stations),
            "stations_inserted": stations_inserted,
            "routes_fetched": len(planner_routes),
            "routes_skipped": skipped,
            "routes_inserted": len(saved),
        }
        self._last_report = report
        logger.info("Ingestion complete", **report)
        return report

    async def get_status(self) -> dict[str, Any]:
        """Get current ingestion status for the health endpoint."""
        return {
            "running": self._running,
            "run_count": self._run_count,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_report": self._last_report,
            "interval_sec": self._interval,
        }

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except (PlannerFetchError, PersistenceError) as exc:
                logger.error("Ingestion failed", error=str(exc))
            except Exception as exc:
                logger.error("Ingestion failed unexpectedly", exc_info=exc)

            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break


_job_instance: IngestionJob | None = None


def get_ingestion_job() -> IngestionJob:
    """Get or create the singleton ingestion job wired from settings."""
    global _job_instance
    if _job_instance is None:
        settings = get_settings()
        _job_instance = IngestionJob(
            RouteStore(batch_size=settings.store_batch_size),
            get_route_channel(),
        )
    return _job_instance


def reset_ingestion_job() -> None:
    """Reset the singleton (for testing)."""
    global _job_instance
    _job_instance = None
