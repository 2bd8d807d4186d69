"""Persistence gateway for routes, stops and stations."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from hzpp_delays.database import DATABASE_ERRORS, get_session_context
from hzpp_delays.domain import Route, RouteKey, RouteType, Station, Stop, WireFlag
from hzpp_delays.logging import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 1024
DEFAULT_MAX_CONCURRENT_READS = 8

SessionContext = Callable[[], AbstractAsyncContextManager["AsyncSession"]]

ROUTE_COLUMNS = (
    "id",
    "route_number",
    "source",
    "destination",
    "bikes_allowed",
    "wheelchair_accessible",
    "route_type",
    "expected_start_time",
    "expected_end_time",
)
STOP_COLUMNS = (
    "station_id",
    "route_id",
    "route_expected_start_time",
    "sequence",
    "real_arrival",
    "expected_arrival",
    "real_departure",
    "expected_departure",
)
STATION_COLUMNS = ("id", "code", "name", "latitude", "longitude")

_SELECT_UNFINISHED_ROUTES = text("""
    SELECT id, route_number, source, destination, bikes_allowed, wheelchair_accessible,
           route_type, expected_start_time, expected_end_time, real_start_time, real_end_time
    FROM routes
    WHERE real_end_time IS NULL OR real_start_time IS NULL
""")

_SELECT_ROUTE_STOPS = text("""
    SELECT station_id, route_id, route_expected_start_time, sequence,
           real_arrival, expected_arrival, real_departure, expected_departure
    FROM stops
    WHERE route_id = :route_id AND route_expected_start_time = :route_expected_start_time
    ORDER BY sequence
""")

_SELECT_STATIONS = text("SELECT id, code, name, latitude, longitude FROM stations")

# Real times are set once; COALESCE keeps an earlier value if one exists.
_UPDATE_ROUTE_REAL_TIMES = text("""
    UPDATE routes
    SET real_start_time = COALESCE(real_start_time, :real_start_time),
        real_end_time = COALESCE(real_end_time, :real_end_time)
    WHERE id = :route_id AND expected_start_time = :expected_start_time
""")

_UPDATE_STOP_REAL_ARRIVAL = text("""
    UPDATE stops
    SET real_arrival = COALESCE(real_arrival, :real_time)
    WHERE route_id = :route_id
      AND route_expected_start_time = :route_expected_start_time
      AND sequence = :sequence
""")

_UPDATE_STOP_REAL_DEPARTURE = text("""
    UPDATE stops
    SET real_departure = COALESCE(real_departure, :real_time)
    WHERE route_id = :route_id
      AND route_expected_start_time = :route_expected_start_time
      AND sequence = :sequence
""")


class PersistenceError(Exception):
    """Raised when a store read or write fails."""


class RouteStore:
    """Reads and point-updates the route/stop/station tables.

    Every public method runs in its own session, so concurrent monitors never
    share one.
    """

    def __init__(
        self,
        session_context: SessionContext = get_session_context,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_concurrent_reads: int = DEFAULT_MAX_CONCURRENT_READS,
    ) -> None:
        self._session_context = session_context
        self.batch_size = batch_size
        self._read_slots = asyncio.Semaphore(max_concurrent_reads)

    # -- monitor-side operations -------------------------------------------

    async def get_stations(self) -> dict[str, Station]:
        """Return every station keyed by its upstream id."""
        async with self._session("get_stations") as session:
            result = await session.execute(_SELECT_STATIONS)
            rows = result.mappings().all()

        return {
            row["id"]: Station(
                id=row["id"],
                code=row["code"],
                name=row["name"],
                latitude=row["latitude"],
                longitude=row["longitude"],
            )
            for row in rows
        }

    async def get_unfinished_routes_with_stops(self) -> list[Route]:
        """Return routes missing a real start or end time, with their stops attached."""
        async with self._session("get_unfinished_routes") as session:
            result = await session.execute(_SELECT_UNFINISHED_ROUTES)
            routes = [_route_from_row(row) for row in result.mappings().all()]

        stops_per_route = await asyncio.gather(
            *(self.get_route_stops(route.id, route.expected_start_time) for route in routes)
        )
        for route, stops in zip(routes, stops_per_route):
            route.stops = stops

        logger.info("Loaded unfinished routes", route_count=len(routes))
        return routes

    async def get_route_stops(
        self, route_id: str, route_expected_start_time: datetime
    ) -> list[Stop]:
        """Return the stops of one route ordered by sequence."""
        async with self._read_slots:
            async with self._session("get_route_stops", route_id=route_id) as session:
                result = await session.execute(
                    _SELECT_ROUTE_STOPS,
                    {
                        "route_id": route_id,
                        "route_expected_start_time": route_expected_start_time,
                    },
                )
                rows = result.mappings().all()

        return [_stop_from_row(row) for row in rows]

    async def update_route_real_times(
        self,
        route_id: str,
        expected_start_time: datetime,
        real_start: datetime | None,
        real_end: datetime | None,
    ) -> None:
        await self._update(
            "update_route_real_times",
            _UPDATE_ROUTE_REAL_TIMES,
            {
                "route_id": route_id,
                "expected_start_time": expected_start_time,
                "real_start_time": real_start,
                "real_end_time": real_end,
            },
        )

    async def update_stop_real_arrival(
        self,
        route_id: str,
        route_expected_start_time: datetime,
        sequence: int,
        real_arrival: datetime,
    ) -> None:
        await self._update(
            "update_stop_real_arrival",
            _UPDATE_STOP_REAL_ARRIVAL,
            {
                "route_id": route_id,
                "route_expected_start_time": route_expected_start_time,
                "sequence": sequence,
                "real_time": real_arrival,
            },
        )

    async def update_stop_real_departure(
        self,
        route_id: str,
        route_expected_start_time: datetime,
        sequence: int,
        real_departure: datetime,
    ) -> None:
        await self._update(
            "update_stop_real_departure",
            _UPDATE_STOP_REAL_DEPARTURE,
            {
                "route_id": route_id,
                "route_expected_start_time": route_expected_start_time,
                "sequence": sequence,
                "real_time": real_departure,
            },
        )

    # -- ingestion-side operations -----------------------------------------

    async def insert_stations(self, stations: Sequence[Station]) -> int:
        """Insert stations that are not stored yet. Returns the number inserted."""
        rows = [
            {
                "id": s.id,
                "code": s.code,
                "name": s.name,
                "latitude": s.latitude,
                "longitude": s.longitude,
            }
            for s in stations
        ]
        async with self._session("insert_stations") as session:
            inserted = 0
            for batch in _batches(rows, self.batch_size):
                result = await session.execute(
                    _insert_statement("stations", STATION_COLUMNS, len(batch), ("id",)),
                    _insert_params(STATION_COLUMNS, batch),
                )
                inserted += result.rowcount if result.rowcount else 0
            await session.commit()

        logger.info(
            "Stations inserted",
            total_rows=len(rows),
            inserted=inserted,
            duplicates_skipped=len(rows) - inserted,
        )
        return inserted

    async def insert_routes_with_stops(self, routes: Sequence[Route]) -> list[Route]:
        """Insert routes and their stops in one transaction.

        Routes already stored (same id and expected start time) are left alone.

        Returns:
            Only the routes that were newly inserted.
        """
        if not routes:
            return []

        route_rows = [_route_to_row(route) for route in routes]
        saved_keys: set[RouteKey] = set()

        async with self._session("insert_routes_with_stops") as session:
            for batch in _batches(route_rows, self.batch_size):
                result = await session.execute(
                    _insert_statement(
                        "routes",
                        ROUTE_COLUMNS,
                        len(batch),
                        ("id", "expected_start_time"),
                        returning=("id", "expected_start_time"),
                    ),
                    _insert_params(ROUTE_COLUMNS, batch),
                )
                saved_keys.update(RouteKey(row[0], row[1]) for row in result.fetchall())

            saved = [route for route in routes if route.key in saved_keys]
            stop_rows = [_stop_to_row(stop) for route in saved for stop in route.stops]
            for batch in _batches(stop_rows, self.batch_size):
                await session.execute(
                    _insert_statement(
                        "stops",
                        STOP_COLUMNS,
                        len(batch),
                        ("route_id", "route_expected_start_time", "sequence"),
                    ),
                    _insert_params(STOP_COLUMNS, batch),
                )
            await session.commit()

        logger.info(
            "Routes inserted",
            total_routes=len(routes),
            inserted=len(saved),
            stops_inserted=len(stop_rows),
            duplicates_skipped=len(routes) - len(saved),
        )
        return saved

    # -- internals ----------------------------------------------------------

    async def _update(self, operation: str, statement: Any, params: dict[str, Any]) -> None:
        async with self._session(operation, **_log_params(params)) as session:
            await session.execute(statement, params)
            await session.commit()

    @asynccontextmanager
    async def _session(self, operation: str, **context: Any) -> AsyncIterator[AsyncSession]:
        """Open a session; roll back and raise ``PersistenceError`` on database errors.

        Connection failures count as database errors, so an outage reaches
        callers as ``PersistenceError`` and is retried like any failed write.
        """
        async with self._session_context() as session:
            try:
                yield session
            except DATABASE_ERRORS as exc:
                try:
                    await session.rollback()
                except DATABASE_ERRORS as rollback_exc:
                    logger.warning(
                        "Rollback failed", operation=operation, error=str(rollback_exc)
                    )
                logger.error("Store operation failed", operation=operation, error=str(exc), **context)
                msg = f"{operation} failed"
                raise PersistenceError(msg) from exc


def _insert_statement(
    table: str,
    columns: tuple[str, ...],
    row_count: int,
    conflict_cols: tuple[str, ...],
    returning: tuple[str, ...] = (),
) -> Any:
    values_sql = ", ".join(
        "(" + ", ".join(f":{col}_{i}" for col in columns) + ")" for i in range(row_count)
    )
    sql = f"""
        INSERT INTO {table} ({", ".join(columns)})
        VALUES {values_sql}
        ON CONFLICT ({", ".join(conflict_cols)}) DO NOTHING
    """
    if returning:
        sql += f" RETURNING {', '.join(returning)}"
    return text(sql)


def _insert_params(columns: tuple[str, ...], batch: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for i, row in enumerate(batch):
        for col in columns:
            params[f"{col}_{i}"] = row[col]
    return params


def _batches(rows: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [rows[start : start + size] for start in range(0, len(rows), size)]


def _log_params(params: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in params.items()
    }


def _route_from_row(row: Mapping[str, Any]) -> Route:
    return Route(
        id=row["id"],
        route_number=row["route_number"],
        source=row["source"],
        destination=row["destination"],
        bikes_allowed=WireFlag(row["bikes_allowed"]),
        wheelchair_accessible=WireFlag(row["wheelchair_accessible"]),
        route_type=RouteType(row["route_type"]),
        expected_start_time=row["expected_start_time"],
        expected_end_time=row["expected_end_time"],
        real_start_time=row["real_start_time"],
        real_end_time=row["real_end_time"],
    )


def _stop_from_row(row: Mapping[str, Any]) -> Stop:
    return Stop(
        station_id=row["station_id"],
        route_id=row["route_id"],
        route_expected_start_time=row["route_expected_start_time"],
        sequence=row["sequence"],
        expected_arrival=row["expected_arrival"],
        expected_departure=row["expected_departure"],
        real_arrival=row["real_arrival"],
        real_departure=row["real_departure"],
    )


def _route_to_row(route: Route) -> dict[str, Any]:
    return {
        "id": route.id,
        "route_number": route.route_number,
        "source": route.source,
        "destination": route.destination,
        "bikes_allowed": int(route.bikes_allowed),
        "wheelchair_accessible": int(route.wheelchair_accessible),
        "route_type": int(route.route_type),
        "expected_start_time": route.expected_start_time,
        "expected_end_time": route.expected_end_time,
    }


def _stop_to_row(stop: Stop) -> dict[str, Any]:
    return {
        "station_id": stop.station_id,
        "route_id": stop.route_id,
        "route_expected_start_time": stop.route_expected_start_time,
        "sequence": stop.sequence,
        "real_arrival": stop.real_arrival,
        "expected_arrival": stop.expected_arrival,
        "real_departure": stop.real_departure,
        "expected_departure": stop.expected_departure,
    }
