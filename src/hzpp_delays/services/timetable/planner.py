"""HZPP planner API: wire models, client and conversion to domain routes."""

from __future__ import annotations

import inspect
import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hzpp_delays.domain import Route, RouteType, Station, Stop, WireFlag
from hzpp_delays.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SEC = 120

PLANNER_TIME_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*$")


class PlannerFetchError(Exception):
    """Raised when planner data cannot be downloaded or decoded."""


class PlannerDataError(ValueError):
    """Raised when a planner route cannot be turned into a domain route."""


class PlannerStop(BaseModel):
    """One stop of a planner route. Times may run past 24:00."""

    model_config = ConfigDict(extra="ignore")

    stop_id: str
    stop_name: str
    arrival_time: str
    departure_time: str
    latitude: float
    longitude: float
    sequence: int = Field(ge=1)


class PlannerRoute(BaseModel):
    """A route as delivered by ``getRoutes.php``.

    ``bikes_allowed`` and ``wheelchair_accessible`` keep the planner's raw
    encoding (1 true, 0 and 2 false); ``route_type`` is 2 for trains and 3
    for buses. Any other value fails validation.
    """

    model_config = ConfigDict(extra="ignore")

    route_id: str
    route_number: int
    route_src: str = ""
    route_desc: str = ""
    bikes_allowed: WireFlag
    wheelchair_accessible: WireFlag
    route_type: RouteType
    stops: list[PlannerStop]


class PlannerStation(BaseModel):
    """A station as delivered by ``getStops.php``."""

    model_config = ConfigDict(extra="ignore")

    stop_id: str
    stop_code: int
    stop_name: str
    stop_lat: float
    stop_lng: float

    def to_station(self) -> Station:
        return Station(
            id=self.stop_id,
            code=self.stop_code,
            name=self.stop_name,
            latitude=self.stop_lat,
            longitude=self.stop_lng,
        )


class PlannerClient:
    """Downloads routes and stations from the planner API."""

    def __init__(
        self,
        routes_url: str,
        stations_url: str,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    ) -> None:
        self.routes_url = routes_url
        self.stations_url = stations_url
        self.timeout_sec = timeout_sec

    async def fetch_routes(self, day: date) -> list[PlannerRoute]:
        """Return the routes running on ``day``; invalid entries are logged and skipped."""
        payload = await self._get_json(self.routes_url, {"date": day.strftime("%Y%m%d")})
        routes = _validate_items(PlannerRoute, payload, "route")
        logger.info("Fetched planner routes", day=day.isoformat(), route_count=len(routes))
        return routes

    async def fetch_stations(self) -> list[PlannerStation]:
        """Return every station known to the planner."""
        payload = await self._get_json(self.stations_url)
        stations = _validate_items(PlannerStation, payload, "station")
        logger.info("Fetched planner stations", station_count=len(stations))
        return stations

    async def _get_json(self, url: str, params: Optional[dict[str, str]] = None) -> Any:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_sec),
                follow_redirects=True,
            ) as client:
                response = await client.get(url, params=params)
                raise_result = response.raise_for_status()
                if inspect.isawaitable(raise_result):
                    await raise_result
                return response.json()
        except (httpx.HTTPStatusError, httpx.RequestError) as exc:
            msg = f"Failed to fetch planner data from {url}"
            raise PlannerFetchError(msg) from exc
        except ValueError as exc:
            msg = f"Planner response from {url} is not valid JSON"
            raise PlannerFetchError(msg) from exc


def _validate_items(model: type[BaseModel], payload: Any, kind: str) -> list[Any]:
    if not isinstance(payload, list):
        msg = f"Expected a list of {kind}s, got {type(payload).__name__}"
        raise PlannerFetchError(msg)

    items = []
    for raw in payload:
        try:
            items.append(model.model_validate(raw))
        except ValidationError as exc:
            ident = (raw.get("route_id") or raw.get("stop_id")) if isinstance(raw, dict) else None
            logger.warning(f"Skipping invalid planner {kind}", item_id=ident, error=str(exc))
    return items


def parse_planner_time(value: str) -> tuple[int, int]:
    """Split ``"HH:MM[:SS]"`` into hours and minutes. Hours may exceed 23.

    >>> parse_planner_time("25:49:00")
    (25, 49)
    """
    match = PLANNER_TIME_PATTERN.match(value)
    if match is None:
        msg = f"Invalid planner time: {value!r}"
        raise PlannerDataError(msg)

    hours, minutes = int(match.group(1)), int(match.group(2))
    if minutes > 59:
        msg = f"Invalid planner time: {value!r}"
        raise PlannerDataError(msg)
    return hours, minutes


def resolve_service_time(day: date, value: str, tz: tzinfo) -> datetime:
    """Resolve a planner time on service ``day`` to a UTC instant.

    ``"25:49"`` on 2026-10-17 is 01:49 local time on 2026-10-18.
    """
    hours, minutes = parse_planner_time(value)
    local_day = day + timedelta(days=hours // 24)
    local = datetime.combine(local_day, time(hours % 24, minutes), tzinfo=tz)
    return local.astimezone(timezone.utc)


def planner_route_to_domain(route: PlannerRoute, day: date, tz: tzinfo) -> Route:
    """Convert a planner route running on ``day`` into a domain route with stops.

    Raises:
        PlannerDataError: If the route has no stops, malformed times, repeated
            sequence numbers, or a stop departing before it arrives.
    """
    if not route.stops:
        msg = f"Route {route.route_id} has no stops"
        raise PlannerDataError(msg)

    planner_stops = sorted(route.stops, key=lambda s: s.sequence)
    first, last = planner_stops[0], planner_stops[-1]
    expected_start_time = resolve_service_time(day, first.departure_time, tz)
    expected_end_time = resolve_service_time(day, last.arrival_time, tz)

    stops: list[Stop] = []
    for planner_stop in planner_stops:
        if stops and planner_stop.sequence == stops[-1].sequence:
            msg = f"Route {route.route_id} repeats stop sequence {planner_stop.sequence}"
            raise PlannerDataError(msg)

        arrival = resolve_service_time(day, planner_stop.arrival_time, tz)
        departure = resolve_service_time(day, planner_stop.departure_time, tz)
        if departure < arrival:
            msg = (
                f"Route {route.route_id} stop {planner_stop.sequence} "
                "departs before it arrives"
            )
            raise PlannerDataError(msg)

        stops.append(
            Stop(
                station_id=planner_stop.stop_id,
                route_id=route.route_id,
                route_expected_start_time=expected_start_time,
                sequence=planner_stop.sequence,
                expected_arrival=arrival,
                expected_departure=departure,
            )
        )

    return Route(
        id=route.route_id,
        route_number=route.route_number,
        source=first.stop_name,
        destination=last.stop_name,
        bikes_allowed=route.bikes_allowed,
        wheelchair_accessible=route.wheelchair_accessible,
        route_type=route.route_type,
        expected_start_time=expected_start_time,
        expected_end_time=expected_end_time,
        stops=stops,
    )
