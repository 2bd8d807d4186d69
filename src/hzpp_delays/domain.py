"""Domain types for monitored routes, their stops and stations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import NamedTuple


class WireFlag(IntEnum):
    """Yes/no flag as encoded by the HZPP planner.

    The planner uses two values for "no": ``1`` is true, ``0`` and ``2`` are
    false. The raw value is kept so it round-trips through the store.
    """

    UNSPECIFIED = 0
    YES = 1
    NO = 2

    @property
    def enabled(self) -> bool:
        return self is WireFlag.YES


class RouteType(IntEnum):
    """Vehicle kind of a route."""

    TRAIN = 2
    BUS = 3


class RouteKey(NamedTuple):
    """Compound identity of a route: the same id recurs on different days."""

    route_id: str
    expected_start_time: datetime


@dataclass(frozen=True)
class Station:
    """Immutable station reference data."""

    id: str
    code: int
    name: str
    latitude: float
    longitude: float


@dataclass
class Stop:
    """One scheduled station visit of a route."""

    station_id: str
    route_id: str
    route_expected_start_time: datetime
    sequence: int
    expected_arrival: datetime
    expected_departure: datetime
    real_arrival: datetime | None = None
    real_departure: datetime | None = None


@dataclass
class Route:
    """One scheduled journey, owning its ordered stops."""

    id: str
    route_number: int
    source: str
    destination: str
    bikes_allowed: WireFlag
    wheelchair_accessible: WireFlag
    route_type: RouteType
    expected_start_time: datetime
    expected_end_time: datetime
    real_start_time: datetime | None = None
    real_end_time: datetime | None = None
    stops: list[Stop] = field(default_factory=list, repr=False)

    @property
    def key(self) -> RouteKey:
        return RouteKey(self.id, self.expected_start_time)

    @property
    def allows_bikes(self) -> bool:
        return self.bikes_allowed.enabled

    @property
    def is_wheelchair_accessible(self) -> bool:
        return self.wheelchair_accessible.enabled

    @property
    def is_finished(self) -> bool:
        return self.real_start_time is not None and self.real_end_time is not None
