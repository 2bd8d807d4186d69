"""SQLAlchemy models for HZPP delay stats."""

from hzpp_delays.models.base import Base
from hzpp_delays.models.timetable import RouteRecord, StationRecord, StopRecord

__all__ = [
    "Base",
    "RouteRecord",
    "StationRecord",
    "StopRecord",
]
