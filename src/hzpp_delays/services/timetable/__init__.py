"""Timetable ingestion from the HZPP planner API."""

from hzpp_delays.services.timetable.ingestion import IngestionJob
from hzpp_delays.services.timetable.planner import PlannerClient

__all__ = [
    "IngestionJob",
    "PlannerClient",
]
