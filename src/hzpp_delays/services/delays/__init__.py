"""Delay monitoring pipeline for HZPP routes."""

from hzpp_delays.services.delays.channel import RouteChannel
from hzpp_delays.services.delays.fetcher import StatusFetcher
from hzpp_delays.services.delays.monitor import RouteMonitor
from hzpp_delays.services.delays.parser import parse_status
from hzpp_delays.services.delays.supervisor import MonitorSupervisor

__all__ = [
    "MonitorSupervisor",
    "RouteChannel",
    "RouteMonitor",
    "StatusFetcher",
    "parse_status",
]
