"""Fuzzy matching of delay-page station names to a route's stops."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Optional

from hzpp_delays.domain import Station, Stop
from hzpp_delays.logging import get_logger

logger = get_logger(__name__)


def station_name_tokens(name: str) -> list[str]:
    """Lowercase, drop periods and split on whitespace.

    >>> station_name_tokens("Zagreb Gl. Kol.")
    ['zagreb', 'gl', 'kol']
    """
    return name.lower().replace(".", "").split()


def station_names_match(reported: str, stored: str) -> bool:
    """Word-by-word containment match between two station names.

    Both names must have the same number of words, and every word pair must
    contain one another in either direction ("sv" matches "sveti").
    """
    reported_tokens = station_name_tokens(reported)
    stored_tokens = station_name_tokens(stored)
    if not reported_tokens or len(reported_tokens) != len(stored_tokens):
        return False

    return all(
        a in b or b in a for a, b in zip(reported_tokens, stored_tokens)
    )


def find_current_stop(
    stops: Sequence[Stop],
    stations: Mapping[str, Station],
    reported_name: str,
) -> Optional[Stop]:
    """Find the stop a delay page refers to.

    When several stops match (a terminus visited twice, or an ambiguous
    abbreviation) the last one in stop order wins.

    Returns:
        The matching stop from ``stops`` itself, so callers can update it in place,
        or None if no stop's station name matches.
    """
    found: Optional[Stop] = None
    for stop in stops:
        station = stations.get(stop.station_id)
        if station is None:
            logger.debug(
                "Stop references unknown station",
                station_id=stop.station_id,
                sequence=stop.sequence,
            )
            continue
        if station_names_match(reported_name, station.name):
            found = stop
    return found
