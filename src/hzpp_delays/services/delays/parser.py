"""Parser for the HZPP train delay page.

The delay endpoint answers with a loosely HTML-formatted page whose layout has
changed several times and is not documented. Every extraction below is a
best-effort substring scan, never a markup parse. Detection runs in a fixed
order because malformed pages can carry several markers at once:

1. infrastructure (vendor) error page      -> ``StatusSentinel.INFRASTRUCTURE_ERROR``
2. train not in the registry               -> ``StatusSentinel.NOT_EVIDENTED``
3. station name from the ``Kolodvor:`` line
4. phase from the first line carrying a phase marker, timestamp from the next line
5. delay: late N min. / waiting to depart / on time / blank placeholder

Example of a page in its current shape::

    <TR><TD>Kolodvor: <strong>ZAGREB+GL.+KOL.</strong></TD></TR>
    <TR><TD>Odlazak</TD></TR>
    <TR><TD>17.10.26. u 12:34 sati</TD></TR>
    <TR><TD><FONT color=red>Kasni 5 min.</FONT></TD></TR>
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Optional, Union
from zoneinfo import ZoneInfo

UPSTREAM_TZ = ZoneInfo("Europe/Zagreb")

INFRASTRUCTURE_ERROR_MARKERS = (
    "Sustav HŽI",
    "Sustav HZI",
    "Server Error in '/' Application",
)
NOT_EVIDENTED_MARKERS = ("nije evidentiran",)

STATION_LABEL = "kolodvor:"
STATION_OPEN = "<strong>"
STATION_CLOSE = "</strong>"

WAITING_MARKERS = ("Vlak čeka polazak", "Vlak ceka polazak")
ON_TIME_MARKERS = ("Vlak je redovit",)

LATE_PATTERN = re.compile(r"Kasni\s+(\S.*?)\s*min\.")
NO_DATA_PATTERN = re.compile(r"Kasni\s*min\.")
DATE_TIME_PATTERN = re.compile(r"(\d{2}\.\d{2}\.\d{2}\.)\D*?(\d{2}:\d{2})")
TAG_PATTERN = re.compile(r"<[^>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")

DATE_TIME_FORMAT = "%d.%m.%y. %H:%M"


class StatusParseError(Exception):
    """Raised when a delay page cannot be interpreted."""


class Phase(str, Enum):
    """Journey state reported by the delay page."""

    FORMED = "formed"
    DEPARTING_FROM_STATION = "departing_from_station"
    ARRIVING = "arriving"
    FINISHED_DRIVING = "finished_driving"


# Checked per line in this order; the first line with any marker wins.
PHASE_MARKERS: tuple[tuple[Phase, tuple[str, ...]], ...] = (
    (Phase.FINISHED_DRIVING, ("Završio", "Zavrsio")),
    (Phase.DEPARTING_FROM_STATION, ("Odlazak",)),
    (Phase.FORMED, ("Formiran",)),
    (Phase.ARRIVING, ("Dolazak",)),
)


class DelayKind(str, Enum):
    """Kind of lateness the delay line reports."""

    NO_DATA = "no_data"
    WAITING_TO_DEPART = "waiting_to_depart"
    ON_TIME = "on_time"
    LATE = "late"


@dataclass(frozen=True)
class Delay:
    """Reported lateness. ``minutes`` is only meaningful for ``LATE``."""

    kind: DelayKind
    minutes: int = 0

    @classmethod
    def late(cls, minutes: int) -> Delay:
        return cls(DelayKind.LATE, minutes)

    @property
    def minutes_late(self) -> Optional[int]:
        """Minutes to add to scheduled times, or None when nothing can be derived."""
        if self.kind is DelayKind.ON_TIME:
            return 0
        if self.kind is DelayKind.LATE:
            return self.minutes
        return None


@dataclass(frozen=True)
class TrainStatus:
    """Typed content of a delay page."""

    station: str
    phase: Phase
    reported_at: datetime
    delay: Delay


class StatusSentinel(str, Enum):
    """Page outcomes that carry no position."""

    NOT_EVIDENTED = "not_evidented"
    INFRASTRUCTURE_ERROR = "infrastructure_error"


ParsedStatus = Union[TrainStatus, StatusSentinel]


def parse_status(body: str, tz: tzinfo = UPSTREAM_TZ) -> ParsedStatus:
    """Parse a delay page into a ``TrainStatus`` or a sentinel.

    Args:
        body: Raw response body.
        tz: Civil timezone the page's date and time are written in.

    Returns:
        ``TrainStatus`` or one of the ``StatusSentinel`` values.

    Raises:
        StatusParseError: If a required part of the page is missing or malformed.
    """
    if any(marker in body for marker in INFRASTRUCTURE_ERROR_MARKERS):
        return StatusSentinel.INFRASTRUCTURE_ERROR
    if any(marker in body for marker in NOT_EVIDENTED_MARKERS):
        return StatusSentinel.NOT_EVIDENTED

    lines = body.splitlines()
    station = extract_station(lines)
    phase, reported_at = extract_phase(lines, tz)
    delay = extract_delay(body)

    return TrainStatus(station=station, phase=phase, reported_at=reported_at, delay=delay)


def extract_station(lines: list[str]) -> str:
    """Return the free-text station name from the ``Kolodvor:`` line."""
    for line in lines:
        lowered = line.lower()
        label_at = lowered.find(STATION_LABEL)
        if label_at == -1:
            continue

        start = lowered.find(STATION_OPEN, label_at)
        if start == -1:
            break
        start += len(STATION_OPEN)
        end = lowered.find(STATION_CLOSE, start)
        if end == -1:
            break

        name = html.unescape(line[start:end]).replace("+", " ")
        name = WHITESPACE_PATTERN.sub(" ", name).strip()
        if not name:
            break
        return name

    msg = "Station name not found in delay page"
    raise StatusParseError(msg)


def extract_phase(lines: list[str], tz: tzinfo = UPSTREAM_TZ) -> tuple[Phase, datetime]:
    """Return the reported phase and its timestamp converted to UTC."""
    for index, line in enumerate(lines):
        phase = _match_phase(line)
        if phase is None:
            continue

        date_line = _next_non_blank(lines, index + 1)
        if date_line is None:
            msg = f"Missing date line after {phase.value} marker"
            raise StatusParseError(msg)
        return phase, parse_reported_time(date_line, tz)

    msg = "No phase marker found in delay page"
    raise StatusParseError(msg)


def parse_reported_time(line: str, tz: tzinfo = UPSTREAM_TZ) -> datetime:
    """Decode a ``dd.mm.yy.`` + ``hh:mm`` field in local civil time into a UTC instant."""
    text = TAG_PATTERN.sub(" ", line)
    match = DATE_TIME_PATTERN.search(text)
    if match is None:
        msg = f"Malformed date line: {text.strip()!r}"
        raise StatusParseError(msg)

    try:
        local = datetime.strptime(f"{match.group(1)} {match.group(2)}", DATE_TIME_FORMAT)
    except ValueError as exc:
        msg = f"Invalid date or time: {match.group(0)!r}"
        raise StatusParseError(msg) from exc

    return local.replace(tzinfo=tz).astimezone(timezone.utc)


def extract_delay(body: str) -> Delay:
    """Return the delay reported anywhere in the page."""
    text = TAG_PATTERN.sub(" ", body)

    late = LATE_PATTERN.search(text)
    if late is not None:
        raw_minutes = late.group(1).strip()
        try:
            return Delay.late(int(raw_minutes))
        except ValueError as exc:
            msg = f"Non-numeric minutes late: {raw_minutes!r}"
            raise StatusParseError(msg) from exc

    if any(marker in text for marker in WAITING_MARKERS):
        return Delay(DelayKind.WAITING_TO_DEPART)
    if any(marker in text for marker in ON_TIME_MARKERS):
        return Delay(DelayKind.ON_TIME)
    if NO_DATA_PATTERN.search(text):
        return Delay(DelayKind.NO_DATA)

    msg = "No delay information found in delay page"
    raise StatusParseError(msg)


def _match_phase(line: str) -> Optional[Phase]:
    for phase, markers in PHASE_MARKERS:
        if any(marker in line for marker in markers):
            return phase
    return None


def _next_non_blank(lines: list[str], start: int) -> Optional[str]:
    for line in lines[start:]:
        if TAG_PATTERN.sub("", line).strip():
            return line
    return None
