"""Test fixtures: delay pages in the shapes the upstream has served."""

from __future__ import annotations

PAGE_HEADER = """<HTML><HEAD><TITLE>HZPP - Trenutna pozicija vlaka</TITLE></HEAD>
<BODY bgcolor=#FFFFFF>
<TABLE width=100% border=0>
<TR><TD>Broj vlaka: <B>2024</B></TD></TR>"""

PAGE_FOOTER = """</TABLE>
</BODY></HTML>"""


def build_delay_page(
    station: str = "ZAGREB+GL.+KOL.",
    phase_line: str = "Odlazak",
    date_line: str = "17.10.26. u 12:34 sati",
    delay_line: str = "<FONT color=red>Kasni 5 min.</FONT>",
) -> str:
    """Build a delay page in its current table layout.

    Args:
        station: Raw station text between the ``<strong>`` delimiters.
        phase_line: Line carrying the phase marker.
        date_line: Line following the phase marker.
        delay_line: Line carrying the delay text.

    Returns:
        Page body as served by the delay endpoint.
    """
    return "\n".join(
        [
            PAGE_HEADER,
            f"<TR><TD>Kolodvor: <strong>{station}</strong></TD></TR>",
            f"<TR><TD>{phase_line}</TD></TR>",
            f"<TR><TD>{date_line}</TD></TR>",
            f"<TR><TD>{delay_line}</TD></TR>",
            PAGE_FOOTER,
        ]
    )


DEPARTING_LATE = build_delay_page()

ARRIVING_LATE = build_delay_page(
    station="VINKOVCI",
    phase_line="Dolazak",
    date_line="05.01.26. u 08:15 sati",
    delay_line="<FONT color=red>Kasni 12 min.</FONT>",
)

FORMED_ON_TIME = build_delay_page(
    phase_line="Formiran",
    date_line="17.10.26. u 12:20 sati",
    delay_line="Vlak je redovit",
)

FINISHED_LATE = build_delay_page(
    station="SPLIT",
    phase_line="Završio vožnju",
    date_line="17.10.26. u 18:45 sati",
    delay_line="<FONT color=red>Kasni 3 min.</FONT>",
)

WAITING_TO_DEPART = build_delay_page(
    phase_line="Formiran",
    delay_line="Vlak čeka polazak",
)

NO_DATA = build_delay_page(delay_line="<FONT color=red>Kasni  min.</FONT>")

NON_NUMERIC_DELAY = build_delay_page(delay_line="<FONT color=red>Kasni ?? min.</FONT>")

# Older shape: every field on its own line, plus-separated station, no table.
LEGACY_PLAIN = """Kolodvor: <strong>SV.+IVAN+&#381;ABNO</strong>
Odlazak

17.10.26.  12:34
Kasni   7   min.
"""

NOT_EVIDENTED = "<HTML><BODY>Vlak 9999 nije evidentiran.</BODY></HTML>"

NOT_EVIDENTED_WITH_CONTENT = build_delay_page(
    delay_line="Kasni 5 min.<BR>Vlak 2024 nije evidentiran u sustavu.",
)

INFRASTRUCTURE_ERROR = (
    "<HTML><BODY><H1>Sustav HŽI trenutno nije dostupan.</H1></BODY></HTML>"
)

ASPNET_ERROR = """<html><head><title>Runtime Error</title></head>
<body><h1>Server Error in '/' Application.</h1>
<h2><i>Runtime Error</i></h2></body></html>"""

INFRASTRUCTURE_AND_NOT_EVIDENTED = (
    "<HTML><BODY>Sustav HZI: vlak nije evidentiran</BODY></HTML>"
)

MISSING_STATION = "\n".join(
    [PAGE_HEADER, "<TR><TD>Odlazak</TD></TR>", "<TR><TD>17.10.26. u 12:34 sati</TD></TR>",
     "<TR><TD>Kasni 5 min.</TD></TR>", PAGE_FOOTER]
)

MISSING_PHASE = build_delay_page(phase_line="Pozicija nepoznata")

MALFORMED_DATE = build_delay_page(date_line="danas u podne")

NO_DELAY_TEXT = build_delay_page(delay_line="&nbsp;")
