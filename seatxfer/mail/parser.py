"""
Ticket extraction from forwarded transfer/confirmation emails.

Two shapes are understood:

* HTML transfer notices (Ticketmaster style): one ``<p>`` per fact, e.g.

      <p>Taylor Swift | The Eras Tour</p>
      <p>Sat, Mar 15 @ 7:30 PM</p>
      <p>Gillette Stadium, Foxborough, MA</p>
      <p>Section 101, Row 5, Seat 12</p>

* labelled plain text (``Event: ...``, ``Venue: ...``, ``Section 12``).

Everything here is pure: no I/O, no database.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from bs4 import BeautifulSoup

from ..helpers import to_iso

UNKNOWN_EVENT = "Unknown Event"
UNKNOWN_VENUE = "Unknown Venue"
GENERAL_ADMISSION = "GENERAL ADMISSION"
NOT_APPLICABLE = "N/A"

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

# "Sat, Mar 15 @ 7:30 PM", "Saturday, March 15, 2026 @ 8 PM"
DATE_LINE_RE = re.compile(
    r"^(?:[A-Za-z]{3,9}\.?,\s*)?"
    r"(?P<month>[A-Za-z]{3,9})\.?\s+(?P<day>\d{1,2})(?:,?\s*(?P<year>\d{4}))?"
    r"\s*@\s*"
    r"(?P<time>(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*"
    r"(?P<ampm>[AaPp])\.?\s*[Mm]\.?)"
)

MONTH_DAY_RE = re.compile(
    r"(?P<month>[A-Za-z]{3,9})\.?\s+(?P<day>\d{1,2})(?:st|nd|rd|th)?"
    r"(?:,?\s*(?P<year>\d{4}))?"
    r"(?:[^\d\n]{0,12}?(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*"
    r"(?P<ampm>[AaPp])\.?\s*[Mm]\.?)?"
)

NUMERIC_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")

SEAT_RE = re.compile(
    r"Sec(?:tion)?\.?\s*(?P<section>[\w-]+)\s*,\s*"
    r"Row\s*(?P<row>[\w-]+)\s*,\s*"
    r"Seats?\s*(?P<seat>[\w-]+)",
    re.IGNORECASE,
)

TEXT_PATTERNS = {
    "event_name": re.compile(r"\b(?:Event|Show|Concert)\s*:\s*([^\n]+)", re.I),
    "event_date": re.compile(r"\b(?:Event Date|Date|When)\s*:\s*([^\n]+)", re.I),
    "venue": re.compile(r"\b(?:Venue|Location|Where)\s*:\s*([^\n]+)", re.I),
    "section": re.compile(r"\b(?:Section|Sect)\b\.?\s*:?\s*#?\s*([^\n,]+)", re.I),
    "row": re.compile(r"\b(?:Row|Rw)\b\.?\s*:?\s*#?\s*([^\n,]+)", re.I),
    "seat": re.compile(r"\bSeats?\b\.?\s*:?\s*#?\s*([^\n,]+)", re.I),
    "price": re.compile(
        r"\b(?:Price|Amount|Total)\s*:\s*\$?\s*(\d+(?:\.\d{2})?)", re.I
    ),
}

FORWARD_PREFIX_RE = re.compile(r"^(?:\s*(?:fwd?|fw)\s*:\s*)+", re.I)


@dataclass
class ExtractedTicket:
    event_name: str = UNKNOWN_EVENT
    event_date: Optional[datetime] = None
    event_date_text: str = ""
    event_time: str = ""
    venue: str = ""
    city: str = ""
    state: str = ""
    section: str = ""
    row: str = ""
    seat: str = ""
    price: Optional[float] = None
    recipient_email: str = ""

    def to_dict(self) -> dict:
        d = asdict(self)
        return {
            "eventName": d["event_name"],
            "eventDate": to_iso(self.event_date),
            "eventDateText": d["event_date_text"],
            "eventTime": d["event_time"],
            "venue": d["venue"],
            "city": d["city"],
            "state": d["state"],
            "section": d["section"],
            "row": d["row"],
            "seat": d["seat"],
            "price": d["price"],
            "recipientEmail": d["recipient_email"],
        }


# ----------------------------
# Dates
# ----------------------------
def _month(token: str) -> Optional[int]:
    return MONTHS.get(token[:3].lower())


def _clock(hour: Optional[str], minute: Optional[str],
           ampm: Optional[str]) -> tuple[int, int]:
    if hour is None:
        return 0, 0
    h = int(hour) % 12
    if ampm and ampm.lower() == "p":
        h += 12
    return h, int(minute or 0)


def _build_date(month: int, day: int, year: Optional[int], hour: int,
                minute: int, now: datetime) -> Optional[datetime]:
    explicit = year is not None
    try:
        dt = datetime(year or now.year, month, day, hour, minute,
                      tzinfo=timezone.utc)
    except ValueError:
        return None
    # transfers are for upcoming shows: a yearless date already gone
    # belongs to next year
    if not explicit and dt < now - timedelta(days=1):
        try:
            dt = dt.replace(year=dt.year + 1)
        except ValueError:
            return None
    return dt


def parse_event_date(value: str, now: Optional[datetime] = None
                     ) -> Optional[datetime]:
    """Best-effort parse of a human date ("Sat, Mar 15 @ 7:30 PM",
    "March 15, 2026 8:00 PM", "3/15/2026", ISO-8601). None if no date."""
    if not value:
        return None
    now = now or datetime.now(timezone.utc)
    value = value.strip()

    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except ValueError:
        pass

    for m in MONTH_DAY_RE.finditer(value):
        month = _month(m.group("month"))
        if month is None:
            continue
        hour, minute = _clock(m.group("hour"), m.group("minute"),
                              m.group("ampm"))
        year = int(m.group("year")) if m.group("year") else None
        return _build_date(month, int(m.group("day")), year, hour, minute,
                           now)

    m = NUMERIC_DATE_RE.search(value)
    if m:
        return _build_date(int(m.group(1)), int(m.group(2)),
                           int(m.group(3)), 0, 0, now)
    return None


# ----------------------------
# HTML transfer notices
# ----------------------------
def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def _blocks(soup: BeautifulSoup) -> List[str]:
    nodes = soup.find_all("p") or soup.find_all("td")
    return [_clean(n.get_text(" ", strip=True)) for n in nodes]


def _is_seating(text: str) -> bool:
    return "section" in text.lower() or GENERAL_ADMISSION in text.upper()


def parse_transfer_html(html: str, recipient_email: str = "",
                        now: Optional[datetime] = None
                        ) -> List[ExtractedTicket]:
    if not html:
        return []
    now = now or datetime.now(timezone.utc)
    soup = BeautifulSoup(html, "html.parser")
    blocks = _blocks(soup)

    date_idx, date_match = None, None
    for i, text in enumerate(blocks):
        m = DATE_LINE_RE.match(text)
        if m and _month(m.group("month")):
            date_idx, date_match = i, m
            break

    seating_idx = [i for i, text in enumerate(blocks) if _is_seating(text)]

    name_idx = None
    for i, text in enumerate(blocks):
        if not text or i == date_idx or i in seating_idx:
            continue
        if "transfer" in text.lower():
            continue
        name_idx = i
        break

    location_idx = None
    for i, text in enumerate(blocks):
        if i in (date_idx, name_idx) or i in seating_idx:
            continue
        if "," in text and "@" not in text:
            location_idx = i
            break

    base = ExtractedTicket(recipient_email=recipient_email)
    if name_idx is not None:
        base.event_name = blocks[name_idx]

    if date_match is not None:
        hour, minute = _clock(date_match.group("hour"),
                              date_match.group("minute"),
                              date_match.group("ampm"))
        year = date_match.group("year")
        base.event_date = _build_date(
            _month(date_match.group("month")), int(date_match.group("day")),
            int(year) if year else None, hour, minute, now,
        )
        base.event_date_text = blocks[date_idx]
        base.event_time = _clean(date_match.group("time")).upper()

    if location_idx is not None:
        parts = [p.strip() for p in blocks[location_idx].split(",")]
        if len(parts) >= 3:
            base.venue, base.city, base.state = parts[0], parts[1], parts[2]
        elif len(parts) == 2:
            base.venue, base.state = parts

    tickets: List[ExtractedTicket] = []
    for i in seating_idx:
        text = blocks[i]
        if GENERAL_ADMISSION in text.upper():
            tickets.append(_general_admission(base))
            continue
        for m in SEAT_RE.finditer(text):
            t = ExtractedTicket(**asdict(base))
            t.section, t.row, t.seat = (
                m.group("section"), m.group("row"), m.group("seat")
            )
            tickets.append(t)

    if not seating_idx and GENERAL_ADMISSION in soup.get_text(" ").upper():
        tickets.append(_general_admission(base))
    return tickets


def _general_admission(base: ExtractedTicket) -> ExtractedTicket:
    t = ExtractedTicket(**asdict(base))
    t.section, t.row, t.seat = GENERAL_ADMISSION, NOT_APPLICABLE, NOT_APPLICABLE
    return t


# ----------------------------
# Labelled plain text
# ----------------------------
def strip_forward_prefix(subject: str) -> str:
    return FORWARD_PREFIX_RE.sub("", subject or "").strip()


def parse_plain_text(text: str, subject: str = "", recipient_email: str = "",
                     now: Optional[datetime] = None) -> ExtractedTicket:
    found = {}
    for key, pattern in TEXT_PATTERNS.items():
        m = pattern.search(text or "")
        if m:
            found[key] = m.group(1).strip()

    event_name = found.get("event_name") or strip_forward_prefix(subject)
    date_text = found.get("event_date", "")
    price = float(found["price"]) if "price" in found else None

    return ExtractedTicket(
        event_name=event_name or UNKNOWN_EVENT,
        event_date=parse_event_date(date_text, now) if date_text else None,
        event_date_text=date_text or "TBD",
        venue=found.get("venue") or UNKNOWN_VENUE,
        section=found.get("section", ""),
        row=found.get("row", ""),
        seat=found.get("seat", ""),
        price=price,
        recipient_email=recipient_email,
    )


def html_to_text(html: str) -> str:
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text("\n")


def parse_ticket_email(html: str = "", text: str = "", subject: str = "",
                       recipient_email: str = "",
                       now: Optional[datetime] = None
                       ) -> List[ExtractedTicket]:
    """HTML transfer tickets when the notice has seating, otherwise one
    ticket from the labelled text (or the HTML flattened to text)."""
    tickets = parse_transfer_html(html, recipient_email, now)
    if tickets:
        return tickets
    body = text or html_to_text(html)
    return [parse_plain_text(body, subject, recipient_email, now)]
