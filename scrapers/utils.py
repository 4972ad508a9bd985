from __future__ import annotations

"""Utility helpers for event scrapers."""

import calendar
import html
import re
from datetime import date, datetime, time, timedelta
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

MAX_TEXT_LENGTH = 300

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_RE = r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?"

# Ordered most specific first; year-less forms come last.
_DATE_PATTERNS = [
    ("ymd", re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")),
    ("mdy", re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")),
    ("month_day_year", re.compile(_MONTH_RE + r"\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})", re.I)),
    ("day_month_year", re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\s+" + _MONTH_RE + r",?\s+(\d{4})", re.I)),
    ("month_day", re.compile(r"\b" + _MONTH_RE + r"\s+(\d{1,2})(?:st|nd|rd|th)?\b", re.I)),
    ("day_month", re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\s+" + _MONTH_RE + r"\b", re.I)),
    ("md", re.compile(r"\b(\d{1,2})/(\d{1,2})(?![/\d])")),
]
_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*([ap])\.?m\.?\b", re.I)
_TIME_24_RE = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")

# First match wins, so the order matters.
_CATEGORY_KEYWORDS = [
    (("council", "meeting", "public"), "Community & Social"),
    (("school", "education", "class"), "Education & Learning"),
    (("business", "networking", "chamber"), "Business & Networking"),
    (("art", "gallery", "exhibition"), "Arts & Culture"),
    (("music", "concert", "performance"), "Music & Concerts"),
    (("sport", "game", "tournament"), "Sports & Recreation"),
    (("food", "dining", "restaurant"), "Food & Dining"),
    (("health", "wellness", "fitness"), "Health & Wellness"),
    (("family", "kids", "children"), "Family & Kids"),
    (("holiday", "celebration", "festival"), "Holiday"),
]
DEFAULT_CATEGORY = "Community & Social"


def to_local_naive(dt: datetime) -> datetime:
    """Convert aware datetimes to naive local time; naive values pass through."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone().replace(tzinfo=None)


def parse_datetime(value: str | None) -> datetime | None:
    """Parse a free-form date string into a naive local datetime."""
    if not value:
        return None
    try:
        return to_local_naive(date_parser.parse(str(value)))
    except (ValueError, OverflowError):
        return None


def clean_text(value: str | None, limit: int = MAX_TEXT_LENGTH) -> str:
    """Strip markup and entities, collapse whitespace, truncate to ``limit``."""
    if not value:
        return ""
    if "<" in value:
        value = BeautifulSoup(value, "html.parser").get_text(" ")
    value = html.unescape(value)
    value = re.sub(r"\s+", " ", value).strip()
    return value[:limit]


def categorize_event(title: str, description: str = "") -> str:
    """Map an event onto the fixed category taxonomy by keyword."""
    text = f"{title} {description}".lower()
    for keywords, category in _CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def mentions_free(*texts: str | None) -> bool:
    return any(t and "free" in t.lower() for t in texts)


def format_time(dt: datetime) -> str:
    """Return a display time such as ``7:00 PM``."""
    return dt.strftime("%I:%M %p").lstrip("0")


def _parse_time(text: str) -> time | None:
    match = _TIME_RE.search(text)
    if match:
        hour = int(match.group(1)) % 12
        minute = int(match.group(2) or 0)
        if match.group(3).lower() == "p":
            hour += 12
        if minute < 60:
            return time(hour, minute)
    match = _TIME_24_RE.search(text)
    if match:
        return time(int(match.group(1)), int(match.group(2)))
    return None


def _build_date(kind: str, groups: tuple[str, ...], today: date) -> tuple[date | None, bool]:
    """Return the date for a matched pattern and whether the year was implied."""
    if kind == "ymd":
        y, m, d = int(groups[0]), int(groups[1]), int(groups[2])
        implied = False
    elif kind == "mdy":
        m, d, y = int(groups[0]), int(groups[1]), int(groups[2])
        implied = False
    elif kind == "month_day_year":
        m, d, y = _MONTHS[groups[0][:3].lower()], int(groups[1]), int(groups[2])
        implied = False
    elif kind == "day_month_year":
        d, m, y = int(groups[0]), _MONTHS[groups[1][:3].lower()], int(groups[2])
        implied = False
    elif kind == "month_day":
        m, d, y = _MONTHS[groups[0][:3].lower()], int(groups[1]), today.year
        implied = True
    elif kind == "day_month":
        d, m, y = int(groups[0]), _MONTHS[groups[1][:3].lower()], today.year
        implied = True
    else:
        m, d, y = int(groups[0]), int(groups[1]), today.year
        implied = True
    try:
        return date(y, m, d), implied
    except ValueError:
        return None, implied


def parse_event_date(text: str | None, now: datetime | None = None) -> datetime | None:
    """Find the first recognizable date (and optional time) in free text.

    Dates written without a year that already passed this year are assumed
    to refer to next year.
    """
    if not text:
        return None
    now = now or datetime.now()
    today = now.date()

    for kind, pattern in _DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        found, implied = _build_date(kind, match.groups(), today)
        if found is None:
            continue
        if implied and found < today:
            try:
                found = found.replace(year=found.year + 1)
            except ValueError:
                continue
        clock = _parse_time(text) or time(0, 0)
        return datetime.combine(found, clock)
    return None


_WEEKDAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
}
_ORDINALS = {
    "first": 1, "1st": 1, "second": 2, "2nd": 2, "third": 3, "3rd": 3,
    "fourth": 4, "4th": 4, "last": -1,
}
_ORDINAL_RE = r"(?:first|second|third|fourth|last|1st|2nd|3rd|4th)"
_WEEKDAY_RE = r"(monday|tuesday|wednesday|thursday|friday|saturday|sunday)s?"
_NTH_WEEKDAY_RE = re.compile(
    r"\b(" + _ORDINAL_RE + r"(?:\s*(?:,|and|&)\s*" + _ORDINAL_RE + r")*)\s+"
    + _WEEKDAY_RE + r"\s+of\s+(?:each|every|the)\s+month\b",
    re.I,
)
_WEEKLY_RE = re.compile(r"\bevery\s+" + _WEEKDAY_RE + r"\b", re.I)
_MONTH_NAME_RE = re.compile(
    r"\b(january|february|march|april|may|june|july|august|september|october|november"
    r"|december|jan|feb|mar|apr|jun|jul|aug|sept?|oct|nov|dec)\b\.?(?:\s+(\d{4})\b)?",
    re.I,
)
RECURRING_MONTHS_AHEAD = 3
MAX_RECURRING_DATES = 6


def parse_time_of_day(text: str | None) -> time | None:
    """Return the first clock time in ``text`` (``7 pm``, ``19:30``)."""
    if not text:
        return None
    return _parse_time(text)


def nth_weekday_of_month(year: int, month: int, weekday: int, occurrence: int) -> date | None:
    """Date of the ``occurrence``-th ``weekday`` (Monday is 0) of a month.

    ``occurrence`` of -1 means the last one. Returns None when the month has
    no such day, e.g. a fifth Friday.
    """
    days_in_month = calendar.monthrange(year, month)[1]
    if occurrence < 0:
        last = date(year, month, days_in_month)
        return last - timedelta(days=(last.weekday() - weekday) % 7)
    day = 1 + (weekday - date(year, month, 1).weekday()) % 7 + (occurrence - 1) * 7
    if day > days_in_month:
        return None
    return date(year, month, day)


def recurring_dates(
    text: str | None,
    now: datetime | None = None,
    months: int = RECURRING_MONTHS_AHEAD,
    limit: int = MAX_RECURRING_DATES,
) -> list[datetime]:
    """Expand ``first and third Tuesday of each month`` or ``every Wednesday``.

    Returns the upcoming occurrences in order, at the time mentioned in the
    text or noon.
    """
    if not text:
        return []
    now = now or datetime.now()
    clock = _parse_time(text) or time(12, 0)
    found: list[datetime] = []

    match = _NTH_WEEKDAY_RE.search(text)
    if match:
        occurrences = [
            _ORDINALS[word.lower()]
            for word in re.findall(_ORDINAL_RE, match.group(1), re.I)
        ]
        weekday = _WEEKDAYS[match.group(2).lower()]
        for offset in range(months):
            year = now.year + (now.month - 1 + offset) // 12
            month = (now.month - 1 + offset) % 12 + 1
            for occurrence in occurrences:
                day = nth_weekday_of_month(year, month, weekday, occurrence)
                if day is not None:
                    found.append(datetime.combine(day, clock))
    else:
        match = _WEEKLY_RE.search(text)
        if not match:
            return []
        weekday = _WEEKDAYS[match.group(1).lower()]
        first = now.date() + timedelta(days=(weekday - now.weekday()) % 7)
        found = [datetime.combine(first + timedelta(weeks=i), clock) for i in range(limit + 1)]

    return sorted(d for d in found if d > now)[:limit]


def find_month(text: str | None) -> tuple[int, int | None] | None:
    """Return ``(month, year)`` for the first month name in ``text``; year may be None."""
    match = _MONTH_NAME_RE.search(text or "")
    if not match:
        return None
    year = int(match.group(2)) if match.group(2) else None
    return _MONTHS[match.group(1)[:3].lower()], year


def date_from_day_and_month(
    day: int, month: int, year: int | None = None, now: datetime | None = None
) -> date | None:
    """Build a date from a calendar-grid day number.

    Without a year, a date already past this year is moved to next year.
    """
    today = (now or datetime.now()).date()
    try:
        found = date(year or today.year, month, day)
    except ValueError:
        return None
    if year is None and found < today:
        try:
            found = found.replace(year=found.year + 1)
        except ValueError:
            return None
    return found


def city_slug(city: str) -> str:
    """``San Jose`` -> ``sanjose``; used when synthesizing domains."""
    return re.sub(r"[^a-z0-9]", "", city.lower())


def normalize_url(url: str) -> str:
    """Prefix ``https://`` when the URL carries no scheme."""
    url = (url or "").strip()
    if not re.match(r"^[a-z][a-z0-9+.-]*://", url, re.IGNORECASE):
        url = "https://" + url
    return url


def extract_domain(url: str) -> str:
    """Return the lower-cased host of ``url`` without a leading ``www.``."""
    if not url:
        return ""
    host = urlparse(normalize_url(url)).hostname or ""
    return re.sub(r"^www\.", "", host.lower())


def same_site(url_a: str, url_b: str) -> bool:
    """Return True if domains match exactly or as subdomains."""
    a = extract_domain(url_a)
    b = extract_domain(url_b)
    if not a or not b:
        return False
    return a == b or a.endswith("." + b) or b.endswith("." + a)
