"""Parse raw feed payloads into normalized :class:`ingest.schemas.Event` records.

One parser per feed format. Each takes the already-fetched payload and the
owning source and returns events, raising :class:`FeedParseError` when the
payload is not in the expected format.
"""
from __future__ import annotations

import calendar
import json
import logging
import re
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import feedparser
from bs4 import BeautifulSoup

from ingest import settings
from ingest.schemas import CalendarSource, Event

from .html_event_scraper import scrape_calendar_grid, scrape_event_blocks
from .jsonld_scraper import extract_jsonld_events
from .utils import (
    categorize_event,
    clean_text,
    date_from_day_and_month,
    format_time,
    mentions_free,
    parse_datetime,
    parse_event_date,
    parse_time_of_day,
    recurring_dates,
    to_local_naive,
)

logger = logging.getLogger(__name__)

ICAL_DEFAULT_DURATION = timedelta(hours=1)
RSS_DEFAULT_DURATION = timedelta(hours=2)
JSON_DEFAULT_DURATION = timedelta(hours=2)
HTML_DEFAULT_DURATION = timedelta(hours=2)


class FeedParseError(Exception):
    """Raised when a payload cannot be parsed as the declared feed format."""


def build_event(
    source: CalendarSource,
    title: str,
    start: datetime,
    end: Optional[datetime] = None,
    *,
    description: str = "",
    location: Optional[str] = None,
    organizer: Optional[str] = None,
    attendees: int = 0,
    image_url: Optional[str] = None,
    is_free: Optional[bool] = None,
    default_duration: timedelta = RSS_DEFAULT_DURATION,
) -> Event:
    """Assemble an :class:`Event`, filling defaults from ``source``."""
    title = clean_text(title)
    description = clean_text(description)
    if end is None or end < start:
        end = start + default_duration
    if is_free is None:
        is_free = mentions_free(description)
    return Event(
        title=title,
        description=description,
        category=categorize_event(title, description),
        location=clean_text(location) or source.location,
        organizer=organizer or source.name,
        start_date=start,
        end_date=end,
        start_time=format_time(start),
        end_time=format_time(end),
        attendees=attendees,
        image_url=image_url,
        is_free=is_free,
        source=source.id,
    )


# --------------------------------------------------------------------------
# iCalendar

def _ical_unfold(text: str) -> str:
    return re.sub(r"\r?\n[ \t]", "", text)


_ICAL_ESCAPE_RE = re.compile(r"\\([\\;,nN])")


def _ical_unescape(value: str) -> str:
    # Single pass, so an escaped backslash never starts a second escape.
    return _ICAL_ESCAPE_RE.sub(
        lambda m: "\n" if m.group(1) in "nN" else m.group(1), value
    )


def _ical_props(block: str) -> dict[str, tuple[dict[str, str], str]]:
    """Map property name to (params, raw value), keeping the first occurrence."""
    props: dict[str, tuple[dict[str, str], str]] = {}
    for line in block.splitlines():
        if ":" not in line:
            continue
        head, value = line.split(":", 1)
        name, *raw_params = head.split(";")
        params = {}
        for raw in raw_params:
            if "=" in raw:
                key, val = raw.split("=", 1)
                params[key.upper()] = val.strip('"')
        props.setdefault(name.upper(), (params, value.strip()))
    return props


def _ical_datetime(params: dict[str, str], value: str) -> Optional[datetime]:
    """Decode DTSTART/DTEND values: UTC ``Z``, TZID-local, floating or date-only."""
    value = value.strip()
    try:
        if len(value) == 8 or params.get("VALUE") == "DATE":
            return datetime.strptime(value[:8], "%Y%m%d")
        if value.endswith("Z"):
            dt = datetime.strptime(value, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
            return to_local_naive(dt)
        dt = datetime.strptime(value[:15], "%Y%m%dT%H%M%S")
    except ValueError:
        return parse_datetime(value)

    tzid = params.get("TZID")
    if tzid:
        try:
            return to_local_naive(dt.replace(tzinfo=ZoneInfo(tzid)))
        except (ZoneInfoNotFoundError, ValueError):
            logger.info("Unknown TZID %s, treating time as local", tzid)
    return dt


def parse_ical(
    text: str,
    source: CalendarSource,
    now: Optional[datetime] = None,
    limit: int = settings.MAX_EVENTS_PER_FEED,
) -> list[Event]:
    """Parse an iCalendar document, keeping the next ``limit`` upcoming events."""
    if "BEGIN:VCALENDAR" not in text and "BEGIN:VEVENT" not in text:
        raise FeedParseError("Payload is not an iCalendar document")

    now = now or datetime.now()
    unfolded = _ical_unfold(text)
    upcoming: list[Event] = []
    skipped = 0

    for chunk in unfolded.split("BEGIN:VEVENT")[1:]:
        block = chunk.split("END:VEVENT", 1)[0]
        props = _ical_props(block)
        if "DTSTART" not in props or "SUMMARY" not in props:
            continue

        start = _ical_datetime(*props["DTSTART"])
        if start is None:
            continue
        if start < now:
            skipped += 1
            continue
        end = _ical_datetime(*props["DTEND"]) if "DTEND" in props else None

        description = _ical_unescape(props.get("DESCRIPTION", ({}, ""))[1])
        location = _ical_unescape(props.get("LOCATION", ({}, ""))[1])
        upcoming.append(
            build_event(
                source,
                _ical_unescape(props["SUMMARY"][1]),
                start,
                end,
                description=description,
                location=location or None,
                default_duration=ICAL_DEFAULT_DURATION,
            )
        )

    upcoming.sort(key=lambda e: e.start_date)
    logger.info(
        "Parsed %d upcoming iCal events from %s (%d past skipped)",
        len(upcoming), source.feed_url, skipped,
    )
    return upcoming[:limit]


# --------------------------------------------------------------------------
# RSS / Atom

def _entry_start(entry: Any) -> Optional[datetime]:
    for key in ("ev_startdate", "startdate", "event_date"):
        if entry.get(key):
            parsed = parse_datetime(entry[key])
            if parsed:
                return parsed
    for key in ("published_parsed", "updated_parsed"):
        struct = entry.get(key)
        if struct:
            return to_local_naive(
                datetime.fromtimestamp(calendar.timegm(struct), tz=timezone.utc)
            )
    return parse_event_date(f"{entry.get('title', '')} {entry.get('summary', '')}")


def parse_rss(
    text: str,
    source: CalendarSource,
    limit: int = settings.MAX_EVENTS_PER_FEED,
) -> list[Event]:
    """Parse an RSS or Atom feed; each item becomes one event."""
    feed = feedparser.parse(text)
    if not feed.entries:
        if feed.bozo:
            raise FeedParseError(f"Failed to parse RSS feed: {feed.get('bozo_exception')}")
        if not feed.get("version"):
            raise FeedParseError("Payload is not an RSS or Atom feed")

    events: list[Event] = []
    for entry in feed.entries[:limit]:
        start = _entry_start(entry)
        if start is None:
            continue
        end = parse_datetime(entry.get("ev_enddate")) if entry.get("ev_enddate") else None
        images = [
            link.get("href") for link in entry.get("links", [])
            if link.get("type", "").startswith("image")
        ]
        events.append(
            build_event(
                source,
                entry.get("title", ""),
                start,
                end,
                description=entry.get("summary", ""),
                location=entry.get("ev_location"),
                image_url=images[0] if images else None,
                default_duration=RSS_DEFAULT_DURATION,
            )
        )
    return events


# --------------------------------------------------------------------------
# JSON

def _json_items(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        for key in ("events", "items", "data"):
            value = data.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
    raise FeedParseError("JSON payload holds no events, items or data list")


def _json_text(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("name") or value.get("title") or value.get("address")
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def _json_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "y", "1"):
            return True
        if lowered in ("false", "no", "n", "0", ""):
            return False
    return None


def _json_is_free(item: dict[str, Any]) -> Optional[bool]:
    if "is_free" in item:
        flag = _json_bool(item["is_free"])
        if flag is not None:
            return flag
    price = item.get("price")
    if isinstance(price, str):
        return True if price.strip().lower() in ("0", "0.00", "free") else None
    if isinstance(price, (int, float)) and not isinstance(price, bool) and price == 0:
        return True
    return None


def _json_event(item: dict[str, Any], source: CalendarSource) -> Optional[Event]:
    start = parse_datetime(
        _json_text(item.get("start_date") or item.get("date") or item.get("start"))
    )
    if start is None:
        return None
    end = parse_datetime(_json_text(item.get("end_date") or item.get("end")))
    try:
        attendees = int(item.get("attendees") or 0)
    except (TypeError, ValueError):
        attendees = 0
    image = item.get("image_url") or item.get("image")
    return build_event(
        source,
        _json_text(item.get("title") or item.get("name")) or "Untitled event",
        start,
        end,
        description=_json_text(item.get("description") or item.get("summary")),
        location=_json_text(item.get("location")) or None,
        attendees=attendees,
        image_url=image if isinstance(image, str) else None,
        is_free=_json_is_free(item),
        default_duration=JSON_DEFAULT_DURATION,
    )


def parse_json(
    payload: str | dict | list,
    source: CalendarSource,
    limit: int = settings.MAX_EVENTS_PER_FEED,
) -> list[Event]:
    """Parse a provider JSON feed, tolerating missing optional fields.

    Values are coerced item by item; an item that still cannot be read is
    skipped without losing the rest of the feed.
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise FeedParseError(f"Invalid JSON: {exc}") from exc

    events: list[Event] = []
    for item in _json_items(payload):
        try:
            event = _json_event(item, source)
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping malformed JSON event from %s: %s", source.feed_url, exc)
            continue
        if event is None:
            continue
        events.append(event)
        if len(events) >= limit:
            break
    return events


# --------------------------------------------------------------------------
# HTML

def parse_html(
    html: str,
    source: CalendarSource,
    base_url: Optional[str] = None,
    now: Optional[datetime] = None,
    limit: int = settings.MAX_EVENTS_PER_FEED,
) -> list[Event]:
    """Scrape upcoming events from a calendar page.

    JSON-LD event markup is used when present. Otherwise month-view grids are
    read cell by cell, and failing that repeated DOM blocks with date text are
    read structurally. A block that names a recurring schedule ("first Monday
    of each month") yields its next few occurrences.
    """
    now = now or datetime.now()
    base_url = base_url or source.feed_url
    soup = BeautifulSoup(html, "html.parser")
    events: list[Event] = []

    for raw in extract_jsonld_events(soup, base_url):
        if raw["start"] < now:
            continue
        events.append(
            build_event(
                source,
                raw["title"],
                raw["start"],
                raw["end"],
                description=raw["description"],
                location=raw["location"] or None,
                organizer=raw["organizer"] or None,
                image_url=raw["image_url"],
                is_free=raw["is_free"],
                default_duration=HTML_DEFAULT_DURATION,
            )
        )
    if events:
        return sorted(events, key=lambda e: e.start_date)[:limit]

    for raw in scrape_calendar_grid(soup, base_url):
        day = date_from_day_and_month(raw["day"], raw["month"], raw["year"], now)
        if day is None:
            continue
        start = datetime.combine(day, parse_time_of_day(raw["text"]) or time(0, 0))
        if start < now:
            continue
        events.append(
            build_event(
                source,
                raw["title"],
                start,
                description=raw["text"],
                default_duration=HTML_DEFAULT_DURATION,
            )
        )
    if events:
        return sorted(events, key=lambda e: e.start_date)[:limit]

    for raw in scrape_event_blocks(soup, base_url):
        start = parse_event_date(raw["date_text"], now) or parse_event_date(raw["text"], now)
        if start is not None:
            starts = [start] if start >= now else []
        else:
            starts = recurring_dates(raw["text"], now)
        for when in starts:
            events.append(
                build_event(
                    source,
                    raw["title"],
                    when,
                    description=raw["description"],
                    location=raw["location"],
                    image_url=raw["image_url"],
                    default_duration=HTML_DEFAULT_DURATION,
                )
            )
    return sorted(events, key=lambda e: e.start_date)[:limit]
