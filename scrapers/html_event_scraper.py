"""Structural scraping of event listings from plain HTML calendar pages.

This is the fallback for sources that publish no machine-readable feed. It
looks for repeated blocks that carry date or time text and pulls a title,
date, location and link out of each one.
"""
from __future__ import annotations

import logging
import re
from typing import Any, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .utils import find_month

logger = logging.getLogger(__name__)

# More specific selectors first.
EVENT_SELECTORS = [
    'article[class*="calendar"]',
    'div[class*="calendar-item"]',
    'div[class*="event-item"]',
    ".views-row",
    ".node-event",
    ".event",
    ".calendar-event",
    '[class*="event"]:not(body):not(html)',
    '[class*="calendar"]:not(body):not(html)',
    '[id*="event"]',
    "article",
    "li",
]
TITLE_SELECTORS = ["h1", "h2", "h3", ".title", ".event-title", "h4"]
DATE_SELECTORS = [".date", ".event-date", "time", '[class*="date"]']
LOCATION_SELECTORS = [".location", ".event-location", '[class*="location"]', "address"]
DESCRIPTION_SELECTORS = [".description", ".event-description", ".summary", "p"]

MIN_BLOCK_TEXT = 20
MAX_BLOCK_TEXT = 5000


def _contains_datetime_patterns(text: str) -> bool:
    """Check if text contains patterns suggesting date/time information."""
    patterns = [
        r"\b\d{1,2}[/-]\d{1,2}([/-]\d{2,4})?\b",  # dates like 12/25/2024
        r"\b\d{4}-\d{1,2}-\d{1,2}\b",
        r"\b\d{1,2}:\d{2}\s*(am|pm)?\b",  # times like 2:30 PM
        r"\b(january|february|march|april|may|june|july|august|september|october|november|december)\b",
        r"\b(jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec)\b",
        r"\bevery\s+(monday|tuesday|wednesday|thursday|friday|saturday|sunday)",
        r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)s?"
        r"\s+of\s+(each|every|the)\s+month",
    ]
    return any(re.search(pattern, text, re.IGNORECASE) for pattern in patterns)


def find_event_blocks(soup: BeautifulSoup) -> List[Tag]:
    """Return non-overlapping elements that look like single event entries."""
    blocks: List[Tag] = []
    for selector in EVENT_SELECTORS:
        for element in soup.select(selector):
            # Skip if we already have this element or a parent/child of it
            if any(
                element is existing
                or element in existing.descendants
                or existing in element.descendants
                for existing in blocks
            ):
                continue
            text = element.get_text(" ", strip=True)
            if not (MIN_BLOCK_TEXT <= len(text) <= MAX_BLOCK_TEXT):
                continue
            if _contains_datetime_patterns(text):
                blocks.append(element)
        if blocks:
            # Stop at the most specific selector that produced matches.
            break
    return blocks


def _first_text(block: Tag, selectors: List[str]) -> Optional[str]:
    for selector in selectors:
        found = block.select_one(selector)
        if found:
            if found.name == "time" and found.get("datetime"):
                return found["datetime"]
            text = found.get_text(" ", strip=True)
            if text:
                return text
    return None


def extract_block_fields(block: Tag, base_url: str) -> dict[str, Any]:
    """Pull the raw title/date/location/link text out of one block."""
    text = block.get_text(" ", strip=True)
    title = _first_text(block, TITLE_SELECTORS)
    if not title:
        anchor = block.find("a")
        title = anchor.get_text(" ", strip=True) if anchor else None

    link = block.find("a", href=True)
    image = block.find("img", src=True)
    return {
        "title": title,
        "date_text": _first_text(block, DATE_SELECTORS) or text,
        "text": text,
        "location": _first_text(block, LOCATION_SELECTORS),
        "description": _first_text(block, DESCRIPTION_SELECTORS) or text,
        "url": urljoin(base_url, link["href"]) if link else base_url,
        "image_url": urljoin(base_url, image["src"]) if image else None,
    }


def scrape_event_blocks(soup: BeautifulSoup, base_url: str) -> List[dict[str, Any]]:
    """Return raw field dicts for every event-like block with a title."""
    results = []
    for block in find_event_blocks(soup):
        fields = extract_block_fields(block, base_url)
        if fields["title"]:
            results.append(fields)
    logger.info("Found %d event blocks on %s", len(results), base_url)
    return results


# -- month grids ---------------------------------------------------------------

GRID_MIN_CELLS = 7
MONTH_HEADER_SELECTORS = "caption, th, .month-header, .calendar-header, .calendar-title"
PAGE_TITLE_SELECTORS = "h1, h2, .page-title, .calendar-title"
_DAY_MARKER_SELECTOR = '[class*="day"], [class*="date"]'
_TIME_TEXT_RE = re.compile(
    r"\b\d{1,2}(?::\d{2})?\s*[ap]\.?m\.?(?:\s*-\s*\d{1,2}(?::\d{2})?\s*[ap]\.?m\.?)?",
    re.I,
)


def find_month_context(cell: Tag) -> Optional[tuple[int, Optional[int]]]:
    """Locate the month (and year, if shown) a calendar grid cell belongs to.

    Table headers and captions come first, then the nearest heading before
    the table, then the page headings.
    """
    table = cell.find_parent("table")
    if table is not None:
        header = " ".join(
            el.get_text(" ", strip=True) for el in table.select(MONTH_HEADER_SELECTORS)
        )
        found = find_month(header)
        if found:
            return found
        heading = table.find_previous(["h1", "h2", "h3", "h4"])
        if heading is not None:
            found = find_month(heading.get_text(" ", strip=True))
            if found:
                return found

    root = cell
    while root.parent is not None:
        root = root.parent
    titles = " ".join(el.get_text(" ", strip=True) for el in root.select(PAGE_TITLE_SELECTORS))
    return find_month(titles)


def cell_day_number(cell: Tag) -> Optional[int]:
    """Return the day-of-month shown in a grid cell, if any."""
    candidates = []
    marker = cell.select_one(_DAY_MARKER_SELECTOR)
    if marker is not None:
        candidates.append(marker.get_text(strip=True))
    candidates.extend(list(cell.stripped_strings)[:1])
    for text in candidates:
        if re.fullmatch(r"\d{1,2}", text):
            day = int(text)
            return day if 1 <= day <= 31 else None
    return None


def _grid_entries(cell: Tag, base_url: str) -> List[dict[str, Any]]:
    entries = []
    for anchor in cell.find_all("a"):
        title = anchor.get_text(" ", strip=True)
        if not title or title.isdigit():
            continue
        holder = anchor.parent if anchor.parent is not cell else anchor
        entries.append({
            "title": _TIME_TEXT_RE.sub("", title).strip(" -,@|") or title,
            "text": holder.get_text(" ", strip=True),
            "url": urljoin(base_url, anchor["href"]) if anchor.get("href") else base_url,
        })
    if entries:
        return entries

    for text in cell.stripped_strings:
        if text.isdigit():
            continue
        title = _TIME_TEXT_RE.sub("", text).strip(" -,@|")
        if not title:
            # A bare time belongs to the entry before it.
            if entries:
                entries[-1]["text"] += " " + text
            continue
        entries.append({"title": title, "text": text, "url": base_url})
    return entries


def scrape_calendar_grid(soup: BeautifulSoup, base_url: str) -> List[dict[str, Any]]:
    """Read events out of month-view tables whose cells show only day numbers.

    Each result carries the raw entry text plus ``day``, ``month`` and
    ``year`` (None when the page does not show one).
    """
    results = []
    for table in soup.find_all("table"):
        cells = table.find_all("td")
        if len(cells) < GRID_MIN_CELLS:
            continue
        for cell in cells:
            day = cell_day_number(cell)
            if day is None:
                continue
            entries = _grid_entries(cell, base_url)
            if not entries:
                continue
            context = find_month_context(cell)
            if context is None:
                continue
            month, year = context
            for entry in entries:
                entry.update(day=day, month=month, year=year)
                results.append(entry)
    if results:
        logger.info("Found %d calendar grid entries on %s", len(results), base_url)
    return results
