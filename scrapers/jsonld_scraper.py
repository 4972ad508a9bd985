"""Extract schema.org JSON-LD events embedded in calendar pages."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, List

from bs4 import BeautifulSoup
from urllib.parse import urljoin

from .utils import parse_datetime

logger = logging.getLogger(__name__)

EVENT_TYPES = {"Event", "EducationEvent", "SocialEvent", "BusinessEvent", "MusicEvent",
               "SportsEvent", "Festival", "ExhibitionEvent", "ChildrensEvent"}


def extract_jsonld_events(soup: BeautifulSoup, base_url: str) -> List[dict[str, Any]]:
    """Return raw event fields for every JSON-LD event on the page.

    Each dict has ``title``, ``description``, ``location``, ``organizer``,
    ``start``/``end`` (naive local datetimes, ``end`` may be ``None``),
    ``url`` and ``image_url``. Blocks that fail to decode are skipped.
    """
    events: List[dict[str, Any]] = []
    for tag in soup.find_all("script", type="application/ld+json"):
        # Clean HTML entities from JSON-LD content
        json_content = tag.string or tag.get_text() or ""
        json_content = json_content.replace("&#039;", "'").replace("&quot;", '"').replace("&amp;", "&")
        try:
            data = json.loads(json_content)
        except json.JSONDecodeError:
            logger.info("Skipping malformed JSON-LD block on %s", base_url)
            continue

        for item in _extract_event_objects(data):
            start = _event_start(item)
            if start is None:
                continue
            title = item.get("name", "")
            event_url = item.get("url") or _find_url_for_title(soup, title, base_url) or base_url
            events.append(
                {
                    "title": title,
                    "description": item.get("description") or "",
                    "location": _parse_location(item.get("location")),
                    "organizer": _extract_organizer(item.get("organizer")),
                    "start": start,
                    "end": _event_end(item, start),
                    "url": urljoin(base_url, event_url),
                    "image_url": _extract_image(item.get("image")),
                    "is_free": _offers_free(item.get("offers")),
                }
            )
    return events


def _event_start(item: dict[str, Any]) -> datetime | None:
    start_raw = item.get("startDate")
    if not start_raw:
        return None
    # Handle different time field formats
    start_time = item.get("startTime") or item.get("doorTime")
    if "T" not in start_raw and start_time:
        start_raw = f"{start_raw}T{start_time}"
    return parse_datetime(start_raw)


def _event_end(item: dict[str, Any], start: datetime) -> datetime | None:
    end_raw = item.get("endDate")
    end_time = item.get("endTime")
    if end_raw and "T" not in end_raw and end_time:
        end_raw = f"{end_raw}T{end_time}"
    elif not end_raw and end_time:
        end_raw = f"{start.date().isoformat()}T{end_time}"
    if end_raw:
        return parse_datetime(end_raw)

    # ISO 8601 duration in seconds, e.g. "PT1800S"
    duration = item.get("duration") or ""
    if duration.startswith("PT") and duration.endswith("S"):
        try:
            return start + timedelta(seconds=int(duration[2:-1]))
        except ValueError:
            return None
    return None


def _extract_event_objects(data: Any) -> List[dict[str, Any]]:
    """Return event dicts from a JSON-LD blob."""
    items: List[dict[str, Any]] = []

    if isinstance(data, list):
        for obj in data:
            items.extend(_extract_event_objects(obj))
    elif isinstance(data, dict):
        if _is_event(data):
            items.append(data)
        elif isinstance(data.get("@graph"), list):
            for obj in data["@graph"]:
                if isinstance(obj, dict) and _is_event(obj):
                    items.append(obj)

    return items


def _is_event(obj: dict[str, Any]) -> bool:
    kind = obj.get("@type")
    if isinstance(kind, list):
        return any(k in EVENT_TYPES for k in kind)
    return kind in EVENT_TYPES


def _extract_organizer(organizer: Any) -> str:
    """Extract organizer name from Schema.org organizer data."""
    if isinstance(organizer, list) and organizer:
        organizer = organizer[0]
    if isinstance(organizer, dict):
        return organizer.get("name", "")
    if isinstance(organizer, str):
        return organizer
    return ""


def _parse_location(location: Any) -> str:
    """Flatten a schema.org location (Place, list or plain string) into text."""
    if isinstance(location, list) and location:
        location = location[0]
    if isinstance(location, dict):
        name = location.get("name") or ""
        address = location.get("address")
        if isinstance(address, dict):
            parts = [
                address.get("streetAddress"),
                address.get("addressLocality"),
                address.get("addressRegion"),
            ]
            address = ", ".join(p for p in parts if p)
        if name and address:
            return f"{name}, {address}"
        return name or address or ""
    if isinstance(location, str):
        return location
    return ""


def _extract_image(image: Any) -> str | None:
    if isinstance(image, list) and image:
        image = image[0]
    if isinstance(image, dict):
        return image.get("url")
    if isinstance(image, str):
        return image
    return None


def _offers_free(offers: Any) -> bool | None:
    if isinstance(offers, list) and offers:
        offers = offers[0]
    if isinstance(offers, dict) and "price" in offers:
        try:
            return float(offers["price"]) == 0
        except (TypeError, ValueError):
            return None
    return None


def _find_url_for_title(soup: BeautifulSoup, title: str, base_url: str) -> str | None:
    """Search ``soup`` for an anchor matching ``title`` and return its href."""
    if not title:
        return None
    title_lower = title.strip().lower()
    for a_tag in soup.find_all("a"):
        text = a_tag.get_text(strip=True).lower()
        if title_lower in text:
            href = a_tag.get("href")
            if href:
                return urljoin(base_url, href)
    return None
