"""Fetch registered calendar feeds and turn them into events."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, Optional

import requests

from ingest import settings
from ingest.schemas import CalendarSource, Event
from ingest.source_catalog import SourceRegistry

from .feed_parsers import FeedParseError, parse_html, parse_ical, parse_json, parse_rss

logger = logging.getLogger(__name__)

_RSS_MARKERS = ("<rss", "<feed", "<item", "<entry")


def webcal_to_https(url: str) -> str:
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://"):]
    return url


class FeedCollector:
    """Collect events from the sources held in a :class:`SourceRegistry`.

    Registry operations are delegated so callers only need one object for
    listing, adding and toggling sources as well as collecting from them.
    """

    def __init__(
        self,
        registry: SourceRegistry | None = None,
        timeout: float = settings.FEED_TIMEOUT_SEC,
        test_timeout: float = settings.FEED_TEST_TIMEOUT_SEC,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.registry = registry if registry is not None else SourceRegistry()
        if self.registry.feed_checker is None:
            self.registry.feed_checker = self.check_feed_working
        self.timeout = timeout
        self.test_timeout = test_timeout
        self.now = now
        self._collectors = {
            "ical": self._collect_ical,
            "webcal": self._collect_webcal,
            "rss": self._collect_rss,
            "json": self._collect_json,
            "html": self._collect_html,
        }

    # -- registry delegation -------------------------------------------------

    def list_sources(self) -> list[CalendarSource]:
        return self.registry.list_sources()

    def list_by_state(self, state: str) -> list[CalendarSource]:
        return self.registry.list_by_state(state)

    def list_by_type(self, source_type: str) -> list[CalendarSource]:
        return self.registry.list_by_type(source_type)

    def list_active(self) -> list[CalendarSource]:
        return self.registry.list_active()

    def add_source(self, candidate: CalendarSource) -> bool:
        return self.registry.add_source(candidate)

    def toggle_source(self, source_id: str) -> bool | None:
        return self.registry.toggle_source(source_id)

    def remove_source(self, source_id: str) -> bool:
        return self.registry.remove_source(source_id)

    def reprioritize_all_feeds(self) -> dict[str, str | None]:
        return self.registry.reprioritize_all_feeds(self.check_feed_working)

    # -- fetching ------------------------------------------------------------

    def fetch_feed(self, url: str, timeout: Optional[float] = None) -> requests.Response:
        headers = {**settings.BROWSER_HEADERS, "Accept": settings.FEED_ACCEPT_HEADER}
        logger.info("Fetching feed %s", url)
        response = requests.get(url, headers=headers, timeout=timeout or self.timeout)
        response.raise_for_status()
        return response

    def check_feed_working(self, source: CalendarSource) -> bool:
        """Return True if ``source.feed_url`` answers with content of its type."""
        url = webcal_to_https(source.feed_url)
        try:
            text = self.fetch_feed(url, timeout=self.test_timeout).text
        except requests.RequestException as exc:
            logger.info("Feed test failed for %s: %s", source.name, exc)
            return False

        if source.feed_type in ("ical", "webcal"):
            return "BEGIN:VCALENDAR" in text or "BEGIN:VEVENT" in text
        if source.feed_type == "rss":
            lowered = text.lower()
            return any(marker in lowered for marker in _RSS_MARKERS)
        if source.feed_type == "json":
            try:
                data = json.loads(text)
            except ValueError:
                return False
            return isinstance(data, list) or (isinstance(data, dict) and "events" in data)
        return len(text) > 100 and "<" in text

    # -- collection ------------------------------------------------------------

    def collect_from_source(self, source: CalendarSource) -> list[Event]:
        """Return events for ``source``; failures are logged and yield ``[]``."""
        collector = self._collectors.get(source.feed_type)
        if collector is None:
            logger.warning("Unsupported feed type %s for %s", source.feed_type, source.name)
            return []
        try:
            events = collector(source)
        except (requests.RequestException, FeedParseError) as exc:
            logger.warning("Error collecting from %s: %s", source.name, exc)
            return []
        except Exception:
            logger.exception("Unexpected error collecting from %s", source.name)
            return []
        logger.info("Collected %d events from %s", len(events), source.name)
        return events

    def _collect_ical(self, source: CalendarSource) -> list[Event]:
        url = webcal_to_https(source.feed_url)
        try:
            text = self.fetch_feed(url).text
            return parse_ical(text, source, now=self.now())
        except (requests.RequestException, FeedParseError) as exc:
            if not source.website_url:
                raise
            logger.info(
                "iCal feed failed for %s (%s), scraping %s instead",
                source.name, exc, source.website_url,
            )
            html = self.fetch_feed(source.website_url).text
            return parse_html(html, source, base_url=source.website_url, now=self.now())

    def _collect_webcal(self, source: CalendarSource) -> list[Event]:
        return self._collect_ical(source)

    def _collect_rss(self, source: CalendarSource) -> list[Event]:
        return parse_rss(self.fetch_feed(source.feed_url).text, source)

    def _collect_json(self, source: CalendarSource) -> list[Event]:
        return parse_json(self.fetch_feed(source.feed_url).text, source)

    def _collect_html(self, source: CalendarSource) -> list[Event]:
        html = self.fetch_feed(source.feed_url).text
        return parse_html(html, source, base_url=source.feed_url, now=self.now())
