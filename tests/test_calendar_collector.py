import json
import os
import sys
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import requests

# Ensure the project root is on the import path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ingest.schemas import CalendarSource
from ingest.source_catalog import SourceRegistry
from scrapers.calendar_collector import FeedCollector, webcal_to_https

NOW = datetime.now().replace(microsecond=0)
SOON = (NOW + timedelta(days=7)).replace(hour=18, minute=30, second=0)

ICAL_URL = "https://town.example.gov/calendar.ics"
WEBSITE_URL = "https://town.example.gov/events"
RSS_URL = "https://library.example.org/events.rss"
JSON_URL = "https://parks.example.org/api/events.json"
DOWN_URL = "https://down.example.org/calendar.ics"

ICAL_TEXT = (
    "BEGIN:VCALENDAR\r\nBEGIN:VEVENT\r\nSUMMARY:Council Meeting\r\n"
    f"DTSTART:{SOON:%Y%m%dT%H%M%S}\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"
)
RSS_TEXT = (
    '<?xml version="1.0"?><rss version="2.0"><channel><title>Library</title>'
    "<item><title>Book Club</title><description>Monthly discussion</description>"
    f"<pubDate>{SOON:%a, %d %b %Y %H:%M:%S} +0000</pubDate></item></channel></rss>"
)
JSON_TEXT = json.dumps({"events": [{"title": "Park Cleanup", "date": SOON.isoformat()}]})
WEBSITE_HTML = (
    '<html><body><script type="application/ld+json">'
    + json.dumps({"@type": "Event", "name": "Holiday Tree Lighting", "startDate": SOON.isoformat()})
    + "</script></body></html>"
)


def make_source(source_id, feed_type, feed_url, website_url=None, city="Needham"):
    return CalendarSource(
        id=source_id,
        name=source_id.title(),
        city=city,
        state="MA",
        type="city",
        feed_url=feed_url,
        feed_type=feed_type,
        website_url=website_url,
    )


def fake_get(url, **kwargs):  # pylint: disable=unused-argument
    resp = Mock()
    resp.raise_for_status = lambda: None
    pages = {ICAL_URL: ICAL_TEXT, RSS_URL: RSS_TEXT, JSON_URL: JSON_TEXT, WEBSITE_URL: WEBSITE_HTML}
    if url == DOWN_URL:
        raise requests.exceptions.ConnectionError("Connection refused")
    if url not in pages:
        raise ValueError(f"Unexpected URL {url}")
    resp.text = pages[url]
    return resp


def collector_for(*sources):
    return FeedCollector(SourceRegistry(sources), now=lambda: NOW)


def test_dispatches_on_feed_type():
    collector = collector_for()
    cases = [
        (make_source("town", "ical", ICAL_URL), "Council Meeting"),
        (make_source("town-webcal", "webcal", ICAL_URL.replace("https://", "webcal://")),
         "Council Meeting"),
        (make_source("library", "rss", RSS_URL), "Book Club"),
        (make_source("parks", "json", JSON_URL), "Park Cleanup"),
        (make_source("events-page", "html", WEBSITE_URL), "Holiday Tree Lighting"),
    ]
    with patch("scrapers.calendar_collector.requests.get", side_effect=fake_get):
        for source, title in cases:
            events = collector.collect_from_source(source)
            assert [e.title for e in events] == [title]
            assert events[0].source == source.id


def test_fetch_sends_feed_accept_header():
    collector = collector_for()
    with patch("scrapers.calendar_collector.requests.get", side_effect=fake_get) as mock_get:
        collector.collect_from_source(make_source("town", "ical", ICAL_URL))
    _args, kwargs = mock_get.call_args
    assert "text/calendar" in kwargs["headers"]["Accept"]
    assert kwargs["timeout"] == collector.timeout


def test_unreachable_feed_returns_empty_list():
    collector = collector_for()
    with patch("scrapers.calendar_collector.requests.get", side_effect=fake_get):
        assert collector.collect_from_source(make_source("down", "rss", DOWN_URL)) == []


def test_ical_failure_falls_back_to_website_scrape():
    collector = collector_for()
    source = make_source("down", "ical", DOWN_URL, website_url=WEBSITE_URL)
    with patch("scrapers.calendar_collector.requests.get", side_effect=fake_get):
        events = collector.collect_from_source(source)
    assert [e.title for e in events] == ["Holiday Tree Lighting"]
    assert events[0].category == "Holiday"


def test_malformed_payload_is_absorbed():
    collector = collector_for()
    source = make_source("mislabeled", "ical", RSS_URL)
    with patch("scrapers.calendar_collector.requests.get", side_effect=fake_get):
        assert collector.collect_from_source(source) == []


def test_unknown_feed_type_yields_nothing():
    collector = collector_for()
    assert collector.collect_from_source(make_source("odd", "gopher", ICAL_URL)) == []


def test_check_feed_working_sniffs_content():
    collector = collector_for()
    with patch("scrapers.calendar_collector.requests.get", side_effect=fake_get):
        assert collector.check_feed_working(make_source("a", "ical", ICAL_URL))
        assert collector.check_feed_working(make_source("b", "rss", RSS_URL))
        assert collector.check_feed_working(make_source("c", "json", JSON_URL))
        assert collector.check_feed_working(make_source("d", "html", WEBSITE_URL))
        assert not collector.check_feed_working(make_source("e", "ical", RSS_URL))
        assert not collector.check_feed_working(make_source("f", "rss", DOWN_URL))


def test_registry_operations_are_delegated():
    town = make_source("town", "ical", ICAL_URL)
    library = make_source("library", "rss", RSS_URL, city="Dedham")
    collector = collector_for(town)

    assert collector.add_source(library)
    assert not collector.add_source(library)
    assert {s.id for s in collector.list_by_state("MA")} == {"town", "library"}
    assert collector.toggle_source("library") is False
    assert [s.id for s in collector.list_active()] == ["town"]
    assert collector.remove_source("library")
    assert [s.id for s in collector.list_sources()] == ["town"]


def test_collector_installs_health_check_on_registry():
    registry = SourceRegistry()
    collector = FeedCollector(registry)
    assert registry.feed_checker == collector.check_feed_working


def test_webcal_to_https():
    assert webcal_to_https("webcal://town.gov/cal.ics") == "https://town.gov/cal.ics"
    assert webcal_to_https("https://town.gov/cal.ics") == "https://town.gov/cal.ics"
