"""Collect events from a single feed URL and print them."""
from __future__ import annotations

import argparse
import logging

from ingest.schemas import FEED_TYPES, CalendarSource
from scrapers.calendar_collector import FeedCollector
from scrapers.utils import extract_domain

logger = logging.getLogger(__name__)


def guess_feed_type(url: str) -> str:
    lowered = url.lower()
    if lowered.startswith("webcal://"):
        return "webcal"
    if ".ics" in lowered or "icalendar" in lowered:
        return "ical"
    if "rss" in lowered or lowered.endswith((".xml", "/feed", "/feed/")):
        return "rss"
    if lowered.endswith(".json"):
        return "json"
    return "html"


def run(url: str, feed_type: str | None = None) -> None:
    """Fetch ``url`` as a one-off source and print the events found."""
    feed_type = feed_type or guess_feed_type(url)
    logger.info("Treating %s as %s feed", url, feed_type)
    source = CalendarSource(
        id=f"adhoc-{extract_domain(url) or 'feed'}",
        name=extract_domain(url) or url,
        city="",
        state="",
        type="city",
        feed_url=url,
        feed_type=feed_type,
    )
    events = FeedCollector().collect_from_source(source)
    if not events:
        print("No events found at", url)
        return
    for event in events:
        print(f"✅ {event.start_date:%Y-%m-%d} {event.start_time}  {event.title} [{event.category}]")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Collect events from one feed URL")
    parser.add_argument("url")
    parser.add_argument("--type", choices=FEED_TYPES, dest="feed_type")
    args = parser.parse_args()
    run(args.url, args.feed_type)
