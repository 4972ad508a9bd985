import os
import sys
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest

# Ensure the project root is on the import path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ingest.city_catalog import City, CityCatalog
from ingest.event_store import MemoryEventStore
from ingest.schemas import CalendarSource, DiscoveredFeedCandidate, Event
from ingest.source_catalog import SourceRegistry
from ingest.sync import SyncOrchestrator, parse_location
from scrapers.calendar_collector import FeedCollector

START = datetime.now().replace(microsecond=0, second=0) + timedelta(days=3)


def make_source(source_id, city="Needham", state="MA", feed_type="ical", active=True):
    return CalendarSource(
        id=source_id,
        name=f"{source_id.title()} Calendar",
        city=city,
        state=state,
        type="city",
        feed_url=f"https://{source_id}.example.gov/calendar.{feed_type}",
        feed_type=feed_type,
        is_active=active,
    )


def make_event(title, source_id, start=START):
    return Event(
        title=title,
        description="",
        category="Community & Social",
        location="Town Hall",
        organizer="Town",
        start_date=start,
        end_date=start + timedelta(hours=1),
        start_time="",
        end_time="",
        source=source_id,
    )


def make_orchestrator(sources, feeds, catalog=None):
    """Wire a real registry and store to a collector whose fetches are canned.

    ``feeds`` maps source id to a list of events or an exception to raise.
    """
    registry = SourceRegistry(sources, feed_checker=lambda s: True)
    collector = FeedCollector(registry)

    def collect(source):
        outcome = feeds.get(source.id, [])
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)

    collector.collect_from_source = Mock(side_effect=collect)
    discoverer = Mock()
    discoverer.city_catalog = catalog or CityCatalog([])
    store = MemoryEventStore()
    return SyncOrchestrator(collector, discoverer, store), store


def test_sync_all_persists_new_events_once():
    feeds = {
        "needham": [make_event("Select Board", "needham"), make_event("Select Board", "needham")],
        "dedham": [make_event("Library Hours", "dedham")],
    }
    orchestrator, store = make_orchestrator(
        [make_source("needham"), make_source("dedham", city="Dedham")], feeds
    )

    first = orchestrator.sync_all()
    assert first.synced_count == 2
    assert [s.state for s in first.sources] == ["persisted", "persisted"]
    assert first.sources[0].collected == 2
    assert len(store.get_all_events()) == 2

    second = orchestrator.sync_all()
    assert second.synced_count == 0
    assert len(store.get_all_events()) == 2


def test_identical_events_from_two_sources_persist_once():
    shared = make_event("Town Meeting", "needham")
    orchestrator, store = make_orchestrator(
        [make_source("needham"), make_source("needham-mirror", city="Dover")],
        {"needham": [shared], "needham-mirror": [shared]},
    )
    result = orchestrator.sync_all()
    assert result.synced_count == 1
    assert [s.persisted for s in result.sources] == [1, 0]
    assert len(store.get_all_events()) == 1


def test_inactive_sources_are_not_synced():
    orchestrator, _ = make_orchestrator(
        [make_source("needham"), make_source("old", active=False, city="Dover")], {}
    )
    result = orchestrator.sync_all()
    assert [s.source_id for s in result.sources] == ["needham"]


def test_failed_source_is_reported_and_others_continue():
    feeds = {
        "broken": RuntimeError("feed exploded"),
        "dedham": [make_event("Library Hours", "dedham")],
    }
    orchestrator, _ = make_orchestrator(
        [make_source("broken"), make_source("dedham", city="Dedham")], feeds
    )
    result = orchestrator.sync_all()

    failed, ok = result.sources
    assert failed.state == "failed"
    assert failed.reason == "feed exploded"
    assert ok.state == "persisted"
    assert result.failed_count == 1
    assert result.synced_count == 1

    registry = orchestrator.collector.registry
    assert registry.get_source("broken").last_sync is None
    assert registry.get_source("dedham").last_sync is not None

    payload = result.to_dict()
    assert payload["failedSources"] == 1
    assert payload["sourcesProcessed"] == 2


def test_sync_for_locations_matches_city_and_state():
    feeds = {
        "needham": [make_event("Select Board", "needham")],
        "portland-me": [make_event("Harbor Tour", "portland-me")],
        "portland-or": [make_event("Rose Parade", "portland-or")],
    }
    orchestrator, store = make_orchestrator(
        [
            make_source("needham"),
            make_source("portland-me", city="Portland", state="ME"),
            make_source("portland-or", city="Portland", state="OR"),
        ],
        feeds,
    )
    result = orchestrator.sync_for_locations(["portland, Oregon", "Nowhere, ZZ"])
    assert [s.source_id for s in result.sources] == ["portland-or"]
    assert [e.title for e in store.get_all_events()] == ["Rose Parade"]

    with pytest.raises(ValueError):
        orchestrator.sync_for_locations(["bogus"])


def test_parse_location():
    assert parse_location("Needham, Massachusetts") == ("needham", "MA")
    assert parse_location("Needham") is None
    assert parse_location(", MA") is None


def test_discover_and_onboard_registers_and_syncs_new_feeds():
    existing = make_source("needham")
    duplicate = make_source("needham-copy")
    duplicate.feed_url = existing.feed_url
    fresh = make_source("needham-rss", feed_type="rss")
    feeds = {"needham-rss": [make_event("Story Time", "needham-rss")]}

    orchestrator, store = make_orchestrator([existing], feeds)
    orchestrator.discoverer.discover_for_location.return_value = [
        DiscoveredFeedCandidate(duplicate, 0.95),
        DiscoveredFeedCandidate(fresh, 0.85),
    ]

    result = orchestrator.discover_and_onboard("Needham", "Massachusetts")

    orchestrator.discoverer.discover_for_location.assert_called_once_with("Needham", "MA")
    assert result.discovered == 2
    assert result.added == ["needham-rss"]
    assert result.already_exists == ["needham"]
    assert result.synced_events == 1
    assert [e.title for e in store.get_all_events()] == ["Story Time"]
    # ical already covers Needham, so the rss feed is kept but not active
    assert not orchestrator.collector.registry.get_source("needham-rss").is_active

    payload = result.to_dict()
    assert payload["breakdown"]["city"] == 2
    assert payload["feeds"][1]["url"] == fresh.feed_url


def test_popular_discovery_uses_known_patterns():
    orchestrator, _ = make_orchestrator([], {})
    orchestrator.discoverer.discover_for_popular_location.return_value = []
    orchestrator.discover_and_onboard("Boston", "MA", popular=True)
    orchestrator.discoverer.discover_for_popular_location.assert_called_once_with("Boston", "MA")
    orchestrator.discoverer.discover_for_location.assert_not_called()


def test_onboarding_requires_city_and_state():
    orchestrator, _ = make_orchestrator([], {})
    with pytest.raises(ValueError):
        orchestrator.discover_and_onboard("Needham", "")
    with pytest.raises(ValueError):
        orchestrator.onboard_regions([])
    with pytest.raises(ValueError):
        orchestrator.onboard_district("", "4")


def test_add_sources_reports_duplicates():
    orchestrator, _ = make_orchestrator([make_source("needham")], {})
    summary = orchestrator.add_sources(
        [make_source("needham"), make_source("dedham", city="Dedham")]
    )
    assert summary["added"] == 1
    assert summary["total"] == 2
    assert summary["errors"][0]["existing"] is True
    assert summary["results"][0]["source"] == "Dedham Calendar"


def test_district_onboarding_continues_past_failures():
    catalog = CityCatalog(
        [City("Newton", "Massachusetts", "MA"), City("Wellesley", "Massachusetts", "MA")],
        {"MA-04": ["Newton", "Wellesley"]},
    )
    orchestrator, _ = make_orchestrator([], {}, catalog=catalog)
    orchestrator.discoverer.discover_for_location.side_effect = [RuntimeError("dns"), []]

    batch = orchestrator.onboard_district("Massachusetts", "4")

    assert [c.city for c in batch.cities] == ["Newton", "Wellesley"]
    assert batch.cities[0].error == "dns"
    assert batch.cities[1].error is None
    payload = batch.to_dict()
    assert payload["target"] == "MA-4"
    assert payload["cityLocations"] == ["Newton, MA", "Wellesley, MA"]


def test_onboard_regions_skips_malformed_entries():
    orchestrator, _ = make_orchestrator([], {})
    orchestrator.discoverer.discover_for_location.return_value = []
    onboard = orchestrator.discover_and_onboard
    with patch.object(orchestrator, "discover_and_onboard", wraps=onboard) as run:
        batch = orchestrator.onboard_regions(["Needham, MA", "nowhere"])
    run.assert_called_once_with("Needham", "MA")
    assert len(batch.cities) == 1


def test_onboard_state_filters_cities_before_discovery():
    catalog = CityCatalog([
        City("Boston", "Massachusetts", "MA", population=650000, type="major"),
        City("Needham", "Massachusetts", "MA", population=32000, type="small"),
        City("Dover", "Massachusetts", "MA", population=6000, type="small"),
        City("Austin", "Texas", "TX", population=960000, type="major"),
    ])
    orchestrator, _ = make_orchestrator([], {}, catalog=catalog)
    orchestrator.discoverer.discover_for_location.return_value = []

    batch = orchestrator.onboard_state(
        "Massachusetts", population_range=(10000, float("inf")), city_types=["small"]
    )

    assert [c.city for c in batch.cities] == ["Needham"]
    assert batch.to_dict()["target"] == "MA"
    with pytest.raises(ValueError):
        orchestrator.onboard_state(" ")


def test_unreadable_event_store_fails_each_source_instead_of_the_sync():
    feeds = {"needham": [make_event("Select Board", "needham")]}
    orchestrator, store = make_orchestrator(
        [make_source("needham"), make_source("dedham", city="Dedham")], feeds
    )
    real_keys = store.dedup_keys
    store.dedup_keys = Mock(side_effect=[RuntimeError("store offline"), real_keys()])

    result = orchestrator.sync_all()

    first, second = result.sources
    assert first.state == "failed"
    assert first.reason == "Could not load existing events: store offline"
    assert second.state == "persisted"
    assert result.failed_count == 1


def test_added_source_reports_unreadable_event_store():
    orchestrator, store = make_orchestrator([], {})
    store.dedup_keys = Mock(side_effect=RuntimeError("store offline"))

    stored, record = orchestrator.add_discovered_source(make_source("wellesley"))

    assert stored.id == "wellesley"
    assert record.state == "failed"
    assert "store offline" in record.reason
