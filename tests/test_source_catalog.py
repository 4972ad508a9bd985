import os
import sys
import threading
import time
from datetime import datetime

import pytest

# Ensure the project root is on the import path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ingest.schemas import FEED_TYPES, SOURCE_TYPES, CalendarSource
from ingest.source_catalog import (
    DuplicateSourceError,
    SourceRegistry,
    export_sources,
    load_sources,
)


def make_source(source_id, feed_type="ical", city="Needham", name=None, active=True, host=None):
    host = host or f"{source_id}.example.gov"
    return CalendarSource(
        id=source_id,
        name=name or f"Source {source_id}",
        city=city,
        state="MA",
        type="city",
        feed_url=f"https://{host}/{source_id}.{feed_type}",
        feed_type=feed_type,
        website_url=f"https://{host}",
        is_active=active,
    )


def test_load_sources_default_catalog():
    sources = load_sources()
    assert len(sources) >= 15
    for source in sources:
        assert source.name and source.feed_url
        assert source.type in SOURCE_TYPES
        assert source.feed_type in FEED_TYPES
        assert len(source.state) == 2


def test_export_and_reload_round_trip(tmp_path):
    synced = make_source("a")
    synced.last_sync = datetime(2026, 1, 2, 3, 4, 5)
    path = tmp_path / "catalog.json"
    export_sources([synced, make_source("b", "rss", city="Dedham")], path)
    loaded = load_sources(path)
    assert [s.id for s in loaded] == ["a", "b"]
    assert loaded[0].last_sync == synced.last_sync


def test_add_source_rejects_each_kind_of_duplicate():
    registry = SourceRegistry([make_source("town")])
    original = registry.list_sources()[0]

    same_url = make_source("other", city="Dedham")
    same_url.feed_url = original.feed_url
    same_identity = make_source("other2", name=original.name)
    same_id = make_source("town", city="Dedham", name="Different")

    for candidate in (same_url, same_identity, same_id):
        assert registry.add_source(candidate) is False
    assert len(registry.list_sources()) == 1


def test_register_conflict_identifies_existing_source():
    registry = SourceRegistry([make_source("town")])
    duplicate = make_source("town-copy", city="Dedham")
    duplicate.feed_url = registry.list_sources()[0].feed_url
    with pytest.raises(DuplicateSourceError) as info:
        registry.register(duplicate)
    assert info.value.existing.id == "town"


def test_new_source_is_listed():
    registry = SourceRegistry()
    assert registry.add_source(make_source("library", "rss", city="Dedham"))
    assert [s.id for s in registry.list_sources()] == ["library"]
    assert registry.list_by_state("ma")[0].id == "library"
    assert registry.list_by_type("city")[0].id == "library"


def test_lower_priority_feed_stays_inactive_for_same_city():
    registry = SourceRegistry([make_source("ical", "ical")], feed_checker=lambda s: True)
    registry.add_source(make_source("rss", "rss"))
    assert not registry.get_source("rss").is_active
    assert registry.get_source("ical").is_active


def test_higher_priority_working_feed_replaces_lower():
    checked = []

    def checker(source):
        checked.append(source.id)
        return True

    registry = SourceRegistry([make_source("html", "html")], feed_checker=checker)
    registry.add_source(make_source("ical", "ical"))
    assert checked == ["ical"]
    assert registry.get_source("ical").is_active
    assert not registry.get_source("html").is_active


def test_broken_higher_priority_feed_is_disabled():
    registry = SourceRegistry([make_source("html", "html")], feed_checker=lambda s: False)
    registry.add_source(make_source("ical", "ical"))
    assert not registry.get_source("ical").is_active
    assert registry.get_source("html").is_active


def test_toggle_remove_and_mark_synced():
    registry = SourceRegistry([make_source("town")])
    assert registry.toggle_source("town") is False
    assert registry.toggle_source("town") is True
    assert registry.toggle_source("missing") is None

    when = datetime(2026, 5, 1, 12, 0)
    registry.mark_synced("town", when)
    assert registry.get_source("town").last_sync == when

    assert registry.remove_source("town")
    assert not registry.remove_source("town")
    assert registry.list_sources() == []


def test_reprioritize_keeps_best_working_feed_per_domain():
    shared = "needhamma.gov"
    sources = [
        make_source("rss", "rss", host=shared),
        make_source("ical", "ical", host=shared, active=False),
        make_source("json", "json", host=shared),
        make_source("elsewhere", "html", city="Dedham"),
    ]
    registry = SourceRegistry(sources)
    outcome = registry.reprioritize_all_feeds(lambda s: s.id != "ical")

    assert outcome == {shared: "rss"}
    assert registry.get_source("rss").is_active
    assert not registry.get_source("json").is_active
    assert not registry.get_source("ical").is_active
    assert registry.get_source("elsewhere").is_active


def test_feed_priorities_groups_by_website_host():
    registry = SourceRegistry(
        [make_source("a", "ical", host="town.gov"), make_source("b", "rss", host="town.gov")]
    )
    summary = registry.feed_priorities()
    assert summary["totalSources"] == 2
    group = summary["domainGroups"]["town.gov"]
    assert {item["id"]: item["priority"] for item in group} == {"a": 5, "b": 3}


def test_concurrent_adds_of_same_feed_insert_once():
    registry = SourceRegistry()
    results = []

    def add(index):
        candidate = make_source(f"copy-{index}", host="shared.gov")
        candidate.feed_url = "https://shared.gov/calendar.ics"
        results.append(registry.add_source(candidate))

    threads = [threading.Thread(target=add, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert len(registry.list_sources()) == 1


def test_concurrent_adds_for_one_city_leave_a_single_active_feed():
    def slow_checker(source):
        time.sleep(0.01)
        return True

    registry = SourceRegistry(feed_checker=slow_checker)
    candidates = [
        make_source("town-rss", feed_type="rss", host="town.gov"),
        make_source("town-ical", feed_type="ical", host="town.gov"),
        make_source("town-json", feed_type="json", host="town.gov"),
    ]
    threads = [threading.Thread(target=registry.add_source, args=(c,)) for c in candidates]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(registry.list_sources()) == 3
    assert [s.id for s in registry.list_active()] == ["town-ical"]
