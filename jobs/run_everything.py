"""Entrypoint script to sync every active catalog source into the event store."""
from __future__ import annotations

from ingest import settings
from ingest.api_client import ApiEventStore
from ingest.city_catalog import CityCatalog
from ingest.event_store import MemoryEventStore
from ingest.source_catalog import SourceRegistry
from ingest.sync import SyncOrchestrator
from scrapers.calendar_collector import FeedCollector
from scrapers.feed_discoverer import FeedDiscoverer


def run() -> None:
    """Collect from all active sources and persist new events."""
    store = ApiEventStore() if settings.EVENT_STORE_BACKEND == "api" else MemoryEventStore()
    collector = FeedCollector(SourceRegistry.from_catalog())
    orchestrator = SyncOrchestrator(collector, FeedDiscoverer(CityCatalog.load()), store)

    result = orchestrator.sync_all()
    for record in result.sources:
        if record.state == "failed":
            print("❌ Failed:", record.name, record.reason)
        else:
            print(f"✅ {record.name}: {record.persisted} new of {record.collected} collected")
    print(f"Synced {result.synced_count} events from {len(result.sources)} sources")


if __name__ == "__main__":
    run()
