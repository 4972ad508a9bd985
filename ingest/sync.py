"""Coordinate discovery, source registration, collection and persistence."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from scrapers.calendar_collector import FeedCollector
from scrapers.feed_discoverer import FeedDiscoverer

from .city_catalog import City, CityCatalog, state_code_for
from .schemas import SOURCE_TYPES, CalendarSource, DiscoveredFeedCandidate, Event
from .source_catalog import DuplicateSourceError

logger = logging.getLogger(__name__)


class EventStore(Protocol):
    def dedup_keys(self) -> set[tuple]: ...

    def add_if_absent(self, event: Event) -> Optional[Event]: ...


@dataclass
class SourceSync:
    """Outcome of one sync attempt: pending, collecting, persisted or failed."""

    source_id: str
    name: str
    state: str = "pending"
    collected: int = 0
    persisted: int = 0
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "name": self.name,
            "state": self.state,
            "collected": self.collected,
            "persisted": self.persisted,
            "reason": self.reason,
        }


@dataclass
class SyncResult:
    sources: list[SourceSync] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def synced_count(self) -> int:
        return sum(s.persisted for s in self.sources)

    @property
    def failed_count(self) -> int:
        return sum(1 for s in self.sources if s.state == "failed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "syncedCount": self.synced_count,
            "sourcesProcessed": len(self.sources),
            "failedSources": self.failed_count,
            "sources": [s.to_dict() for s in self.sources],
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class OnboardResult:
    """Discovery and registration outcome for one city."""

    city: str
    state: str
    candidates: list[DiscoveredFeedCandidate] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    already_exists: list[str] = field(default_factory=list)
    synced_events: int = 0
    error: Optional[str] = None

    @property
    def discovered(self) -> int:
        return len(self.candidates)

    @property
    def breakdown(self) -> dict[str, int]:
        counts = Counter(c.source.type for c in self.candidates)
        return {kind: counts.get(kind, 0) for kind in SOURCE_TYPES}

    def to_dict(self) -> dict[str, Any]:
        return {
            "city": self.city,
            "state": self.state,
            "discovered": self.discovered,
            "added": len(self.added),
            "alreadyExists": self.already_exists,
            "syncedEvents": self.synced_events,
            "breakdown": self.breakdown,
            "feeds": [
                {
                    "name": c.source.name,
                    "type": c.source.type,
                    "url": c.source.feed_url,
                    "confidence": round(c.confidence, 2),
                }
                for c in self.candidates
            ],
            "error": self.error,
        }


@dataclass
class BatchOnboardResult:
    label: str
    cities: list[OnboardResult] = field(default_factory=list)

    @property
    def total_discovered(self) -> int:
        return sum(c.discovered for c in self.cities)

    @property
    def total_added(self) -> int:
        return sum(len(c.added) for c in self.cities)

    @property
    def synced_events(self) -> int:
        return sum(c.synced_events for c in self.cities)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.label,
            "citiesProcessed": len(self.cities),
            "totalDiscovered": self.total_discovered,
            "totalAdded": self.total_added,
            "syncedEvents": self.synced_events,
            "cityLocations": [f"{c.city}, {c.state}" for c in self.cities],
            "results": [c.to_dict() for c in self.cities],
        }


def parse_location(location: str) -> tuple[str, str] | None:
    """Split ``"Needham, MA"`` into a normalized ``("needham", "MA")`` pair."""
    parts = [p.strip() for p in (location or "").split(",")]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    return parts[0].lower(), state_code_for(parts[1])


class SyncOrchestrator:
    """Drive the collector and discoverer against an event store."""

    def __init__(
        self,
        collector: FeedCollector,
        discoverer: FeedDiscoverer,
        store: EventStore,
        city_catalog: CityCatalog | None = None,
    ) -> None:
        self.collector = collector
        self.discoverer = discoverer
        self.store = store
        self.city_catalog = city_catalog or discoverer.city_catalog

    # -- syncing -------------------------------------------------------------

    def sync_all(self) -> SyncResult:
        """Collect from every active source and persist unseen events."""
        sources = self.collector.list_active()
        logger.info("Starting event synchronization from %d sources...", len(sources))
        return self._sync_sources(sources)

    def sync_for_locations(self, locations: list[str]) -> SyncResult:
        """Sync only active sources whose city and state match ``locations``."""
        parsed = (parse_location(location) for location in locations or [])
        wanted = {pair for pair in parsed if pair}
        if not wanted:
            raise ValueError("At least one location in 'City, ST' form is required")
        sources = [
            s for s in self.collector.list_active()
            if (s.city.strip().lower(), s.state.strip().upper()) in wanted
        ]
        logger.info(
            "Found %d active sources for %s", len(sources), ", ".join(locations)
        )
        return self._sync_sources(sources)

    def _sync_sources(self, sources: Iterable[CalendarSource]) -> SyncResult:
        result = SyncResult()
        known: set[tuple] | None = None
        for source in sources:
            if known is None:
                try:
                    known = self.store.dedup_keys()
                except Exception as exc:
                    result.sources.append(self._dedup_failure(source, exc))
                    continue
            result.sources.append(self._sync_source(source, known))
        logger.info(
            "Event synchronization completed: %d new events from %d sources",
            result.synced_count, len(result.sources),
        )
        return result

    def _dedup_failure(self, source: CalendarSource, exc: Exception) -> SourceSync:
        logger.exception("Could not load existing events before syncing %s", source.name)
        return SourceSync(
            source.id, source.name, state="failed",
            reason=f"Could not load existing events: {exc}",
        )

    def _sync_source(self, source: CalendarSource, known: set[tuple]) -> SourceSync:
        record = SourceSync(source.id, source.name)
        record.state = "collecting"
        try:
            events = self.collector.collect_from_source(source)
            record.collected = len(events)
            for event in events:
                key = event.dedup_key()
                if key in known:
                    continue
                if self.store.add_if_absent(event) is not None:
                    record.persisted += 1
                known.add(key)
        except Exception as exc:
            logger.exception("Failed to sync from %s", source.name)
            record.state = "failed"
            record.reason = str(exc)
            return record
        self.collector.registry.mark_synced(source.id)
        record.state = "persisted"
        return record

    # -- onboarding ------------------------------------------------------------

    def add_discovered_source(self, source: CalendarSource) -> tuple[CalendarSource, SourceSync]:
        """Register ``source`` and collect from it right away.

        Raises :class:`DuplicateSourceError` when it is already registered.
        """
        stored = self.collector.registry.register(source)
        try:
            known = self.store.dedup_keys()
        except Exception as exc:
            return stored, self._dedup_failure(stored, exc)
        return stored, self._sync_source(stored, known)

    def add_sources(self, sources: list[CalendarSource]) -> dict[str, Any]:
        """Register several sources, reporting duplicates separately."""
        added: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        synced = 0
        for source in sources:
            try:
                _stored, record = self.add_discovered_source(source)
            except DuplicateSourceError as exc:
                errors.append({"source": source.name, "error": str(exc), "existing": True})
                continue
            synced += record.persisted
            added.append(
                {"source": source.name, "city": source.city, "state": source.state,
                 "status": "added"}
            )
        return {
            "success": True,
            "added": len(added),
            "total": len(sources),
            "syncedEvents": synced,
            "results": added,
            "errors": errors,
        }

    def discover_and_onboard(self, city: str, state: str, popular: bool = False) -> OnboardResult:
        """Discover feeds for a city, register new ones and sync each immediately."""
        if not city or not city.strip() or not state or not state.strip():
            raise ValueError("City and state are required")
        state_code = state_code_for(state)
        if popular:
            candidates = self.discoverer.discover_for_popular_location(city, state_code)
        else:
            candidates = self.discoverer.discover_for_location(city, state_code)

        result = OnboardResult(city=city.strip(), state=state_code, candidates=candidates)
        for candidate in candidates:
            try:
                stored, record = self.add_discovered_source(candidate.source)
            except DuplicateSourceError as exc:
                logger.info("Feed %s already exists: %s", candidate.source.name, exc)
                result.already_exists.append(exc.existing.id)
                continue
            result.added.append(stored.id)
            result.synced_events += record.persisted
        logger.info(
            "Onboarded %s, %s: %d discovered, %d added, %d events",
            result.city, state_code, result.discovered, len(result.added), result.synced_events,
        )
        return result

    def _onboard_cities(self, cities: list[City], label: str) -> BatchOnboardResult:
        batch = BatchOnboardResult(label=label)
        for city in cities:
            try:
                batch.cities.append(self.discover_and_onboard(city.name, city.state_code))
            except Exception as exc:
                logger.exception("Failed to onboard %s", city.label)
                batch.cities.append(
                    OnboardResult(city=city.name, state=city.state_code, error=str(exc))
                )
        return batch

    def onboard_district(self, state: str, district: str | int) -> BatchOnboardResult:
        if not state or not str(district or "").strip():
            raise ValueError("District and state are required")
        code = state_code_for(state)
        cities = self.city_catalog.get_cities_in_district(code, district)
        logger.info("Onboarding %d cities in district %s-%s", len(cities), code, district)
        return self._onboard_cities(cities, f"{code}-{district}")

    def onboard_regions(self, regions: list[str]) -> BatchOnboardResult:
        if not regions:
            raise ValueError("At least one region is required")
        cities: list[City] = []
        for region in regions:
            parsed = parse_location(region)
            if parsed is None:
                logger.info("Invalid region format: %s", region)
                continue
            name = region.split(",")[0].strip()
            cities.append(
                self.city_catalog.get_city(name, parsed[1])
                or City(name=name, state=parsed[1], state_code=parsed[1])
            )
        return self._onboard_cities(cities, ", ".join(regions))

    def onboard_state(
        self,
        state: str,
        population_range: tuple[int, float] | None = None,
        city_types: list[str] | None = None,
        limit: int | None = None,
    ) -> BatchOnboardResult:
        if not state or not state.strip():
            raise ValueError("State is required")
        cities = self.city_catalog.get_cities_by_state(state)
        if population_range:
            low, high = population_range
            cities = [c for c in cities if low <= c.population <= high]
        if city_types:
            cities = [c for c in cities if c.type in city_types]
        if limit:
            cities = cities[:limit]
        return self._onboard_cities(cities, state_code_for(state))
