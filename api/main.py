"""FastAPI application for the Local Events Collector API."""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ingest import settings
from ingest.api_client import ApiEventStore
from ingest.city_catalog import CityCatalog, state_code_for
from ingest.event_store import EventFilter, MemoryEventStore
from ingest.schemas import CalendarSource
from ingest.source_catalog import DuplicateSourceError, SourceRegistry
from ingest.sync import SyncOrchestrator
from scrapers.calendar_collector import FeedCollector
from scrapers.feed_discoverer import FeedDiscoverer
from scrapers.website_validator import WebsiteValidator
from scrapers.utils import parse_datetime

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

app = FastAPI(
    title="Local Events Collector API",
    description="Discover municipal calendar feeds and collect their events",
    version=VERSION,
)

# Thread pool for running blocking HTTP work from async handlers
executor = ThreadPoolExecutor(max_workers=4)

city_catalog = CityCatalog.load()
registry = SourceRegistry.from_catalog()
validator = WebsiteValidator()
collector = FeedCollector(registry)
discoverer = FeedDiscoverer(city_catalog, validator)
store = ApiEventStore() if settings.EVENT_STORE_BACKEND == "api" else MemoryEventStore()
orchestrator = SyncOrchestrator(collector, discoverer, store, city_catalog)


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str


class SyncRequest(BaseModel):
    locations: Optional[List[str]] = None


class LocationRequest(BaseModel):
    city: Optional[str] = None
    state: Optional[str] = None


class RegionsRequest(BaseModel):
    regions: List[str] = []


class StateDiscoveryRequest(BaseModel):
    min_population: Optional[int] = None
    max_population: Optional[int] = None
    city_types: Optional[List[str]] = None
    limit: Optional[int] = None


class PopulationRequest(BaseModel):
    min_population: int
    max_population: Optional[int] = None
    limit: int = 100


class TopCitiesRequest(BaseModel):
    count: int = 50


class DistrictRequest(BaseModel):
    state: Optional[str] = None
    district: Optional[str] = None


class AddFeedRequest(BaseModel):
    source: Optional[Dict[str, Any]] = None


class AddFeedsRequest(BaseModel):
    sources: List[Dict[str, Any]] = []


class ValidateWebsiteRequest(BaseModel):
    url: str


class ValidateWebsitesRequest(BaseModel):
    urls: List[str]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _run(func, *args, **kwargs):
    """Run blocking ``func`` in the thread pool, mapping bad input to 400."""
    loop = asyncio.get_event_loop()
    try:
        return await loop.run_in_executor(executor, partial(func, *args, **kwargs))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _source_from_payload(data: Dict[str, Any]) -> CalendarSource:
    try:
        return CalendarSource.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid calendar source: {e}")


def _population_range(min_pop: Optional[int], max_pop: Optional[int]):
    if min_pop is None and max_pop is None:
        return None
    return (min_pop or 0, max_pop if max_pop is not None else float("inf"))


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", timestamp=_now(), version=VERSION)


@app.get("/live", response_model=HealthResponse)
async def liveness_check():
    """Liveness check endpoint for container orchestration."""
    return HealthResponse(status="alive", timestamp=_now(), version=VERSION)


@app.get("/ready", response_model=HealthResponse)
async def readiness_check():
    """Readiness check endpoint for container orchestration."""
    return HealthResponse(status="ready", timestamp=_now(), version=VERSION)


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Local Events Collector API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
    }


# -- calendar sources ---------------------------------------------------------

@app.get("/api/calendar-sources")
async def list_calendar_sources(
    state: Optional[str] = None, type: Optional[str] = None, active: Optional[bool] = None
):
    sources = collector.list_sources()
    if state:
        code = state_code_for(state)
        sources = [s for s in sources if s.state.upper() == code]
    if type:
        sources = [s for s in sources if s.type == type]
    if active is not None:
        sources = [s for s in sources if s.is_active == active]
    return [s.to_dict() for s in sources]


@app.get("/api/calendar-sources/by-state/{state}")
async def calendar_sources_by_state(state: str):
    return [s.to_dict() for s in collector.list_by_state(state_code_for(state))]


@app.get("/api/calendar-sources/by-type/{source_type}")
async def calendar_sources_by_type(source_type: str):
    return [s.to_dict() for s in collector.list_by_type(source_type)]


@app.post("/api/calendar-sources/{source_id}/toggle")
async def toggle_calendar_source(source_id: str):
    state = collector.toggle_source(source_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Calendar source not found")
    return {"id": source_id, "isActive": state}


@app.delete("/api/calendar-sources/{source_id}")
async def delete_calendar_source(source_id: str):
    if not collector.remove_source(source_id):
        raise HTTPException(status_code=404, detail="Calendar source not found")
    return {"success": True, "id": source_id}


@app.post("/api/add-discovered-feed")
async def add_discovered_feed(request: AddFeedRequest):
    if not request.source:
        raise HTTPException(status_code=400, detail="Source is required")
    source = _source_from_payload(request.source)
    try:
        stored, record = await _run(orchestrator.add_discovered_source, source)
    except DuplicateSourceError as e:
        existing = e.existing
        return JSONResponse(
            status_code=409,
            content={
                "error": "Calendar source already exists",
                "message": str(e),
                "existingSource": {
                    "id": existing.id,
                    "name": existing.name,
                    "isActive": existing.is_active,
                },
            },
        )
    return {
        "success": True,
        "message": f"Added calendar source: {stored.name}",
        "source": stored.to_dict(),
        "sync": record.to_dict(),
    }


@app.post("/api/add-multiple-feeds")
async def add_multiple_feeds(request: AddFeedsRequest):
    if not request.sources:
        raise HTTPException(status_code=400, detail="Sources array is required")
    sources = [_source_from_payload(item) for item in request.sources]
    return await _run(orchestrator.add_sources, sources)


@app.post("/api/reprioritize-feeds")
async def reprioritize_feeds():
    active = await _run(collector.reprioritize_all_feeds)
    return {
        "message": "Feed prioritization completed",
        "activeByDomain": active,
        "timestamp": _now(),
    }


@app.get("/api/feed-priorities")
async def feed_priorities():
    return collector.registry.feed_priorities()


# -- sync and discovery -------------------------------------------------------

@app.post("/api/sync-events")
async def sync_events(request: Optional[SyncRequest] = None):
    locations = request.locations if request else None
    if locations:
        result = await _run(orchestrator.sync_for_locations, locations)
        message = f"Event synchronization completed for {len(locations)} location(s)"
    else:
        result = await _run(orchestrator.sync_all)
        message = "Event synchronization completed"
    return {"message": message, **result.to_dict()}


@app.post("/api/discover-feeds")
async def discover_feeds(request: LocationRequest):
    result = await _run(
        orchestrator.discover_and_onboard, request.city, request.state, popular=True
    )
    return {
        "location": {"city": result.city, "state": result.state},
        "discoveredFeeds": [c.to_dict() for c in result.candidates],
        "count": result.discovered,
        "added": len(result.added),
        "alreadyExists": result.already_exists,
        "syncedEvents": result.synced_events,
        "timestamp": _now(),
    }


@app.post("/api/discover-regional-feeds")
async def discover_regional_feeds(request: RegionsRequest):
    batch = await _run(discoverer.discover_for_regions, request.regions)
    return {**batch.to_dict(), "timestamp": _now()}


@app.post("/api/onboard-regional-feeds")
async def onboard_regional_feeds(request: RegionsRequest):
    """Discover, register and sync feeds for each ``City, ST`` region."""
    batch = await _run(orchestrator.onboard_regions, request.regions)
    return {**batch.to_dict(), "timestamp": _now()}


@app.post("/api/discover-state-feeds/{state_code}")
async def discover_state_feeds(state_code: str, request: Optional[StateDiscoveryRequest] = None):
    request = request or StateDiscoveryRequest()
    batch = await _run(
        discoverer.discover_for_state,
        state_code,
        population_range=_population_range(request.min_population, request.max_population),
        city_types=request.city_types,
        limit=request.limit,
    )
    return {**batch.to_dict(), "state": state_code_for(state_code), "timestamp": _now()}


@app.post("/api/onboard-state-feeds/{state_code}")
async def onboard_state_feeds(state_code: str, request: Optional[StateDiscoveryRequest] = None):
    request = request or StateDiscoveryRequest()
    batch = await _run(
        orchestrator.onboard_state,
        state_code,
        population_range=_population_range(request.min_population, request.max_population),
        city_types=request.city_types,
        limit=request.limit,
    )
    return {**batch.to_dict(), "state": state_code_for(state_code), "timestamp": _now()}


@app.post("/api/discover-population-feeds")
async def discover_population_feeds(request: PopulationRequest):
    max_pop = request.max_population if request.max_population is not None else float("inf")
    batch = await _run(
        discoverer.discover_by_population, request.min_population, max_pop, request.limit
    )
    return {**batch.to_dict(), "timestamp": _now()}


@app.post("/api/discover-top-cities")
async def discover_top_cities(request: Optional[TopCitiesRequest] = None):
    count = request.count if request else 50
    batch = await _run(discoverer.discover_for_top_cities, count)
    return {**batch.to_dict(), "timestamp": _now()}


@app.get("/api/city-suggestions")
async def city_suggestions(q: str = "", limit: int = 20):
    return {"suggestions": discoverer.get_city_suggestions(q, limit)}


@app.get("/api/cities-with-calendar-potential")
async def cities_with_calendar_potential():
    cities = [
        {
            "name": c.name,
            "state": c.state,
            "stateCode": c.state_code,
            "county": c.county,
            "population": c.population,
            "type": c.type,
            "lat": c.lat,
            "lng": c.lng,
            "potentialSources": c.potential_sources,
        }
        for c in city_catalog.cities_with_calendar_potential()
    ]
    return {"cities": cities, "count": len(cities)}


@app.get("/api/congressional-districts")
async def congressional_districts(state: Optional[str] = None):
    districts = []
    for key in city_catalog.district_keys(state):
        code, _, number = key.partition("-")
        cities = city_catalog.get_cities_in_district(code, number)
        districts.append({
            "district": key,
            "state": code,
            "number": number,
            "cities": [c.name for c in cities],
        })
    return {"districts": districts, "count": len(districts)}


@app.post("/api/congressional-district/cities")
async def district_cities(request: DistrictRequest):
    if not request.state or not request.district:
        raise HTTPException(status_code=400, detail="District and state are required")
    code = state_code_for(request.state)
    cities = city_catalog.get_cities_in_district(code, request.district)
    return {
        "district": f"{code}-{request.district}",
        "cities": [asdict(c) for c in cities],
        "count": len(cities),
    }


@app.post("/api/congressional-district/discover-feeds")
async def district_discover_feeds(request: DistrictRequest):
    result = await _run(orchestrator.onboard_district, request.state, request.district)
    return result.to_dict()


# -- website validation -------------------------------------------------------

@app.post("/api/validate-website")
async def validate_website(request: ValidateWebsiteRequest):
    if not request.url.strip():
        raise HTTPException(status_code=400, detail="URL is required")
    result = await _run(validator.validate, request.url)
    return result.to_dict()


@app.post("/api/validate-websites")
async def validate_websites(request: ValidateWebsitesRequest):
    if not request.urls:
        raise HTTPException(status_code=400, detail="URLs array is required")
    results = await _run(validator.validate_multiple, request.urls)
    return {url: result.to_dict() for url, result in results.items()}


# -- events -------------------------------------------------------------------

@app.get("/api/events")
async def list_events(
    search: Optional[str] = None,
    categories: Optional[str] = None,
    location: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    is_free: Optional[bool] = None,
):
    filters = EventFilter(
        search=search,
        categories=[c.strip() for c in categories.split(",")] if categories else None,
        location=location,
        start_date=parse_datetime(start_date),
        end_date=parse_datetime(end_date),
        is_free=is_free,
    )
    events = await _run(store.get_filtered_events, filters)
    return [e.to_dict() for e in events]


@app.get("/api/events/{event_id}")
async def get_event(event_id: str):
    event = await _run(store.get_event, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return event.to_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
