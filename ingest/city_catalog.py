"""Static catalog of US cities and congressional district membership."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from . import settings

logger = logging.getLogger(__name__)

STATE_CODES = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA", "kansas": "KS",
    "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK",
    "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI",
    "south carolina": "SC", "south dakota": "SD", "tennessee": "TN", "texas": "TX",
    "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}


def state_code_for(state: str) -> str:
    """Resolve ``Texas``/``tx``/``TX`` to ``TX``."""
    normalized = (state or "").strip().lower()
    if normalized in STATE_CODES:
        return STATE_CODES[normalized]
    return normalized.upper()[:2]


@dataclass
class City:
    """A catalog entry."""

    name: str
    state: str
    state_code: str
    county: str = ""
    population: int = 0
    type: str = "small"
    lat: float | None = None
    lng: float | None = None
    potential_sources: list[str] = field(default_factory=lambda: ["city", "school"])

    @property
    def label(self) -> str:
        return f"{self.name}, {self.state_code}"


class CityCatalog:
    """In-memory view over the city and district data files."""

    def __init__(self, cities: list[City], districts: dict[str, list[str]] | None = None) -> None:
        self.cities = list(cities)
        self.districts = dict(districts or {})

    @classmethod
    def load(
        cls,
        path: str | Path = settings.CITY_CATALOG_PATH,
        district_path: str | Path | None = settings.DISTRICT_CATALOG_PATH,
    ) -> "CityCatalog":
        data = json.loads(Path(path).read_text())
        districts: dict[str, list[str]] = {}
        if district_path and Path(district_path).exists():
            districts = json.loads(Path(district_path).read_text())
        return cls([City(**item) for item in data], districts)

    def all_cities(self) -> list[City]:
        return list(self.cities)

    def cities_with_calendar_potential(self) -> list[City]:
        """Cities expected to publish at least one kind of calendar."""
        return [c for c in self.all_cities() if c.potential_sources]

    def search_cities(self, query: str) -> list[City]:
        """Substring match on city, state or county name."""
        q = query.strip().lower()
        if not q:
            return []
        return [
            c for c in self.cities
            if q in c.name.lower() or q in c.state.lower() or q in c.county.lower()
        ]

    def get_city(self, name: str, state: str | None = None) -> City | None:
        name = name.strip().lower()
        for city in self.cities:
            if city.name.lower() != name:
                continue
            if state is None:
                return city
            s = state.strip().lower()
            if s in (city.state.lower(), city.state_code.lower()):
                return city
        return None

    def get_cities_by_state(self, state: str) -> list[City]:
        code = state_code_for(state)
        return [c for c in self.cities if c.state_code == code]

    def get_cities_by_population(self, min_pop: int, max_pop: float = float("inf")) -> list[City]:
        return [c for c in self.cities if min_pop <= c.population <= max_pop]

    def get_cities_by_type(self, city_type: str) -> list[City]:
        return [c for c in self.cities if c.type == city_type]

    def top_cities(self, count: int = 50) -> list[City]:
        return sorted(self.cities, key=lambda c: c.population, reverse=True)[:count]

    def get_cities_in_district(self, state: str, district: str | int) -> list[City]:
        """Return the cities that make up congressional district ``state``-``district``.

        Mapped names missing from the catalog are returned as bare entries so
        discovery can still run for them. Districts with no mapping fall back
        to a deterministic slice of the state's cities.
        """
        code = state_code_for(state)
        key = f"{code}-{str(district).strip().zfill(2)}"
        mapped = self.districts.get(key, [])
        state_cities = self.get_cities_by_state(code)

        if mapped:
            lowered = [m.lower() for m in mapped]
            matched = [
                c for c in state_cities
                if any(m in c.name.lower() or c.name.lower() in m for m in lowered)
            ]
            if matched:
                return matched
            logger.info("No catalog match for %s, using mapped names %s", key, mapped)
            return [City(name=m, state=code, state_code=code) for m in mapped]

        if not state_cities:
            return []
        try:
            number = int(str(district).strip())
        except ValueError:
            return []
        per_district = max(2, len(state_cities) // 5)
        start = ((number - 1) % 5) * per_district
        return state_cities[start:start + per_district]

    def district_keys(self, state: str | None = None) -> list[str]:
        keys = sorted(self.districts)
        if state:
            prefix = state_code_for(state) + "-"
            keys = [k for k in keys if k.startswith(prefix)]
        return keys
