"""Runtime configuration for the collector, read from the environment."""
from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_PATH = Path(__file__).resolve().parent.parent

if os.getenv("SCRAPER_DEBUG"):
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# Government sites are slow; keep the fetch timeout generous.
HTTP_TIMEOUT_SEC = _float_env("HTTP_TIMEOUT_SEC", 15.0)
VALIDATOR_MAX_REDIRECTS = _int_env("VALIDATOR_MAX_REDIRECTS", 5)
VALIDATOR_BATCH_SIZE = _int_env("VALIDATOR_BATCH_SIZE", 3)
VALIDATOR_BATCH_DELAY_SEC = _float_env("VALIDATOR_BATCH_DELAY_SEC", 1.0)

FEED_TIMEOUT_SEC = _float_env("FEED_TIMEOUT_SEC", 15.0)
FEED_TEST_TIMEOUT_SEC = _float_env("FEED_TEST_TIMEOUT_SEC", 5.0)
MAX_EVENTS_PER_FEED = _int_env("MAX_EVENTS_PER_FEED", 10)

DISCOVERY_FETCH_TIMEOUT_SEC = _float_env("DISCOVERY_FETCH_TIMEOUT_SEC", 4.0)
DISCOVERY_MAX_PATHS_PER_DOMAIN = _int_env("DISCOVERY_MAX_PATHS_PER_DOMAIN", 20)
DISCOVERY_REGION_DELAY_SEC = _float_env("DISCOVERY_REGION_DELAY_SEC", 1.0)

SOURCE_CATALOG_PATH = Path(
    os.getenv("SOURCE_CATALOG_PATH", str(BASE_PATH / "sources" / "calendar_sources.json"))
)
CITY_CATALOG_PATH = Path(
    os.getenv("CITY_CATALOG_PATH", str(BASE_PATH / "sources" / "us_cities.json"))
)
DISTRICT_CATALOG_PATH = Path(
    os.getenv("DISTRICT_CATALOG_PATH", str(BASE_PATH / "sources" / "congressional_districts.json"))
)

# "memory" keeps events in-process, "api" forwards them to API_URL.
EVENT_STORE_BACKEND = os.getenv("EVENT_STORE_BACKEND", "memory")
API_BASE_URL = os.getenv("API_URL", "http://localhost:8000/api/v1")

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

FEED_ACCEPT_HEADER = (
    "text/calendar, application/calendar, text/plain, application/rss+xml, "
    "application/xml, text/xml, application/json, text/html, */*"
)
