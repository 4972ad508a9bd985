"""Find calendar feeds for a US location by probing likely websites.

Candidate domains are synthesized per organization type from the city name,
each domain's homepage is fetched once and classified with
:class:`WebsiteValidator`, and surviving sites are scanned for feed links
and checked at common feed paths. Nothing here touches the source registry.
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlencode, urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from ingest import settings
from ingest.city_catalog import City, CityCatalog, state_code_for
from ingest.schemas import CalendarSource, DiscoveredFeedCandidate

from .utils import city_slug, same_site
from .website_validator import WebsiteValidator

logger = logging.getLogger(__name__)

DOMAIN_PATTERNS = {
    "city": [
        "{city}.gov",
        "{city}.{state}.gov",
        "www.{city}.gov",
        "www.{city}.{state}.gov",
        "{city}{state}.gov",
        "cityof{city}.gov",
        "{city}.us",
        "{city}.{state}.us",
        "www.{city}.{state}.us",
        "cityof{city}.us",
        "cityof{city}.org",
    ],
    "school": [
        "{city}.k12.{state}.us",
        "{city}schools.org",
        "{city}sd.org",
        "{city}isd.org",
        "{city}usd.org",
        "www.{city}schools.org",
    ],
    "chamber": [
        "{city}chamber.org",
        "{city}chamber.com",
        "www.{city}chamber.org",
        "{city}chamberofcommerce.org",
    ],
    "library": [
        "{city}library.org",
        "{city}publiclibrary.org",
        "www.{city}library.org",
        "www.{city}pl.org",
    ],
    "parks": [
        "{city}parks.org",
        "{city}recreation.org",
        "{city}parksandrec.org",
    ],
}

SOURCE_NAMES = {
    "city": "{city} City Government",
    "school": "{city} School District",
    "chamber": "{city} Chamber of Commerce",
    "library": "{city} Public Library",
    "parks": "{city} Parks & Recreation",
}

# Feed files first, then pages that may link to them.
COMMON_FEED_PATHS = [
    "/calendar.ics",
    "/events.ics",
    "/calendar/ical",
    "/events/ical",
    "/iCalendar.aspx",
    "/calendar.rss",
    "/events.rss",
    "/calendar/rss",
    "/events/rss",
    "/calendar/feed",
    "/events/feed",
    "/calendar.xml",
    "/events.xml",
    "/feeds/calendar",
    "/feeds/events",
    "/calendar?format=ics",
    "/events?format=ics",
    "/?feed=events",
    "/feed/?post_type=event",
    "/api/events",
    "/api/calendar",
    "/calendar",
    "/events",
]

SKIP_URL_MARKERS = ("/api/v", "/cms/", "section_ids=")

KNOWN_CITY_PATTERNS = [
    "https://www.{city}.gov/calendar",
    "https://{city}.gov/events",
    "https://www.{city}.gov/calendar.ics",
    "https://calendar.{city}.gov",
    "https://events.{city}.gov",
]

# Pages that list feed links rather than serve a feed (CivicPlus and friends).
SUBSCRIPTION_FOLLOW_DEPTH = 2
MAX_SUBSCRIPTION_LINKS = 8
MAX_PARAMETER_VARIANTS = 5
COMPREHENSIVE_FEED_SCORE = 5

_FEED_HREF_RE = re.compile(
    r"\.(?:ics|rss)\b|ical|webcal:|/feed\b|format=ics|feed\.aspx|rss\.aspx", re.I
)
_CALENDAR_HREF_RE = re.compile(r"calendar|events", re.I)
_SUBSCRIPTION_URL_RE = re.compile(r"icalendar\.aspx|rss\.aspx|calendar\.aspx|subscribe", re.I)
_FEED_LINK_HINT_RE = re.compile(r"feed|\.xml\b|export|download|generate", re.I)
_ONCLICK_URL_RE = re.compile(r"""['"]([^'"]*(?:feed|ical|rss|\.ics|\.xml)[^'"]*)['"]""", re.I)
_FEED_BODY_MARKERS = ("BEGIN:VCALENDAR", "<rss", "<feed")
_SUBSCRIBE_TEXT_RE = re.compile(r"subscribe|download|export|icalendar|\brss\b", re.I)
_SCRIPT_FEED_RES = [
    re.compile(r"""["'](/[^"'\s]*\.(?:ics|rss))["']"""),
    re.compile(r"""["'](https?://[^"'\s]*\.(?:ics|rss))["']"""),
    re.compile(r"""(?:feedUrl|calendarUrl|icalUrl|rssUrl)\s*[:=]\s*["']([^"']+)["']""", re.I),
]
_CALENDAR_CONTENT_MARKERS = (
    "VEVENT", "DTSTART", "SUMMARY", "<title>", "<description>",
    "event", "meeting", "council", "calendar",
)
_RSS_MARKERS = ("<rss", "<feed", "<item", "<entry")


@dataclass
class ScoringConfig:
    """Confidence values assigned to fetched feeds."""

    ical_confirmed: float = 0.95
    ical_bare: float = 0.85
    ical_declared: float = 0.9
    rss_confirmed: float = 0.85
    rss_bare: float = 0.75
    rss_declared: float = 0.8
    json_structured: float = 0.75
    json_other: float = 0.7
    html_page: float = 0.5
    min_calendar_url: float = 0.6
    min_other_url: float = 0.5
    government_boost: float = 0.2
    explicit_link_bonus: float = 0.05
    known_pattern_boost: float = 0.3
    comprehensive_boost: float = 0.2


@dataclass
class DiscoveryBatch:
    """Candidates found across several cities."""

    candidates: list[DiscoveredFeedCandidate] = field(default_factory=list)
    regions: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.candidates)

    @property
    def summary(self) -> str:
        return (
            f"Discovered {self.count} calendar feeds across {len(self.regions)} regions"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "discoveredFeeds": [c.to_dict() for c in self.candidates],
            "regions": self.regions,
            "count": self.count,
            "summary": self.summary,
        }


def score_feed(
    url: str, content_type: str, body: str, config: ScoringConfig | None = None
) -> tuple[Optional[str], float]:
    """Guess the feed type of a fetched URL and how sure we are of it.

    Returns ``(None, 0.0)`` when the response does not look like a feed or
    calendar page at all.
    """
    config = config or ScoringConfig()
    lower_url = url.lower()
    content_type = (content_type or "").lower()
    has_calendar_content = any(marker in body for marker in _CALENDAR_CONTENT_MARKERS)

    if (
        "text/calendar" in content_type
        or lower_url.split("?")[0].endswith(".ics")
        or "BEGIN:VCALENDAR" in body
        or "BEGIN:VEVENT" in body
    ):
        if "BEGIN:VCALENDAR" in body:
            return "ical", config.ical_confirmed if has_calendar_content else config.ical_bare
        return "ical", config.ical_declared

    if (
        "rss" in content_type
        or "xml" in content_type
        or "rss" in lower_url
        or ".xml" in lower_url
        or any(marker in body for marker in _RSS_MARKERS)
    ):
        has_root = "<rss" in body or "<feed" in body
        if has_root:
            return "rss", config.rss_confirmed if has_calendar_content else config.rss_bare
        return "rss", config.rss_declared

    if "json" in content_type or lower_url.endswith(".json") or "/api/" in lower_url:
        try:
            data = json.loads(body or "{}")
        except ValueError:
            return "json", config.json_other
        structured = isinstance(data, list) or (
            isinstance(data, dict) and any(k in data for k in ("events", "items", "data"))
        )
        return "json", config.json_structured if structured else config.json_other

    if "calendar" in lower_url or "events" in lower_url:
        return "html", config.html_page
    return None, 0.0


def feed_priority_score(url: str) -> int:
    """Rank feed links found on a subscription page, all-calendar feeds first."""
    lower = url.lower()
    score = 0
    if "all-calendar" in lower or "cid=all" in lower:
        score += 10
    if "all-events" in lower:
        score += 8
    if "main-calendar" in lower or "master-calendar" in lower:
        score += 6
    if ".ics" in lower:
        score += 5
    if "icalendarfeed.aspx" in lower or "icalendar.aspx" in lower:
        score += 5
    if ".rss" in lower or "rssfeed.aspx" in lower:
        score += 4
    if ".xml" in lower:
        score += 3
    if "calendar" in lower:
        score += 2
    if "events" in lower:
        score += 2
    if "?" in lower and "=" in lower:
        score += 3
    return score


def subscription_variants(url: str) -> list[str]:
    """Common CivicPlus parameter forms for an ``iCalendar.aspx`` or ``rss.aspx`` page."""
    base = url.split("#")[0].split("?")[0]
    lower = base.lower()
    if lower.endswith("icalendar.aspx"):
        feed = base[: -len("iCalendar.aspx")] + "iCalendarFeed.aspx"
        variants = [
            f"{feed}?CID=All-calendar.ics",
            f"{feed}?CID=all",
            f"{base}?format=ics",
            f"{base}?calendar=all",
            f"{base}?type=all",
        ]
    elif lower.endswith("rss.aspx"):
        feed = base[: -len("rss.aspx")] + "RSSFeed.aspx"
        variants = [
            f"{feed}?CID=All-calendar.xml",
            f"{feed}?CID=all",
            f"{base}?format=rss",
            f"{base}?calendar=all",
            f"{base}?CID=all",
        ]
    else:
        return []
    return variants[:MAX_PARAMETER_VARIANTS]


def _looks_like_html_page(content_type: str, body: str) -> bool:
    if any(marker in body for marker in _FEED_BODY_MARKERS):
        return False
    head = body.lstrip()[:100].lower()
    return "html" in content_type.lower() or head.startswith(("<!doctype html", "<html"))


def make_source_id(city: str, org_type: str, feed_url: str) -> str:
    slug = re.sub(r"\s+", "-", city.strip().lower())
    digest = hashlib.sha1(feed_url.encode("utf-8")).hexdigest()[:10]
    return f"discovered-{slug}-{org_type}-{digest}"


def dedupe_candidates(
    candidates: Iterable[DiscoveredFeedCandidate],
) -> list[DiscoveredFeedCandidate]:
    """Keep the most confident candidate per feed URL, best first."""
    best: dict[str, DiscoveredFeedCandidate] = {}
    for candidate in candidates:
        url = candidate.source.feed_url
        if url not in best or candidate.confidence > best[url].confidence:
            best[url] = candidate
    return sorted(best.values(), key=lambda c: c.confidence, reverse=True)


class FeedDiscoverer:
    """Propose calendar sources for cities without registering them."""

    def __init__(
        self,
        city_catalog: CityCatalog | None = None,
        validator: WebsiteValidator | None = None,
        scoring: ScoringConfig | None = None,
        fetch_timeout: float = settings.DISCOVERY_FETCH_TIMEOUT_SEC,
        max_paths: int = settings.DISCOVERY_MAX_PATHS_PER_DOMAIN,
        region_delay: float = settings.DISCOVERY_REGION_DELAY_SEC,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.city_catalog = city_catalog if city_catalog is not None else CityCatalog.load()
        self.validator = validator or WebsiteValidator()
        self.scoring = scoring or ScoringConfig()
        self.fetch_timeout = fetch_timeout
        self.max_paths = max_paths
        self.region_delay = region_delay
        self._sleep = sleep

    # -- single location -----------------------------------------------------

    def discover_for_location(self, city: str, state: str) -> list[DiscoveredFeedCandidate]:
        """Return feed candidates for ``city``, most confident first."""
        if not city or not city.strip() or not state or not state.strip():
            raise ValueError("City and state are required")
        city = city.strip()
        state_code = state_code_for(state)
        logger.info("Discovering calendar feeds for %s, %s...", city, state_code)

        slug = city_slug(city)
        found: list[DiscoveredFeedCandidate] = []
        counts: dict[str, int] = {}
        for org_type, patterns in DOMAIN_PATTERNS.items():
            domains = dict.fromkeys(
                p.format(city=slug, state=state_code.lower()) for p in patterns
            )
            before = len(found)
            for domain in domains:
                found.extend(self._check_domain(domain, city, state_code, org_type))
            counts[org_type] = len(found) - before

        candidates = dedupe_candidates(found)
        logger.info(
            "Discovered %d potential feeds for %s, %s %s",
            len(candidates), city, state_code, counts,
        )
        return candidates

    def discover_for_popular_location(
        self, city: str, state: str
    ) -> list[DiscoveredFeedCandidate]:
        """Regular discovery plus well-known major-city URL shapes."""
        candidates = self.discover_for_location(city, state)
        state_code = state_code_for(state)
        slug = city_slug(city)
        for pattern in KNOWN_CITY_PATTERNS:
            url = pattern.format(city=slug)
            candidate = self._check_candidate(url, city.strip(), state_code, "city")
            if candidate is not None:
                candidate.confidence = min(
                    candidate.confidence + self.scoring.known_pattern_boost, 1.0
                )
                candidates.append(candidate)
        return dedupe_candidates(candidates)

    # -- many locations --------------------------------------------------------

    def discover_for_regions(self, regions: list[str]) -> DiscoveryBatch:
        """Run discovery for each ``"City, ST"`` region in turn."""
        if not regions:
            raise ValueError("At least one region is required")
        logger.info("Discovering feeds for %d regions...", len(regions))

        batch = DiscoveryBatch()
        found: list[DiscoveredFeedCandidate] = []
        for index, region in enumerate(regions):
            parts = [p.strip() for p in region.split(",")]
            if len(parts) < 2 or not parts[0] or not parts[1]:
                logger.info("Invalid region format: %s", region)
                continue
            known = self.city_catalog.get_city(parts[0], parts[1])
            name = known.name if known else parts[0]
            code = known.state_code if known else state_code_for(parts[1])
            try:
                feeds = self.discover_for_location(name, code)
            except Exception:
                logger.exception("Failed to discover feeds for %s", region)
                continue
            found.extend(feeds)
            batch.regions.append(f"{name}, {code}")
            logger.info("Discovered %d feeds for %s, %s", len(feeds), name, code)
            if index < len(regions) - 1:
                self._sleep(self.region_delay)

        batch.candidates = dedupe_candidates(found)
        return batch

    def _discover_cities(self, cities: list[City]) -> DiscoveryBatch:
        if not cities:
            return DiscoveryBatch()
        return self.discover_for_regions([c.label for c in cities])

    def discover_for_state(
        self,
        state: str,
        population_range: tuple[int, float] | None = None,
        city_types: list[str] | None = None,
        limit: int | None = None,
    ) -> DiscoveryBatch:
        cities = self.city_catalog.get_cities_by_state(state)
        if population_range:
            low, high = population_range
            cities = [c for c in cities if low <= c.population <= high]
        if city_types:
            cities = [c for c in cities if c.type in city_types]
        if limit:
            cities = cities[:limit]
        logger.info("Discovering feeds for %d cities in %s", len(cities), state_code_for(state))
        return self._discover_cities(cities)

    def discover_by_population(
        self, min_population: int, max_population: float = float("inf"), limit: int = 100
    ) -> DiscoveryBatch:
        cities = self.city_catalog.get_cities_by_population(min_population, max_population)
        return self._discover_cities(cities[:limit])

    def discover_for_top_cities(self, count: int = 50) -> DiscoveryBatch:
        return self._discover_cities(self.city_catalog.top_cities(count))

    def get_city_suggestions(self, query: str, limit: int = 20) -> list[str]:
        if not query or len(query.strip()) < 2:
            return []
        return [c.label for c in self.city_catalog.search_cities(query)[:limit]]

    # -- fetching ----------------------------------------------------------------

    def _get(self, url: str, timeout: float) -> requests.Response:
        headers = {**settings.BROWSER_HEADERS, "Accept": settings.FEED_ACCEPT_HEADER}
        return requests.get(url, headers=headers, timeout=timeout, allow_redirects=True)

    def _check_domain(
        self, domain: str, city: str, state: str, org_type: str
    ) -> list[DiscoveredFeedCandidate]:
        homepage = f"https://{domain}"
        try:
            response = self._get(homepage, self.validator.timeout)
        except requests.RequestException as exc:
            logger.debug("Domain %s not accessible: %s", domain, exc)
            return []

        validation = self.validator.classify(homepage, response)
        if not validation.is_valid:
            logger.info(
                "Website %s is %s (%s) - skipping feed discovery",
                domain, validation.status, validation.error,
            )
            return []
        logger.info("Confirmed website %s exists - scanning for feeds", domain)

        base_url = validation.actual_url or homepage
        explicit = self.scan_homepage(response.text, base_url)
        candidate_urls = list(dict.fromkeys(
            explicit + [urljoin(base_url, path) for path in COMMON_FEED_PATHS]
        ))
        candidate_urls = [u for u in candidate_urls if not any(m in u for m in SKIP_URL_MARKERS)]

        candidates = []
        seen: set[str] = set()
        for url in candidate_urls[: self.max_paths]:
            candidates.extend(
                self._explore(url, city, state, org_type, seen, explicit=url in explicit)
            )
        return candidates

    def scan_homepage(self, html: str, base_url: str) -> list[str]:
        """Return same-site feed and calendar URLs advertised on a page."""
        soup = BeautifulSoup(html, "html.parser")
        found: list[str] = []

        for link in soup.find_all("link", rel="alternate"):
            href = link.get("href")
            kind = (link.get("type") or "").lower()
            if href and (
                any(k in kind for k in ("calendar", "rss", "atom", "xml"))
                or _FEED_HREF_RE.search(href)
            ):
                found.append(href)

        for anchor in soup.find_all("a", href=True):
            href = anchor["href"]
            text = anchor.get_text(" ", strip=True)
            title = anchor.get("title") or ""
            if _FEED_HREF_RE.search(href):
                found.append(href)
            elif _SUBSCRIBE_TEXT_RE.search(text) or _SUBSCRIBE_TEXT_RE.search(title):
                found.append(href)
            elif _CALENDAR_HREF_RE.search(href):
                found.append(href)

        for script in soup.find_all("script"):
            content = script.string or ""
            for pattern in _SCRIPT_FEED_RES:
                found.extend(pattern.findall(content))

        return self._resolve_links(found, base_url)

    def scan_subscription_page(self, html: str, base_url: str) -> list[str]:
        """Return feed links on a subscription page, most comprehensive first.

        Besides the links :meth:`scan_homepage` reads, this looks at ``data-url``
        style attributes, ``onclick`` handlers and feed-building forms whose
        hidden inputs carry the feed parameters.
        """
        soup = BeautifulSoup(html, "html.parser")
        found: list[str] = []
        for attr in ("data-url", "data-href", "data-feed"):
            for element in soup.find_all(attrs={attr: True}):
                found.append(element[attr])
        for element in soup.find_all(onclick=True):
            found.extend(_ONCLICK_URL_RE.findall(element["onclick"]))
        for form in soup.find_all("form", action=True):
            markup = str(form).lower()
            if not any(k in markup for k in ("calendar", "feed", "rss", "ical")):
                continue
            params = [
                (field_input["name"], field_input.get("value", ""))
                for field_input in form.find_all("input", type="hidden")
                if field_input.get("name")
            ]
            if params:
                found.append(f"{form['action']}?{urlencode(params)}")

        urls = self.scan_homepage(html, base_url) + self._resolve_links(found, base_url)
        urls = [
            u for u in dict.fromkeys(urls)
            if u != base_url
            and (
                _FEED_HREF_RE.search(u)
                or _SUBSCRIPTION_URL_RE.search(u)
                or _FEED_LINK_HINT_RE.search(u)
            )
        ]
        return sorted(urls, key=feed_priority_score, reverse=True)

    def _resolve_links(self, hrefs: Iterable[str], base_url: str) -> list[str]:
        urls: list[str] = []
        for href in hrefs:
            href = href.strip()
            if href.lower().startswith("webcal://"):
                href = "https://" + href[len("webcal://"):]
            if not href or href.startswith(("#", "mailto:", "javascript:")):
                continue
            url = urljoin(base_url, href)
            if same_site(url, base_url) and url not in urls:
                urls.append(url)
        return urls

    def _check_candidate(
        self, url: str, city: str, state: str, org_type: str, explicit: bool = False
    ) -> DiscoveredFeedCandidate | None:
        """Fetch one URL and return its best candidate, if any."""
        found = self._explore(url, city, state, org_type, set(), explicit=explicit)
        if not found:
            return None
        return max(found, key=lambda c: c.confidence)

    def _explore(
        self,
        url: str,
        city: str,
        state: str,
        org_type: str,
        seen: set[str],
        explicit: bool = False,
        depth: int = 0,
    ) -> list[DiscoveredFeedCandidate]:
        """Fetch ``url`` and score it, following subscription pages to their feeds."""
        if url in seen:
            return []
        seen.add(url)
        if any(marker in url for marker in SKIP_URL_MARKERS):
            logger.info("Skipping client-side API endpoint: %s", url)
            return []
        try:
            response = self._get(url, self.fetch_timeout)
        except requests.RequestException:
            return []
        if response.status_code >= 400:
            return []

        content_type = response.headers.get("content-type", "")
        body = response.text or ""
        feed_type, confidence = score_feed(url, content_type, body, self.scoring)
        is_html = _looks_like_html_page(content_type, body)

        if is_html and depth < SUBSCRIPTION_FOLLOW_DEPTH and (
            _SUBSCRIPTION_URL_RE.search(url) or (depth == 0 and feed_type == "html")
        ):
            followed = self._follow_subscription_page(
                url, body, city, state, org_type, seen, depth
            )
            if followed:
                return followed

        if feed_type is None:
            return []
        if feed_type in ("ical", "rss") and is_html:
            logger.info("Expected feed format but got HTML at %s", url)
            return []

        lower_url = url.lower()
        wants_calendar = "calendar" in lower_url or "events" in lower_url
        minimum = self.scoring.min_calendar_url if wants_calendar else self.scoring.min_other_url
        if confidence < minimum:
            logger.info("Low confidence (%.2f) for %s", confidence, url)
            return []

        host = urlparse(url).hostname or ""
        if host.endswith(".gov"):
            confidence += self.scoring.government_boost
        if explicit:
            confidence += self.scoring.explicit_link_bonus

        parsed = urlparse(url)
        source = CalendarSource(
            id=make_source_id(city, org_type, url),
            name=SOURCE_NAMES[org_type].format(city=city),
            city=city,
            state=state,
            type=org_type,
            feed_url=url,
            feed_type=feed_type,
            website_url=f"{parsed.scheme}://{parsed.netloc}",
            is_active=True,
        )
        return [DiscoveredFeedCandidate(source=source, confidence=min(confidence, 1.0))]

    def _follow_subscription_page(
        self,
        url: str,
        html: str,
        city: str,
        state: str,
        org_type: str,
        seen: set[str],
        depth: int,
    ) -> list[DiscoveredFeedCandidate]:
        links = self.scan_subscription_page(html, url)
        logger.info("Found %d potential feed links on %s", len(links), url)

        found: list[DiscoveredFeedCandidate] = []
        for link in links[:MAX_SUBSCRIPTION_LINKS]:
            for candidate in self._explore(
                link, city, state, org_type, seen, explicit=True, depth=depth + 1
            ):
                if candidate.source.feed_type in ("ical", "rss") and (
                    feed_priority_score(candidate.source.feed_url) > COMPREHENSIVE_FEED_SCORE
                ):
                    candidate.confidence = min(
                        candidate.confidence + self.scoring.comprehensive_boost, 1.0
                    )
                found.append(candidate)
        if found:
            return found

        for variant in subscription_variants(url):
            found.extend(
                c for c in self._explore(
                    variant, city, state, org_type, seen,
                    depth=SUBSCRIPTION_FOLLOW_DEPTH,
                )
                if c.source.feed_type in ("ical", "rss")
            )
        if found:
            logger.info("Found %d feeds from parameter variants of %s", len(found), url)
        return found
