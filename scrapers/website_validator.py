"""Classify whether a URL is a live, content-bearing website.

A single GET is made per URL. The response is sorted into one of the
statuses in :data:`ingest.schemas.VALIDATION_STATUSES` so that discovery and
user-facing checks never surface parked, expired or placeholder domains.
"""
from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable
from urllib.parse import urlparse

import requests

from ingest import settings
from ingest.schemas import WebsiteValidation

from .utils import normalize_url, same_site

logger = logging.getLogger(__name__)

MIN_CONTENT_BYTES = 200
QUALITY_CONTENT_BYTES = 500

# Strong for-sale signals; these win even on a 4xx response.
SALE_INDICATORS = [
    "domain for sale",
    "buy this domain",
    "this domain is for sale",
    "domain parking",
    "parked domain",
    "parked free",
    "expired domain",
    "domain expired",
    "domain has expired",
    "godaddy",
    "namecheap",
    "sedo.com",
    "sedoparking",
    "dan.com",
    "hugedomains",
    "afternic",
    "bodis",
]

PLACEHOLDER_INDICATORS = [
    "underconstruction",
    "under construction",
    "coming soon",
    "site not found",
    "page not found",
    "temporarily unavailable",
    "future home of",
    "default web page",
    "welcome to nginx",
    "apache2 ubuntu default page",
]

PARKED_INDICATORS = SALE_INDICATORS + PLACEHOLDER_INDICATORS

MAINTENANCE_INDICATORS = [
    "under maintenance",
    "scheduled maintenance",
    "down for maintenance",
    "maintenance mode",
    "we'll be back soon",
    "we will be back soon",
    "site is currently unavailable",
    "performing maintenance",
]

GOVERNMENT_INDICATORS = [
    "city of",
    "town of",
    "county of",
    "village of",
    "township",
    "municipal",
    "city council",
    "city hall",
    "mayor",
    "official website",
    "official site",
    "board of education",
    "school district",
    "public library",
    "parks and recreation",
]

GOVERNMENT_SUFFIXES = (".gov", ".us", ".mil")

BROKER_PATTERNS = [
    re.compile(r"buy\s+(?:this|the)\s+domain", re.I),
    re.compile(r"premium\s+domains?", re.I),
    re.compile(r"domain\s+(?:is\s+)?(?:available|for\s+sale)", re.I),
    re.compile(r"make\s+(?:an\s+)?offer\s+on\s+this\s+domain", re.I),
    re.compile(r"registrar\s+(?:parking|placeholder)", re.I),
    re.compile(r"this\s+domain\s+(?:name\s+)?(?:may\s+be|is)\s+for\s+sale", re.I),
]

PARKING_HOSTS = (
    "sedo.com",
    "sedoparking.com",
    "dan.com",
    "afternic.com",
    "hugedomains.com",
    "bodis.com",
    "parkingcrew.net",
    "godaddy.com",
    "namecheap.com",
    "above.com",
    "undeveloped.com",
)

_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.I)
_NAV_RE = re.compile(r"<nav\b|class=[\"'][^\"']*\b(?:nav|menu)", re.I)
_CONTENT_RE = re.compile(r"<(?:main|article|section)\b|class=[\"'][^\"']*\bcontent", re.I)
_FORM_RE = re.compile(r"<(?:form|input|select|button)\b", re.I)


def extract_title(body: str) -> str | None:
    match = _TITLE_RE.search(body)
    return match.group(1).strip() if match else None


def _indicator_pattern(indicator: str) -> re.Pattern:
    # Host-like indicators must not match inside a longer host (jordan.com).
    tail = r"(?![\w-])" if "." in indicator else ""
    return re.compile(r"(?<![\w-])" + re.escape(indicator) + tail)


_INDICATOR_PATTERNS: dict[str, re.Pattern] = {}


def _find_indicator(indicators: Iterable[str], *texts: str) -> str | None:
    for indicator in indicators:
        pattern = _INDICATOR_PATTERNS.get(indicator)
        if pattern is None:
            pattern = _INDICATOR_PATTERNS.setdefault(indicator, _indicator_pattern(indicator))
        for text in texts:
            if text and pattern.search(text):
                return indicator
    return None


def is_government_url(url: str) -> bool:
    host = urlparse(normalize_url(url)).hostname or ""
    return host.lower().endswith(GOVERNMENT_SUFFIXES)


def _is_parking_host(host: str) -> bool:
    host = host.lower()
    return any(host == p or host.endswith("." + p) for p in PARKING_HOSTS)


def _has_quality_content(body: str, title: str | None) -> bool:
    """Require at least two structural signals of a real site."""
    signals = [
        bool(_NAV_RE.search(body)),
        bool(_CONTENT_RE.search(body)),
        bool(_FORM_RE.search(body)),
        bool(
            title
            and len(title) > 3
            and not _find_indicator(PARKED_INDICATORS + MAINTENANCE_INDICATORS, title.lower())
        ),
    ]
    return sum(signals) >= 2


def _describe_connection_error(exc: requests.exceptions.ConnectionError) -> str:
    message = str(exc)
    lowered = message.lower()
    if any(
        marker in lowered
        for marker in (
            "name or service not known",
            "nodename nor servname",
            "getaddrinfo failed",
            "name resolution",
            "no address associated",
        )
    ):
        return "DNS resolution failed"
    if "refused" in lowered:
        return "Connection refused"
    return f"Connection failed: {message}"


class WebsiteValidator:
    """Fetch a URL once and classify the response."""

    def __init__(
        self,
        timeout: float | None = None,
        max_redirects: int | None = None,
        batch_size: int | None = None,
        batch_delay: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SEC
        self.max_redirects = (
            max_redirects if max_redirects is not None else settings.VALIDATOR_MAX_REDIRECTS
        )
        self.batch_size = batch_size or settings.VALIDATOR_BATCH_SIZE
        self.batch_delay = (
            batch_delay if batch_delay is not None else settings.VALIDATOR_BATCH_DELAY_SEC
        )
        self._sleep = sleep

    def validate(self, url: str) -> WebsiteValidation:
        """Classify ``url`` as one of the validation statuses."""
        full_url = normalize_url(url)
        try:
            with requests.Session() as session:
                session.max_redirects = self.max_redirects
                response = session.get(
                    full_url,
                    headers=settings.BROWSER_HEADERS,
                    timeout=self.timeout,
                    allow_redirects=True,
                )
        except requests.exceptions.Timeout:
            return WebsiteValidation(False, "timeout", error="Request timed out")
        except requests.exceptions.TooManyRedirects:
            return WebsiteValidation(
                False, "redirect",
                error=f"Too many redirects (more than {self.max_redirects})",
            )
        except requests.exceptions.ConnectionError as exc:
            return WebsiteValidation(False, "error", error=_describe_connection_error(exc))
        except requests.exceptions.RequestException as exc:
            return WebsiteValidation(False, "error", error=str(exc))

        return self.classify(full_url, response)

    def classify(self, full_url: str, response: requests.Response) -> WebsiteValidation:
        """Apply the content rules to an already fetched response.

        Order matters: server errors, empty bodies, off-site redirects,
        maintenance and for-sale pages, client errors, placeholder pages and
        finally the content-quality check.
        """
        final_url = response.url or full_url
        status = response.status_code
        body = response.text or ""
        length = len(response.content or b"")

        if status >= 500:
            return WebsiteValidation(
                False, "error", actual_url=final_url,
                error=f"Server error (HTTP {status})", content_length=length,
            )
        if length < MIN_CONTENT_BYTES:
            return WebsiteValidation(
                False, "error", actual_url=final_url,
                error="Insufficient content", content_length=length,
                has_valid_content=False,
            )

        title = extract_title(body)
        lowered = body.lower()
        lowered_title = title.lower() if title else ""

        hops = len(response.history or [])
        if hops > self.max_redirects:
            return WebsiteValidation(
                False, "redirect", actual_url=final_url, title=title,
                error=f"Too many redirects ({hops})", content_length=length,
            )
        if hops and not same_site(full_url, final_url):
            final_host = urlparse(final_url).hostname or ""
            reason = "parking provider" if _is_parking_host(final_host) else "different domain"
            return WebsiteValidation(
                False, "redirect", actual_url=final_url, title=title,
                error=f"Redirects to {reason}: {final_host}", content_length=length,
            )

        if _find_indicator(MAINTENANCE_INDICATORS, lowered, lowered_title):
            return WebsiteValidation(
                False, "maintenance", actual_url=final_url, title=title,
                error="Site appears to be under maintenance", content_length=length,
            )

        for_sale = _find_indicator(SALE_INDICATORS, lowered, lowered_title) or any(
            p.search(body) for p in BROKER_PATTERNS
        )
        if for_sale:
            return WebsiteValidation(
                False, "parked", actual_url=final_url, title=title,
                error="Domain appears to be parked or for sale", content_length=length,
            )

        if status >= 400:
            return WebsiteValidation(
                False, "error", actual_url=final_url, title=title,
                error=f"HTTP {status}", content_length=length,
            )

        if _find_indicator(PLACEHOLDER_INDICATORS, lowered, lowered_title):
            return WebsiteValidation(
                False, "parked", actual_url=final_url, title=title,
                error="Placeholder or under-construction page", content_length=length,
            )

        # Thin pages pass only on a government domain; fuller pages also pass
        # on government vocabulary or enough structural markup.
        if length < QUALITY_CONTENT_BYTES:
            accepted = is_government_url(final_url)
        else:
            accepted = (
                is_government_url(final_url)
                or bool(_find_indicator(GOVERNMENT_INDICATORS, lowered, lowered_title))
                or _has_quality_content(body, title)
            )

        if accepted:
            return WebsiteValidation(
                True, "valid", actual_url=final_url, title=title,
                content_length=length, has_valid_content=True,
            )

        logger.info("Thin content at %s (%d bytes)", final_url, length)
        return WebsiteValidation(
            False, "expired", actual_url=final_url, title=title,
            error="Insufficient website content", content_length=length,
            has_valid_content=False,
        )

    def validate_multiple(self, urls: list[str]) -> dict[str, WebsiteValidation]:
        """Validate ``urls`` in small concurrent batches with a pause between them."""
        results: dict[str, WebsiteValidation] = {}
        unique = list(dict.fromkeys(urls))
        batches = [
            unique[i:i + self.batch_size] for i in range(0, len(unique), self.batch_size)
        ]
        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for index, batch in enumerate(batches):
                for url, result in zip(batch, pool.map(self._validate_safely, batch)):
                    results[url] = result
                if index < len(batches) - 1:
                    self._sleep(self.batch_delay)
        return results

    def _validate_safely(self, url: str) -> WebsiteValidation:
        try:
            return self.validate(url)
        except Exception as exc:  # keep one result per input
            logger.warning("Validation of %s failed: %s", url, exc)
            return WebsiteValidation(False, "error", error=str(exc))
