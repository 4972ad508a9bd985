"""Registry of calendar sources and the JSON catalog they are loaded from."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

from . import settings
from .schemas import FEED_TYPE_PRIORITY, CalendarSource

logger = logging.getLogger(__name__)

DEFAULT_CATALOG = settings.SOURCE_CATALOG_PATH

FeedChecker = Callable[[CalendarSource], bool]


class DuplicateSourceError(Exception):
    """Raised when a source with the same identity is already registered."""

    def __init__(self, existing: CalendarSource) -> None:
        super().__init__(f"{existing.name} is already added for {existing.location}")
        self.existing = existing


def load_sources(path: str | Path = DEFAULT_CATALOG) -> list[CalendarSource]:
    """Load calendar sources from a JSON catalog file."""
    data = json.loads(Path(path).read_text())
    return [CalendarSource.from_dict(item) for item in data]


def export_sources(sources: Iterable[CalendarSource], path: str | Path) -> None:
    """Export calendar sources to JSON."""
    Path(path).write_text(json.dumps([s.to_dict() for s in sources], indent=2))


def feed_priority(source: CalendarSource) -> int:
    return FEED_TYPE_PRIORITY.get(source.feed_type, 0)


def source_domain(source: CalendarSource) -> Optional[str]:
    """Host used to group related feeds; feed URL first, then website."""
    url = source.feed_url or source.website_url or ""
    if not url:
        return None
    if "://" not in url:
        url = f"https://{url}"
    host = urlparse(url.replace("webcal://", "https://")).hostname
    return host.lower() if host else None


class SourceRegistry:
    """Owns the mutable list of :class:`CalendarSource` records.

    All mutations happen under one lock; ``add_source`` is an atomic
    append-if-absent.
    """

    def __init__(
        self,
        sources: Iterable[CalendarSource] | None = None,
        feed_checker: FeedChecker | None = None,
    ) -> None:
        self._sources: list[CalendarSource] = list(sources or [])
        self._lock = threading.RLock()
        self.feed_checker = feed_checker

    @classmethod
    def from_catalog(cls, path: str | Path = DEFAULT_CATALOG) -> "SourceRegistry":
        if not Path(path).exists():
            logger.warning("Source catalog %s not found, starting empty", path)
            return cls()
        return cls(load_sources(path))

    # -- reads -------------------------------------------------------------

    def list_sources(self) -> list[CalendarSource]:
        with self._lock:
            return list(self._sources)

    def list_by_state(self, state: str) -> list[CalendarSource]:
        state = state.strip().upper()
        return [s for s in self.list_sources() if s.state.upper() == state]

    def list_by_type(self, source_type: str) -> list[CalendarSource]:
        return [s for s in self.list_sources() if s.type == source_type]

    def list_active(self) -> list[CalendarSource]:
        return [s for s in self.list_sources() if s.is_active]

    def get_source(self, source_id: str) -> CalendarSource | None:
        with self._lock:
            return next((s for s in self._sources if s.id == source_id), None)

    def find_duplicate(self, candidate: CalendarSource) -> CalendarSource | None:
        """Return the registered source ``candidate`` collides with, if any."""
        with self._lock:
            for source in self._sources:
                if (
                    source.id == candidate.id
                    or (candidate.feed_url and source.feed_url == candidate.feed_url)
                    or (
                        source.name == candidate.name
                        and source.city == candidate.city
                        and source.state == candidate.state
                    )
                ):
                    return source
        return None

    # -- writes ------------------------------------------------------------

    def register(self, candidate: CalendarSource) -> CalendarSource:
        """Insert ``candidate`` or raise :class:`DuplicateSourceError`."""
        with self._lock:
            existing = self.find_duplicate(candidate)
            if existing is not None:
                raise DuplicateSourceError(existing)
            source = replace(candidate)
            self._sources.append(source)
            logger.info("Added calendar source: %s (%s)", source.name, source.location)
            self._prioritize_new(source)
        return source

    def add_source(self, candidate: CalendarSource) -> bool:
        """Insert ``candidate``; False when it duplicates an existing source."""
        try:
            self.register(candidate)
        except DuplicateSourceError as exc:
            logger.info("Skipping duplicate source %s: %s", candidate.name, exc)
            return False
        return True

    def toggle_source(self, source_id: str) -> bool | None:
        """Flip the active flag and return the new state (None if unknown)."""
        with self._lock:
            source = self.get_source(source_id)
            if source is None:
                return None
            source.is_active = not source.is_active
            return source.is_active

    def remove_source(self, source_id: str) -> bool:
        with self._lock:
            source = self.get_source(source_id)
            if source is None:
                return False
            self._sources.remove(source)
        logger.info("Removed calendar source: %s", source.name)
        return True

    def mark_synced(self, source_id: str, when: datetime | None = None) -> None:
        with self._lock:
            source = self.get_source(source_id)
            if source is not None:
                source.last_sync = when or datetime.now()

    # -- prioritization ----------------------------------------------------

    def _same_city(self, source: CalendarSource) -> list[CalendarSource]:
        with self._lock:
            return [
                s for s in self._sources
                if s.id != source.id
                and s.city.lower() == source.city.lower()
                and s.state == source.state
            ]

    def _prioritize_new(self, source: CalendarSource) -> None:
        """Keep at most the best working feed per city active after an add.

        Caller holds the registry lock.
        """
        others = self._same_city(source)
        if not others:
            return

        priority = feed_priority(source)
        active = [s for s in others if s.is_active]
        best = max(active, key=feed_priority, default=None)
        if best is not None and priority <= feed_priority(best):
            logger.info(
                "Keeping %s (%s) disabled, %s (%s) already active",
                source.name, source.feed_type, best.name, best.feed_type,
            )
            source.is_active = False
            return

        if not source.is_active:
            return

        if self.feed_checker and not self.feed_checker(source):
            logger.info("New feed %s is not working, disabling it", source.name)
            source.is_active = False
            return
        for other in active:
            if feed_priority(other) < priority:
                logger.info(
                    "Disabling lower priority feed %s (%s) in favor of %s (%s)",
                    other.name, other.feed_type, source.name, source.feed_type,
                )
                other.is_active = False

    def group_by_domain(self) -> dict[str, list[CalendarSource]]:
        groups: dict[str, list[CalendarSource]] = {}
        for source in self.list_sources():
            domain = source_domain(source)
            if domain:
                groups.setdefault(domain, []).append(source)
        return groups

    def reprioritize_all_feeds(self, checker: FeedChecker | None = None) -> dict[str, str | None]:
        """Activate only the highest-priority working feed per domain.

        Returns a mapping of domain to the id of the source left active, or
        ``None`` when no feed in that group passed the health check.
        """
        checker = checker or self.feed_checker or (lambda _source: True)
        outcome: dict[str, str | None] = {}
        for domain, group in self.group_by_domain().items():
            if len(group) <= 1:
                continue
            logger.info("Processing %d feeds for domain: %s", len(group), domain)
            working = [s for s in group if checker(s)]
            if not working:
                logger.info("No working feeds found for domain: %s", domain)
                outcome[domain] = None
                continue
            winner = max(working, key=feed_priority)
            with self._lock:
                for source in group:
                    was_active = source.is_active
                    source.is_active = source.id == winner.id
                    if was_active != source.is_active:
                        logger.info(
                            "%s feed: %s (%s)",
                            "Enabled" if source.is_active else "Disabled",
                            source.name, source.feed_type,
                        )
            outcome[domain] = winner.id
        return outcome

    def feed_priorities(self) -> dict[str, object]:
        """Summarize sources grouped by website host for inspection."""
        groups: dict[str, list[dict[str, object]]] = {}
        sources = self.list_sources()
        for source in sources:
            host = urlparse(source.website_url).hostname if source.website_url else None
            groups.setdefault(host or "unknown", []).append(
                {
                    "id": source.id,
                    "name": source.name,
                    "feedType": source.feed_type,
                    "priority": feed_priority(source),
                    "isActive": source.is_active,
                    "city": source.city,
                    "state": source.state,
                }
            )
        return {
            "domainGroups": groups,
            "totalSources": len(sources),
            "activeSources": sum(1 for s in sources if s.is_active),
        }
