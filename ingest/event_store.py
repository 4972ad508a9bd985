"""In-process event storage used by the API and the sync jobs."""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional

from .schemas import Event


@dataclass
class EventFilter:
    """Query options for :meth:`MemoryEventStore.get_filtered_events`."""

    search: Optional[str] = None
    categories: Optional[list[str]] = None
    location: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_free: Optional[bool] = None


def filter_events(events: list[Event], filters: EventFilter) -> list[Event]:
    if filters.search:
        term = filters.search.lower()
        events = [
            e for e in events
            if term in e.title.lower()
            or term in e.description.lower()
            or term in e.organizer.lower()
        ]
    if filters.categories:
        events = [e for e in events if e.category in filters.categories]
    if filters.location:
        loc = filters.location.lower()
        events = [e for e in events if loc in e.location.lower()]
    if filters.start_date:
        events = [e for e in events if e.start_date >= filters.start_date]
    if filters.end_date:
        events = [e for e in events if e.start_date <= filters.end_date]
    if filters.is_free is not None:
        events = [e for e in events if e.is_free == filters.is_free]
    return events


class MemoryEventStore:
    """Thread-safe dictionary of events keyed by generated id.

    The store also indexes events by their dedup key so that
    :meth:`add_if_absent` can check and insert atomically.
    """

    def __init__(self) -> None:
        self._events: dict[str, Event] = {}
        self._keys: dict[tuple, str] = {}
        self._lock = threading.RLock()

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            return self._events.get(event_id)

    def get_all_events(self) -> list[Event]:
        with self._lock:
            return sorted(self._events.values(), key=lambda e: e.start_date)

    def get_filtered_events(self, filters: EventFilter) -> list[Event]:
        return filter_events(self.get_all_events(), filters)

    def get_events_by_date_range(self, start: datetime, end: datetime) -> list[Event]:
        return [e for e in self.get_all_events() if start <= e.start_date <= end]

    def get_events_by_category(self, category: str) -> list[Event]:
        return [e for e in self.get_all_events() if e.category == category]

    def dedup_keys(self) -> set[tuple]:
        with self._lock:
            return set(self._keys)

    def create_event(self, event: Event) -> Event:
        with self._lock:
            stored = replace(event, id=event.id or str(uuid.uuid4()))
            self._events[stored.id] = stored
            self._keys[stored.dedup_key()] = stored.id
            return stored

    def add_if_absent(self, event: Event) -> Event | None:
        """Insert ``event`` unless one with the same dedup key exists."""
        with self._lock:
            if event.dedup_key() in self._keys:
                return None
            return self.create_event(event)

    def update_event(self, event_id: str, changes: dict[str, Any]) -> Event | None:
        with self._lock:
            current = self._events.get(event_id)
            if current is None:
                return None
            changes = {k: v for k, v in changes.items() if k != "id"}
            updated = replace(current, **changes)
            self._keys.pop(current.dedup_key(), None)
            self._events[event_id] = updated
            self._keys[updated.dedup_key()] = event_id
            return updated

    def delete_event(self, event_id: str) -> bool:
        with self._lock:
            event = self._events.pop(event_id, None)
            if event is None:
                return False
            if self._keys.get(event.dedup_key()) == event_id:
                del self._keys[event.dedup_key()]
            return True

    def clear_all_events(self) -> None:
        with self._lock:
            self._events.clear()
            self._keys.clear()
