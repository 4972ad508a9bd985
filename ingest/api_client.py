"""Client for pushing collected events to a remote events backend."""
from __future__ import annotations

import logging
import os
import threading
from typing import Any

import requests

from . import settings
from .event_store import EventFilter, filter_events
from .schemas import Event

logger = logging.getLogger(__name__)


def _make_headers() -> dict[str, str]:
    """Return headers for API requests, including the auth token if set."""
    token = os.getenv("API_TOKEN")
    headers: dict[str, str] = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _log_request(method: str, url: str, payload: Any | None = None) -> None:
    """Log details about an outgoing HTTP request."""
    logger.info("%s %s", method.upper(), url)
    if payload is not None:
        logger.info("Payload: %s", payload)


def post_event(event: dict[str, Any], base_url: str = settings.API_BASE_URL) -> dict[str, Any]:
    """Post an event dictionary to the events backend."""
    url = f"{base_url}/events/"
    _log_request("post", url, event)
    response = requests.post(url, json=event, headers=_make_headers(), timeout=30)
    response.raise_for_status()
    return response.json()


def fetch_events(base_url: str = settings.API_BASE_URL) -> list[dict[str, Any]]:
    """Return every event the backend currently holds."""
    url = f"{base_url}/events/"
    _log_request("get", url)
    response = requests.get(url, headers=_make_headers(), timeout=30)
    response.raise_for_status()
    data = response.json()
    if isinstance(data, dict):
        data = data.get("results") or data.get("events") or []
    return data


class ApiEventStore:
    """Event store that forwards new events to the remote backend.

    Dedup keys are loaded from the backend once and then kept locally, so
    repeated syncs in one process do not re-read the full event list.
    """

    def __init__(self, base_url: str = settings.API_BASE_URL) -> None:
        self.base_url = base_url
        self._keys: set[tuple] | None = None
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()

    def get_all_events(self) -> list[Event]:
        return [Event.from_dict(item) for item in fetch_events(self.base_url)]

    def get_filtered_events(self, filters: EventFilter) -> list[Event]:
        return filter_events(self.get_all_events(), filters)

    def get_event(self, event_id: str) -> Event | None:
        return next((e for e in self.get_all_events() if str(e.id) == event_id), None)

    def dedup_keys(self) -> set[tuple]:
        with self._lock:
            if self._keys is None:
                self._keys = {e.dedup_key() for e in self.get_all_events()}
            return set(self._keys)

    def create_event(self, event: Event) -> Event:
        result = post_event(event.to_dict(), self.base_url)
        stored = Event.from_dict({**event.to_dict(), **result})
        with self._lock:
            if self._keys is not None:
                self._keys.add(event.dedup_key())
        return stored

    def add_if_absent(self, event: Event) -> Event | None:
        with self._write_lock:
            if event.dedup_key() in self.dedup_keys():
                return None
            return self.create_event(event)
