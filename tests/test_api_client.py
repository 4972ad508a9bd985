import os
import sys
from datetime import datetime
from unittest.mock import Mock, patch

# Ensure the project root is on the import path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ingest.api_client import ApiEventStore
from ingest.schemas import Event

BASE_URL = "http://backend.test/api/v1"

EXISTING = {
    "id": 7,
    "title": "Select Board",
    "description": "",
    "category": "Community & Social",
    "location": "Town Hall",
    "organizer": "Needham",
    "start_date": "2026-06-01T19:00:00",
    "end_date": "2026-06-01T21:00:00",
    "start_time": "7:00 PM",
    "end_time": "9:00 PM",
    "source": "needham-town",
}


def make_event(title):
    return Event.from_dict({**EXISTING, "id": None, "title": title})


def json_response(payload):
    resp = Mock()
    resp.raise_for_status = lambda: None
    resp.json.return_value = payload
    return resp


def test_add_if_absent_skips_events_the_backend_has():
    store = ApiEventStore(BASE_URL)
    with patch(
        "ingest.api_client.requests.get", return_value=json_response({"results": [EXISTING]})
    ) as mock_get, patch(
        "ingest.api_client.requests.post", return_value=json_response({"id": 8})
    ) as mock_post:
        assert store.add_if_absent(make_event("Select Board")) is None
        stored = store.add_if_absent(make_event("Budget Hearing"))
        assert store.add_if_absent(make_event("Budget Hearing")) is None

    assert stored.id == 8
    assert mock_get.call_count == 1
    assert mock_post.call_count == 1
    args, kwargs = mock_post.call_args
    assert args[0] == f"{BASE_URL}/events/"
    assert kwargs["json"]["title"] == "Budget Hearing"
    assert kwargs["json"]["start_date"] == "2026-06-01T19:00:00"


def test_token_is_sent_when_configured(monkeypatch):
    monkeypatch.setenv("API_TOKEN", "secret")
    with patch("ingest.api_client.requests.get", return_value=json_response([])) as mock_get:
        assert ApiEventStore(BASE_URL).get_all_events() == []
    _args, kwargs = mock_get.call_args
    assert kwargs["headers"]["Authorization"] == "Bearer secret"


def test_get_event_by_id():
    with patch(
        "ingest.api_client.requests.get", return_value=json_response({"events": [EXISTING]})
    ):
        store = ApiEventStore(BASE_URL)
        event = store.get_event("7")
        assert event.start_date == datetime(2026, 6, 1, 19, 0)
        assert store.get_event("99") is None
