import json
import os
import sys
from datetime import datetime, timedelta

import pytest

# Ensure the project root is on the import path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ingest.schemas import CATEGORIES, CalendarSource
from scrapers.feed_parsers import (
    FeedParseError,
    parse_html,
    parse_ical,
    parse_json,
    parse_rss,
)

NOW = datetime.now().replace(microsecond=0)
SOON = (NOW + timedelta(days=10)).replace(hour=19, minute=0, second=0)
LATER = (NOW + timedelta(days=20)).replace(hour=9, minute=30, second=0)
PAST = (NOW - timedelta(days=10)).replace(hour=18, minute=0, second=0)


def ical_stamp(dt):
    return dt.strftime("%Y%m%dT%H%M%S")


SOURCE = CalendarSource(
    id="needham-town",
    name="Needham Town Calendar",
    city="Needham",
    state="MA",
    type="city",
    feed_url="https://www.needhamma.gov/calendar.ics",
    feed_type="ical",
    website_url="https://www.needhamma.gov",
)


def make_ical(*events):
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Needham//Calendar//EN"]
    for summary, start, extra in events:
        lines += ["BEGIN:VEVENT", f"SUMMARY:{summary}", f"DTSTART:{ical_stamp(start)}"]
        lines += extra
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines)


def test_ical_keeps_upcoming_events_sorted_with_defaults():
    text = make_ical(
        ("Library Story Time", LATER, ["DESCRIPTION:Free stories for kids"]),
        ("Old Meeting", PAST, []),
        (
            "Select Board Meeting",
            SOON,
            [f"DTEND:{ical_stamp(SOON + timedelta(hours=2))}", "LOCATION:Town Hall\\, Room 1"],
        ),
    )
    events = parse_ical(text, SOURCE, now=NOW)

    assert [e.title for e in events] == ["Select Board Meeting", "Library Story Time"]
    meeting, story = events
    assert meeting.location == "Town Hall, Room 1"
    assert meeting.end_date == SOON + timedelta(hours=2)
    assert meeting.start_time == "7:00 PM"
    assert meeting.category == "Community & Social"
    assert story.location == "Needham, MA"
    assert story.organizer == "Needham Town Calendar"
    assert story.end_date == story.start_date + timedelta(hours=1)
    assert story.is_free
    assert story.source == "needham-town"


def test_ical_unfolds_long_lines_and_reads_date_only_values():
    day = (NOW + timedelta(days=5)).date()
    text = (
        "BEGIN:VCALENDAR\r\nBEGIN:VEVENT\r\n"
        "SUMMARY:Annual Harvest\r\n  Festival\r\n"
        f"DTSTART;VALUE=DATE:{day:%Y%m%d}\r\n"
        "END:VEVENT\r\nEND:VCALENDAR\r\n"
    )
    (event,) = parse_ical(text, SOURCE, now=NOW)
    assert event.title == "Annual Harvest Festival"
    assert event.start_date == datetime(day.year, day.month, day.day)
    assert event.category == "Holiday"


def test_ical_limits_to_max_events():
    events = [(f"Event {i}", SOON + timedelta(days=i), []) for i in range(15)]
    parsed = parse_ical(make_ical(*events), SOURCE, now=NOW, limit=10)
    assert len(parsed) == 10
    assert parsed[0].title == "Event 0"


def test_ical_rejects_non_calendar_payload():
    with pytest.raises(FeedParseError):
        parse_ical("<html><body>Calendar</body></html>", SOURCE, now=NOW)


def test_rss_items_become_events():
    pub = (NOW + timedelta(days=3)).strftime("%a, %d %b %Y %H:%M:%S +0000")
    text = f"""<?xml version="1.0"?>
    <rss version="2.0"><channel><title>Needham News</title>
      <item><title>Town Meeting</title><description>&lt;b&gt;Annual&lt;/b&gt; town meeting</description>
        <pubDate>{pub}</pubDate></item>
      <item><title>Concert on the Common</title><description>Free summer music</description>
        <pubDate>{pub}</pubDate></item>
    </channel></rss>"""
    events = parse_rss(text, SOURCE)

    assert [e.title for e in events] == ["Town Meeting", "Concert on the Common"]
    assert events[0].description == "Annual town meeting"
    assert events[0].end_date - events[0].start_date == timedelta(hours=2)
    assert events[1].category == "Music & Concerts"
    assert events[1].is_free


def test_rss_rejects_non_feed_payload():
    with pytest.raises(FeedParseError):
        parse_rss("just some text, not a feed", SOURCE)


def test_json_feed_with_events_key():
    payload = {
        "events": [
            {
                "name": "Farmers Market",
                "start": SOON.isoformat(),
                "summary": "Local food and produce",
                "price": 0,
                "image": "https://example.gov/market.jpg",
                "attendees": "40",
            },
            {"title": "No date here"},
            {
                "title": "Chamber Networking Breakfast",
                "start_date": LATER.isoformat(),
                "end_date": (LATER + timedelta(hours=1)).isoformat(),
                "location": "Needham Golf Club",
                "is_free": False,
            },
        ]
    }
    events = parse_json(json.dumps(payload), SOURCE)

    assert len(events) == 2
    market, breakfast = events
    assert market.title == "Farmers Market"
    assert market.is_free
    assert market.attendees == 40
    assert market.image_url == "https://example.gov/market.jpg"
    assert market.category == "Food & Dining"
    assert breakfast.location == "Needham Golf Club"
    assert not breakfast.is_free
    assert breakfast.category == "Business & Networking"
    assert breakfast.end_date == LATER + timedelta(hours=1)


def test_json_top_level_list_and_bad_shapes():
    events = parse_json([{"title": "Wellness Yoga in the Park", "date": SOON.isoformat()}], SOURCE)
    assert events[0].category == "Health & Wellness"

    with pytest.raises(FeedParseError):
        parse_json({"results": []}, SOURCE)
    with pytest.raises(FeedParseError):
        parse_json("{not json", SOURCE)


def test_html_prefers_jsonld_events():
    html = (
        '<html><body><script type="application/ld+json">'
        + json.dumps(
            [
                {
                    "@type": "Event",
                    "name": "Art Walk",
                    "startDate": SOON.isoformat(),
                    "location": {"@type": "Place", "name": "Needham Center"},
                    "offers": {"price": "0"},
                },
                {"@type": "Event", "name": "Past Parade", "startDate": PAST.isoformat()},
            ]
        )
        + "</script></body></html>"
    )
    (event,) = parse_html(html, SOURCE, now=NOW)
    assert event.title == "Art Walk"
    assert event.location == "Needham Center"
    assert event.is_free
    assert event.category == "Arts & Culture"


def test_html_falls_back_to_event_blocks():
    html = f"""
    <html><body><ul>
      <div class="event-item">
        <h3>Youth Soccer Tournament</h3>
        <span class="date">{SOON:%B} {SOON.day}, {SOON.year} 10:00 am</span>
        <span class="location">Memorial Park</span>
      </div>
      <div class="event-item">
        <h3>Old Event</h3>
        <span class="date">{PAST:%m/%d/%Y}</span>
      </div>
    </ul></body></html>
    """
    (event,) = parse_html(html, SOURCE, now=NOW)
    assert event.title == "Youth Soccer Tournament"
    assert event.start_date == SOON.replace(hour=10, minute=0)
    assert event.location == "Memorial Park"
    assert event.category == "Sports & Recreation"
    assert event.category in CATEGORIES


def test_ical_unescapes_backslashes_in_one_pass():
    text = make_ical(
        (
            "Share C:\\\\new folder",
            SOON,
            ["DESCRIPTION:Bring snacks\\; drinks\\, chairs\\nDoors at six"],
        )
    )
    (event,) = parse_ical(text, SOURCE, now=NOW)
    assert event.title == "Share C:\\new folder"
    assert event.description == "Bring snacks; drinks, chairs Doors at six"


def test_json_values_are_coerced_per_item():
    payload = {
        "events": [
            {"title": "Concert on the Common", "start": SOON.isoformat(), "is_free": "false"},
            {"title": ["not", "text"], "start": LATER.isoformat(), "is_free": "yes"},
            {"title": "Broken start", "start": {"when": "soon"}},
            {"title": "Bad attendees", "start": SOON.isoformat(), "attendees": "lots"},
        ]
    }
    concert, untitled, crowd = parse_json(payload, SOURCE)

    assert concert.is_free is False
    assert untitled.title == "Untitled event"
    assert untitled.is_free is True
    assert crowd.attendees == 0


def test_json_item_that_cannot_be_built_is_skipped(monkeypatch):
    import scrapers.feed_parsers as feed_parsers

    real_build = feed_parsers.build_event

    def build(source, title, *args, **kwargs):
        if title == "Explodes":
            raise TypeError("unsupported value")
        return real_build(source, title, *args, **kwargs)

    monkeypatch.setattr(feed_parsers, "build_event", build)
    payload = [
        {"title": "Explodes", "start": SOON.isoformat()},
        {"title": "Town Picnic", "start": LATER.isoformat()},
    ]
    (event,) = parse_json(payload, SOURCE)
    assert event.title == "Town Picnic"


GRID_NOW = datetime(2026, 10, 19, 9, 0)


def test_html_month_grid_cells_become_events():
    html = """
    <html><body>
      <table class="calendar">
        <caption>October 2026</caption>
        <tr><th>Sun</th><th>Mon</th><th>Tue</th><th>Wed</th>
            <th>Thu</th><th>Fri</th><th>Sat</th></tr>
        <tr>
          <td><span class="day-number">1</span></td>
          <td><span class="day-number">2</span></td>
          <td><span class="day-number">3</span></td>
          <td><span class="day-number">4</span></td>
          <td><span class="day-number">5</span> Harvest Fair</td>
          <td><span class="day-number">20</span>
            <div class="entry"><a href="/events/council">Council Meeting</a> 7:00 pm</div>
          </td>
          <td><span class="day-number">22</span> Yoga in the Park<br>9:30 am</td>
        </tr>
      </table>
    </body></html>
    """
    council, yoga = parse_html(html, SOURCE, now=GRID_NOW)

    assert council.title == "Council Meeting"
    assert council.start_date == datetime(2026, 10, 20, 19, 0)
    assert council.description == "Council Meeting 7:00 pm"
    assert yoga.title == "Yoga in the Park"
    assert yoga.start_date == datetime(2026, 10, 22, 9, 30)


def test_html_recurring_schedule_expands_to_upcoming_dates():
    html = """
    <html><body>
      <div class="event-item">
        <h3>Garden Club</h3>
        <p>Meets the first and third Tuesday of each month at 7 pm in the Library.</p>
      </div>
    </body></html>
    """
    events = parse_html(html, SOURCE, now=GRID_NOW)

    assert {e.title for e in events} == {"Garden Club"}
    assert [e.start_date for e in events] == [
        datetime(2026, 10, 20, 19, 0),
        datetime(2026, 11, 3, 19, 0),
        datetime(2026, 11, 17, 19, 0),
        datetime(2026, 12, 1, 19, 0),
        datetime(2026, 12, 15, 19, 0),
    ]
