"""Shared data models for the collector service."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

SOURCE_TYPES = ("city", "school", "chamber", "library", "parks")
FEED_TYPES = ("ical", "rss", "webcal", "json", "html")
VALIDATION_STATUSES = (
    "valid",
    "parked",
    "expired",
    "redirect",
    "error",
    "timeout",
    "maintenance",
)

CATEGORIES = (
    "Music & Concerts",
    "Sports & Recreation",
    "Community & Social",
    "Education & Learning",
    "Arts & Culture",
    "Food & Dining",
    "Holiday",
    "Business & Networking",
    "Health & Wellness",
    "Family & Kids",
)

# Higher wins when several feeds cover the same city or domain.
FEED_TYPE_PRIORITY = {"ical": 5, "webcal": 4, "rss": 3, "json": 2, "html": 1}


@dataclass
class CalendarSource:
    """A registered, toggle-able calendar feed."""

    id: str
    name: str
    city: str
    state: str
    type: str
    feed_url: str
    feed_type: str
    website_url: Optional[str] = None
    is_active: bool = True
    last_sync: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalendarSource":
        """Build a source from a catalog entry, accepting camelCase keys too."""
        last_sync = data.get("last_sync", data.get("lastSync"))
        if isinstance(last_sync, str):
            last_sync = datetime.fromisoformat(last_sync)
        return cls(
            id=data["id"],
            name=data["name"],
            city=data["city"],
            state=data["state"],
            type=data["type"],
            feed_url=data.get("feed_url", data.get("feedUrl", "")),
            feed_type=data.get("feed_type", data.get("feedType", "html")),
            website_url=data.get("website_url", data.get("websiteUrl")),
            is_active=data.get("is_active", data.get("isActive", True)),
            last_sync=last_sync,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_sync"] = self.last_sync.isoformat() if self.last_sync else None
        return data

    @property
    def location(self) -> str:
        return f"{self.city}, {self.state}"


@dataclass
class DiscoveredFeedCandidate:
    """An unsaved source proposed by discovery, with its confidence."""

    source: CalendarSource
    confidence: float
    last_checked: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.to_dict(),
            "confidence": round(self.confidence, 2),
            "lastChecked": self.last_checked.isoformat(),
        }


@dataclass
class Event:
    """Normalized event, independent of the feed format it came from."""

    title: str
    description: str
    category: str
    location: str
    organizer: str
    start_date: datetime
    end_date: datetime
    start_time: str
    end_time: str
    source: str
    attendees: int = 0
    image_url: Optional[str] = None
    is_free: bool = True
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        values = dict(data)
        for key in ("start_date", "end_date"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in values.items() if k in known})

    def dedup_key(self) -> tuple[str, str, str, str, str]:
        """Identity used to keep the same occurrence from being stored twice."""
        return (
            self.title,
            self.location,
            self.organizer,
            self.source,
            self.start_date.date().isoformat(),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data


@dataclass
class WebsiteValidation:
    """Classification of a single website fetch."""

    is_valid: bool
    status: str
    actual_url: Optional[str] = None
    title: Optional[str] = None
    error: Optional[str] = None
    content_length: Optional[int] = None
    has_valid_content: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "isValid": self.is_valid,
            "status": self.status,
            "actualUrl": self.actual_url,
            "title": self.title,
            "error": self.error,
            "contentLength": self.content_length,
            "hasValidContent": self.has_valid_content,
        }
        return {k: v for k, v in data.items() if v is not None}
