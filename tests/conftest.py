"""Shared pytest fixtures for the family outings tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import pytest

from servers.outings_mcp.models import (
    BoundingBox,
    GeocodeHit,
    KidAllowed,
    NormalizedEvent,
    Place,
)
from servers.outings_mcp.sources.http import HttpFetcher
from servers.outings_mcp.store import MemoryStore

# A Monday afternoon in Portland (UTC)
NOW = datetime(2025, 6, 2, 19, 0, tzinfo=timezone.utc)

PORTLAND = GeocodeHit(
    lat=45.5152,
    lon=-122.6784,
    bbox=BoundingBox(min_lon=-122.84, min_lat=45.43, max_lon=-122.47, max_lat=45.65),
    place_type="city",
)


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore(clock=lambda: NOW)


@pytest.fixture
def portland() -> GeocodeHit:
    return PORTLAND


@pytest.fixture
def make_event() -> Callable[..., NormalizedEvent]:
    """Factory for events around downtown Portland."""
    counter = {"n": 0}

    def factory(**overrides: Any) -> NormalizedEvent:
        counter["n"] += 1
        fields = {
            "source": "ics:calendar.example.org",
            "external_id": f"evt-{counter['n']}",
            "title": f"Family Story Time {counter['n']}",
            "start_utc": NOW + timedelta(days=1, hours=counter["n"]),
            "venue_name": "Central Library",
            "address": "801 SW 10th Ave, Portland, OR 97205",
            "city": "Portland",
            "state": "OR",
            "lat": 45.5190,
            "lon": -122.6829,
            "kid_allowed": KidAllowed.TRUE,
        }
        fields.update(overrides)
        return NormalizedEvent(**fields)

    return factory


@pytest.fixture
def make_place() -> Callable[..., Place]:
    counter = {"n": 0}

    def factory(**overrides: Any) -> Place:
        counter["n"] += 1
        fields = {
            "source": "osm",
            "external_id": f"node/{counter['n']}",
            "name": f"Neighborhood Playground {counter['n']}",
            "category": "playground",
            "lat": 45.52,
            "lon": -122.68,
            "kid_allowed": KidAllowed.TRUE,
        }
        fields.update(overrides)
        return Place(**fields)

    return factory


@pytest.fixture
def make_fetcher() -> Callable[..., HttpFetcher]:
    """Provide HttpFetchers answered by a handler, recording retry sleeps."""

    def factory(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> HttpFetcher:
        sleeps: list[float] = []

        async def record_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        fetcher = HttpFetcher(
            transport=httpx.MockTransport(handler),
            sleep=record_sleep,
            **kwargs,
        )
        fetcher.sleeps = sleeps
        return fetcher

    return factory


SAMPLE_ICS = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Portland Parks//Calendar//EN
X-WR-TIMEZONE:America/Los_Angeles
BEGIN:VEVENT
UID:storytime-001@example.org
SUMMARY:Toddler Story Time
DESCRIPTION:Songs and stories for toddlers and their parents.
DTSTART;TZID=America/Los_Angeles:20250603T103000
DTEND;TZID=America/Los_Angeles:20250603T113000
LOCATION:Central Library, 801 SW 10th Ave, Portland, OR 97205
CATEGORIES:Kids,Library
END:VEVENT
BEGIN:VEVENT
UID:trivia-21@example.org
SUMMARY:21+ Family Trivia Night
DESCRIPTION:Pub trivia for grown ups.
DTSTART;TZID=America/Los_Angeles:20250605T190000
DTEND;TZID=America/Los_Angeles:20250605T210000
LOCATION:Lucky Lab, 915 SE Hawthorne Blvd, Portland, OR 97214
END:VEVENT
BEGIN:VEVENT
UID:july4-holiday@example.org
SUMMARY:Independence Day
DTSTART;VALUE=DATE:20250704
DTEND;VALUE=DATE:20250705
END:VEVENT
BEGIN:VEVENT
UID:july4-fireworks@example.org
SUMMARY:Independence Day Fireworks
DESCRIPTION:Bring the whole family to watch the fireworks over the river.
DTSTART;TZID=America/Los_Angeles:20250704T213000
DTEND;TZID=America/Los_Angeles:20250704T223000
LOCATION:Tom McCall Waterfront Park, Portland, OR
END:VEVENT
BEGIN:VEVENT
UID:old-event@example.org
SUMMARY:Spring Egg Hunt Recap
DTSTART;TZID=America/Los_Angeles:20240401T100000
DTEND;TZID=America/Los_Angeles:20240401T120000
LOCATION:Laurelhurst Park, Portland, OR
END:VEVENT
BEGIN:VEVENT
UID:nowhere@example.org
SUMMARY:Online Craft Hour
DTSTART;TZID=America/Los_Angeles:20250610T160000
DTEND;TZID=America/Los_Angeles:20250610T170000
LOCATION:United States
END:VEVENT
END:VCALENDAR
"""


@pytest.fixture
def sample_ics() -> str:
    return SAMPLE_ICS
