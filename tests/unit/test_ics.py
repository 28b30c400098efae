"""Tests for the calendar feed adapter and normalizer."""

from datetime import date, datetime, timezone

import httpx
import pytest

from servers.outings_mcp.errors import PermanentUpstreamError, SSRFError
from servers.outings_mcp.models import Feed, KidAllowed
from servers.outings_mcp.normalizer import NormalizationError
from servers.outings_mcp.sources.ics import (
    IcsAdapter,
    IcsNormalizer,
    feed_source,
    parse_calendar,
    split_location,
)

FEED = Feed(url="https://calendar.example.org/events.ics", label="Parks", city="Portland", state="OR")


class TestParseCalendar:
    """Tests for parse_calendar."""

    def test_parses_vevents(self, sample_ics):
        raw = parse_calendar(sample_ics)
        assert len(raw) == 6
        first = raw[0]
        assert first["uid"] == "storytime-001@example.org"
        assert first["summary"] == "Toddler Story Time"
        assert first["categories"] == ["Kids", "Library"]
        assert first["calendar_tz"] == "America/Los_Angeles"

    def test_date_only_value(self, sample_ics):
        holiday = next(r for r in parse_calendar(sample_ics) if r["uid"] == "july4-holiday@example.org")
        assert holiday["dtstart"] == date(2025, 7, 4)

    def test_malformed_payload(self):
        with pytest.raises(PermanentUpstreamError):
            parse_calendar("<html><body>Not Found</body></html>")


class TestSplitLocation:
    """Tests for LOCATION splitting."""

    def test_venue_street_city_state_zip(self):
        parts = split_location("Central Library, 801 SW 10th Ave, Portland, OR 97205")
        assert parts == {
            "venue_name": "Central Library",
            "city": "Portland",
            "state": "OR",
            "postal_code": "97205",
        }

    def test_street_is_not_venue(self):
        parts = split_location("801 SW 10th Ave, Portland, OR")
        assert parts["venue_name"] is None
        assert parts["city"] == "Portland"

    def test_bare_name(self):
        assert split_location("United States")["city"] is None
        assert split_location(None)["venue_name"] is None


class TestIcsNormalizer:
    """Tests for IcsNormalizer."""

    def _raw(self, sample_ics, uid):
        return next(r for r in parse_calendar(sample_ics) if r["uid"] == uid)

    def test_normalizes_timed_event(self, sample_ics):
        event = IcsNormalizer(FEED).normalize(self._raw(sample_ics, "storytime-001@example.org"))

        assert event.source == "ics:calendar.example.org"
        assert event.external_id == "storytime-001@example.org"
        assert event.start_utc == datetime(2025, 6, 3, 17, 30, tzinfo=timezone.utc)
        assert event.end_utc == datetime(2025, 6, 3, 18, 30, tzinfo=timezone.utc)
        assert event.all_day is False
        assert event.venue_name == "Central Library"
        assert event.city == "Portland"
        assert event.kid_allowed == KidAllowed.TRUE
        assert event.tags == ["ics", "kids", "library", "parks"]

    def test_date_only_is_all_day(self, sample_ics):
        event = IcsNormalizer(FEED).normalize(self._raw(sample_ics, "july4-holiday@example.org"))
        assert event.all_day is True
        assert event.start_utc == datetime(2025, 7, 4, 7, 0, tzinfo=timezone.utc)

    def test_adult_event_classified_false(self, sample_ics):
        event = IcsNormalizer(FEED).normalize(self._raw(sample_ics, "trivia-21@example.org"))
        assert event.kid_allowed == KidAllowed.FALSE

    def test_feed_city_fills_gaps(self, sample_ics):
        """Feed city/state fill in when LOCATION has none."""
        event = IcsNormalizer(FEED).normalize(self._raw(sample_ics, "nowhere@example.org"))
        assert (event.city, event.state) == ("Portland", "OR")

    def test_missing_uid_gets_stable_id(self):
        raw = {"summary": "Park Cleanup", "dtstart": datetime(2025, 6, 10, 9, 0)}
        normalizer = IcsNormalizer(FEED)
        assert normalizer.normalize(raw).external_id == normalizer.normalize(dict(raw)).external_id

    def test_recurrence_id_distinguishes_occurrences(self):
        base = {"uid": "weekly@example.org", "summary": "Story Time", "dtstart": datetime(2025, 6, 10, 10, 0)}
        moved = dict(base, recurrence_id=datetime(2025, 6, 17, 10, 0), dtstart=datetime(2025, 6, 18, 10, 0))

        normalizer = IcsNormalizer(FEED)
        assert normalizer.normalize(base).external_id != normalizer.normalize(moved).external_id

    def test_missing_start_raises(self):
        with pytest.raises(NormalizationError):
            IcsNormalizer(FEED).normalize({"uid": "x", "summary": "No start"})


class TestIcsAdapter:
    """Tests for IcsAdapter."""

    def test_feed_source(self):
        assert feed_source("https://Calendar.Example.org/a.ics") == "ics:calendar.example.org"

    @pytest.mark.asyncio
    async def test_fetches_webcal_as_https(self, make_fetcher, sample_ics):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, text=sample_ics)

        adapter = IcsAdapter(make_fetcher(handler), resolve_dns=False)
        raw = await adapter.fetch(Feed(url="webcal://calendar.example.org/events.ics"))

        assert len(raw) == 6
        assert seen == ["https://calendar.example.org/events.ics"]

    @pytest.mark.asyncio
    async def test_refuses_private_address(self, make_fetcher):
        adapter = IcsAdapter(make_fetcher(lambda r: httpx.Response(200)), resolve_dns=False)
        with pytest.raises(SSRFError):
            await adapter.fetch(Feed(url="http://192.168.1.10/events.ics"))
