"""
Calendar feed (iCalendar / .ics) adapter.

The adapter fetches and parses one feed into raw VEVENT dicts; the
normalizer turns each into a NormalizedEvent with source ``ics:<host>``.
"""

import hashlib
import re
from datetime import date, datetime, time, timedelta
from typing import Any, Optional
from urllib.parse import urlparse

import structlog
from dateutil import tz
from icalendar import Calendar

from ..errors import PermanentUpstreamError
from ..models import Feed, NormalizedEvent
from ..normalizer import NormalizationError, Normalizer, build_event, is_all_day, to_utc
from .http import HttpFetcher
from .url_validator import validate_feed_url

logger = structlog.get_logger()

# "Venue, 123 Main St, Portland, OR 97201"
CITY_STATE_ZIP_RE = re.compile(
    r"(?:^|,)\s*([A-Za-z][A-Za-z .'-]+?)\s*,\s*([A-Z]{2})(?:\s+(\d{5})(?:-\d{4})?)?\s*(?:,\s*(?:USA|US|United States))?\s*$"
)
STREET_RE = re.compile(r"^\s*\d+\s+\w")


def feed_source(url: str) -> str:
    host = urlparse(url).hostname or "ics"
    return f"ics:{host.lower()}"


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _categories(value: Any) -> list[str]:
    if value is None:
        return []
    values = value if isinstance(value, list) else [value]
    out: list[str] = []
    for v in values:
        cats = getattr(v, "cats", None)
        if cats is None:
            out.extend(c.strip() for c in str(v).split(","))
        else:
            out.extend(str(c) for c in cats)
    return [c for c in out if c]


def parse_calendar(text: str | bytes) -> list[dict[str, Any]]:
    """Parse calendar text into raw VEVENT dicts.

    Raises:
        PermanentUpstreamError: If the payload is not a calendar
    """
    try:
        cal = Calendar.from_ical(text)
    except (ValueError, IndexError, KeyError) as e:
        raise PermanentUpstreamError(f"Malformed calendar: {e}") from e

    calendar_tz = _text(cal.get("X-WR-TIMEZONE"))
    raw_events = []
    for comp in cal.walk("VEVENT"):
        dtstart = comp.get("dtstart")
        dtend = comp.get("dtend")
        recurrence = comp.get("recurrence-id")
        geo = comp.get("geo")
        raw_events.append({
            "uid": _text(comp.get("uid")),
            "recurrence_id": recurrence.dt if recurrence is not None else None,
            "summary": _text(comp.get("summary")),
            "description": _text(comp.get("description")),
            "location": _text(comp.get("location")),
            "url": _text(comp.get("url")),
            "categories": _categories(comp.get("categories")),
            "dtstart": dtstart.dt if dtstart is not None else None,
            "dtend": dtend.dt if dtend is not None else None,
            "lat": getattr(geo, "latitude", None),
            "lon": getattr(geo, "longitude", None),
            "calendar_tz": calendar_tz,
        })
    return raw_events


def split_location(location: Optional[str]) -> dict[str, Optional[str]]:
    """Split a free-text LOCATION into venue, city, state and postal code."""
    result: dict[str, Optional[str]] = {
        "venue_name": None, "city": None, "state": None, "postal_code": None,
    }
    if not location:
        return result

    match = CITY_STATE_ZIP_RE.search(location)
    if match:
        result["city"] = match.group(1).strip()
        result["state"] = match.group(2)
        result["postal_code"] = match.group(3)

    first = location.split(",")[0].strip()
    # A bare street address is not a venue name
    if "," in location and first and not STREET_RE.match(first) and first != result["city"]:
        result["venue_name"] = first
    return result


class IcsAdapter:
    """Fetches one calendar feed."""

    def __init__(self, fetcher: HttpFetcher, resolve_dns: bool = True):
        self.fetcher = fetcher
        self.resolve_dns = resolve_dns

    async def fetch(self, feed: Feed) -> list[dict[str, Any]]:
        url = validate_feed_url(feed.url, resolve_dns=self.resolve_dns)
        text = await self.fetcher.get_text(url)
        raw = parse_calendar(text)
        logger.debug("ics_parsed", url=url, vevents=len(raw))
        return raw


class IcsNormalizer(Normalizer[NormalizedEvent]):
    """VEVENT dict -> NormalizedEvent.

    Floating times use the calendar's X-WR-TIMEZONE, then ``default_tz``.
    Feed city/state only fill fields the event leaves empty.
    """

    def __init__(self, feed: Feed, default_tz: str = "America/Los_Angeles"):
        self.feed = feed
        self.default_tz = default_tz
        self.source = feed_source(feed.url)

    def _localize(self, value: date | datetime, zone_name: Optional[str]) -> datetime:
        if not isinstance(value, datetime):
            value = datetime.combine(value, time.min)
        if value.tzinfo is None:
            value = value.replace(tzinfo=tz.gettz(zone_name or self.default_tz))
        return value

    def normalize(self, raw: dict[str, Any]) -> NormalizedEvent:
        dtstart = raw.get("dtstart")
        if dtstart is None:
            raise NormalizationError("VEVENT has no DTSTART")

        zone_name = raw.get("calendar_tz") or self.default_tz
        date_only = not isinstance(dtstart, datetime)
        local_start = self._localize(dtstart, zone_name)

        dtend = raw.get("dtend")
        if dtend is not None:
            local_end = self._localize(dtend, zone_name)
        elif date_only:
            local_end = local_start + timedelta(days=1)
        else:
            local_end = None

        all_day = date_only or is_all_day(local_start, local_end)
        title = raw.get("summary") or "Untitled"

        external_id = raw.get("uid")
        if not external_id:
            seed = f"{title}-{local_start.isoformat()}"
            external_id = hashlib.sha1(seed.encode()).hexdigest()[:16]
        if raw.get("recurrence_id") is not None:
            external_id = f"{external_id}#{to_utc(raw['recurrence_id'], zone_name).isoformat()}"

        location = raw.get("location")
        parts = split_location(location)
        city = parts["city"] or self.feed.city
        state = parts["state"] or self.feed.state

        tags = ["ics", *(raw.get("categories") or [])]
        if self.feed.label:
            tags.append(self.feed.label)

        return build_event(
            source=self.source,
            external_id=external_id,
            title=title,
            description=raw.get("description"),
            start_utc=to_utc(local_start),
            end_utc=to_utc(local_end) if local_end else None,
            all_day=all_day,
            venue_name=parts["venue_name"],
            address=location,
            city=city,
            state=state,
            postal_code=parts["postal_code"],
            lat=raw.get("lat"),
            lon=raw.get("lon"),
            tags=tags,
            source_url=raw.get("url") or self.feed.url,
        )
