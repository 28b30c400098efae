"""
Adaptive geo-radius search over events and places.

Radius policy:
- explicit radius: used exactly, never expanded
- otherwise start at 20 mi and grow by 5 mi while fewer than 10 results
  came back and the place-type cap (40 mi for a city/town, 50 otherwise)
  allows another step

Ranking (ascending):
1. inside the searched city's bounding box first
2. distance
3. events before places at equal distance
4. events by earliest start, places by category weight
5. id, for a stable order

Events page by an opaque (start_time, id) keyset cursor. Places are not
paged and only appear on the first page.
"""

import asyncio
import base64
import binascii
import json
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal, Optional, Union

import structlog
from dateutil import tz
from haversine import Unit, haversine

from .errors import SearchError
from .geocode import GeocodeResolver
from .models import CATEGORY_WEIGHTS, GeocodeHit, NormalizedEvent, Place, SearchItem, SearchPage
from .normalizer import join_segments, to_utc
from .store import GeoRow, Store

logger = structlog.get_logger()

METERS_PER_MILE = 1609.344

START_RADIUS_MI = 20.0
RADIUS_STEP_MI = 5.0
MIN_RESULTS = 10
CITY_CAP_MI = 40.0
DEFAULT_CAP_MI = 50.0

DEFAULT_LIMIT = 30
MAX_LIMIT = 100

NOTICE_ENTER_LOCATION = "Enter a city, state or ZIP"

RANGE_TOKENS = ("today", "weekend", "7d", "all")
RANGE_ALIASES = {"next-7-days": "7d", "next_7_days": "7d", "week": "7d"}

TypeFilter = Literal["events", "places", "all"]


def miles_to_meters(miles: float) -> float:
    return miles * METERS_PER_MILE


def meters_to_miles(meters: float) -> float:
    return meters / METERS_PER_MILE


def cap_for_place(place_type: Optional[str]) -> float:
    """City/town cores get a tighter cap."""
    t = (place_type or "").lower()
    if "city" in t or "town" in t:
        return CITY_CAP_MI
    return DEFAULT_CAP_MI


def next_radius(current_mi: float) -> float:
    return current_mi + RADIUS_STEP_MI


def format_miles(miles: float) -> str:
    return str(int(miles)) if float(miles).is_integer() else f"{miles:.1f}"


def clamp_limit(limit: Optional[int]) -> int:
    try:
        value = int(limit) if limit is not None else DEFAULT_LIMIT
    except (TypeError, ValueError):
        value = DEFAULT_LIMIT
    if value <= 0:
        value = DEFAULT_LIMIT
    return min(value, MAX_LIMIT)


def encode_cursor(start: datetime, event_id: int) -> str:
    payload = json.dumps({"start": start.isoformat(), "id": str(event_id)})
    return base64.urlsafe_b64encode(payload.encode()).decode()


def decode_cursor(raw: Optional[str]) -> Optional[tuple[datetime, int]]:
    """Decode a cursor. Anything malformed is treated as no cursor."""
    if not raw:
        return None
    try:
        padded = raw + "=" * (-len(raw) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
        start = to_utc(data["start"])
        return start, int(data["id"])
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError, OverflowError):
        logger.debug("cursor_invalid", cursor=raw[:32])
        return None


def resolve_range(
    token: Optional[str],
    now: datetime,
    tz_name: str = "America/Los_Angeles",
) -> tuple[Optional[datetime], Optional[datetime]]:
    """Named range -> UTC window, evaluated in the local zone.

    Raises:
        ValueError: For an unknown token
    """
    key = (token or "all").strip().lower()
    key = RANGE_ALIASES.get(key, key)
    if key not in RANGE_TOKENS:
        raise ValueError(f"Unknown range {token!r}; expected one of {', '.join(RANGE_TOKENS)}")

    zone = tz.gettz(tz_name) or timezone.utc
    local_now = now.astimezone(zone)
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)

    if key == "today":
        start, end = local_now, midnight + timedelta(days=1)
    elif key == "weekend":
        weekday = local_now.weekday()  # Monday=0
        if weekday >= 5:
            saturday = midnight - timedelta(days=weekday - 5)
            start = local_now
        else:
            saturday = midnight + timedelta(days=5 - weekday)
            start = saturday
        end = saturday + timedelta(days=2)
    elif key == "7d":
        start, end = local_now, local_now + timedelta(days=7)
    else:
        return now.astimezone(timezone.utc), None

    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def fallback_distance_mi(
    origin: GeocodeHit,
    lat: Optional[float],
    lon: Optional[float],
    stored_meters: Optional[float],
) -> Optional[float]:
    """Stored distance when usable, otherwise haversine from the origin."""
    if stored_meters is not None and math.isfinite(stored_meters) and stored_meters >= 0:
        return meters_to_miles(stored_meters)
    if lat is None or lon is None:
        return None
    return haversine((origin.lat, origin.lon), (lat, lon), unit=Unit.MILES)


def _event_item(row: GeoRow, origin: GeocodeHit) -> SearchItem:
    event: NormalizedEvent = row.record
    return SearchItem(
        type="event",
        id=str(event.id),
        title=event.title,
        subtitle=join_segments(event.venue_name, join_segments(event.city, event.state)),
        lat=event.lat,
        lon=event.lon,
        distance_mi=fallback_distance_mi(origin, event.lat, event.lon, row.distance_meters),
        in_city_bbox=row.in_city_bbox,
        kid_allowed=event.kid_allowed,
        start_utc=event.start_utc,
        end_utc=event.end_utc,
        slug=event.slug,
    )


def _place_item(row: GeoRow, origin: GeocodeHit) -> SearchItem:
    place: Place = row.record
    label = (place.subcategory or place.category).replace("_", " ").title()
    return SearchItem(
        type="place",
        id=str(place.id),
        title=place.name,
        subtitle=join_segments(label, place.city),
        lat=place.lat,
        lon=place.lon,
        distance_mi=fallback_distance_mi(origin, place.lat, place.lon, row.distance_meters),
        in_city_bbox=row.in_city_bbox,
        kid_allowed=place.kid_allowed,
        category=place.category,
        subcategory=place.subcategory,
    )


def rank_key(item: SearchItem) -> tuple:
    distance = item.distance_mi if item.distance_mi is not None else math.inf
    if item.type == "event":
        secondary: Union[float, datetime] = item.start_utc.timestamp() if item.start_utc else math.inf
        type_order = 0
    else:
        secondary = -CATEGORY_WEIGHTS.get(item.category or "place", 0)
        type_order = 1
    return (0 if item.in_city_bbox else 1, distance, type_order, secondary, item.id)


def rank_items(items: list[SearchItem]) -> list[SearchItem]:
    return sorted(items, key=rank_key)


class AdaptiveSearchEngine:
    """Geocode, expand the radius, merge both entity types, rank."""

    def __init__(
        self,
        store: Store,
        geocoder: GeocodeResolver,
        default_tz: str = "America/Los_Angeles",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.geocoder = geocoder
        self.default_tz = default_tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def window(
        self,
        start: Optional[str | datetime] = None,
        end: Optional[str | datetime] = None,
        range_token: Optional[str] = None,
    ) -> tuple[Optional[datetime], Optional[datetime]]:
        """Explicit start/end win over a range token."""
        if start is not None or end is not None:
            return to_utc(start, self.default_tz), to_utc(end, self.default_tz)
        return resolve_range(range_token, self._clock(), self.default_tz)

    async def _query(
        self,
        origin: GeocodeHit,
        radius_mi: float,
        window: tuple[Optional[datetime], Optional[datetime]],
        after: Optional[tuple[datetime, int]],
        limit: int,
        want_events: bool,
        want_places: bool,
    ) -> tuple[list[GeoRow], list[GeoRow], Optional[str]]:
        radius_m = miles_to_meters(radius_mi)
        labels: list[str] = []
        tasks = []
        if want_events:
            labels.append("events")
            tasks.append(self.store.search_events_geo(
                origin.lat, origin.lon, radius_m, window[0], window[1], limit,
                after=after, city_bbox=origin.bbox,
            ))
        if want_places:
            labels.append("places")
            tasks.append(self.store.search_places_geo(
                origin.lat, origin.lon, radius_m, limit, city_bbox=origin.bbox,
            ))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        rows: dict[str, list[GeoRow]] = {"events": [], "places": []}
        failed: list[str] = []
        for label, result in zip(labels, results):
            if isinstance(result, Exception):
                logger.warning("search_query_failed", entity=label, error=str(result))
                failed.append(label)
            else:
                rows[label] = result

        if labels and len(failed) == len(labels):
            raise SearchError(f"Search failed for {' and '.join(failed)}")
        warning = f"Some results are unavailable right now ({', '.join(failed)})" if failed else None
        return rows["events"], rows["places"], warning

    async def search(
        self,
        query: Optional[str],
        start: Optional[str | datetime] = None,
        end: Optional[str | datetime] = None,
        range_token: Optional[str] = None,
        radius_mi: Optional[float] = None,
        cursor: Optional[str] = None,
        entity_type: TypeFilter = "all",
        limit: Optional[int] = None,
    ) -> SearchPage:
        """Run one search request.

        Raises:
            ValueError: For a non-positive radius, unknown range or type
            SearchError: When every requested entity query fails
        """
        if entity_type not in ("events", "places", "all"):
            raise ValueError(f"Unknown type {entity_type!r}")
        if radius_mi is not None:
            radius_mi = float(radius_mi)
            if not math.isfinite(radius_mi) or radius_mi <= 0:
                raise ValueError("radius must be a positive number of miles")

        q = (query or "").strip()
        if not q:
            return SearchPage(notice=NOTICE_ENTER_LOCATION)

        origin = await self.geocoder.resolve(q)
        if origin is None:
            return SearchPage(notice=NOTICE_ENTER_LOCATION)

        window = self.window(start, end, range_token)
        page_size = clamp_limit(limit)
        after = decode_cursor(cursor)
        want_events = entity_type in ("events", "all")
        want_places = entity_type in ("places", "all") and after is None

        if radius_mi is not None:
            radius = radius_mi
            events, places, warning = await self._query(
                origin, radius, window, after, page_size, want_events, want_places
            )
        else:
            cap = cap_for_place(origin.place_type)
            radius = min(START_RADIUS_MI, cap)
            while True:
                events, places, warning = await self._query(
                    origin, radius, window, after, page_size, want_events, want_places
                )
                found = len(events) + len(places)
                if found >= MIN_RESULTS or radius >= cap:
                    break
                proposed = next_radius(radius)
                if proposed > cap:
                    break
                logger.info("radius_expanded", query=q, from_mi=radius, to_mi=proposed, found=found)
                radius = proposed

        items = [_event_item(r, origin) for r in events] + [_place_item(r, origin) for r in places]

        next_cursor = None
        if want_events and len(events) >= page_size:
            last = events[-1].record
            next_cursor = encode_cursor(last.start_utc, last.id)

        notice = None
        if radius_mi is None and radius > START_RADIUS_MI:
            notice = f"Expanded to {format_miles(radius)} mi to find more options"

        logger.info(
            "search_completed",
            query=q,
            radius_mi=radius,
            events=len(events),
            places=len(places),
            paged=after is not None,
        )
        return SearchPage(
            items=rank_items(items),
            next_cursor=next_cursor,
            radius_mi=radius,
            notice=notice,
            warning=warning,
        )
