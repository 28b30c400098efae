"""
Storage port.

The core never talks to a database directly: ingestion, search, clustering
and the geocoder all go through ``Store``. ``MemoryStore`` is the reference
implementation used by the demo server and the tests; a database-backed
store only has to honour the same contract:

- upserts are idempotent on (source, external_id)
- an assigned slug never moves to another identity
- radius queries return storage-computed distances ordered as documented
"""

import itertools
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Literal, NamedTuple, Optional, Union

import structlog
from haversine import Unit, haversine

from .models import (
    BoundingBox,
    Feed,
    GeocodeCacheEntry,
    GeocodeHit,
    KidAllowed,
    MapPoint,
    NormalizedEvent,
    Place,
)

logger = structlog.get_logger()

UpsertOutcome = Literal["inserted", "updated"]


class SlugConflictError(ValueError):
    """A slug is already owned by a different identity."""


class GeoRow(NamedTuple):
    """One radius-query row with the distance computed by storage."""

    record: Union[NormalizedEvent, Place]
    distance_meters: Optional[float]
    in_city_bbox: bool


class Store(ABC):
    """Persistence contract used by every service."""

    # Feeds

    @abstractmethod
    async def list_active_feeds(self) -> list[Feed]: ...

    @abstractmethod
    async def add_feed(self, feed: Feed) -> Feed: ...

    # Events

    @abstractmethod
    async def slug_exists(self, slug: str) -> bool: ...

    @abstractmethod
    async def get_event_slug(self, source: str, external_id: str) -> Optional[str]: ...

    @abstractmethod
    async def get_event(self, source: str, external_id: str) -> Optional[NormalizedEvent]: ...

    @abstractmethod
    async def upsert_event(self, event: NormalizedEvent) -> UpsertOutcome: ...

    @abstractmethod
    async def events_starting_between(
        self, start: datetime, end: datetime
    ) -> list[NormalizedEvent]: ...

    @abstractmethod
    async def search_events_geo(
        self,
        lat: float,
        lon: float,
        radius_meters: float,
        start: Optional[datetime],
        end: Optional[datetime],
        limit: int,
        after: Optional[tuple[datetime, int]] = None,
        city_bbox: Optional[BoundingBox] = None,
    ) -> list[GeoRow]:
        """Events within the radius and window, excluding kid_allowed FALSE.

        Ordered by (start_utc, id) and strictly after ``after`` when given.
        """

    @abstractmethod
    async def events_with_unknown_kid_allowed(self, limit: int) -> list[NormalizedEvent]: ...

    @abstractmethod
    async def update_kid_allowed(self, event_id: int, value: KidAllowed) -> None: ...

    @abstractmethod
    async def events_missing_coordinates(self, limit: int) -> list[NormalizedEvent]: ...

    @abstractmethod
    async def update_coordinates(self, event_id: int, lat: float, lon: float) -> None: ...

    # Places

    @abstractmethod
    async def get_place(self, source: str, external_id: str) -> Optional[Place]: ...

    @abstractmethod
    async def upsert_place(self, place: Place) -> UpsertOutcome: ...

    @abstractmethod
    async def search_places_geo(
        self,
        lat: float,
        lon: float,
        radius_meters: float,
        limit: int,
        city_bbox: Optional[BoundingBox] = None,
    ) -> list[GeoRow]:
        """Places within the radius, excluding kid_allowed FALSE, nearest first."""

    # Map

    @abstractmethod
    async def points_in_bbox(
        self,
        bbox: BoundingBox,
        types: Iterable[str] = ("event", "place"),
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        query: Optional[str] = None,
    ) -> list[MapPoint]: ...

    # Geocode cache

    @abstractmethod
    async def get_geocode(self, query: str) -> Optional[GeocodeHit]: ...

    @abstractmethod
    async def put_geocode(self, query: str, hit: GeocodeHit) -> None: ...


def distance_meters(lat1: float, lon1: float, lat2: Optional[float], lon2: Optional[float]) -> Optional[float]:
    if lat2 is None or lon2 is None:
        return None
    return haversine((lat1, lon1), (lat2, lon2), unit=Unit.METERS)


class MemoryStore(Store):
    """In-process store. Records are copied on the way in and out."""

    def __init__(self, clock=None):
        self._events: dict[tuple[str, str], NormalizedEvent] = {}
        self._places: dict[tuple[str, str], Place] = {}
        self._slugs: dict[str, tuple[str, str]] = {}
        self._feeds: list[Feed] = []
        self._geocode: dict[str, GeocodeCacheEntry] = {}
        self._event_ids = itertools.count(1)
        self._place_ids = itertools.count(1)
        self._feed_ids = itertools.count(1)
        self._clock = clock or (lambda: datetime.now().astimezone())

    # Feeds

    async def list_active_feeds(self) -> list[Feed]:
        return [f.model_copy() for f in self._feeds if f.active]

    async def add_feed(self, feed: Feed) -> Feed:
        for existing in self._feeds:
            if existing.url == feed.url:
                return existing.model_copy()
        stored = feed.model_copy(update={"id": next(self._feed_ids)})
        self._feeds.append(stored)
        return stored.model_copy()

    # Events

    async def slug_exists(self, slug: str) -> bool:
        return slug in self._slugs

    async def get_event_slug(self, source: str, external_id: str) -> Optional[str]:
        event = self._events.get((source, external_id))
        return event.slug if event else None

    async def get_event(self, source: str, external_id: str) -> Optional[NormalizedEvent]:
        event = self._events.get((source, external_id))
        return event.model_copy(deep=True) if event else None

    async def upsert_event(self, event: NormalizedEvent) -> UpsertOutcome:
        key = (event.source, event.external_id)
        existing = self._events.get(key)

        slug = existing.slug if existing and existing.slug else event.slug
        if slug:
            owner = self._slugs.get(slug)
            if owner is not None and owner != key:
                raise SlugConflictError(f"slug {slug!r} already belongs to {owner}")

        stored = event.model_copy(
            deep=True,
            update={"id": existing.id if existing else next(self._event_ids), "slug": slug},
        )
        self._events[key] = stored
        if slug:
            self._slugs[slug] = key
        return "updated" if existing else "inserted"

    async def events_starting_between(self, start: datetime, end: datetime) -> list[NormalizedEvent]:
        return [
            e.model_copy(deep=True) for e in self._events.values() if start <= e.start_utc <= end
        ]

    async def search_events_geo(
        self,
        lat: float,
        lon: float,
        radius_meters: float,
        start: Optional[datetime],
        end: Optional[datetime],
        limit: int,
        after: Optional[tuple[datetime, int]] = None,
        city_bbox: Optional[BoundingBox] = None,
    ) -> list[GeoRow]:
        rows = []
        for event in self._events.values():
            if event.kid_allowed == KidAllowed.FALSE:
                continue
            if start is not None and event.start_utc < start:
                continue
            if end is not None and event.start_utc >= end:
                continue
            if after is not None and (event.start_utc, event.id) <= after:
                continue
            distance = distance_meters(lat, lon, event.lat, event.lon)
            if distance is None or distance > radius_meters:
                continue
            in_bbox = city_bbox.contains(event.lat, event.lon) if city_bbox else False
            rows.append(GeoRow(event.model_copy(deep=True), distance, in_bbox))
        rows.sort(key=lambda r: (r.record.start_utc, r.record.id))
        return rows[:limit]

    async def events_with_unknown_kid_allowed(self, limit: int) -> list[NormalizedEvent]:
        found = [e for e in self._events.values() if e.kid_allowed == KidAllowed.UNKNOWN]
        found.sort(key=lambda e: e.id)
        return [e.model_copy(deep=True) for e in found[:limit]]

    async def update_kid_allowed(self, event_id: int, value: KidAllowed) -> None:
        self._event_by_id(event_id).kid_allowed = value

    async def events_missing_coordinates(self, limit: int) -> list[NormalizedEvent]:
        found = [e for e in self._events.values() if not e.has_coordinates]
        found.sort(key=lambda e: e.id)
        return [e.model_copy(deep=True) for e in found[:limit]]

    async def update_coordinates(self, event_id: int, lat: float, lon: float) -> None:
        event = self._event_by_id(event_id)
        event.lat, event.lon = lat, lon

    def _event_by_id(self, event_id: int) -> NormalizedEvent:
        for event in self._events.values():
            if event.id == event_id:
                return event
        raise KeyError(f"no event with id {event_id}")

    # Places

    async def get_place(self, source: str, external_id: str) -> Optional[Place]:
        place = self._places.get((source, external_id))
        return place.model_copy(deep=True) if place else None

    async def upsert_place(self, place: Place) -> UpsertOutcome:
        key = (place.source, place.external_id)
        existing = self._places.get(key)
        self._places[key] = place.model_copy(
            deep=True, update={"id": existing.id if existing else next(self._place_ids)}
        )
        return "updated" if existing else "inserted"

    async def search_places_geo(
        self,
        lat: float,
        lon: float,
        radius_meters: float,
        limit: int,
        city_bbox: Optional[BoundingBox] = None,
    ) -> list[GeoRow]:
        rows = []
        for place in self._places.values():
            if place.kid_allowed == KidAllowed.FALSE:
                continue
            distance = distance_meters(lat, lon, place.lat, place.lon)
            if distance is None or distance > radius_meters:
                continue
            in_bbox = city_bbox.contains(place.lat, place.lon) if city_bbox else False
            rows.append(GeoRow(place.model_copy(deep=True), distance, in_bbox))
        rows.sort(key=lambda r: (r.distance_meters, r.record.id))
        return rows[:limit]

    # Map

    async def points_in_bbox(
        self,
        bbox: BoundingBox,
        types: Iterable[str] = ("event", "place"),
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        query: Optional[str] = None,
    ) -> list[MapPoint]:
        types = set(types)
        needle = (query or "").strip().lower()
        points: list[MapPoint] = []

        if "event" in types:
            for e in self._events.values():
                if e.kid_allowed == KidAllowed.FALSE or not bbox.contains(e.lat, e.lon):
                    continue
                if start is not None and e.start_utc < start:
                    continue
                if end is not None and e.start_utc >= end:
                    continue
                if needle and needle not in e.title.lower():
                    continue
                points.append(
                    MapPoint(type="event", id=str(e.id), lat=e.lat, lon=e.lon,
                             title=e.title, start_utc=e.start_utc)
                )

        if "place" in types:
            for p in self._places.values():
                if p.kid_allowed == KidAllowed.FALSE or not bbox.contains(p.lat, p.lon):
                    continue
                if needle and needle not in p.name.lower():
                    continue
                points.append(
                    MapPoint(type="place", id=str(p.id), lat=p.lat, lon=p.lon,
                             title=p.name, category=p.category)
                )

        return points

    # Geocode cache

    async def get_geocode(self, query: str) -> Optional[GeocodeHit]:
        entry = self._geocode.get(query)
        return entry.hit.model_copy(deep=True) if entry else None

    async def put_geocode(self, query: str, hit: GeocodeHit) -> None:
        if query in self._geocode:
            return
        self._geocode[query] = GeocodeCacheEntry(query=query, hit=hit, created_at=self._clock())

    @property
    def event_count(self) -> int:
        return len(self._events)

    @property
    def place_count(self) -> int:
        return len(self._places)
