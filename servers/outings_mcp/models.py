"""
Pydantic models for the outings data structures.

These models define the core data types used throughout the server:
- NormalizedEvent / Place: canonical records written to the store
- Feed: calendar feed configuration
- GeocodeHit: resolved coordinate with bounding hint
- FeedRunResult / IngestRunSummary: ingestion metrics
- SearchItem / SearchPage: unified search output
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, computed_field


class KidAllowed(str, Enum):
    """Tri-state kid-safety signal. UNKNOWN is never coerced to a boolean."""

    TRUE = "true"
    FALSE = "false"
    UNKNOWN = "unknown"

    def as_optional_bool(self) -> Optional[bool]:
        if self is KidAllowed.TRUE:
            return True
        if self is KidAllowed.FALSE:
            return False
        return None


class BoundingBox(BaseModel):
    """Rectangle in degrees: [min_lon, min_lat, max_lon, max_lat]."""

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def contains(self, lat: Optional[float], lon: Optional[float]) -> bool:
        if lat is None or lon is None:
            return False
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon

    def as_list(self) -> list[float]:
        return [self.min_lon, self.min_lat, self.max_lon, self.max_lat]

    @classmethod
    def from_list(cls, values: list[float]) -> "BoundingBox":
        min_lon, min_lat, max_lon, max_lat = (float(v) for v in values)
        return cls(min_lon=min_lon, min_lat=min_lat, max_lon=max_lon, max_lat=max_lat)


class NormalizedEvent(BaseModel):
    """Canonical event record. Every field is populated or explicitly null."""

    # Identity
    source: str  # ics:<host>, ticketmaster
    external_id: str
    id: Optional[int] = None  # assigned by the store

    # Core info
    title: str
    description: Optional[str] = None

    # Timing (UTC)
    start_utc: datetime
    end_utc: Optional[datetime] = None
    all_day: bool = False

    # Location
    venue_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None

    # Pricing
    is_free: bool = False
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    currency: Optional[str] = None

    # Classification
    age_band: Optional[str] = None  # 0–5, 6–12, 13–17, All Ages
    indoor_outdoor: Optional[str] = None  # Indoor, Outdoor, Mixed
    kid_allowed: KidAllowed = KidAllowed.UNKNOWN
    tags: list[str] = Field(default_factory=list)

    # Links
    source_url: Optional[str] = None
    image_url: Optional[str] = None

    slug: Optional[str] = None

    @computed_field
    @property
    def identity(self) -> str:
        """Identity key rendered as text."""
        return f"{self.source}:{self.external_id}"

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None

    def classifier_blob(self) -> str:
        """Free text handed to the kid-safety classifier."""
        parts = [self.title, self.description or "", " ".join(self.tags), self.venue_name or ""]
        return " ".join(p for p in parts if p)


class Place(BaseModel):
    """Canonical point of interest. No time window."""

    source: str  # osm
    external_id: str
    id: Optional[int] = None

    name: str
    category: str
    subcategory: Optional[str] = None

    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None

    url: Optional[str] = None
    phone: Optional[str] = None
    kid_allowed: KidAllowed = KidAllowed.UNKNOWN
    tags: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def identity(self) -> str:
        return f"{self.source}:{self.external_id}"


class Feed(BaseModel):
    """One calendar feed source, owned by the admin surface."""

    url: str
    label: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    active: bool = True
    id: Optional[int] = None


class GeocodeHit(BaseModel):
    """Geocoder answer, also the value of a cache entry."""

    lat: float
    lon: float
    bbox: Optional[BoundingBox] = None
    place_type: Optional[str] = None


class GeocodeCacheEntry(BaseModel):
    """Append-only cache row keyed by the normalized query."""

    query: str
    hit: GeocodeHit
    created_at: datetime


class Suggestion(BaseModel):
    """One geocode autocomplete candidate."""

    id: str
    label: str
    kind: str
    lat: float
    lon: float
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None


class FeedState(str, Enum):
    """Per-feed ingestion state."""

    PENDING = "pending"
    FETCHING = "fetching"
    PARSED = "parsed"
    FAILED = "failed"
    UPSERTED = "upserted"


class FeedRunResult(BaseModel):
    """Counts for one feed (or one API/crawler run)."""

    source: str
    url: Optional[str] = None
    label: Optional[str] = None
    state: FeedState = FeedState.PENDING
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    skip_reasons: dict[str, int] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    duration_ms: Optional[int] = None
    dry_run: bool = False

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1


class IngestRunSummary(BaseModel):
    """Result of ingesting every active feed."""

    feeds: list[FeedRunResult]
    concurrency: int
    duration_ms: int
    dry_run: bool = False
    health: dict = Field(default_factory=dict)

    @computed_field
    @property
    def totals(self) -> dict[str, int]:
        keys = ("fetched", "inserted", "updated", "skipped")
        totals = {k: sum(getattr(f, k) for f in self.feeds) for k in keys}
        totals["errors"] = sum(len(f.errors) for f in self.feeds)
        totals["failed_feeds"] = sum(1 for f in self.feeds if f.state == FeedState.FAILED)
        return totals


class MaintenanceResult(BaseModel):
    """Result of a maintenance pass (reclassify, geocode-missing)."""

    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    dry_run: bool = False


EntityType = Literal["event", "place"]


class SearchItem(BaseModel):
    """One row of the unified search result."""

    type: EntityType
    id: str
    title: str
    subtitle: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    distance_mi: Optional[float] = None
    in_city_bbox: bool = False
    kid_allowed: KidAllowed = KidAllowed.UNKNOWN

    # Event-only
    start_utc: Optional[datetime] = None
    end_utc: Optional[datetime] = None
    slug: Optional[str] = None

    # Place-only
    category: Optional[str] = None
    subcategory: Optional[str] = None


class SearchPage(BaseModel):
    """A ranked page of mixed results."""

    items: list[SearchItem] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    radius_mi: Optional[float] = None
    notice: Optional[str] = None
    warning: Optional[str] = None


class MapPoint(BaseModel):
    """Point handed to the clustering step."""

    type: EntityType
    id: str
    lat: float
    lon: float
    title: Optional[str] = None
    category: Optional[str] = None
    start_utc: Optional[datetime] = None


class Cluster(BaseModel):
    """Aggregated group of nearby points."""

    id: str
    count: int
    lat: float
    lon: float


class ClusterResult(BaseModel):
    """Clusters plus the points left standing alone."""

    clusters: list[Cluster] = Field(default_factory=list)
    points: list[MapPoint] = Field(default_factory=list)


# Place categories emitted by the POI crawler, with their ranking weight.
# Higher weight ranks first when two places sit at the same distance.
CATEGORY_WEIGHTS = {
    "playground": 10,
    "zoo": 10,
    "aquarium": 9,
    "library": 8,
    "museum": 8,
    "park": 7,
    "pool": 6,
    "theme_park": 4,
    "place": 1,
}
