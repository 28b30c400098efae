"""
OpenStreetMap points-of-interest crawler (Overpass API).

Pulls family categories inside a bounding box, trying each Overpass mirror
in order until one answers.
"""

import re
from typing import Any, Optional

import structlog

from ..errors import PermanentUpstreamError
from ..models import BoundingBox, KidAllowed, Place
from ..normalizer import NormalizationError, Normalizer, assemble_address, clean_text, join_segments
from ..resilience.fallback import FallbackChain
from .http import HttpFetcher

logger = structlog.get_logger()

OVERPASS_MIRRORS = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://overpass.nchc.org.tw/api/interpreter",
]

FAMILY_QUERIES = [
    'node["amenity"="playground"];way["amenity"="playground"];relation["amenity"="playground"];',
    'node["leisure"="water_park"];way["leisure"="water_park"];',
    'node["leisure"="swimming_pool"]["access"!="private"];',
    'node["leisure"="park"];way["leisure"="park"];relation["leisure"="park"];',
    'node["leisure"="nature_reserve"];way["leisure"="nature_reserve"];',
    'node["amenity"="library"];way["amenity"="library"];relation["amenity"="library"];',
    'node["tourism"="museum"];way["tourism"="museum"];relation["tourism"="museum"];',
    'node["tourism"="zoo"];way["tourism"="zoo"];relation["tourism"="zoo"];',
    'node["tourism"="theme_park"];way["tourism"="theme_park"];',
]

# Continental US, used when no bbox is given
DEFAULT_BBOX = BoundingBox(min_lon=-125.0, min_lat=24.0, max_lon=-66.9, max_lat=49.5)

MAX_ELEMENTS = 1000

ADULT_EXCLUDE = re.compile(r"(?:^|\W)(?:bar|pub|nightclub|strip|casino|gentlemen'?s\s*club)\b", re.IGNORECASE)

SKIP_NO_TAGS = "no_tags"
SKIP_NO_COORDINATES = "no_coordinates"
SKIP_CLOSED = "closed"
SKIP_NOT_KID_ALLOWED = "not_kid_allowed"


def build_overpass_query(bbox: BoundingBox) -> str:
    """Overpass QL body with a global bbox filter (south,west,north,east)."""
    union = "\n  ".join(FAMILY_QUERIES)
    return (
        f"[out:json][timeout:60][bbox:{bbox.min_lat},{bbox.min_lon},{bbox.max_lat},{bbox.max_lon}];\n"
        f"(\n  {union}\n);\nout center meta;"
    )


def classify_tags(tags: dict[str, str]) -> tuple[str, Optional[str]]:
    """Map OSM tags to (category, subcategory)."""
    if tags.get("amenity") == "playground":
        return "playground", None
    if tags.get("leisure") == "water_park":
        return "park", "water_park"
    if tags.get("leisure") == "park":
        return "park", None
    if tags.get("amenity") == "library":
        return "library", None
    if tags.get("tourism") == "museum":
        return "museum", None
    if tags.get("tourism") == "zoo":
        return "zoo", None
    if tags.get("tourism") == "theme_park":
        return "theme_park", None
    if tags.get("leisure") == "nature_reserve":
        return "park", "nature_reserve"
    if tags.get("leisure") == "swimming_pool":
        return "pool", None
    return "place", None


def element_coordinates(element: dict[str, Any]) -> tuple[Optional[float], Optional[float]]:
    center = element.get("center") or {}
    return element.get("lat", center.get("lat")), element.get("lon", center.get("lon"))


def is_closed(tags: dict[str, str]) -> bool:
    if tags.get("disused") == "yes" or tags.get("abandoned") == "yes":
        return True
    if any(k.startswith(("disused:", "abandoned:")) for k in tags):
        return True
    return bool(re.search(r"closed|temporary", tags.get("opening_hours", ""), re.IGNORECASE))


def place_skip_reason(element: dict[str, Any]) -> Optional[str]:
    """Reason an Overpass element should not become a Place, or None."""
    tags = element.get("tags")
    if not tags:
        return SKIP_NO_TAGS
    lat, lon = element_coordinates(element)
    if lat is None or lon is None:
        return SKIP_NO_COORDINATES
    if is_closed(tags):
        return SKIP_CLOSED
    return None


class OverpassCrawler:
    """POSTs the family query to the mirrors through a fallback chain."""

    def __init__(self, fetcher: HttpFetcher, mirrors: Optional[list[str]] = None):
        self.fetcher = fetcher
        self.mirrors = mirrors or OVERPASS_MIRRORS

    def _mirror_call(self, endpoint: str):
        async def call(query: str) -> dict[str, Any]:
            data = await self.fetcher.post_json(
                endpoint,
                content=query.encode(),
                headers={"Content-Type": "text/plain"},
            )
            if not isinstance(data, dict):
                raise PermanentUpstreamError(f"Overpass {endpoint} returned a non-object")
            return data

        call.__name__ = f"overpass[{endpoint}]"
        return call

    async def fetch(self, bbox: Optional[BoundingBox] = None) -> list[dict[str, Any]]:
        region = bbox or DEFAULT_BBOX
        chain = FallbackChain(*(self._mirror_call(m) for m in self.mirrors))
        data = await chain.execute(build_overpass_query(region))
        elements = data.get("elements") or []
        if len(elements) > MAX_ELEMENTS:
            logger.warning("overpass_elements_truncated", received=len(elements), kept=MAX_ELEMENTS)
            elements = elements[:MAX_ELEMENTS]
        logger.info("overpass_fetched", count=len(elements), bbox=region.as_list())
        return elements


class PlaceNormalizer(Normalizer[Place]):
    """Overpass element -> Place."""

    source = "osm"

    def normalize(self, raw: dict[str, Any]) -> Place:
        tags: dict[str, str] = raw.get("tags") or {}
        if "type" not in raw or "id" not in raw:
            raise NormalizationError("Overpass element has no type/id")

        category, subcategory = classify_tags(tags)
        name = clean_text(tags.get("name")) or category.replace("_", " ").title()
        lat, lon = element_coordinates(raw)

        if ADULT_EXCLUDE.search(name) or ADULT_EXCLUDE.search(" ".join(tags.values())):
            kid_allowed = KidAllowed.FALSE
        elif category == "place":
            kid_allowed = KidAllowed.UNKNOWN
        else:
            kid_allowed = KidAllowed.TRUE

        street = join_segments(tags.get("addr:housenumber"), tags.get("addr:street"), sep=" ")
        city = clean_text(tags.get("addr:city"))
        state = clean_text(tags.get("addr:state"))
        postal = clean_text(tags.get("addr:postcode"))

        return Place(
            source=self.source,
            external_id=f"{raw['type']}/{raw['id']}",
            name=name,
            category=category,
            subcategory=subcategory,
            address=assemble_address(street, city, state, postal),
            city=city,
            state=state,
            postal_code=postal,
            lat=float(lat) if lat is not None else None,
            lon=float(lon) if lon is not None else None,
            url=tags.get("website") or tags.get("url") or None,
            phone=tags.get("phone") or tags.get("contact:phone") or None,
            kid_allowed=kid_allowed,
            tags=sorted(tags)[:25],
        )
