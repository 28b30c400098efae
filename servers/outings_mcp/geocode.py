"""
Geocode resolver backed by Nominatim.

- Cache first: at most one cache entry per normalized query
- On a miss, one process-wide throttle spaces remote calls (~1/sec);
  ingestion and search share it and simply wait their turn
- Concurrent misses for the same query collapse into one remote call
- Timeouts and upstream errors resolve to "not found" and are not cached
"""

import asyncio
import math
import re
from typing import Any, Optional

import structlog

from .errors import UpstreamError
from .models import BoundingBox, GeocodeHit, Suggestion
from .resilience.throttle import MinIntervalThrottle
from .sources.http import HttpFetcher
from .store import Store

logger = structlog.get_logger()

NOMINATIM_SEARCH = "https://nominatim.openstreetmap.org/search"
DEFAULT_USER_AGENT = "FamilyOutings/1.0 (contact@familyoutings)"

MIN_SUGGEST_LENGTH = 2
MAX_SUGGESTIONS = 8
BIAS_DEGREES = 0.75

ACCEPTED_KINDS = {
    "postcode",
    "city", "town", "village", "hamlet", "locality", "municipality",
    "county", "state",
}


def normalize_query(query: Optional[str]) -> str:
    """Cache key for a free-text location."""
    return re.sub(r"\s+", " ", (query or "").strip()).lower()


def parse_bbox(raw: Any) -> Optional[BoundingBox]:
    """Nominatim sends [south, north, west, east] as strings."""
    if not isinstance(raw, (list, tuple)) or len(raw) < 4:
        return None
    try:
        south, north, west, east = (float(v) for v in raw[:4])
    except (TypeError, ValueError):
        return None
    if not all(math.isfinite(v) for v in (south, north, west, east)):
        return None
    return BoundingBox(
        min_lon=min(west, east),
        min_lat=min(south, north),
        max_lon=max(west, east),
        max_lat=max(south, north),
    )


def parse_hit(item: dict[str, Any]) -> Optional[GeocodeHit]:
    try:
        lat = float(item["lat"])
        lon = float(item["lon"])
    except (KeyError, TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    return GeocodeHit(
        lat=lat,
        lon=lon,
        bbox=parse_bbox(item.get("boundingbox")),
        place_type=item.get("addresstype") or item.get("type") or None,
    )


def suggestion_rank(kind: str) -> int:
    if kind == "postcode":
        return 0
    if kind in ("city", "town", "village"):
        return 1
    return 2


def _locality(address: dict[str, Any]) -> Optional[str]:
    for key in ("city", "town", "village", "hamlet", "locality", "municipality", "county"):
        if address.get(key):
            return address[key]
    return None


def parse_suggestion(item: dict[str, Any]) -> Optional[Suggestion]:
    kind = str(item.get("type") or item.get("addresstype") or "")
    if kind not in ACCEPTED_KINDS:
        return None
    address = item.get("address") or {}
    city = _locality(address)
    state = address.get("state") or address.get("state_district")
    postcode = address.get("postcode")

    if kind == "postcode":
        label = f"{postcode} ({city}, {state})" if postcode and city and state else None
    else:
        label = f"{city}, {state}" if city and state else None
    if not label:
        return None

    try:
        lat, lon = float(item["lat"]), float(item["lon"])
    except (KeyError, TypeError, ValueError):
        return None

    return Suggestion(
        id=f"{item.get('osm_type')}/{item.get('osm_id')}",
        label=label,
        kind=kind,
        lat=lat,
        lon=lon,
        city=city,
        state=state,
        postcode=postcode,
    )


class GeocodeResolver:
    """Free text -> GeocodeHit, cached in the store."""

    def __init__(
        self,
        store: Store,
        fetcher: HttpFetcher,
        throttle: Optional[MinIntervalThrottle] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        endpoint: str = NOMINATIM_SEARCH,
    ):
        self.store = store
        self.fetcher = fetcher
        self.throttle = throttle or MinIntervalThrottle(1.1, name="nominatim")
        self.user_agent = user_agent
        self.endpoint = endpoint
        self._inflight: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}
        self.remote_calls = 0

    async def _search(self, params: dict[str, str]) -> Any:
        await self.throttle.wait()
        self.remote_calls += 1
        return await self.fetcher.get_json(
            self.endpoint,
            params=params,
            headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            retry=False,
        )

    async def resolve(self, query: Optional[str]) -> Optional[GeocodeHit]:
        """Resolve a location, or None when it cannot be found."""
        key = normalize_query(query)
        if not key:
            return None

        cached = await self.store.get_geocode(key)
        if cached:
            logger.debug("geocode_cache_hit", query=key)
            return cached

        lock = self._inflight.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                # Another caller may have filled the cache while we waited
                cached = await self.store.get_geocode(key)
                if cached:
                    logger.debug("geocode_cache_hit", query=key)
                    return cached
                return await self._resolve_remote(key)
        finally:
            # Keep the lock while anyone still holds or waits on it
            remaining = self._waiters[key] - 1
            if remaining:
                self._waiters[key] = remaining
            else:
                self._waiters.pop(key, None)
                self._inflight.pop(key, None)

    async def _resolve_remote(self, key: str) -> Optional[GeocodeHit]:
        try:
            data = await self._search({"q": key, "format": "jsonv2", "limit": "1"})
        except UpstreamError as e:
            logger.warning("geocode_failed", query=key, error=str(e))
            return None

        hit = parse_hit(data[0]) if isinstance(data, list) and data else None
        if hit is None:
            logger.info("geocode_not_found", query=key)
            return None

        await self.store.put_geocode(key, hit)
        logger.info("geocode_cached", query=key, place_type=hit.place_type)
        return hit

    async def suggest(
        self,
        text: Optional[str],
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> list[Suggestion]:
        """Autocomplete candidates, postal codes first, at most eight.

        Raises:
            UpstreamError: If Nominatim fails
        """
        q = (text or "").strip()
        if len(q) < MIN_SUGGEST_LENGTH:
            return []

        params = {
            "format": "jsonv2",
            "addressdetails": "1",
            "countrycodes": "us",
            "dedupe": "1",
            "limit": str(MAX_SUGGESTIONS),
            "autocomplete": "1",
            "q": q,
        }
        if lat is not None and lon is not None and math.isfinite(lat) and math.isfinite(lon):
            # Bias only, results outside the viewbox still come back
            params["viewbox"] = (
                f"{lon - BIAS_DEGREES},{lat + BIAS_DEGREES},{lon + BIAS_DEGREES},{lat - BIAS_DEGREES}"
            )

        data = await self._search(params)
        if not isinstance(data, list):
            return []

        suggestions = [s for s in (parse_suggestion(item) for item in data if isinstance(item, dict)) if s]
        suggestions.sort(key=lambda s: suggestion_rank(s.kind))
        return suggestions[:MAX_SUGGESTIONS]
