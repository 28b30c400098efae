"""
MCP Server entry point for Family Outings.

This server provides tools for:
- Searching events and places around a location (adaptive radius)
- Location autocomplete
- Clustered map points for a viewport
- Admin: ingesting feeds, Ticketmaster and OSM places; maintenance passes

Run with: python -m servers.outings_mcp [config.json] [--ingest] [--dry-run]
"""

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Mapping, Optional

import httpx
import structlog

from .auth import check_admin_token
from .clustering import ClusterService
from .config.settings import Settings, load_config
from .errors import (
    RateLimitedError,
    SearchError,
    SSRFError,
    UnauthorizedError,
    UpstreamError,
)
from .geocode import GeocodeResolver
from .ingest import IngestionOrchestrator
from .models import BoundingBox, Feed
from .normalizer import to_utc
from .resilience.health import HealthMonitor
from .resilience.rate_limit import RequestRateLimiter
from .resilience.throttle import MinIntervalThrottle
from .search import AdaptiveSearchEngine
from .sources.http import HttpFetcher
from .sources.url_validator import validate_feed_url
from .store import MemoryStore, Store

logger = structlog.get_logger()

ADMIN_TOOLS = {
    "add_feed",
    "ingest_feed",
    "ingest_all",
    "ingest_ticketmaster",
    "ingest_places",
    "reclassify",
    "geocode_missing",
}


def parse_bbox(value: Any) -> Optional[BoundingBox]:
    """Accept [minLon, minLat, maxLon, maxLat] as a list or comma string."""
    if value is None or value == "":
        return None
    parts = value.split(",") if isinstance(value, str) else value
    try:
        bbox = BoundingBox.from_list([float(p) for p in parts])
    except (TypeError, ValueError) as e:
        raise ValueError("bbox must be minLon,minLat,maxLon,maxLat") from e
    if bbox.min_lon > bbox.max_lon or bbox.min_lat > bbox.max_lat:
        raise ValueError("bbox min values must not exceed max values")
    return bbox


class OutingsServer:
    """MCP Server for family outings."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[Store] = None,
        rate_limiter: Optional[RequestRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        fetcher: Optional[HttpFetcher] = None,
        geocode_throttle: Optional[MinIntervalThrottle] = None,
    ):
        self.settings = settings or Settings.from_config()
        self.store = store or MemoryStore()
        self.rate_limiter = rate_limiter or RequestRateLimiter(
            self.settings.rate_limit_requests, self.settings.rate_limit_window
        )
        self.fetcher = fetcher or HttpFetcher(
            timeout=self.settings.fetch_timeout,
            user_agent=self.settings.nominatim_user_agent,
            max_attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            transport=transport,
        )
        self.health = HealthMonitor()
        self.geocoder = GeocodeResolver(
            self.store,
            self.fetcher,
            throttle=geocode_throttle or MinIntervalThrottle(self.settings.geocode_spacing, name="nominatim"),
            user_agent=self.settings.nominatim_user_agent,
        )
        self.search_engine = AdaptiveSearchEngine(
            self.store, self.geocoder, default_tz=self.settings.default_timezone
        )
        self.clusters = ClusterService(self.store, ttl=self.settings.cluster_ttl)
        self.orchestrator = IngestionOrchestrator(
            self.store,
            self.fetcher,
            settings=self.settings,
            geocoder=self.geocoder,
            health=self.health,
        )

        self.tools = {
            "search": self.search,
            "suggest": self.suggest,
            "map_points": self.map_points,
            "health": self.get_health,
            "add_feed": self.add_feed,
            "ingest_feed": self.ingest_feed,
            "ingest_all": self.ingest_all,
            "ingest_ticketmaster": self.ingest_ticketmaster,
            "ingest_places": self.ingest_places,
            "reclassify": self.reclassify,
            "geocode_missing": self.geocode_missing,
        }

    async def call(
        self,
        tool: str,
        arguments: Optional[dict[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        client: str = "local",
    ) -> dict:
        """Dispatch one tool call, mapping failures to an error payload."""
        handler = self.tools.get(tool)
        if handler is None:
            return {"error": f"unknown tool: {tool}", "status": 404}

        try:
            self.rate_limiter.check(client)
            if tool in ADMIN_TOOLS:
                check_admin_token(self.settings.admin_token, headers)
            return await handler(**(arguments or {}))
        except UnauthorizedError:
            return {"error": "unauthorized", "status": 401}
        except RateLimitedError as e:
            return {"error": "rate_limited", "status": 429, "retry_after": round(e.retry_after, 1)}
        except (ValueError, TypeError, SSRFError) as e:
            return {"error": str(e), "status": 400}
        except SearchError as e:
            logger.error("search_failed", error=str(e))
            return {"error": str(e), "status": 503}
        except UpstreamError as e:
            logger.warning("upstream_failed", tool=tool, error=str(e))
            return {"error": str(e), "status": 502}

    # Public tools

    async def search(
        self,
        query: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        range: Optional[str] = None,
        radius: Optional[float] = None,
        cursor: Optional[str] = None,
        type: str = "all",
        limit: Optional[int] = None,
    ) -> dict:
        """Unified events + places search around a free-text location."""
        page = await self.search_engine.search(
            query,
            start=start,
            end=end,
            range_token=range,
            radius_mi=radius,
            cursor=cursor,
            entity_type=type,
            limit=limit,
        )
        return page.model_dump(mode="json")

    async def suggest(
        self,
        q: Optional[str] = None,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> dict:
        """City / ZIP autocomplete."""
        suggestions = await self.geocoder.suggest(q, lat=lat, lon=lon)
        return {"suggestions": [s.model_dump(exclude_none=True) for s in suggestions]}

    async def map_points(
        self,
        bbox: Any = None,
        zoom: float = 0,
        type: str = "all",
        query: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> dict:
        """Clusters and loose points for a map viewport."""
        region = parse_bbox(bbox)
        if region is None:
            return {"clusters": [], "points": []}
        result = await self.clusters.map_points(
            region,
            float(zoom),
            entity_type=type,
            query=query,
            start=to_utc(start, self.settings.default_timezone),
            end=to_utc(end, self.settings.default_timezone),
        )
        return result.model_dump(mode="json")

    async def get_health(self) -> dict:
        """Source health as last reported by the orchestrator."""
        return self.health.get_status()

    # Admin tools

    async def add_feed(
        self,
        url: str,
        label: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
    ) -> dict:
        """Register a calendar feed after URL validation."""
        clean = validate_feed_url(url, resolve_dns=self.settings.validate_feed_dns)
        feed = await self.store.add_feed(Feed(url=clean, label=label, city=city, state=state))
        return feed.model_dump()

    async def ingest_feed(
        self,
        url: str,
        label: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
        dry_run: bool = False,
    ) -> dict:
        """Ingest a single feed, registered or ad hoc."""
        feed = next((f for f in await self.store.list_active_feeds() if f.url == url), None)
        feed = feed or Feed(url=url, label=label, city=city, state=state)
        result = await self.orchestrator.ingest_feed(feed, dry_run=dry_run)
        return result.model_dump(mode="json")

    async def ingest_all(self, dry_run: bool = False, concurrency: Optional[int] = None) -> dict:
        """Ingest every active feed."""
        summary = await self.orchestrator.ingest_all(dry_run=dry_run, concurrency=concurrency)
        return summary.model_dump(mode="json")

    async def ingest_ticketmaster(
        self,
        query: Optional[str] = None,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        city: Optional[str] = None,
        postal_code: Optional[str] = None,
        radius: float = 25,
        start: Optional[str] = None,
        end: Optional[str] = None,
        keyword: Optional[str] = None,
        dry_run: bool = False,
    ) -> dict:
        """Pull Ticketmaster events around a location."""
        if query and (lat is None or lon is None):
            hit = await self.geocoder.resolve(query)
            if hit is None:
                raise ValueError(f"Could not locate {query!r}")
            lat, lon = hit.lat, hit.lon
        result = await self.orchestrator.ingest_ticketmaster(
            lat=lat,
            lon=lon,
            radius_mi=radius,
            city=city,
            postal_code=postal_code,
            start=to_utc(start, self.settings.default_timezone),
            end=to_utc(end, self.settings.default_timezone),
            keyword=keyword,
            dry_run=dry_run,
        )
        return result.model_dump(mode="json")

    async def ingest_places(self, bbox: Any = None, dry_run: bool = False) -> dict:
        """Crawl OSM places inside a bounding box."""
        result = await self.orchestrator.ingest_places(parse_bbox(bbox), dry_run=dry_run)
        return result.model_dump(mode="json")

    async def reclassify(self, limit: int = 500, dry_run: bool = False) -> dict:
        """Re-run the kid-safety classifier over unknown events."""
        result = await self.orchestrator.reclassify_unknown(limit=limit, dry_run=dry_run)
        return result.model_dump()

    async def geocode_missing(self, limit: int = 30, dry_run: bool = False) -> dict:
        """Backfill coordinates for events without them."""
        result = await self.orchestrator.geocode_missing(limit=limit, dry_run=dry_run)
        return result.model_dump()


async def main():
    """Main entry point for MCP server."""
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    config = load_config(args[0] if args else None)
    settings = Settings.from_config(config)
    server = OutingsServer(settings=settings)

    for feed in settings.feeds:
        if feed.active:
            await server.store.add_feed(feed)

    print("Family Outings MCP Server")
    print("Available tools:", list(server.tools.keys()))

    if "--ingest" in sys.argv:
        print(f"\n--- Ingesting {len(settings.feeds)} feeds ---")
        summary = await server.orchestrator.ingest_all(dry_run="--dry-run" in sys.argv)
        for feed in summary.feeds:
            print(f"  {feed.label or feed.url}: {feed.state.value} "
                  f"(+{feed.inserted} ~{feed.updated} skipped {feed.skipped})")
        print(json.dumps(summary.totals))
        print(f"Finished at {datetime.now().isoformat(timespec='seconds')}")


if __name__ == "__main__":
    asyncio.run(main())
