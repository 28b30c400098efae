"""
Viewport clustering for the map.

Points are projected to Web Mercator and grouped greedily: every point not
yet assigned pulls in its unassigned neighbours within ``radius`` pixels at
the requested zoom. Groups of at least ``min_points`` become clusters, the
rest stay as loose points. Past ``max_zoom`` nothing is clustered.

Results are cached briefly per viewport, zoom, type and filters.
"""

import hashlib
import math
import time
from datetime import datetime
from typing import Callable, Iterable, Optional

import structlog
from cachetools import TTLCache

from .models import BoundingBox, Cluster, ClusterResult, MapPoint
from .store import Store

logger = structlog.get_logger()

TILE_EXTENT = 512
DEFAULT_RADIUS = 60
DEFAULT_MAX_ZOOM = 17
DEFAULT_MIN_POINTS = 2
MAX_ZOOM_LEVEL = 22


def project(lat: float, lon: float) -> tuple[float, float]:
    """lon/lat -> Web Mercator coordinates in [0, 1]."""
    x = lon / 360 + 0.5
    sin = math.sin(math.radians(max(min(lat, 85.0511), -85.0511)))
    y = 0.5 - 0.25 * math.log((1 + sin) / (1 - sin)) / math.pi
    return x, min(max(y, 0.0), 1.0)


def unproject(x: float, y: float) -> tuple[float, float]:
    """Inverse of ``project``; returns (lat, lon)."""
    lon = (x - 0.5) * 360
    lat = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y))))
    return lat, lon


def _cluster_id(zoom: int, members: list[MapPoint]) -> str:
    key = ",".join(sorted(f"{p.type}:{p.id}" for p in members))
    return f"z{zoom}-{hashlib.sha1(key.encode()).hexdigest()[:10]}"


def cluster_points(
    points: Iterable[MapPoint],
    zoom: int,
    radius: int = DEFAULT_RADIUS,
    max_zoom: int = DEFAULT_MAX_ZOOM,
    min_points: int = DEFAULT_MIN_POINTS,
) -> ClusterResult:
    """Group points for one zoom level. Pure and deterministic."""
    ordered = sorted(points, key=lambda p: (p.type, p.id))
    if zoom > max_zoom or len(ordered) < min_points:
        return ClusterResult(points=ordered)

    r = radius / (TILE_EXTENT * 2**zoom)
    projected = [project(p.lat, p.lon) for p in ordered]

    grid: dict[tuple[int, int], list[int]] = {}
    for i, (x, y) in enumerate(projected):
        grid.setdefault((int(x // r), int(y // r)), []).append(i)

    assigned = [False] * len(ordered)
    clusters: list[Cluster] = []
    loose: list[MapPoint] = []

    for i, (x, y) in enumerate(projected):
        if assigned[i]:
            continue
        cx, cy = int(x // r), int(y // r)
        members = []
        for gx in (cx - 1, cx, cx + 1):
            for gy in (cy - 1, cy, cy + 1):
                for j in grid.get((gx, gy), ()):
                    if assigned[j]:
                        continue
                    dx, dy = projected[j][0] - x, projected[j][1] - y
                    if dx * dx + dy * dy <= r * r:
                        members.append(j)

        if len(members) >= min_points:
            for j in members:
                assigned[j] = True
            mx = sum(projected[j][0] for j in members) / len(members)
            my = sum(projected[j][1] for j in members) / len(members)
            lat, lon = unproject(mx, my)
            clusters.append(Cluster(
                id=_cluster_id(zoom, [ordered[j] for j in members]),
                count=len(members),
                lat=lat,
                lon=lon,
            ))
        else:
            assigned[i] = True
            loose.append(ordered[i])

    return ClusterResult(clusters=clusters, points=loose)


class ClusterService:
    """Loads viewport points from the store and clusters them, with a TTL cache."""

    def __init__(
        self,
        store: Store,
        ttl: float = 60.0,
        maxsize: int = 256,
        radius: int = DEFAULT_RADIUS,
        max_zoom: int = DEFAULT_MAX_ZOOM,
        min_points: int = DEFAULT_MIN_POINTS,
        timer: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.radius = radius
        self.max_zoom = max_zoom
        self.min_points = min_points
        self.cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer or time.monotonic)

    async def map_points(
        self,
        bbox: BoundingBox,
        zoom: float,
        entity_type: str = "all",
        query: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ClusterResult:
        """Clusters and loose points inside the viewport.

        Raises:
            ValueError: For an unknown type or non-finite zoom
        """
        if entity_type not in ("events", "places", "all"):
            raise ValueError(f"Unknown type {entity_type!r}")
        if not math.isfinite(zoom):
            raise ValueError("zoom must be a finite number")
        level = max(0, min(MAX_ZOOM_LEVEL, round(zoom)))

        key = (
            tuple(bbox.as_list()),
            level,
            entity_type,
            (query or "").strip().lower(),
            start.isoformat() if start else None,
            end.isoformat() if end else None,
        )
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("cluster_cache_hit", zoom=level, type=entity_type)
            return cached

        types = {"events": ["event"], "places": ["place"], "all": ["event", "place"]}[entity_type]
        points = await self.store.points_in_bbox(bbox, types=types, start=start, end=end, query=query)
        result = cluster_points(
            points, level, radius=self.radius, max_zoom=self.max_zoom, min_points=self.min_points
        )
        self.cache[key] = result
        logger.info(
            "map_points_clustered",
            zoom=level,
            type=entity_type,
            points=len(points),
            clusters=len(result.clusters),
        )
        return result
