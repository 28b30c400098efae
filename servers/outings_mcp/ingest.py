"""
Ingestion orchestrator.

Per feed: pending -> fetching -> (parsed | failed) -> upserted.

- A fixed pool of workers drains the active feeds; a failing feed never
  stops the others
- Fetches go through the shared HttpFetcher (retry on 429/5xx/timeouts
  only) after a per-host politeness delay
- Every record passes the guardrails and duplicate check before the one
  shared upsert path; each upsert stands on its own
- Dry runs count what would happen without writing anything
"""

import asyncio
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import structlog

from .classifier import classify_kid_allowed
from .config.settings import Settings, clamp_concurrency
from .dedup import SlugAssigner, find_cross_source_duplicate
from .errors import UpstreamError
from .geocode import GeocodeResolver
from .guards import check_guardrails
from .models import (
    BoundingBox,
    Feed,
    FeedRunResult,
    FeedState,
    IngestRunSummary,
    KidAllowed,
    MaintenanceResult,
    NormalizedEvent,
)
from .normalizer import NormalizationError, Normalizer, join_segments
from .resilience.health import HealthMonitor
from .resilience.throttle import HostThrottles
from .sources.http import HttpFetcher
from .sources.ics import IcsAdapter, IcsNormalizer, feed_source
from .sources.osm import SKIP_NOT_KID_ALLOWED, OverpassCrawler, PlaceNormalizer, place_skip_reason
from .sources.ticketmaster import TicketmasterClient, TicketmasterNormalizer
from .store import Store

logger = structlog.get_logger()

SKIP_INVALID = "invalid"
SKIP_DUPLICATE = "duplicate"

DUPLICATE_SCAN_WINDOW = timedelta(hours=4)

PO_BOX_RE = re.compile(r"\bP\.?\s*O\.?\s*Box\b", re.IGNORECASE)
COUNTRY_ONLY_RE = re.compile(r"^\s*united\s*states(?:\s+of\s+america)?\s*$", re.IGNORECASE)


def geocode_query_for(event: NormalizedEvent) -> Optional[str]:
    """Address when usable, else venue plus city/state. None if neither."""
    address = (event.address or "").strip()
    fallback = join_segments(event.venue_name, join_segments(event.city, event.state)) or ""
    query = address if address and not PO_BOX_RE.search(address) else fallback
    if not query or COUNTRY_ONLY_RE.match(query):
        return None
    return query


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class IngestionOrchestrator:
    """Runs feeds, the ticketing API and the POI crawler into the store."""

    def __init__(
        self,
        store: Store,
        fetcher: HttpFetcher,
        settings: Optional[Settings] = None,
        geocoder: Optional[GeocodeResolver] = None,
        health: Optional[HealthMonitor] = None,
        throttles: Optional[HostThrottles] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.settings = settings or Settings()
        self.geocoder = geocoder
        self.health = health or HealthMonitor()
        self.throttles = throttles or HostThrottles(self.settings.politeness_delay)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.ics = IcsAdapter(fetcher, resolve_dns=self.settings.validate_feed_dns)
        self.ticketmaster = TicketmasterClient(fetcher, self.settings.ticketmaster_api_key)
        self.overpass = OverpassCrawler(fetcher)

    # Shared upsert path

    async def _is_cross_source_duplicate(self, event: NormalizedEvent) -> bool:
        candidates = await self.store.events_starting_between(
            event.start_utc - DUPLICATE_SCAN_WINDOW, event.start_utc + DUPLICATE_SCAN_WINDOW
        )
        return find_cross_source_duplicate(event, candidates, self.settings.dedup_threshold) is not None

    async def _geocode(self, event: NormalizedEvent) -> NormalizedEvent:
        query = geocode_query_for(event)
        if not query:
            return event
        hit = await self.geocoder.resolve(query)
        if hit is None:
            return event
        return event.model_copy(update={"lat": hit.lat, "lon": hit.lon})

    async def upsert_events(
        self,
        raw_records: list[dict[str, Any]],
        normalizer: Normalizer[NormalizedEvent],
        result: FeedRunResult,
        assigner: SlugAssigner,
        feed: Optional[Feed] = None,
        dry_run: bool = False,
    ) -> None:
        """Normalize, guard, slug and upsert a batch of raw event records."""
        now = self._clock()
        for raw in raw_records:
            try:
                event = normalizer.normalize(raw)
            except NormalizationError as e:
                logger.debug("record_invalid", source=result.source, error=str(e))
                result.skip(SKIP_INVALID)
                continue
            except Exception as e:
                logger.warning(
                    "record_invalid",
                    source=result.source,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.skip(SKIP_INVALID)
                continue

            reason = check_guardrails(
                event,
                now=now,
                window_days=self.settings.ingest_window_days,
                feed_city=feed.city if feed else None,
                feed_state=feed.state if feed else None,
            )
            if reason:
                result.skip(reason)
                continue

            try:
                if await self._is_cross_source_duplicate(event):
                    result.skip(SKIP_DUPLICATE)
                    continue

                if self.geocoder and self.settings.geocode_on_ingest and not dry_run and not event.has_coordinates:
                    event = await self._geocode(event)

                event = event.model_copy(update={"slug": await assigner.assign(event)})

                if dry_run:
                    exists = await self.store.get_event(event.source, event.external_id)
                    outcome = "updated" if exists else "inserted"
                else:
                    outcome = await self.store.upsert_event(event)
            except Exception as e:
                logger.warning("event_upsert_failed", identity=event.identity, error=str(e))
                result.errors.append(f"{event.identity}: {e}")
                continue

            if outcome == "inserted":
                result.inserted += 1
            else:
                result.updated += 1

    # Feeds

    async def ingest_feed(
        self,
        feed: Feed,
        dry_run: bool = False,
        assigner: Optional[SlugAssigner] = None,
    ) -> FeedRunResult:
        """Fetch, normalize and upsert one calendar feed."""
        started = time.monotonic()
        source = feed_source(feed.url)
        result = FeedRunResult(source=source, url=feed.url, label=feed.label, dry_run=dry_run)
        assigner = assigner or SlugAssigner(self.store)
        log = logger.bind(feed=feed.label or feed.url, source=source)

        result.state = FeedState.FETCHING
        try:
            await self.throttles.for_host(urlparse(feed.url).hostname or "").wait()
            raw = await self.ics.fetch(feed)
        except UpstreamError as e:
            result.state = FeedState.FAILED
            result.errors.append(str(e))
            result.duration_ms = _elapsed_ms(started)
            self.health.record_failure(source, str(e))
            log.warning("feed_fetch_failed", error=str(e), error_type=type(e).__name__)
            return result

        result.state = FeedState.PARSED
        result.fetched = len(raw)
        self.health.record_success(source, len(raw))

        normalizer = IcsNormalizer(feed, default_tz=self.settings.default_timezone)
        await self.upsert_events(raw, normalizer, result, assigner, feed=feed, dry_run=dry_run)

        result.state = FeedState.UPSERTED
        result.duration_ms = _elapsed_ms(started)
        log.info(
            "feed_ingested",
            fetched=result.fetched,
            inserted=result.inserted,
            updated=result.updated,
            skipped=result.skipped,
            errors=len(result.errors),
            dry_run=dry_run,
        )
        return result

    async def ingest_all(self, dry_run: bool = False, concurrency: Optional[int] = None) -> IngestRunSummary:
        """Ingest every active feed with a fixed-size worker pool."""
        started = time.monotonic()
        feeds = await self.store.list_active_feeds()
        workers = clamp_concurrency(concurrency or self.settings.ingest_concurrency)
        assigner = SlugAssigner(self.store)
        results: list[Optional[FeedRunResult]] = [None] * len(feeds)

        queue: asyncio.Queue[tuple[int, Feed]] = asyncio.Queue()
        for item in enumerate(feeds):
            queue.put_nowait(item)

        async def worker() -> None:
            while True:
                try:
                    index, feed = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    results[index] = await self.ingest_feed(feed, dry_run=dry_run, assigner=assigner)
                except Exception as e:
                    logger.error("feed_ingest_crashed", feed=feed.url, error=str(e), exc_info=True)
                    results[index] = FeedRunResult(
                        source=feed_source(feed.url),
                        url=feed.url,
                        label=feed.label,
                        state=FeedState.FAILED,
                        errors=[str(e)],
                        dry_run=dry_run,
                    )
                    self.health.record_failure(feed_source(feed.url), str(e))

        await asyncio.gather(*(worker() for _ in range(min(workers, len(feeds)) or 1)))

        summary = IngestRunSummary(
            feeds=[r for r in results if r is not None],
            concurrency=workers,
            duration_ms=_elapsed_ms(started),
            dry_run=dry_run,
            health=self.health.get_status(),
        )
        logger.info("ingest_all_completed", feeds=len(feeds), **summary.totals, dry_run=dry_run)
        return summary

    # Ticketing API

    async def ingest_ticketmaster(
        self,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        radius_mi: Optional[float] = 25,
        city: Optional[str] = None,
        postal_code: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        keyword: Optional[str] = None,
        dry_run: bool = False,
    ) -> FeedRunResult:
        """Pull one Ticketmaster search into the store."""
        started = time.monotonic()
        normalizer = TicketmasterNormalizer()
        result = FeedRunResult(source=normalizer.source, dry_run=dry_run)
        now = self._clock()
        start = start or now
        end = end or now + timedelta(days=self.settings.ingest_window_days)

        result.state = FeedState.FETCHING
        try:
            raw = await self.ticketmaster.fetch(
                start=start, end=end, lat=lat, lon=lon, city=city,
                postal_code=postal_code, radius_mi=radius_mi, keyword=keyword,
            )
        except UpstreamError as e:
            result.state = FeedState.FAILED
            result.errors.append(str(e))
            result.duration_ms = _elapsed_ms(started)
            self.health.record_failure(normalizer.source, str(e))
            logger.warning("ticketmaster_fetch_failed", error=str(e))
            return result

        result.state = FeedState.PARSED
        result.fetched = len(raw)
        self.health.record_success(normalizer.source, len(raw))

        await self.upsert_events(raw, normalizer, result, SlugAssigner(self.store), dry_run=dry_run)
        result.state = FeedState.UPSERTED
        result.duration_ms = _elapsed_ms(started)
        logger.info("ticketmaster_ingested", inserted=result.inserted, updated=result.updated,
                    skipped=result.skipped, dry_run=dry_run)
        return result

    # POI crawler

    async def ingest_places(self, bbox: Optional[BoundingBox] = None, dry_run: bool = False) -> FeedRunResult:
        """Crawl family POIs inside ``bbox`` and upsert them as places."""
        started = time.monotonic()
        normalizer = PlaceNormalizer()
        result = FeedRunResult(source=normalizer.source, dry_run=dry_run)

        result.state = FeedState.FETCHING
        try:
            elements = await self.overpass.fetch(bbox)
        except UpstreamError as e:
            result.state = FeedState.FAILED
            result.errors.append(str(e))
            result.duration_ms = _elapsed_ms(started)
            self.health.record_failure(normalizer.source, str(e))
            logger.warning("overpass_fetch_failed", error=str(e))
            return result

        result.state = FeedState.PARSED
        result.fetched = len(elements)
        self.health.record_success(normalizer.source, len(elements))

        for element in elements:
            try:
                reason = place_skip_reason(element)
                if reason:
                    result.skip(reason)
                    continue
                place = normalizer.normalize(element)
            except NormalizationError:
                result.skip(SKIP_INVALID)
                continue
            except Exception as e:
                logger.warning(
                    "record_invalid",
                    source=result.source,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.skip(SKIP_INVALID)
                continue
            if place.kid_allowed == KidAllowed.FALSE:
                result.skip(SKIP_NOT_KID_ALLOWED)
                continue

            try:
                if dry_run:
                    exists = await self.store.get_place(place.source, place.external_id)
                    outcome = "updated" if exists else "inserted"
                else:
                    outcome = await self.store.upsert_place(place)
            except Exception as e:
                logger.warning("place_upsert_failed", identity=place.identity, error=str(e))
                result.errors.append(f"{place.identity}: {e}")
                continue

            if outcome == "inserted":
                result.inserted += 1
            else:
                result.updated += 1

        result.state = FeedState.UPSERTED
        result.duration_ms = _elapsed_ms(started)
        logger.info("places_ingested", inserted=result.inserted, updated=result.updated,
                    skipped=result.skipped, dry_run=dry_run)
        return result

    # Maintenance

    async def reclassify_unknown(self, limit: int = 500, dry_run: bool = False) -> MaintenanceResult:
        """Re-run the classifier over events still marked unknown."""
        result = MaintenanceResult(dry_run=dry_run)
        for event in await self.store.events_with_unknown_kid_allowed(limit):
            result.scanned += 1
            value = classify_kid_allowed(event.classifier_blob())
            if value == KidAllowed.UNKNOWN:
                result.skipped += 1
                continue
            if not dry_run:
                await self.store.update_kid_allowed(event.id, value)
            result.updated += 1

        logger.info("reclassify_completed", scanned=result.scanned, updated=result.updated, dry_run=dry_run)
        return result

    async def geocode_missing(self, limit: int = 30, dry_run: bool = False) -> MaintenanceResult:
        """Fill coordinates for stored events that have none."""
        result = MaintenanceResult(dry_run=dry_run)
        if self.geocoder is None:
            result.errors.append("geocoder not configured")
            return result

        for event in await self.store.events_missing_coordinates(limit):
            result.scanned += 1
            query = geocode_query_for(event)
            if not query:
                result.skipped += 1
                continue
            hit = await self.geocoder.resolve(query)
            if hit is None:
                result.skipped += 1
                continue
            if not dry_run:
                try:
                    await self.store.update_coordinates(event.id, hit.lat, hit.lon)
                except Exception as e:
                    result.errors.append(f"{event.identity}: {e}")
                    continue
            result.updated += 1

        logger.info("geocode_missing_completed", scanned=result.scanned, updated=result.updated, dry_run=dry_run)
        return result
