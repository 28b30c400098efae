"""
Ticketmaster Discovery API integration.

Free tier: 5000 calls/day, 5 requests/second.

Searches by coordinate, city or postal code inside a UTC window and walks
the HAL ``_links.next`` chain up to a page cap.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urljoin, urlparse

import structlog

from ..errors import PermanentUpstreamError
from ..models import NormalizedEvent
from ..normalizer import NormalizationError, Normalizer, build_event, to_float, to_utc
from .http import HttpFetcher

logger = structlog.get_logger()

TM_ORIGIN = "https://app.ticketmaster.com"
TM_EVENTS_PATH = "/discovery/v2/events.json"
PAGE_SIZE = 200
MAX_PAGES = 25


def to_tm_iso(value: datetime) -> str:
    """UTC ISO-8601 without fractional seconds, as the API requires."""
    return value.astimezone(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def _with_api_key(url: str, api_key: str) -> str:
    parsed = urlparse(urljoin(TM_ORIGIN, url))
    query = parse_qs(parsed.query)
    if "apikey" not in query:
        query["apikey"] = [api_key]
    return parsed._replace(query=urlencode(query, doseq=True)).geturl()


class TicketmasterClient:
    """Paginated client for the Discovery events endpoint."""

    def __init__(self, fetcher: HttpFetcher, api_key: Optional[str], max_pages: int = MAX_PAGES):
        self.fetcher = fetcher
        self.api_key = api_key
        self.max_pages = max_pages

    def build_params(
        self,
        start: datetime,
        end: datetime,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        city: Optional[str] = None,
        postal_code: Optional[str] = None,
        radius_mi: Optional[float] = None,
        keyword: Optional[str] = None,
    ) -> dict[str, str]:
        params = {
            "apikey": self.api_key or "",
            "startDateTime": to_tm_iso(start),
            "endDateTime": to_tm_iso(end),
            "countryCode": "US",
            "locale": "*",
            "size": str(PAGE_SIZE),
            "sort": "date,asc",
        }
        if lat is not None and lon is not None:
            params["latlong"] = f"{lat},{lon}"
        elif postal_code:
            params["postalCode"] = postal_code
        elif city:
            params["city"] = city
        if radius_mi is not None and (params.get("latlong") or params.get("postalCode")):
            params["radius"] = str(int(round(radius_mi)))
            params["unit"] = "miles"
        if keyword:
            params["keyword"] = keyword
        return params

    async def fetch(self, **search: Any) -> list[dict[str, Any]]:
        """Collect raw event dicts across pages.

        Raises:
            PermanentUpstreamError: If no API key is configured
        """
        if not self.api_key:
            raise PermanentUpstreamError("TICKETMASTER_API_KEY not configured")

        params = self.build_params(**search)
        next_url: Optional[str] = f"{TM_ORIGIN}{TM_EVENTS_PATH}?{urlencode(params)}"
        collected: list[dict[str, Any]] = []
        pages = 0

        while next_url and pages < self.max_pages:
            data = await self.fetcher.get_json(next_url, headers={"Accept": "application/json"})
            pages += 1
            if not isinstance(data, dict):
                raise PermanentUpstreamError("Ticketmaster response is not an object")
            collected.extend((data.get("_embedded") or {}).get("events") or [])
            href = ((data.get("_links") or {}).get("next") or {}).get("href")
            next_url = _with_api_key(href, self.api_key) if isinstance(href, str) and href else None

        if next_url:
            logger.warning("ticketmaster_page_cap_reached", pages=pages, collected=len(collected))
        logger.info("ticketmaster_fetched", pages=pages, count=len(collected))
        return collected


class TicketmasterNormalizer(Normalizer[NormalizedEvent]):
    """Discovery API event -> NormalizedEvent."""

    source = "ticketmaster"

    def _start(self, dates: dict[str, Any], venue_tz: Optional[str]) -> Optional[datetime]:
        start = dates.get("start") or {}
        if start.get("dateTime"):
            return to_utc(start["dateTime"])
        if start.get("localDate"):
            local = f"{start['localDate']}T{start.get('localTime') or '00:00:00'}"
            return to_utc(local, venue_tz or dates.get("timezone"))
        return None

    def normalize(self, raw: dict[str, Any]) -> NormalizedEvent:
        venues = (raw.get("_embedded") or {}).get("venues") or []
        venue = venues[0] if venues else {}
        dates = raw.get("dates") or {}

        start_utc = self._start(dates, venue.get("timezone"))
        if start_utc is None:
            raise NormalizationError("Ticketmaster event has no start time")
        end_raw = (dates.get("end") or {}).get("dateTime")
        start_info = dates.get("start") or {}

        tags: list[str] = []
        classifications = raw.get("classifications") or []
        if classifications:
            c = classifications[0]
            for key in ("segment", "genre", "subGenre"):
                name = (c.get(key) or {}).get("name")
                if name:
                    tags.append(name)
        if not tags:
            tags = ["ticketmaster"]

        prices = raw.get("priceRanges") or []
        price = prices[0] if prices else {}
        location = venue.get("location") or {}
        images = raw.get("images") or []

        return build_event(
            source=self.source,
            external_id=raw.get("id"),
            title=raw.get("name") or "Untitled",
            description=raw.get("info") or raw.get("pleaseNote") or raw.get("description"),
            start_utc=start_utc,
            end_utc=to_utc(end_raw) if end_raw else None,
            all_day=bool(start_info.get("dateTBA") is False and start_info.get("noSpecificTime")),
            venue_name=venue.get("name"),
            street=(venue.get("address") or {}).get("line1"),
            city=(venue.get("city") or {}).get("name"),
            state=(venue.get("state") or {}).get("stateCode"),
            postal_code=venue.get("postalCode"),
            lat=to_float(location.get("latitude")),
            lon=to_float(location.get("longitude")),
            price_min=to_float(price.get("min")),
            price_max=to_float(price.get("max")),
            currency=price.get("currency"),
            tags=tags,
            source_url=raw.get("url"),
            image_url=images[0].get("url") if images else None,
        )
