"""
Source-independent normalization helpers.

Each source implements exactly one Normalizer subclass that maps its raw
upstream record into a NormalizedEvent (or Place). The helpers here do the
shared work: UTC coercion, all-day inference, address assembly, tag
cleanup, HTML stripping and the single classifier call.
"""

import re
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Generic, Iterable, Optional, TypeVar, Union

from bs4 import BeautifulSoup
from dateutil import parser as date_parser
from dateutil import tz

from .classifier import classify_kid_allowed, infer_age_band, infer_indoor_outdoor
from .models import NormalizedEvent, Place

R = TypeVar("R", NormalizedEvent, Place)

FREE_PATTERN = re.compile(r"\bfree\b", re.IGNORECASE)


class NormalizationError(ValueError):
    """Raised when a raw record cannot become a canonical record."""


class Normalizer(ABC, Generic[R]):
    """One implementation per upstream source."""

    source: str

    @abstractmethod
    def normalize(self, raw: dict[str, Any]) -> R:
        """Map one raw upstream record to a canonical record.

        Raises:
            NormalizationError: If the record lacks required fields
        """


def to_utc(
    value: Union[str, datetime, date, None],
    default_tz: Optional[str] = None,
) -> Optional[datetime]:
    """Coerce a timestamp into an aware UTC datetime.

    Naive values are interpreted in ``default_tz`` (UTC when unset).
    Date-only values become local midnight.
    """
    if value is None or value == "":
        return None

    if isinstance(value, str):
        try:
            value = date_parser.isoparse(value)
        except (ValueError, OverflowError):
            try:
                value = date_parser.parse(value)
            except (ValueError, OverflowError) as e:
                raise NormalizationError(f"Unparseable timestamp: {value!r}") from e

    if not isinstance(value, date):
        raise NormalizationError(f"Unsupported timestamp type: {type(value).__name__}")

    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)

    if value.tzinfo is None:
        zone = tz.gettz(default_tz) if default_tz else timezone.utc
        value = value.replace(tzinfo=zone or timezone.utc)

    return value.astimezone(timezone.utc)


def is_all_day(start: Optional[datetime], end: Optional[datetime]) -> bool:
    """True when the span is exactly 24h from local midnight to local midnight.

    Both values are compared in their own (local) zone, before UTC coercion.
    """
    if start is None or end is None:
        return False
    if (start.tzinfo is None) != (end.tzinfo is None):
        return False
    local_end = end.astimezone(start.tzinfo) if start.tzinfo else end
    if start.time() != time.min or local_end.time() != time.min:
        return False
    return (end - start) == timedelta(hours=24)


def join_segments(*segments: Optional[str], sep: str = ", ") -> Optional[str]:
    """Join non-empty segments, omitting blanks."""
    cleaned = [s.strip() for s in segments if s and s.strip()]
    return sep.join(cleaned) if cleaned else None


def assemble_address(
    street: Optional[str],
    city: Optional[str],
    state: Optional[str],
    postal_code: Optional[str] = None,
) -> Optional[str]:
    """Build "street, city, ST 12345" dropping any empty segment."""
    state_zip = join_segments(state, postal_code, sep=" ")
    return join_segments(street, city, state_zip)


def normalize_tags(tags: Iterable[Any]) -> list[str]:
    """Lower-case, strip and dedupe tags keeping first-seen order."""
    seen: set[str] = set()
    out: list[str] = []
    for tag in tags or []:
        if tag is None:
            continue
        t = re.sub(r"\s+", " ", str(tag)).strip().lower()
        if not t or t in seen or t == "undefined":
            continue
        seen.add(t)
        out.append(t)
    return out


def strip_html(text: Optional[str]) -> Optional[str]:
    """Remove markup from upstream descriptions."""
    if not text:
        return None
    if "<" in text and ">" in text:
        text = BeautifulSoup(text, "html.parser").get_text(" ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\s*\n\s*", "\n", text).strip()
    return text or None


def clean_text(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = re.sub(r"\s+", " ", str(text)).strip()
    return text or None


def infer_pricing(
    text: str,
    price_min: Optional[float],
    price_max: Optional[float],
) -> tuple[bool, Optional[float], Optional[float]]:
    """Return (is_free, price_min, price_max)."""
    if price_min is not None and price_max is None:
        price_max = price_min
    if price_max is not None and price_min is None:
        price_min = price_max
    if price_max is not None:
        return price_max == 0, price_min, price_max
    if FREE_PATTERN.search(text or ""):
        return True, 0.0, 0.0
    return False, None, None


def to_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if result != result or result in (float("inf"), float("-inf")):
        return None
    return result


def build_event(
    *,
    source: str,
    external_id: str,
    title: str,
    start_utc: datetime,
    end_utc: Optional[datetime] = None,
    all_day: bool = False,
    description: Optional[str] = None,
    venue_name: Optional[str] = None,
    street: Optional[str] = None,
    address: Optional[str] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
    postal_code: Optional[str] = None,
    lat: Optional[float] = None,
    lon: Optional[float] = None,
    price_min: Optional[float] = None,
    price_max: Optional[float] = None,
    currency: Optional[str] = None,
    tags: Iterable[Any] = (),
    source_url: Optional[str] = None,
    image_url: Optional[str] = None,
) -> NormalizedEvent:
    """Assemble a fully-populated NormalizedEvent and classify it once."""
    title = clean_text(title)
    if not title:
        raise NormalizationError("Event has no title")
    if not external_id:
        raise NormalizationError("Event has no external id")

    description = strip_html(description)
    venue_name = clean_text(venue_name)
    city = clean_text(city)
    state = clean_text(state)
    postal_code = clean_text(postal_code)
    if address is None:
        address = assemble_address(street, city, state, postal_code)
    else:
        address = clean_text(address)

    tag_list = normalize_tags(tags)
    text = " ".join(p for p in [title, description or "", " ".join(tag_list)] if p)
    is_free, price_min, price_max = infer_pricing(text, price_min, price_max)

    event = NormalizedEvent(
        source=source,
        external_id=str(external_id),
        title=title,
        description=description,
        start_utc=start_utc,
        end_utc=end_utc,
        all_day=all_day,
        venue_name=venue_name,
        address=address,
        city=city,
        state=state,
        postal_code=postal_code,
        lat=lat,
        lon=lon,
        is_free=is_free,
        price_min=price_min,
        price_max=price_max,
        currency=clean_text(currency),
        age_band=infer_age_band(text),
        indoor_outdoor=infer_indoor_outdoor(f"{title} {venue_name or ''} {address or ''}"),
        tags=tag_list,
        source_url=source_url or None,
        image_url=image_url or None,
    )
    event.kid_allowed = classify_kid_allowed(event.classifier_blob())
    return event
