"""
Ingestion guardrails.

Checked in order before any upsert; the first failing check becomes the
skip reason:
1. outside_window  - start not within [now - 1 min, now + window days]
2. generic_holiday - national-holiday placeholder (all-day or venue-less)
3. no_locality     - nothing tying the event to a place
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .models import NormalizedEvent

DEFAULT_WINDOW_DAYS = 270

HOLIDAY_KEYWORDS = [
    "new year",
    "independence day",
    "labor day",
    "memorial day",
    "thanksgiving",
    "christmas",
    "veterans day",
    "columbus day",
    "juneteenth",
    "easter",
    "good friday",
    "mlk",
    "martin luther king",
]

SKIP_OUTSIDE_WINDOW = "outside_window"
SKIP_GENERIC_HOLIDAY = "generic_holiday"
SKIP_NO_LOCALITY = "no_locality"

_CITY_STATE_RE = re.compile(r",\s*[A-Z]{2}(?:\b|$)")
_COUNTRY_ONLY_RE = re.compile(r"^(?:united states(?: of america)?|usa|us)$", re.IGNORECASE)


def within_window(
    start: datetime,
    now: Optional[datetime] = None,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> bool:
    """True if ``start`` lies in [now - 1 minute, now + window_days]."""
    now = now or datetime.now(timezone.utc)
    lower = now - timedelta(minutes=1)
    upper = now + timedelta(days=window_days, minutes=1)
    return lower < start < upper


def mentions_holiday(title: Optional[str]) -> bool:
    if not title:
        return False
    t = title.lower()
    return any(k in t for k in HOLIDAY_KEYWORDS)


def is_generic_holiday(event: NormalizedEvent) -> bool:
    """Holiday placeholder rows that calendar feeds ship by default.

    A holiday title alone is not enough: "Independence Day Fireworks at
    Waterfront Park" is a real event. Only all-day or venue-less holiday
    entries are rejected.
    """
    if not mentions_holiday(event.title):
        return False
    return event.all_day or not (event.venue_name or "").strip()


def has_locality(
    event: NormalizedEvent,
    feed_city: Optional[str] = None,
    feed_state: Optional[str] = None,
    known_cities: Iterable[tuple[str, Optional[str]]] = (),
) -> bool:
    """True when something places the event: coordinates, city/state, venue
    plus city or state, or an address naming a city."""
    city = (event.city or "").strip()
    state = (event.state or "").strip()
    venue = (event.venue_name or "").strip()
    address = (event.address or "").strip()

    if event.lat is not None and event.lon is not None:
        return True
    if city and state:
        return True
    if venue and (city or state):
        return True

    if not address or _COUNTRY_ONLY_RE.match(address):
        return False

    known = list(known_cities)
    if feed_city:
        known.insert(0, (feed_city, feed_state))

    address_lower = address.lower()
    for known_city, known_state in known:
        kc = (known_city or "").strip().lower()
        ks = (known_state or "").strip().lower()
        if not kc:
            continue
        if kc in address_lower and (not ks or ks in address_lower):
            return True

    head = address.split(",")[0]
    return bool(_CITY_STATE_RE.search(address) and re.search(r"[A-Za-z]", head))


def check_guardrails(
    event: NormalizedEvent,
    now: Optional[datetime] = None,
    window_days: int = DEFAULT_WINDOW_DAYS,
    feed_city: Optional[str] = None,
    feed_state: Optional[str] = None,
) -> Optional[str]:
    """Return the skip reason for the first failing guardrail, or None."""
    if not within_window(event.start_utc, now=now, window_days=window_days):
        return SKIP_OUTSIDE_WINDOW
    if is_generic_holiday(event):
        return SKIP_GENERIC_HOLIDAY
    if not has_locality(event, feed_city=feed_city, feed_state=feed_state):
        return SKIP_NO_LOCALITY
    return None
