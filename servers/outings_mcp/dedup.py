"""
Identity keys, slug assignment and cross-source duplicate detection.

Slugs:
- base slug = title + start date + city
- on collision (store or current batch): append a 6-char hash of
  (source, external_id, start_time)
- still colliding: append a random 3-char suffix

Cross-source duplicates use weighted fuzzy similarity:
- Title: 50% weight
- Venue: 35% weight
- Time: 15% weight

Threshold: 0.85
"""

import asyncio
import hashlib
import re
import secrets
import string
from typing import Optional, Protocol

import structlog
from rapidfuzz import fuzz
from slugify import slugify

from .models import NormalizedEvent

logger = structlog.get_logger()

WEIGHTS = {
    "title": 0.50,
    "venue": 0.35,
    "time": 0.15,
}

# Stricter than a newsletter merge: a match drops the incoming record.
THRESHOLD = 0.85

HASH_LENGTH = 6
RANDOM_SUFFIX_LENGTH = 3
_RANDOM_ALPHABET = string.ascii_lowercase + string.digits


class SlugLookup(Protocol):
    """Subset of the store the slug assigner needs."""

    async def slug_exists(self, slug: str) -> bool: ...

    async def get_event_slug(self, source: str, external_id: str) -> Optional[str]: ...


def identity_key(record) -> tuple[str, str]:
    """The only key upstream-facing code may rely on for idempotent writes."""
    return (record.source, record.external_id)


def base_slug(event: NormalizedEvent) -> str:
    """Human-readable slug from title, start date and city."""
    date_part = event.start_utc.strftime("%Y-%m-%d") if event.start_utc else ""
    parts = [slugify(event.title or ""), date_part, slugify(event.city or "")]
    return "-".join(p for p in parts if p)


def identity_hash(event: NormalizedEvent, length: int = HASH_LENGTH) -> str:
    """Deterministic short hash of (source, external_id, start_time)."""
    start = event.start_utc.isoformat() if event.start_utc else ""
    key = f"{event.source}:{event.external_id}:{start}"
    return hashlib.sha1(key.encode()).hexdigest()[:length]


def _random_suffix(length: int = RANDOM_SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(length))


class SlugAssigner:
    """Assigns store-wide unique slugs across one ingestion batch.

    The store is not updated mid-batch, so every slug handed out is also
    remembered in memory and checked on the following records.
    """

    def __init__(self, store: SlugLookup):
        self.store = store
        self.seen: set[str] = set()
        self._by_identity: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def _taken(self, slug: str) -> bool:
        return slug in self.seen or await self.store.slug_exists(slug)

    async def assign(self, event: NormalizedEvent) -> str:
        """Return the slug for the event, reusing any slug already assigned."""
        async with self._lock:
            return await self._assign(event)

    async def _assign(self, event: NormalizedEvent) -> str:
        key = identity_key(event)
        if key in self._by_identity:
            return self._by_identity[key]

        existing = await self.store.get_event_slug(*key)
        if existing:
            self._remember(key, existing)
            return existing

        base = base_slug(event) or identity_hash(event, 10)
        candidate = base
        if await self._taken(candidate):
            candidate = f"{base}-{identity_hash(event)}"
            if await self._taken(candidate):
                hashed = candidate
                candidate = f"{hashed}-{_random_suffix()}"
                while await self._taken(candidate):
                    candidate = f"{hashed}-{_random_suffix()}"
                logger.info("slug_random_suffix", identity=event.identity, slug=candidate)

        self._remember(key, candidate)
        return candidate

    def _remember(self, key: tuple[str, str], slug: str) -> None:
        self.seen.add(slug)
        self._by_identity[key] = slug


def normalize_text(text: Optional[str]) -> str:
    """Normalize a title for comparison."""
    if not text:
        return ""

    text = text.lower().strip()

    prefixes = ["live:", "live -", "tonight:", "this week:", "event:"]
    for prefix in prefixes:
        if text.startswith(prefix):
            text = text[len(prefix):].strip()

    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def normalize_venue_name(name: Optional[str]) -> str:
    """Normalize venue name for comparison."""
    if not name:
        return ""

    name = name.lower().strip()

    suffixes = [
        " library", " branch", " park", " center", " centre", " theater",
        " theatre", " museum", " hall", " community center",
    ]
    for suffix in suffixes:
        if name.endswith(suffix):
            name = name[:-len(suffix)].strip()

    if name.startswith("the "):
        name = name[4:]

    return name


def title_similarity(e1: NormalizedEvent, e2: NormalizedEvent) -> float:
    t1 = normalize_text(e1.title)
    t2 = normalize_text(e2.title)
    if not t1 or not t2:
        return 0.0
    return fuzz.token_sort_ratio(t1, t2) / 100


def venue_similarity(e1: NormalizedEvent, e2: NormalizedEvent) -> float:
    v1 = normalize_venue_name(e1.venue_name)
    v2 = normalize_venue_name(e2.venue_name)
    if not v1 or not v2:
        # Without venues, a shared city is the best we have
        same_city = bool(e1.city and e2.city and e1.city.lower() == e2.city.lower())
        return 0.5 if same_city else 0.0
    return fuzz.ratio(v1, v2) / 100


def time_similarity(e1: NormalizedEvent, e2: NormalizedEvent) -> float:
    diff = abs((e1.start_utc - e2.start_utc).total_seconds())
    if diff <= 1800:
        return 1.0
    if diff <= 14400:
        return 1.0 - (diff - 1800) / 12600
    return 0.0


def calculate_similarity(e1: NormalizedEvent, e2: NormalizedEvent) -> float:
    """Weighted similarity between two events (0-1)."""
    return (
        WEIGHTS["title"] * title_similarity(e1, e2)
        + WEIGHTS["venue"] * venue_similarity(e1, e2)
        + WEIGHTS["time"] * time_similarity(e1, e2)
    )


def find_cross_source_duplicate(
    event: NormalizedEvent,
    candidates: list[NormalizedEvent],
    threshold: float = THRESHOLD,
) -> Optional[NormalizedEvent]:
    """Return a stored event from another source that matches this one.

    Records sharing the event's identity are never duplicates: re-ingesting
    the same identity is an update.
    """
    key = identity_key(event)
    best: Optional[NormalizedEvent] = None
    best_score = threshold
    for other in candidates:
        if other.source == event.source or identity_key(other) == key:
            continue
        score = calculate_similarity(event, other)
        if score >= best_score:
            best, best_score = other, score
    if best is not None:
        logger.debug(
            "cross_source_duplicate",
            identity=event.identity,
            matched=best.identity,
            similarity=round(best_score, 3),
        )
    return best
