"""
Configuration: versioned config dict plus resolved runtime settings.

Handles version migrations:
- v1 -> v2: flat ``ics_urls`` list (with top-level city/state) becomes a
  structured ``feeds`` list; ingest/geocode/map sections added
"""

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import structlog
from pydantic import BaseModel, Field, field_validator

from ..models import Feed

log = structlog.get_logger(__name__)

CURRENT_VERSION = 2

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


def clamp_concurrency(value: int) -> int:
    """Clamp a worker count into [MIN_CONCURRENCY, MAX_CONCURRENCY]."""
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


def migrate_config(config: dict[str, Any]) -> dict[str, Any]:
    """
    Migrate config from any version to current.

    Args:
        config: Raw config dict (may be any version)

    Returns:
        Config dict at CURRENT_VERSION
    """
    version = config.get("version", 1)

    if version == CURRENT_VERSION:
        return config

    log.info("migrating_config", from_version=version, to_version=CURRENT_VERSION)

    if version == 1:
        config = _migrate_v1_to_v2(config)

    config["version"] = CURRENT_VERSION
    return config


def _migrate_v1_to_v2(config: dict[str, Any]) -> dict[str, Any]:
    """
    Migrate v1 config to v2 format.

    Changes:
    - ics_urls (list[str]) -> feeds (list[dict]) carrying the old city/state
    - Added ingest, geocode, map and rate_limit sections
    """
    migrated = config.copy()
    defaults = get_default_config()

    old_urls = migrated.pop("ics_urls", [])
    city = migrated.pop("city", None)
    state = migrated.pop("state", None)
    if old_urls:
        migrated["feeds"] = [
            {"url": url, "label": _url_to_label(url), "city": city, "state": state, "active": True}
            for url in old_urls
        ]
        log.info("migrated_ics_urls", count=len(old_urls))
    else:
        migrated.setdefault("feeds", [])

    for section in ("location", "ingest", "geocode", "map", "rate_limit", "dedup"):
        if section not in migrated:
            migrated[section] = defaults[section]
            log.info("added_default_section", section=section)

    return migrated


def _url_to_label(url: str) -> str:
    """Derive a feed label from its host."""
    domain = urlparse(url).netloc.replace("www.", "")
    name = domain.split(".")[0] if domain else "feed"
    return name.replace("-", " ").replace("_", " ").title()


def validate_config(config: dict[str, Any]) -> list[str]:
    """
    Validate config and return list of errors.

    Returns:
        List of error messages (empty if valid)
    """
    errors: list[str] = []

    version = config.get("version", 1)
    if version > CURRENT_VERSION:
        errors.append(
            f"Config version {version} is newer than supported version {CURRENT_VERSION}"
        )

    for i, feed in enumerate(config.get("feeds", [])):
        if not isinstance(feed, dict) or not feed.get("url"):
            errors.append(f"Feed {i} is missing a url")

    ingest = config.get("ingest", {})
    window = ingest.get("window_days", 270)
    if not isinstance(window, int) or window <= 0:
        errors.append(f"Invalid ingest.window_days: {window} (must be a positive integer)")

    retry = ingest.get("retry", {})
    if retry.get("max_attempts", 3) < 1:
        errors.append("ingest.retry.max_attempts must be at least 1")
    if retry.get("base_delay", 2.0) > retry.get("max_delay", 10.0):
        errors.append("ingest.retry.base_delay must not exceed max_delay")

    threshold = config.get("dedup", {}).get("threshold", 0.85)
    if not 0 < threshold <= 1:
        errors.append(f"Invalid dedup threshold: {threshold} (must be 0-1)")

    rate = config.get("rate_limit", {})
    if rate.get("requests", 10) < 1 or rate.get("window", 60) <= 0:
        errors.append("rate_limit.requests must be >= 1 and rate_limit.window > 0")

    return errors


def get_default_config() -> dict[str, Any]:
    """Return default config for new installations."""
    return {
        "version": CURRENT_VERSION,
        "location": {
            "timezone": "America/Los_Angeles",
        },
        "feeds": [],
        "ingest": {
            "window_days": 270,
            "concurrency": 3,
            "timeout": 30.0,
            "politeness_delay": 1.0,
            "geocode_events": True,
            "retry": {
                "max_attempts": 3,
                "base_delay": 2.0,
                "max_delay": 10.0,
            },
        },
        "geocode": {
            "spacing": 1.1,
            "user_agent": "FamilyOutings/1.0 (contact@familyoutings)",
        },
        "map": {
            "cluster_ttl": 60,
        },
        "rate_limit": {
            "requests": 10,
            "window": 60,
        },
        "dedup": {
            "threshold": 0.85,
        },
    }


def load_config(path: Optional[str | Path] = None) -> dict[str, Any]:
    """Load a JSON config file, migrate it and validate it.

    Missing file or no path gives the default config.

    Raises:
        ValueError: If the migrated config fails validation
    """
    if path is None or not Path(path).exists():
        return get_default_config()

    with open(path, encoding="utf-8") as f:
        config = migrate_config(json.load(f))

    errors = validate_config(config)
    if errors:
        raise ValueError("Invalid config: " + "; ".join(errors))
    return config


class Settings(BaseModel):
    """Runtime settings resolved from the config dict and environment."""

    admin_token: Optional[str] = None
    ticketmaster_api_key: Optional[str] = None
    nominatim_user_agent: str = "FamilyOutings/1.0 (contact@familyoutings)"
    default_timezone: str = "America/Los_Angeles"

    ingest_window_days: int = 270
    ingest_concurrency: int = 3
    retry_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 10.0
    fetch_timeout: float = 30.0
    politeness_delay: float = 1.0
    geocode_on_ingest: bool = True
    validate_feed_dns: bool = True

    geocode_spacing: float = 1.1
    dedup_threshold: float = 0.85
    cluster_ttl: float = 60.0
    rate_limit_requests: int = 10
    rate_limit_window: float = 60.0

    feeds: list[Feed] = Field(default_factory=list)

    @field_validator("ingest_concurrency")
    @classmethod
    def clamp_worker_count(cls, v: int) -> int:
        return clamp_concurrency(v)

    @classmethod
    def from_config(
        cls,
        config: Optional[dict[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """Build settings; environment variables override the config file."""
        config = migrate_config(dict(config)) if config else get_default_config()
        env = os.environ if env is None else env

        ingest = config.get("ingest", {})
        retry = ingest.get("retry", {})
        geocode = config.get("geocode", {})
        rate = config.get("rate_limit", {})

        window_days = env.get("ICS_WINDOW_DAYS")
        return cls(
            admin_token=env.get("OUTINGS_ADMIN_TOKEN") or None,
            ticketmaster_api_key=env.get("TICKETMASTER_API_KEY") or env.get("TM_API_KEY") or None,
            nominatim_user_agent=env.get("NOMINATIM_USER_AGENT")
            or geocode.get("user_agent", cls.model_fields["nominatim_user_agent"].default),
            default_timezone=env.get("DEFAULT_TIMEZONE")
            or config.get("location", {}).get("timezone", "America/Los_Angeles"),
            ingest_window_days=int(window_days) if window_days else ingest.get("window_days", 270),
            ingest_concurrency=ingest.get("concurrency", 3),
            retry_attempts=retry.get("max_attempts", 3),
            retry_base_delay=retry.get("base_delay", 2.0),
            retry_max_delay=retry.get("max_delay", 10.0),
            fetch_timeout=ingest.get("timeout", 30.0),
            politeness_delay=ingest.get("politeness_delay", 1.0),
            geocode_on_ingest=ingest.get("geocode_events", True),
            geocode_spacing=geocode.get("spacing", 1.1),
            dedup_threshold=config.get("dedup", {}).get("threshold", 0.85),
            cluster_ttl=config.get("map", {}).get("cluster_ttl", 60),
            rate_limit_requests=rate.get("requests", 10),
            rate_limit_window=rate.get("window", 60),
            feeds=[Feed(**f) for f in config.get("feeds", [])],
        )
