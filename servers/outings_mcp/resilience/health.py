"""Per-source health as seen by ingestion runs."""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthMonitor:
    """Last outcome per source, plus running totals.

    Sources are keyed the way events are (``ics:<host>``, ``ticketmaster``,
    ``osm``). One outcome is recorded per feed fetch or API/crawler run.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.status: dict[str, dict[str, Any]] = {}
        self._clock = clock or _utcnow

    def _entry(self, source: str) -> dict[str, Any]:
        return self.status.setdefault(source, {
            "healthy": True,
            "last_check": None,
            "last_success": None,
            "record_count": 0,
            "consecutive_failures": 0,
            "runs": 0,
            "failures": 0,
            "last_error": None,
        })

    def record_success(self, source: str, record_count: int) -> None:
        """Mark ``source`` healthy after a fetch that returned ``record_count`` raw records."""
        entry = self._entry(source)
        checked = self._clock().isoformat()
        entry.update(
            healthy=True,
            last_check=checked,
            last_success=checked,
            record_count=record_count,
            consecutive_failures=0,
            last_error=None,
        )
        entry["runs"] += 1
        logger.debug("source_healthy", source=source, record_count=record_count)

    def record_failure(self, source: str, error: str) -> None:
        """Mark ``source`` unhealthy. ``last_success`` is kept."""
        entry = self._entry(source)
        entry.update(healthy=False, last_check=self._clock().isoformat(), record_count=0, last_error=error)
        entry["runs"] += 1
        entry["failures"] += 1
        entry["consecutive_failures"] += 1
        logger.warning(
            "source_unhealthy",
            source=source,
            consecutive_failures=entry["consecutive_failures"],
            error=error,
        )

    def is_healthy(self, source: str) -> bool:
        """Unseen sources count as healthy."""
        return self.status.get(source, {}).get("healthy", True)

    def get_unhealthy_sources(self) -> list[str]:
        return sorted(name for name, entry in self.status.items() if not entry["healthy"])

    def get_status(self) -> dict[str, Any]:
        unhealthy = len(self.get_unhealthy_sources())
        return {
            "timestamp": self._clock().isoformat(),
            "summary": {
                "healthy": len(self.status) - unhealthy,
                "unhealthy": unhealthy,
                "total": len(self.status),
            },
            "sources": {name: dict(entry) for name, entry in self.status.items()},
        }
