"""Error taxonomy shared by adapters, the orchestrator and the server."""

from typing import Optional


class UpstreamError(Exception):
    """Base class for failures talking to an upstream source."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """429, 5xx, timeouts and connection errors. Retried, then recorded."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class PermanentUpstreamError(UpstreamError):
    """Other 4xx responses and malformed payloads. Recorded immediately."""


class SSRFError(PermanentUpstreamError):
    """Raised when a feed URL fails SSRF validation."""


class SearchError(Exception):
    """Both entity queries failed for a search request."""


class UnauthorizedError(Exception):
    """Admin credential missing or wrong. The message carries no detail."""

    def __init__(self):
        super().__init__("unauthorized")


class RateLimitedError(Exception):
    """Inbound request budget exhausted for a client key."""

    def __init__(self, retry_after: float):
        super().__init__("rate limited")
        self.retry_after = retry_after
