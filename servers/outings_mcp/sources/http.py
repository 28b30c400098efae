"""
Shared HTTP fetcher for every upstream adapter.

Wraps httpx.AsyncClient with:
- a request-scoped timeout
- classification of failures into transient (429, 5xx, timeouts,
  connection errors) and permanent (other 4xx, malformed payloads)
- retry with exponential backoff on transient failures only
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from ..errors import PermanentUpstreamError, TransientUpstreamError
from ..resilience.retry import retry_call

logger = structlog.get_logger()

DEFAULT_USER_AGENT = "family-outings/0.1 (+https://github.com/family-outings)"


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def classify_response(response: httpx.Response) -> None:
    """Raise the matching upstream error for a non-2xx response."""
    status = response.status_code
    if status < 400:
        return
    url = str(response.request.url) if response.request else ""
    if status == 429 or status >= 500:
        raise TransientUpstreamError(
            f"HTTP {status} from {url}",
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    raise PermanentUpstreamError(f"HTTP {status} from {url}", status_code=status)


class HttpFetcher:
    """Retrying HTTP client shared by the adapters of one process."""

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.transport = transport
        self.sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
        )

    async def _request_once(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
                await response.aread()
        except httpx.TimeoutException as e:
            raise TransientUpstreamError(f"Timeout fetching {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientUpstreamError(f"Connection error fetching {url}: {e}") from e
        except httpx.InvalidURL as e:
            raise PermanentUpstreamError(f"Invalid URL {url}: {e}") from e

        classify_response(response)
        return response

    async def request(
        self,
        method: str,
        url: str,
        retry: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Raises:
            TransientUpstreamError: When the attempt budget is exhausted
            PermanentUpstreamError: On the first permanent failure
        """
        if not retry:
            return await self._request_once(method, url, **kwargs)
        return await retry_call(
            self._request_once,
            method,
            url,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            retryable_exceptions=(TransientUpstreamError,),
            sleep=self.sleep,
            **kwargs,
        )

    async def get_text(self, url: str, **kwargs: Any) -> str:
        response = await self.request("GET", url, **kwargs)
        return response.text

    async def get_json(self, url: str, **kwargs: Any) -> Any:
        response = await self.request("GET", url, **kwargs)
        return decode_json(response)

    async def post_json(self, url: str, **kwargs: Any) -> Any:
        response = await self.request("POST", url, **kwargs)
        return decode_json(response)


def decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise PermanentUpstreamError(
            f"Malformed JSON from {response.request.url}: {e}"
        ) from e
