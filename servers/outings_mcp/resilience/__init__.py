"""Resilience patterns for upstream fetches and inbound requests."""

from .fallback import FallbackChain
from .health import HealthMonitor
from .rate_limit import RequestRateLimiter
from .retry import backoff_delay, retry_call, retry_with_backoff
from .throttle import HostThrottles, MinIntervalThrottle

__all__ = [
    "retry_with_backoff",
    "retry_call",
    "backoff_delay",
    "FallbackChain",
    "HealthMonitor",
    "MinIntervalThrottle",
    "HostThrottles",
    "RequestRateLimiter",
]
