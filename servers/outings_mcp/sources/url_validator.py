"""
URL validation for SSRF (Server-Side Request Forgery) protection.

Feed URLs come from the admin surface and are fetched by the server, so
every one is validated before it is requested:
- webcal:// is rewritten to https://
- requests to localhost, private or reserved networks are refused
"""

import ipaddress
import socket
from typing import Optional
from urllib.parse import urlparse, urlunparse

from ..errors import SSRFError

BLOCKED_IP_RANGES = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("224.0.0.0/4"),
    ipaddress.ip_network("240.0.0.0/4"),
    ipaddress.ip_network("100.64.0.0/10"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("::1/128"),
]

BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "127.0.0.1",
    "::1",
    "0.0.0.0",
}


def normalize_feed_scheme(url: str) -> str:
    """Rewrite webcal:// (and webcals://) to https://."""
    parsed = urlparse(url.strip())
    if parsed.scheme.lower() in ("webcal", "webcals"):
        parsed = parsed._replace(scheme="https")
    return urlunparse(parsed)


def validate_url(
    url: str,
    require_https: bool = False,
    allowed_domains: Optional[set[str]] = None,
    resolve_dns: bool = True,
) -> str:
    """
    Validate a URL for SSRF protection.

    Args:
        url: The URL to validate
        require_https: If True, reject http:// URLs
        allowed_domains: Optional whitelist of allowed domains
        resolve_dns: If True, resolve the hostname and check every address
                    against the blocked ranges

    Returns:
        The validated URL (normalized)

    Raises:
        SSRFError: If the URL fails validation
    """
    if not url or not isinstance(url, str):
        raise SSRFError("URL must be a non-empty string")

    url = normalize_feed_scheme(url)
    parsed = urlparse(url)

    scheme = parsed.scheme.lower()
    if require_https and scheme != "https":
        raise SSRFError(f"Only HTTPS URLs are allowed (got {scheme}://)")
    if scheme not in ("http", "https"):
        raise SSRFError(f"Only HTTP(S) URLs are allowed (got {scheme}://)")

    hostname = parsed.hostname
    if not hostname:
        raise SSRFError("URL must include a hostname")

    hostname_lower = hostname.lower()

    if hostname_lower in BLOCKED_HOSTNAMES or hostname_lower.endswith(".localhost"):
        raise SSRFError(f"Access to {hostname} is blocked (localhost addresses are not allowed)")

    if allowed_domains is not None and not _domain_matches_whitelist(hostname_lower, allowed_domains):
        raise SSRFError(f"Domain {hostname} is not in the allowed domains list")

    ip_addr = _parse_ip_address(hostname)
    if ip_addr:
        if _is_blocked_ip(ip_addr):
            raise SSRFError(
                f"Access to {hostname} is blocked (private/internal IP addresses are not allowed)"
            )
    elif resolve_dns:
        try:
            resolved_ips = _resolve_hostname(hostname)
        except socket.gaierror:
            # Unresolvable hosts fail later in the HTTP client
            resolved_ips = []
        for ip_str in resolved_ips:
            resolved = _parse_ip_address(ip_str)
            if resolved and _is_blocked_ip(resolved):
                raise SSRFError(
                    f"Access to {hostname} is blocked (resolves to private/internal IP {ip_str})"
                )

    return url


def validate_feed_url(url: str, resolve_dns: bool = True) -> str:
    """Validate a calendar feed URL. http and https are both accepted."""
    return validate_url(url, require_https=False, resolve_dns=resolve_dns)


def _domain_matches_whitelist(hostname: str, allowed_domains: set[str]) -> bool:
    for domain in allowed_domains:
        domain = domain.lower()
        if hostname == domain or hostname.endswith("." + domain):
            return True
    return False


def _parse_ip_address(hostname: str) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        return None


def _is_blocked_ip(ip_addr: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    for network in BLOCKED_IP_RANGES:
        if ip_addr.version == network.version and ip_addr in network:
            return True
    return False


def _resolve_hostname(hostname: str) -> list[str]:
    results = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC)
    return list({result[4][0] for result in results})
