"""Upstream source adapters and their normalizers."""

from .http import HttpFetcher
from .ics import IcsAdapter, IcsNormalizer
from .osm import OverpassCrawler, PlaceNormalizer
from .ticketmaster import TicketmasterClient, TicketmasterNormalizer
from .url_validator import validate_feed_url

__all__ = [
    "HttpFetcher",
    "IcsAdapter",
    "IcsNormalizer",
    "TicketmasterClient",
    "TicketmasterNormalizer",
    "OverpassCrawler",
    "PlaceNormalizer",
    "validate_feed_url",
]
