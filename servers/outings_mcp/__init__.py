"""
Family Outings MCP Server

This MCP server provides tools for:
- Ingesting family events from calendar feeds and Ticketmaster
- Crawling kid-friendly places from OpenStreetMap
- Classifying events as kid-allowed (true / false / unknown)
- Adaptive radius search and map clustering over events and places
"""

__version__ = "0.1.0"
