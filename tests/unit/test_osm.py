"""Tests for the OpenStreetMap POI crawler."""

import httpx
import pytest

from servers.outings_mcp.errors import TransientUpstreamError
from servers.outings_mcp.models import BoundingBox, KidAllowed
from servers.outings_mcp.sources.osm import (
    SKIP_CLOSED,
    SKIP_NO_COORDINATES,
    SKIP_NO_TAGS,
    OverpassCrawler,
    PlaceNormalizer,
    build_overpass_query,
    classify_tags,
    place_skip_reason,
)

PORTLAND_BOX = BoundingBox(min_lon=-122.84, min_lat=45.43, max_lon=-122.47, max_lat=45.65)

PLAYGROUND = {
    "type": "node",
    "id": 101,
    "lat": 45.5301,
    "lon": -122.6205,
    "tags": {
        "amenity": "playground",
        "name": "Laurelhurst Play Area",
        "addr:street": "SE Cesar E Chavez Blvd",
        "addr:housenumber": "3600",
        "addr:city": "Portland",
        "addr:state": "OR",
    },
}


class TestQueryAndTags:
    """Tests for query building and tag classification."""

    def test_query_has_bbox(self):
        query = build_overpass_query(PORTLAND_BOX)
        assert "[bbox:45.43,-122.84,45.65,-122.47]" in query
        assert 'amenity"="playground"' in query
        assert query.endswith("out center meta;")

    @pytest.mark.parametrize(
        "tags,expected",
        [
            ({"amenity": "playground"}, ("playground", None)),
            ({"leisure": "water_park"}, ("park", "water_park")),
            ({"amenity": "library"}, ("library", None)),
            ({"tourism": "zoo"}, ("zoo", None)),
            ({"leisure": "swimming_pool"}, ("pool", None)),
            ({"shop": "toys"}, ("place", None)),
        ],
    )
    def test_classify_tags(self, tags, expected):
        assert classify_tags(tags) == expected


class TestSkipReasons:
    """Tests for element filtering."""

    def test_no_tags(self):
        assert place_skip_reason({"type": "node", "id": 1, "lat": 1, "lon": 1}) == SKIP_NO_TAGS

    def test_no_coordinates(self):
        assert place_skip_reason({"type": "way", "id": 1, "tags": {"leisure": "park"}}) == SKIP_NO_COORDINATES

    def test_way_center_counts(self):
        element = {"type": "way", "id": 1, "center": {"lat": 45.5, "lon": -122.6}, "tags": {"leisure": "park"}}
        assert place_skip_reason(element) is None

    def test_closed(self):
        element = dict(PLAYGROUND, tags={"amenity": "playground", "disused": "yes"})
        assert place_skip_reason(element) == SKIP_CLOSED


class TestPlaceNormalizer:
    """Tests for PlaceNormalizer."""

    def test_normalizes_playground(self):
        place = PlaceNormalizer().normalize(PLAYGROUND)

        assert place.external_id == "node/101"
        assert place.name == "Laurelhurst Play Area"
        assert place.category == "playground"
        assert place.address == "3600 SE Cesar E Chavez Blvd, Portland, OR"
        assert place.kid_allowed == KidAllowed.TRUE

    def test_unnamed_uses_category(self):
        place = PlaceNormalizer().normalize({"type": "node", "id": 2, "lat": 1, "lon": 2, "tags": {"leisure": "park"}})
        assert place.name == "Park"

    def test_adult_venue_is_false(self):
        element = {"type": "node", "id": 3, "lat": 1, "lon": 2,
                   "tags": {"leisure": "park", "name": "Beer Garden Pub"}}
        assert PlaceNormalizer().normalize(element).kid_allowed == KidAllowed.FALSE

    @pytest.mark.parametrize("name", ["Barnes Park", "Barton Playground", "Publix Field", "Stripes Skate Park"])
    def test_adult_words_must_be_whole(self, name):
        """Names that merely start with an adult keyword stay kid-allowed."""
        element = {"type": "node", "id": 5, "lat": 1, "lon": 2,
                   "tags": {"leisure": "park", "name": name}}
        assert PlaceNormalizer().normalize(element).kid_allowed == KidAllowed.TRUE

    def test_generic_place_is_unknown(self):
        element = {"type": "node", "id": 4, "lat": 1, "lon": 2, "tags": {"shop": "toys", "name": "Toy Shop"}}
        assert PlaceNormalizer().normalize(element).kid_allowed == KidAllowed.UNKNOWN


class TestOverpassCrawler:
    """Tests for mirror fallback."""

    @pytest.mark.asyncio
    async def test_falls_back_to_next_mirror(self, make_fetcher):
        hosts = []

        def handler(request):
            hosts.append(request.url.host)
            if request.url.host == "mirror-a.example.org":
                return httpx.Response(504)
            return httpx.Response(200, json={"elements": [PLAYGROUND]})

        crawler = OverpassCrawler(
            make_fetcher(handler, max_attempts=1),
            mirrors=["https://mirror-a.example.org/api", "https://mirror-b.example.org/api"],
        )
        elements = await crawler.fetch(PORTLAND_BOX)

        assert elements == [PLAYGROUND]
        assert hosts == ["mirror-a.example.org", "mirror-b.example.org"]

    @pytest.mark.asyncio
    async def test_all_mirrors_fail(self, make_fetcher):
        crawler = OverpassCrawler(
            make_fetcher(lambda r: httpx.Response(503), max_attempts=1),
            mirrors=["https://mirror-a.example.org/api", "https://mirror-b.example.org/api"],
        )
        with pytest.raises(TransientUpstreamError):
            await crawler.fetch(PORTLAND_BOX)

    @pytest.mark.asyncio
    async def test_posts_query_body(self, make_fetcher):
        bodies = []

        def handler(request):
            bodies.append(request.content.decode())
            return httpx.Response(200, json={"elements": []})

        crawler = OverpassCrawler(make_fetcher(handler), mirrors=["https://mirror-a.example.org/api"])
        assert await crawler.fetch(PORTLAND_BOX) == []
        assert bodies == [build_overpass_query(PORTLAND_BOX)]
