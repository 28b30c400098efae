"""Tests for adaptive radius search."""

import base64
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from haversine import Unit, haversine

from servers.outings_mcp.errors import SearchError
from servers.outings_mcp.geocode import GeocodeResolver
from servers.outings_mcp.models import GeocodeHit, KidAllowed, SearchItem
from servers.outings_mcp.resilience.throttle import MinIntervalThrottle
from servers.outings_mcp.search import (
    NOTICE_ENTER_LOCATION,
    AdaptiveSearchEngine,
    cap_for_place,
    clamp_limit,
    decode_cursor,
    encode_cursor,
    fallback_distance_mi,
    miles_to_meters,
    rank_items,
    resolve_range,
)
from servers.outings_mcp.store import GeoRow, MemoryStore

MILES_PER_DEGREE_LAT = 69.05


def miles_north(hit: GeocodeHit, miles: float) -> dict:
    return {"lat": hit.lat + miles / MILES_PER_DEGREE_LAT, "lon": hit.lon}


def raw_cursor(payload: str) -> str:
    return base64.urlsafe_b64encode(payload.encode()).decode()


class RecordingStore(MemoryStore):
    """MemoryStore that records radius queries and can be told to fail."""

    def __init__(self, clock=None):
        super().__init__(clock=clock)
        self.event_radii: list[float] = []
        self.fail_events = False
        self.fail_places = False
        self.drop_distances = False

    def _maybe_drop_distances(self, rows):
        if not self.drop_distances:
            return rows
        return [GeoRow(r.record, None, r.in_city_bbox) for r in rows]

    async def search_events_geo(self, lat, lon, radius_meters, *args, **kwargs):
        self.event_radii.append(radius_meters)
        if self.fail_events:
            raise ConnectionError("events table unavailable")
        rows = await super().search_events_geo(lat, lon, radius_meters, *args, **kwargs)
        return self._maybe_drop_distances(rows)

    async def search_places_geo(self, *args, **kwargs):
        if self.fail_places:
            raise ConnectionError("places table unavailable")
        return self._maybe_drop_distances(await super().search_places_geo(*args, **kwargs))


@pytest.fixture
def search_store(now):
    return RecordingStore(clock=lambda: now)


@pytest_asyncio.fixture
async def engine(search_store, make_fetcher, portland, now, fake_clock):
    """Provide a search engine whose geocoder answers Portland from the cache."""

    def offline(request):
        return httpx.Response(200, json=[])

    await search_store.put_geocode("portland, or", portland)
    await search_store.put_geocode("rural county, or", portland.model_copy(update={"place_type": "county"}))
    geocoder = GeocodeResolver(
        search_store,
        make_fetcher(offline),
        throttle=MinIntervalThrottle(1.1, clock=fake_clock, sleep=fake_clock.sleep),
    )
    return AdaptiveSearchEngine(search_store, geocoder, clock=lambda: now)


async def add_events_at(store, make_event, portland, miles: float, count: int, **overrides):
    for _ in range(count):
        await store.upsert_event(make_event(**miles_north(portland, miles), **overrides))


class TestRadiusPolicy:
    """Tests for radius expansion."""

    @pytest.mark.asyncio
    async def test_portland_expands_to_25(self, engine, search_store, make_event, portland):
        """Four results inside 20 mi and seven more by 25 mi stop at 25."""
        await add_events_at(search_store, make_event, portland, 5, 4)
        await add_events_at(search_store, make_event, portland, 22, 7)

        page = await engine.search("Portland, OR")

        assert page.radius_mi == 25
        assert len(page.items) == 11
        assert page.notice == "Expanded to 25 mi to find more options"

    @pytest.mark.asyncio
    async def test_no_expansion_when_enough(self, engine, search_store, make_event, portland):
        await add_events_at(search_store, make_event, portland, 5, 12)

        page = await engine.search("Portland, OR")

        assert page.radius_mi == 20
        assert page.notice is None
        assert len(search_store.event_radii) == 1

    @pytest.mark.asyncio
    async def test_city_cap(self, engine, search_store, make_event, portland):
        """A sparse city stops at the 40 mi cap."""
        await add_events_at(search_store, make_event, portland, 5, 2)

        page = await engine.search("Portland, OR")

        assert page.radius_mi == 40
        assert len(page.items) == 2
        assert page.notice == "Expanded to 40 mi to find more options"

    @pytest.mark.asyncio
    async def test_non_city_cap(self, engine, search_store, make_event, portland):
        await add_events_at(search_store, make_event, portland, 5, 1)
        page = await engine.search("Rural County, OR")
        assert page.radius_mi == 50

    @pytest.mark.asyncio
    async def test_radius_grows_monotonically(self, engine, search_store):
        """Each attempt widens by exactly five miles."""
        await engine.search("Portland, OR")

        radii = search_store.event_radii
        assert radii == [pytest.approx(miles_to_meters(r)) for r in (20, 25, 30, 35, 40)]

    @pytest.mark.asyncio
    async def test_explicit_radius_never_expands(self, engine, search_store, make_event, portland):
        await add_events_at(search_store, make_event, portland, 2, 1)
        await add_events_at(search_store, make_event, portland, 8, 1)

        page = await engine.search("Portland, OR", radius_mi=3)

        assert page.radius_mi == 3
        assert page.notice is None
        assert len(page.items) == 1
        assert len(search_store.event_radii) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("radius", [0, -5, float("nan")])
    async def test_invalid_radius(self, engine, radius):
        with pytest.raises(ValueError):
            await engine.search("Portland, OR", radius_mi=radius)

    def test_cap_for_place(self):
        assert cap_for_place("city") == 40
        assert cap_for_place("town") == 40
        assert cap_for_place("postcode") == 50
        assert cap_for_place(None) == 50


class TestSearchResults:
    """Tests for merged results."""

    @pytest.mark.asyncio
    async def test_blank_query_asks_for_location(self, engine):
        page = await engine.search("  ")
        assert page.items == []
        assert page.notice == NOTICE_ENTER_LOCATION

    @pytest.mark.asyncio
    async def test_unknown_location_asks_for_location(self, engine):
        page = await engine.search("Atlantis")
        assert page.items == []
        assert page.notice == NOTICE_ENTER_LOCATION

    @pytest.mark.asyncio
    async def test_mixes_events_and_places(self, engine, search_store, make_event, make_place, portland):
        await add_events_at(search_store, make_event, portland, 1, 6)
        for _ in range(6):
            await search_store.upsert_place(make_place(**miles_north(portland, 2)))

        page = await engine.search("Portland, OR")

        assert {i.type for i in page.items} == {"event", "place"}
        assert page.radius_mi == 20

    @pytest.mark.asyncio
    async def test_type_filter(self, engine, search_store, make_event, make_place, portland):
        await add_events_at(search_store, make_event, portland, 1, 3)
        await search_store.upsert_place(make_place(**miles_north(portland, 1)))

        events = await engine.search("Portland, OR", entity_type="events")
        places = await engine.search("Portland, OR", entity_type="places")

        assert {i.type for i in events.items} == {"event"}
        assert {i.type for i in places.items} == {"place"}

    @pytest.mark.asyncio
    async def test_unknown_type(self, engine):
        with pytest.raises(ValueError):
            await engine.search("Portland, OR", entity_type="concerts")

    @pytest.mark.asyncio
    async def test_not_kid_allowed_hidden(self, engine, search_store, make_event, portland):
        await add_events_at(search_store, make_event, portland, 1, 1, title="21+ Trivia", kid_allowed=KidAllowed.FALSE)
        await add_events_at(search_store, make_event, portland, 1, 1)

        page = await engine.search("Portland, OR")

        assert [i.kid_allowed for i in page.items] == [KidAllowed.TRUE]

    @pytest.mark.asyncio
    async def test_window_filters_events(self, engine, search_store, make_event, portland, now):
        await add_events_at(search_store, make_event, portland, 1, 1, start_utc=now + timedelta(hours=2))
        await add_events_at(search_store, make_event, portland, 1, 1, start_utc=now + timedelta(days=20))

        page = await engine.search("Portland, OR", range_token="7d")

        assert len(page.items) == 1


class TestPartialFailure:
    """Tests for entity query failures."""

    @pytest.mark.asyncio
    async def test_one_side_fails_with_warning(self, engine, search_store, make_event, portland):
        await add_events_at(search_store, make_event, portland, 1, 12)
        search_store.fail_places = True

        page = await engine.search("Portland, OR")

        assert len(page.items) == 12
        assert page.warning is not None
        assert "places" in page.warning

    @pytest.mark.asyncio
    async def test_both_fail(self, engine, search_store):
        search_store.fail_places = True
        search_store.fail_events = True
        with pytest.raises(SearchError):
            await engine.search("Portland, OR")

    @pytest.mark.asyncio
    async def test_only_requested_side_counts(self, engine, search_store):
        """With type=events a failing events query is total failure."""
        search_store.fail_events = True
        with pytest.raises(SearchError):
            await engine.search("Portland, OR", entity_type="events")


class TestPaging:
    """Tests for keyset paging."""

    @pytest.mark.asyncio
    async def test_cursor_walks_events(self, engine, search_store, make_event, make_place, portland):
        await add_events_at(search_store, make_event, portland, 1, 35)
        await search_store.upsert_place(make_place(**miles_north(portland, 1)))

        first = await engine.search("Portland, OR")
        first_events = [i for i in first.items if i.type == "event"]
        assert len(first_events) == 30
        assert first.next_cursor is not None

        second = await engine.search("Portland, OR", cursor=first.next_cursor)
        assert len(second.items) == 5
        assert all(i.type == "event" for i in second.items)
        assert second.next_cursor is None
        assert not {i.id for i in first_events} & {i.id for i in second.items}

    @pytest.mark.asyncio
    async def test_invalid_cursor_is_first_page(self, engine, search_store, make_event, portland):
        await add_events_at(search_store, make_event, portland, 1, 3)
        page = await engine.search("Portland, OR", cursor="%%%not-a-cursor")
        assert len(page.items) == 3

    def test_cursor_round_trip(self, now):
        assert decode_cursor(encode_cursor(now, 42)) == (now, 42)

    @pytest.mark.parametrize("raw", [None, "", "bm90IGpzb24", "e30"])
    def test_decode_rejects_garbage(self, raw):
        assert decode_cursor(raw) is None

    @pytest.mark.parametrize(
        "payload",
        [
            '{"start": 5, "id": "1"}',
            '{"start": ["2025-06-03"], "id": "1"}',
            '{"start": "2025-06-03T00:00:00+00:00", "id": 1e400}',
            '{"start": "2025-06-03T00:00:00+00:00", "id": null}',
        ],
    )
    def test_decode_rejects_wrong_types(self, payload):
        """Well-formed JSON with the wrong field types is no cursor."""
        assert decode_cursor(raw_cursor(payload)) is None

    @pytest.mark.asyncio
    async def test_wrong_type_cursor_is_first_page(self, engine, search_store, make_event, portland):
        await add_events_at(search_store, make_event, portland, 1, 3)
        page = await engine.search("Portland, OR", cursor=raw_cursor('{"start": 5, "id": "1"}'))
        assert len(page.items) == 3

    def test_clamp_limit(self):
        assert clamp_limit(None) == 30
        assert clamp_limit(0) == 30
        assert clamp_limit("12") == 12
        assert clamp_limit(500) == 100


class TestRanking:
    """Tests for result ordering."""

    def _item(self, item_id, **kwargs):
        fields = {"type": "event", "id": item_id, "title": item_id}
        fields.update(kwargs)
        return SearchItem(**fields)

    def test_city_bbox_first(self):
        inside = self._item("inside", in_city_bbox=True, distance_mi=9)
        outside = self._item("outside", in_city_bbox=False, distance_mi=1)
        assert [i.id for i in rank_items([outside, inside])] == ["inside", "outside"]

    def test_distance_then_events_before_places(self):
        start = datetime(2025, 6, 3, tzinfo=timezone.utc)
        place = self._item("p", type="place", distance_mi=1.0, category="playground")
        event = self._item("e", distance_mi=1.0, start_utc=start)
        far = self._item("far", distance_mi=3.0, start_utc=start)
        assert [i.id for i in rank_items([far, place, event])] == ["e", "p", "far"]

    def test_earlier_events_first(self):
        early = self._item("early", distance_mi=1, start_utc=datetime(2025, 6, 3, tzinfo=timezone.utc))
        late = self._item("late", distance_mi=1, start_utc=datetime(2025, 6, 4, tzinfo=timezone.utc))
        assert [i.id for i in rank_items([late, early])] == ["early", "late"]

    def test_category_weight_breaks_place_ties(self):
        pool = self._item("pool", type="place", distance_mi=1, category="pool")
        zoo = self._item("zoo", type="place", distance_mi=1, category="zoo")
        assert [i.id for i in rank_items([pool, zoo])] == ["zoo", "pool"]

    def test_missing_distance_last(self):
        known = self._item("known", distance_mi=30)
        unknown = self._item("unknown")
        assert [i.id for i in rank_items([unknown, known])] == ["known", "unknown"]

    def test_fallback_distance(self, portland):
        """A missing stored distance is recomputed from coordinates."""
        point = miles_north(portland, 10)
        assert fallback_distance_mi(portland, point["lat"], point["lon"], None) == pytest.approx(10, rel=0.01)
        assert fallback_distance_mi(portland, None, None, float("nan")) is None
        assert fallback_distance_mi(portland, None, None, 1609.344) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_search_fills_missing_distances(self, engine, search_store, make_event, make_place, portland):
        """Rows without a stored distance still get one, and rank by it."""
        search_store.drop_distances = True
        far = miles_north(portland, 8)
        near = miles_north(portland, 2)
        await search_store.upsert_event(make_event(title="Far Story Time", **far))
        await search_store.upsert_place(make_place(name="Near Park", **near))

        page = await engine.search("Portland, OR", radius_mi=30)

        assert [i.title for i in page.items] == ["Near Park", "Far Story Time"]
        expected = haversine((portland.lat, portland.lon), (far["lat"], far["lon"]), unit=Unit.MILES)
        assert page.items[1].distance_mi == pytest.approx(expected)
        assert page.items[0].distance_mi == pytest.approx(2, rel=0.01)


class TestResolveRange:
    """Tests for named ranges (now is Monday 12:00 in Portland)."""

    def test_today(self, now):
        start, end = resolve_range("today", now)
        assert start == now
        assert end == datetime(2025, 6, 3, 7, 0, tzinfo=timezone.utc)

    def test_weekend_from_weekday(self, now):
        start, end = resolve_range("weekend", now)
        assert start == datetime(2025, 6, 7, 7, 0, tzinfo=timezone.utc)
        assert end == datetime(2025, 6, 9, 7, 0, tzinfo=timezone.utc)

    def test_weekend_on_saturday(self):
        saturday_noon = datetime(2025, 6, 7, 19, 0, tzinfo=timezone.utc)
        start, end = resolve_range("weekend", saturday_noon)
        assert start == saturday_noon
        assert end == datetime(2025, 6, 9, 7, 0, tzinfo=timezone.utc)

    def test_seven_days(self, now):
        assert resolve_range("next-7-days", now) == (now, now + timedelta(days=7))

    def test_all(self, now):
        assert resolve_range(None, now) == (now, None)

    def test_unknown(self, now):
        with pytest.raises(ValueError):
            resolve_range("fortnight", now)
