"""Tests for ingestion guardrails."""

from datetime import timedelta

from servers.outings_mcp.guards import (
    SKIP_GENERIC_HOLIDAY,
    SKIP_NO_LOCALITY,
    SKIP_OUTSIDE_WINDOW,
    check_guardrails,
    has_locality,
    is_generic_holiday,
    within_window,
)


class TestWithinWindow:
    """Tests for the time window check."""

    def test_inside(self, now):
        assert within_window(now + timedelta(days=1), now, 270)

    def test_just_started_is_kept(self, now):
        """Thirty seconds ago is still inside the one-minute grace."""
        assert within_window(now - timedelta(seconds=30), now, 270)

    def test_past_event_rejected(self, now):
        assert not within_window(now - timedelta(hours=1), now, 270)

    def test_far_future_rejected(self, now):
        assert not within_window(now + timedelta(days=271), now, 270)


class TestGenericHoliday:
    """Tests for holiday placeholder detection."""

    def test_all_day_holiday_rejected(self, make_event, now):
        event = make_event(title="Independence Day", all_day=True, venue_name=None)
        assert is_generic_holiday(event)

    def test_venue_less_holiday_rejected(self, make_event):
        event = make_event(title="Labor Day", venue_name=None)
        assert is_generic_holiday(event)

    def test_real_holiday_event_kept(self, make_event):
        """A holiday-titled event at a real venue is not a placeholder."""
        event = make_event(title="Independence Day Fireworks", venue_name="Tom McCall Waterfront Park")
        assert not is_generic_holiday(event)

    def test_ordinary_event(self, make_event):
        assert not is_generic_holiday(make_event(title="Story Time", venue_name=None))


class TestHasLocality:
    """Tests for the locality check."""

    def test_coordinates_are_enough(self, make_event):
        event = make_event(city=None, state=None, venue_name=None, address=None)
        assert has_locality(event)

    def test_city_and_state(self, make_event):
        event = make_event(lat=None, lon=None, venue_name=None, address=None)
        assert has_locality(event)

    def test_venue_and_state(self, make_event):
        event = make_event(lat=None, lon=None, city=None, address=None)
        assert has_locality(event)

    def test_address_with_city_state(self, make_event):
        event = make_event(
            lat=None, lon=None, city=None, state=None, venue_name=None,
            address="915 SE Hawthorne Blvd, Portland, OR 97214",
        )
        assert has_locality(event)

    def test_address_naming_feed_city(self, make_event):
        event = make_event(
            lat=None, lon=None, city=None, state=None, venue_name=None,
            address="Pioneer Courthouse Square Portland",
        )
        assert has_locality(event, feed_city="Portland")

    def test_country_only_address(self, make_event):
        event = make_event(
            lat=None, lon=None, city=None, state=None, venue_name=None, address="United States",
        )
        assert not has_locality(event)

    def test_nothing_at_all(self, make_event):
        event = make_event(lat=None, lon=None, city=None, state=None, venue_name=None, address=None)
        assert not has_locality(event)


class TestCheckGuardrails:
    """Tests for guardrail ordering."""

    def test_passes(self, make_event, now):
        assert check_guardrails(make_event(), now=now) is None

    def test_window_checked_first(self, make_event, now):
        """An old holiday row reports outside_window, not generic_holiday."""
        event = make_event(title="Independence Day", all_day=True, venue_name=None,
                           start_utc=now - timedelta(days=30))
        assert check_guardrails(event, now=now) == SKIP_OUTSIDE_WINDOW

    def test_holiday_before_locality(self, make_event, now):
        event = make_event(title="Independence Day", all_day=True, venue_name=None,
                           city=None, state=None, address=None, lat=None, lon=None)
        assert check_guardrails(event, now=now) == SKIP_GENERIC_HOLIDAY

    def test_no_locality(self, make_event, now):
        event = make_event(title="Online Craft Hour", venue_name=None,
                           city=None, state=None, address=None, lat=None, lon=None)
        assert check_guardrails(event, now=now) == SKIP_NO_LOCALITY

    def test_feed_city_rescues_locality(self, make_event, now):
        event = make_event(venue_name=None, city=None, state=None, lat=None, lon=None,
                           address="Irving Park, Portland")
        assert check_guardrails(event, now=now, feed_city="Portland", feed_state="OR") is None
