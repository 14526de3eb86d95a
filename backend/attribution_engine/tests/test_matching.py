"""Tests for the cached scored matcher and the time-proximity fallback."""

from datetime import timedelta

from attribution_engine.services.event_store import TrackingEventStore
from attribution_engine.services.scored_matcher import ScoredMatcher
from attribution_engine.services.signal_extractor import OrderSignals
from attribution_engine.services.time_proximity import TimeProximityFallback
from conftest import NOW


class TestScoredMatcher:
    def test_identical_signal_tuple_hits_cache(self, test_db_session, add_event):
        add_event(NOW - timedelta(minutes=30), click_id="c1", campaign_id="cmp-1")
        matcher = ScoredMatcher(TrackingEventStore(test_db_session))

        first = matcher.match("store-1", NOW, click_id="c1")
        second = matcher.match("store-1", NOW + timedelta(minutes=5), click_id="c1")

        assert first.campaign_id == "cmp-1"
        assert second is first
        assert matcher.lookups == 1

    def test_different_day_is_a_new_lookup(self, test_db_session, add_event):
        add_event(NOW - timedelta(minutes=30), click_id="c1", campaign_id="cmp-1")
        matcher = ScoredMatcher(TrackingEventStore(test_db_session))

        matcher.match("store-1", NOW, click_id="c1")
        matcher.match("store-1", NOW + timedelta(days=1), click_id="c1")
        assert matcher.lookups == 2

    def test_sub_threshold_candidate_is_not_returned(self, test_db_session, add_event):
        add_event(NOW - timedelta(hours=200), click_id="old", campaign_id="cmp-1", source="shopify")
        matcher = ScoredMatcher(TrackingEventStore(test_db_session))

        assert matcher.lookup("store-1", NOW, click_id="old") is not None
        assert matcher.match("store-1", NOW, click_id="old") is None

    def test_misses_are_cached_too(self, test_db_session):
        matcher = ScoredMatcher(TrackingEventStore(test_db_session))
        assert matcher.match("store-1", NOW, email_hash="e") is None
        assert matcher.match("store-1", NOW, email_hash="e") is None
        assert matcher.lookups == 1


class TestTimeProximity:
    def test_no_identity_signal_means_no_fallback(self, test_db_session, add_event):
        add_event(NOW - timedelta(minutes=1), campaign_id="cmp-1")
        fallback = TimeProximityFallback(TrackingEventStore(test_db_session))

        assert fallback.match_for("store-1", NOW, OrderSignals(utm_campaign="x")) is None

    def test_match_reports_purchase_signals(self, test_db_session, add_event):
        add_event(NOW - timedelta(minutes=10), campaign_id="cmp-1")
        fallback = TimeProximityFallback(TrackingEventStore(test_db_session), window_minutes=30)

        match = fallback.match_for("store-1", NOW, OrderSignals(fbp="p", email_hash="e"))
        assert match.campaign_id == "cmp-1"
        assert match.strategy == "time_proximity"
        assert match.confidence == 0.6
        assert match.matched_signals == ["fbp", "email_hash"]

    def test_window_bounds_the_search(self, test_db_session, add_event):
        add_event(NOW - timedelta(minutes=45), campaign_id="cmp-1")
        fallback = TimeProximityFallback(TrackingEventStore(test_db_session), window_minutes=30)

        assert fallback.match_for("store-1", NOW, OrderSignals(fbp="p")) is None
        assert fallback.nearest_touch("store-1", NOW, window_minutes=60).campaign_id == "cmp-1"
