"""Tests for signal-match scoring, acceptance thresholds and proximity confidence."""

from datetime import datetime

import pytest

from attribution_engine.services.scoring import (
    AttributionMatch,
    DEFAULT_SCORING,
    STRATEGY_TIME_PROXIMITY,
    accept_signal_match,
    acceptance_threshold,
    clamp_window_minutes,
    confidence_from_score,
    proximity_confidence,
    recency_multiplier,
    score_signal_match,
)


def _match(confidence, signals, campaign_id="cmp-1"):
    return AttributionMatch(
        campaign_id=campaign_id,
        adset_id=None,
        ad_id=None,
        confidence=confidence,
        score=confidence * 120,
        matched_at=datetime(2025, 1, 1),
        source="browser",
        age_hours=1.0,
        matched_signals=signals,
    )


class TestRecency:
    @pytest.mark.parametrize("age,expected", [
        (0, 1.0),
        (-3, 1.0),
        (1, 1.0),
        (1.5, 0.97),
        (24, 0.9),
        (50, 0.75),
        (168, 0.55),
        (200, 0.35),
    ])
    def test_ladder(self, age, expected):
        assert recency_multiplier(age) == expected


class TestScore:
    def test_click_and_fbc_get_pair_bonus(self):
        # 72 + 58 + 18 (pair) + 6 (one extra signal)
        assert score_signal_match(["click_id", "fbc"], "browser", 0.5) == pytest.approx(154.0)

    def test_confidence_is_clamped(self):
        assert confidence_from_score(154.0) == DEFAULT_SCORING.max_confidence
        assert confidence_from_score(0.0) == DEFAULT_SCORING.min_confidence

    def test_shopify_source_is_discounted(self):
        browser = score_signal_match(["click_id"], "browser", 0.5)
        shopify = score_signal_match(["click_id"], "shopify", 0.5)
        assert shopify == pytest.approx(browser * 0.72)

    def test_old_email_only_match_decays_extra(self):
        # 12 * 0.55 (<=168h) * 0.35 (email-only beyond 120h)
        assert score_signal_match(["email_hash"], "browser", 150) == pytest.approx(2.31)

    def test_old_fbp_only_match_decays_extra(self):
        # 24 * 0.75 (<=72h) * 0.6 (fbp-only beyond 48h)
        assert score_signal_match(["fbp"], "browser", 50) == pytest.approx(10.8)

    def test_no_age_skips_decay(self):
        assert score_signal_match(["fbp"], "browser", None) == pytest.approx(24.0)


class TestAcceptance:
    def test_threshold_follows_strongest_signal(self):
        assert acceptance_threshold(["click_id", "email_hash"]) == 0.20
        assert acceptance_threshold(["fbc"]) == 0.22
        assert acceptance_threshold(["fbp"]) == 0.28
        assert acceptance_threshold(["email_hash"]) == 0.28
        assert acceptance_threshold([]) == 0.25

    def test_confidence_exactly_at_threshold_is_accepted(self):
        assert accept_signal_match(_match(0.20, ["click_id"])) is True

    def test_confidence_below_threshold_is_rejected(self):
        assert accept_signal_match(_match(0.1999, ["click_id"])) is False

    def test_stale_shopify_click_match_is_rejected(self):
        score = score_signal_match(["click_id"], "shopify", 200)
        confidence = confidence_from_score(score)
        assert confidence == pytest.approx(0.1512)
        assert accept_signal_match(_match(confidence, ["click_id"])) is False

    def test_match_without_entity_is_rejected(self):
        assert accept_signal_match(_match(0.9, ["click_id"], campaign_id=None)) is False

    def test_match_without_signals_is_rejected(self):
        assert accept_signal_match(_match(0.9, [])) is False

    def test_none_is_rejected(self):
        assert accept_signal_match(None) is False


class TestProximity:
    @pytest.mark.parametrize("diff,expected", [
        (0, 0.76),
        (60, 0.76),
        (61, 0.72),
        (300, 0.67),
        (600, 0.6),
        (900, 0.53),
        (901, 0.42),
    ])
    def test_confidence_ladder(self, diff, expected):
        assert proximity_confidence(diff) == expected

    def test_window_is_clamped(self):
        assert clamp_window_minutes(1) == 2
        assert clamp_window_minutes(120) == 120
        assert clamp_window_minutes(5000) == 1440
        assert clamp_window_minutes("nope") == 2


def test_payload_carries_scoring_version():
    match = _match(0.5, ["click_id"])
    match.strategy = STRATEGY_TIME_PROXIMITY
    payload = match.to_payload()
    assert payload["strategy"] == "time_proximity"
    assert payload["scoring_version"] == DEFAULT_SCORING.version
    assert payload["matched_at"] == "2025-01-01T00:00:00Z"
    assert payload["matched_signals"] == ["click_id"]
