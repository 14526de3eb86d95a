"""Tests for windowed attribution and coverage reporting."""

from datetime import timedelta

import pytest

from attribution_engine.exceptions import ValidationError
from attribution_engine.models import TrackingConfig
from attribution_engine.services.attribution_report import (
    build_attribution_report,
    build_coverage_report,
    coverage_to_dict,
    parse_window,
)
from conftest import NOW


@pytest.mark.parametrize("raw,expected", [
    (None, None), ("", None), ("1", 1), ("7", 7), ("28", 28), ("28day", 28), (7, 7),
])
def test_parse_window(raw, expected):
    assert parse_window(raw) == expected


@pytest.mark.parametrize("raw", ["5", "30", "week"])
def test_parse_window_rejects_other_values(raw):
    with pytest.raises(ValidationError):
        parse_window(raw)


@pytest.fixture
def purchases(add_event):
    # Touch + purchase sharing a session: deterministic
    add_event(NOW - timedelta(hours=3), event_name="PageView", session_id="s1")
    add_event(NOW - timedelta(hours=2), event_name="Purchase", session_id="s1", value="100.00", order_id="1")
    # Entity-mapped purchase with no matching touch: modeled
    add_event(NOW - timedelta(hours=2), event_name="Purchase", campaign_id="cmp-1", value="40.00",
              order_id="2", fbp="lonely")
    # Refund sharing a click id is not a touch: unattributed
    add_event(NOW - timedelta(hours=4), event_name="Refund", click_id="c3", value="10.00")
    add_event(NOW - timedelta(hours=1), event_name="Purchase", click_id="c3", value="10.00", order_id="3")
    # Touch after the purchase does not count
    add_event(NOW - timedelta(minutes=10), event_name="PageView", click_id="c3")
    # Outside every window
    add_event(NOW - timedelta(days=40), event_name="Purchase", session_id="s1", value="999.00")


def test_report_counts(test_db_session, purchases):
    report = build_attribution_report(test_db_session, "store-1", 7, now=NOW)

    assert report.purchase_count == 3
    assert report.purchase_revenue == 150.0
    assert report.deterministic_count == 1
    assert report.modeled_count == 1
    assert report.attributed_count == 2
    assert report.unattributed_count == 1
    assert report.entity_mapped_count == 1
    assert report.attributed_revenue_first_click == 140.0
    assert report.attributed_revenue_last_click == 140.0
    assert report.attribution_rate == 66.67
    assert report.unattributed_share == 0.3333
    assert report.attribution_model == "last_click"


def test_window_defaults_to_store_config(test_db_session, purchases):
    test_db_session.add(TrackingConfig(store_id="store-1", attribution_window="1day",
                                       attribution_model="first_click"))
    test_db_session.commit()

    report = build_attribution_report(test_db_session, "store-1", now=NOW)
    assert report.window_days == 1
    assert report.attribution_model == "first_click"


def test_empty_store(test_db_session):
    report = build_attribution_report(test_db_session, "store-1", 28, now=NOW)
    assert report.purchase_count == 0
    assert report.attribution_rate == 0.0
    assert report.unattributed_share == 0.0


def test_missing_store_id(test_db_session):
    with pytest.raises(ValidationError):
        build_attribution_report(test_db_session, "", 7, now=NOW)


def test_coverage_dedupes_by_order(test_db_session, add_event):
    add_event(NOW - timedelta(hours=1), event_name="Purchase", source="shopify", order_id="1", campaign_id="cmp-1")
    add_event(NOW - timedelta(hours=1), event_name="Purchase", source="browser", order_id="1")
    add_event(NOW - timedelta(hours=2), event_name="Purchase", source="browser", order_id="2", ad_id="ad-2")
    add_event(NOW - timedelta(hours=2), event_name="Purchase", source="server", order_id="2")
    add_event(NOW - timedelta(days=9), event_name="Purchase", source="shopify", order_id="3")

    report = build_coverage_report(test_db_session, "store-1", days=7, now=NOW)

    assert report.total_purchases == 2
    assert report.mapped_purchases == 1
    assert report.mapped_campaign == 1
    assert report.mapped_ad == 0
    assert report.percent == 50.0

    data = coverage_to_dict(report)
    assert data["until"] == "2025-01-15T12:00:00Z"
    assert data["since"] == "2025-01-08T12:00:00Z"


def test_refund_rows_are_not_touches(test_db_session, add_event):
    add_event(NOW - timedelta(hours=3), event_name="Refund", session_id="s9", value="25.00")
    add_event(NOW - timedelta(hours=2), event_name="Purchase", session_id="s9", value="25.00", order_id="9")

    report = build_attribution_report(test_db_session, "store-1", 7, now=NOW)

    assert report.purchase_count == 1
    assert report.deterministic_count == 0
    assert report.unattributed_count == 1

    add_event(NOW - timedelta(hours=4), event_name="AddToCart", session_id="s9")
    report = build_attribution_report(test_db_session, "store-1", 7, now=NOW)
    assert report.deterministic_count == 1
