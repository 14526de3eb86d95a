"""Tests for browser/server touch collection."""

import hashlib

import pytest

from attribution_engine.exceptions import ValidationError
from attribution_engine.models import TrackingConfig, TrackingEvent
from attribution_engine.schemas import CollectRequest
from attribution_engine.services.touch_collector import clean_id, client_ip, collect_touch, hash_phone


def _request(**fields):
    fields.setdefault("event_name", "PageView")
    return CollectRequest(**fields)


def test_collect_stores_hashed_identity(test_db_session):
    payload = _request(
        store_id="store-1",
        event_id="evt-1",
        event_time="2025-01-15T12:00:00Z",
        click_id="abc",
        user={"email": "Jane@Example.com", "phone": "+1 (555) 010-0000", "external_id": "cust-1"},
    )
    event, result = collect_touch(test_db_session, payload, forwarded_for="203.0.113.9, 10.0.0.1",
                                  user_agent="pytest")

    assert result.inserted is True
    row = test_db_session.query(TrackingEvent).one()
    assert row.email_hash == hashlib.sha256(b"jane@example.com").hexdigest()
    assert row.phone_hash == hashlib.sha256(b"+15550100000").hexdigest()
    assert row.ip_hash == hashlib.sha256(b"203.0.113.9").hexdigest()
    assert row.external_id == "cust-1"
    assert row.user_agent == "pytest"
    assert row.source == "browser"


def test_entity_ids_priority(test_db_session):
    payload = _request(
        store_id="store-1",
        page_url="https://shop.example/?campaign_id=url-c&adset_id=url-s&ad_id=url-a",
        campaign_id=123,
        properties={"adSetId": "prop-s"},
    )
    event, _ = collect_touch(test_db_session, payload)

    assert event.campaign_id == "123"
    assert event.adset_id == "prop-s"
    assert event.ad_id == "url-a"


def test_generated_event_id_and_idempotent_resend(test_db_session):
    first, first_result = collect_touch(test_db_session, _request(store_id="store-1"))
    assert first.event_id

    resend = _request(store_id="store-1", event_id=first.event_id, fbp="fb.1.2.3")
    _, second_result = collect_touch(test_db_session, resend)

    assert first_result.inserted and second_result.updated
    assert test_db_session.query(TrackingEvent).one().fbp == "fb.1.2.3"


def test_store_resolved_from_pixel_id(test_db_session):
    test_db_session.add(TrackingConfig(store_id="store-9", pixel_id="px-1"))
    test_db_session.commit()

    event, _ = collect_touch(test_db_session, _request(pixel_id="px-1"))
    assert event.store_id == "store-9"


def test_unknown_store_is_rejected(test_db_session):
    with pytest.raises(ValidationError):
        collect_touch(test_db_session, _request(pixel_id="unknown"))


@pytest.mark.parametrize("raw,expected", [
    ("  42 ", "42"), (42, "42"), (42.9, "42"), ("", None), (True, None), (None, None), (float("nan"), None),
])
def test_clean_id(raw, expected):
    assert clean_id(raw) == expected


def test_helpers_handle_empty_input():
    assert hash_phone("() -") is None
    assert client_ip(None) is None
    assert client_ip(" , 10.0.0.1") is None
