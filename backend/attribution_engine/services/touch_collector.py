"""Touch collection (browser / server events).

WHAT:
    Stores one touch event through the idempotent event store: hashes
    email / phone / IP, generates an event id when the caller sends none,
    and resolves campaign / adset / ad ids.

WHY:
    Stored touches are what the scored matcher and the reporting pass match
    purchases against. Entity ids resolve in priority order: explicit
    fields, then `properties` (camelCase, snake_case, first-touch and fb_
    variants), then the page URL's query string.

REFERENCES:
    - attribution_engine/routers/tracking.py::collect_event
    - attribution_engine/services/direct_mapper.py::entity_ids_from_url
"""

import hashlib
import logging
import re
import uuid
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from attribution_engine.exceptions import ValidationError
from attribution_engine.models import TrackingConfig
from attribution_engine.schemas import CollectRequest
from attribution_engine.services.direct_mapper import EntityIds, entity_ids_from_url
from attribution_engine.services.event_store import TrackingEventInput, TrackingEventStore, UpsertResult
from attribution_engine.services.signal_extractor import hash_email
from attribution_engine.utils.dates import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

_PHONE_STRIP = re.compile(r"[^\d+]")

PROPERTY_KEYS = {
    "campaign": (
        "campaignId", "campaign_id", "firstTouchCampaignId", "first_touch_campaign_id",
        "fbCampaignId", "fb_campaign_id",
    ),
    "adset": (
        "adSetId", "adsetId", "firstTouchAdsetId", "ad_set_id", "adset_id", "firstTouchAdSetId",
        "first_touch_adset_id", "fbAdsetId", "fb_adset_id",
    ),
    "ad": (
        "adId", "ad_id", "firstTouchAdId", "first_touch_ad_id", "fbAdId", "fb_ad_id",
    ),
}


def clean_id(value: Any) -> Optional[str]:
    """Ids arrive as strings or numbers; floats are truncated, blanks are None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and value != value:  # NaN
            return None
        return str(int(value))
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def hash_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    clean = _PHONE_STRIP.sub("", phone)
    if not clean:
        return None
    return hashlib.sha256(clean.encode("utf-8")).hexdigest()


def hash_ip(ip: Optional[str]) -> Optional[str]:
    if not ip:
        return None
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


def client_ip(forwarded_for: Optional[str]) -> Optional[str]:
    """First address in an X-Forwarded-For header."""
    if not forwarded_for:
        return None
    first = forwarded_for.split(",")[0].strip()
    return first or None


def resolve_entity_ids(payload: CollectRequest) -> EntityIds:
    props: Dict[str, Any] = payload.properties or {}
    from_url = entity_ids_from_url(payload.page_url)

    def pick(level: str, explicit: Any, url_value: Optional[str]) -> Optional[str]:
        value = clean_id(explicit)
        if value:
            return value
        for key in PROPERTY_KEYS[level]:
            value = clean_id(props.get(key))
            if value:
                return value
        return url_value

    return EntityIds(
        campaign_id=pick("campaign", payload.campaign_id, from_url.campaign_id),
        adset_id=pick("adset", payload.adset_id, from_url.adset_id),
        ad_id=pick("ad", payload.ad_id, from_url.ad_id),
    )


def resolve_store_id(db: Session, payload: CollectRequest, store_id: Optional[str] = None) -> str:
    """Store id from the query, the body, or the tracking config owning pixel_id.

    Raises:
        ValidationError: None of them identifies a store
    """
    resolved = store_id or payload.store_id
    if not resolved and payload.pixel_id:
        config = db.query(TrackingConfig).filter(TrackingConfig.pixel_id == payload.pixel_id).first()
        if config:
            resolved = config.store_id
    if not resolved:
        raise ValidationError("store_id or a known pixel_id is required")
    return resolved


def collect_touch(
    db: Session,
    payload: CollectRequest,
    store_id: Optional[str] = None,
    forwarded_for: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Tuple[TrackingEventInput, UpsertResult]:
    """Store one touch. Returns the stored input (with generated id) and the upsert result."""
    resolved_store = resolve_store_id(db, payload, store_id)
    user = payload.user
    entity_ids = resolve_entity_ids(payload)

    event = TrackingEventInput(
        store_id=resolved_store,
        event_name=payload.event_name,
        event_id=payload.event_id or str(uuid.uuid4()),
        source=payload.source,
        occurred_at=parse_timestamp(payload.event_time) or utcnow(),
        page_url=payload.page_url,
        referrer=payload.referrer,
        session_id=payload.session_id,
        user_agent=user_agent,
        click_id=payload.click_id,
        fbp=payload.fbp,
        fbc=payload.fbc,
        external_id=user.external_id if user else None,
        email_hash=hash_email(user.email) if user else None,
        phone_hash=hash_phone(user.phone) if user else None,
        ip_hash=hash_ip(client_ip(forwarded_for)),
        value=payload.value,
        currency=payload.currency,
        order_id=payload.order_id,
        payload_json=payload.properties,
        **entity_ids.as_dict(),
    )
    result = TrackingEventStore(db).upsert(event)
    logger.info(
        "[TRACKING] Collected %s %s for store %s (%s)",
        event.event_name, event.event_id, resolved_store, "inserted" if result.inserted else "updated",
    )
    return event, result
