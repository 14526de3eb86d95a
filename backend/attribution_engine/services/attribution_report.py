"""Windowed attribution reporting.

WHAT:
    - build_attribution_report(): purchases vs touches over a 1/7/28-day window
    - build_coverage_report(): share of de-duplicated purchases mapped to an
      ad entity over a trailing 1-30 day window

WHY:
    Read-only passes over tracking_events, safe to run while a backfill is
    writing (a report may simply miss orders not yet committed).

    Touch matching here is intentionally looser than the scored matcher: a
    touch counts if it shares ANY of session_id, click_id, fbc, fbp or
    email_hash with the purchase. This pass measures aggregate coverage, it
    does not assign entities.

    Purchases that were entity-mapped at ingestion count as attributed even
    without a matching touch (ad blockers often suppress the pixel while
    server-side mapping still worked); those are reported as "modeled".
    First-click and last-click both give the purchase full credit, so the
    two revenue figures are equal.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from attribution_engine.exceptions import ValidationError
from attribution_engine.models import TrackingConfig, TrackingEvent, PURCHASE_EVENT, REFUND_EVENT
from attribution_engine.services.event_store import TrackingEventStore
from attribution_engine.utils.dates import to_iso, utcnow

logger = logging.getLogger(__name__)

WINDOW_DAYS = {"1": 1, "7": 7, "28": 28, "1day": 1, "7day": 7, "28day": 28}
DEFAULT_WINDOW_DAYS = 7
OVERLAP_SIGNALS = ("session_id", "click_id", "fbc", "fbp", "email_hash")
SOURCE_PRIORITY = {"shopify": 0, "server": 1}


@dataclass
class AttributionReport:
    store_id: str
    window_days: int
    attribution_model: str
    purchase_count: int
    purchase_revenue: float
    attributed_revenue_first_click: float
    attributed_revenue_last_click: float
    attributed_count: int
    deterministic_count: int
    modeled_count: int
    entity_mapped_count: int
    unattributed_count: int
    unattributed_share: float
    attribution_rate: float


@dataclass
class CoverageReport:
    store_id: str
    window_days: int
    since: datetime
    until: datetime
    total_purchases: int
    mapped_purchases: int
    mapped_campaign: int
    mapped_adset: int
    mapped_ad: int
    percent: float


def parse_window(value: Any) -> Optional[int]:
    """Window days from "1"/"7"/"28" or "1day"/"7day"/"28day"; None when omitted.

    Raises:
        ValidationError: Any other value
    """
    if value is None or value == "":
        return None
    days = WINDOW_DAYS.get(str(value).strip().lower())
    if days is None:
        raise ValidationError("window must be one of 1, 7, 28")
    return days


def get_tracking_config(db: Session, store_id: str) -> Optional[TrackingConfig]:
    return db.query(TrackingConfig).filter(TrackingConfig.store_id == store_id).first()


def _has_overlap(purchase: TrackingEvent, touch: TrackingEvent) -> bool:
    for name in OVERLAP_SIGNALS:
        value = getattr(purchase, name)
        if value and value == getattr(touch, name):
            return True
    return False


def _is_touch(event: TrackingEvent) -> bool:
    # Refund rows copy the order's signals and would otherwise credit the order to itself.
    if event.event_name in (PURCHASE_EVENT, REFUND_EVENT):
        return False
    return any(getattr(event, name) for name in OVERLAP_SIGNALS)


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


def build_attribution_report(
    db: Session,
    store_id: str,
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AttributionReport:
    """Aggregate purchases and touches over the window.

    Args:
        window_days: 1, 7 or 28; None uses the store's tracking config (default 7)
        now: Naive-UTC "now" (tests pin it)
    """
    if not store_id:
        raise ValidationError("store_id is required")

    config = get_tracking_config(db, store_id)
    if window_days is None:
        window_days = parse_window(config.attribution_window if config else None) or DEFAULT_WINDOW_DAYS
    elif window_days not in (1, 7, 28):
        raise ValidationError("window must be one of 1, 7, 28")

    since = (now or utcnow()) - timedelta(days=window_days)
    events = TrackingEventStore(db).events_since(store_id, since)
    purchases = [e for e in events if e.event_name == PURCHASE_EVENT]
    touches = [e for e in events if _is_touch(e)]

    revenue_first = Decimal("0")
    revenue_last = Decimal("0")
    deterministic = 0
    modeled = 0
    entity_mapped = 0
    unattributed = 0

    for purchase in purchases:
        has_entity = bool(purchase.campaign_id or purchase.adset_id or purchase.ad_id)
        if has_entity:
            entity_mapped += 1

        candidates = sorted(
            (t for t in touches if t.occurred_at <= purchase.occurred_at and _has_overlap(purchase, t)),
            key=lambda t: t.occurred_at,
        )
        if not candidates and not has_entity:
            unattributed += 1
            continue

        if candidates:
            deterministic += 1
        else:
            modeled += 1

        value = Decimal(purchase.value or 0)
        # First touch (candidates[0]) and last touch (candidates[-1]) both get full credit
        revenue_first += value
        revenue_last += value

    purchase_count = len(purchases)
    attributed = deterministic + modeled
    revenue = sum((Decimal(p.value or 0) for p in purchases), Decimal("0"))

    report = AttributionReport(
        store_id=store_id,
        window_days=window_days,
        attribution_model=config.attribution_model if config else "last_click",
        purchase_count=purchase_count,
        purchase_revenue=_money(revenue),
        attributed_revenue_first_click=_money(revenue_first),
        attributed_revenue_last_click=_money(revenue_last),
        attributed_count=attributed,
        deterministic_count=deterministic,
        modeled_count=modeled,
        entity_mapped_count=entity_mapped,
        unattributed_count=unattributed,
        unattributed_share=round(unattributed / purchase_count, 4) if purchase_count else 0.0,
        attribution_rate=round(attributed / purchase_count * 100, 2) if purchase_count else 0.0,
    )
    logger.info(
        "[ATTRIBUTION_REPORT] store=%s window=%dd purchases=%d attributed=%d (det=%d, modeled=%d)",
        store_id, window_days, purchase_count, attributed, deterministic, modeled,
    )
    return report


def build_coverage_report(
    db: Session,
    store_id: str,
    days: int = 7,
    now: Optional[datetime] = None,
) -> CoverageReport:
    """Entity-mapping coverage of purchases, one row per order.

    Purchases are de-duplicated by order_id (falling back to event_id);
    within an order the shopify row wins over server, server over browser,
    then the most recent.
    """
    if not store_id:
        raise ValidationError("store_id is required")

    until = now or utcnow()
    since = until - timedelta(days=days)
    rows: List[TrackingEvent] = (
        db.query(TrackingEvent)
        .filter(
            TrackingEvent.store_id == store_id,
            TrackingEvent.event_name == PURCHASE_EVENT,
            TrackingEvent.occurred_at >= since,
            TrackingEvent.occurred_at <= until,
        )
        .all()
    )

    chosen: Dict[str, TrackingEvent] = {}
    for row in rows:
        key = row.order_id or row.event_id
        current = chosen.get(key)
        rank = (SOURCE_PRIORITY.get(row.source, 2), -row.occurred_at.timestamp())
        if current is None or rank < (SOURCE_PRIORITY.get(current.source, 2), -current.occurred_at.timestamp()):
            chosen[key] = row

    deduped = list(chosen.values())
    total = len(deduped)
    mapped = sum(1 for r in deduped if r.campaign_id or r.adset_id or r.ad_id)
    return CoverageReport(
        store_id=store_id,
        window_days=days,
        since=since,
        until=until,
        total_purchases=total,
        mapped_purchases=mapped,
        mapped_campaign=sum(1 for r in deduped if r.campaign_id),
        mapped_adset=sum(1 for r in deduped if r.adset_id),
        mapped_ad=sum(1 for r in deduped if r.ad_id),
        percent=round(mapped / total * 100, 2) if total else 0.0,
    )


def coverage_to_dict(report: CoverageReport) -> Dict[str, Any]:
    return {
        "store_id": report.store_id,
        "window_days": report.window_days,
        "since": to_iso(report.since),
        "until": to_iso(report.until),
        "total_purchases": report.total_purchases,
        "mapped_purchases": report.mapped_purchases,
        "mapped_campaign": report.mapped_campaign,
        "mapped_adset": report.mapped_adset,
        "mapped_ad": report.mapped_ad,
        "percent": report.percent,
    }
