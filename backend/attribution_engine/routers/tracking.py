"""Tracking endpoints: backfill, reporting, touch collection, taxonomy.

WHAT:
    - POST   /tracking/backfill-orders  Run an order backfill for a store
    - GET    /tracking/attribution      Windowed attribution report
    - GET    /tracking/coverage         Entity-mapping coverage of purchases
    - POST   /tracking/collect          Store one browser/server touch
    - GET    /tracking/config           Read a store's attribution settings
    - PUT    /tracking/config           Update a store's attribution settings
    - POST   /tracking/taxonomy         Upsert campaign/adset/ad names for UTM resolution
    - DELETE /tracking/events           Operator clear of a store's events

WHY:
    Routers stay thin: parse input, map engine errors to status codes, delegate
    to services. Missing/invalid input is 400, a missing storefront credential
    is 401, and a backfill cut short by the order feed or the time ceiling is
    still a 200 with a partial summary.

REFERENCES:
    - attribution_engine/services/backfill_service.py
    - attribution_engine/services/attribution_report.py
    - attribution_engine/services/touch_collector.py
"""

import logging
from typing import Callable, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from attribution_engine.database import get_db
from attribution_engine.deps import get_settings
from attribution_engine.exceptions import AttributionEngineError, ValidationError
from attribution_engine.models import TrackingConfig
from attribution_engine.schemas import (
    AttributedRevenue,
    AttributionReportResponse,
    BackfillRequest,
    BackfillResponse,
    ClearEventsResponse,
    CollectRequest,
    CollectResponse,
    CoverageResponse,
    TaxonomyRequest,
    TaxonomyResponse,
    TrackingConfigOut,
    TrackingConfigUpdate,
)
from attribution_engine.services.attribution_report import (
    build_attribution_report,
    build_coverage_report,
    coverage_to_dict,
    get_tracking_config,
    parse_window,
)
from attribution_engine.services.backfill_service import clamp_days, get_store_credentials, run_backfill
from attribution_engine.services.event_store import TrackingEventStore
from attribution_engine.services.shopify_client import ShopifyOrderFeed, build_order_feed
from attribution_engine.services.touch_collector import collect_touch
from attribution_engine.services.utm_resolver import UtmResolver, record_taxonomy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tracking", tags=["Tracking"])


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_order_feed_factory() -> Callable[[str, str], ShopifyOrderFeed]:
    """Factory building an order feed for (shop_domain, access_token).

    Tests override this dependency with a fake feed.
    """
    return build_order_feed


def _raise_http(exc: AttributionEngineError) -> NoReturn:
    raise HTTPException(status_code=exc.status_code, detail=exc.to_user_message())


def _require_store_id(store_id: Optional[str]) -> str:
    if not store_id or not store_id.strip():
        _raise_http(ValidationError("store_id is required"))
    return store_id.strip()


async def tracking_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed /tracking input (bad JSON, wrong types) is a 400, not FastAPI's 422."""
    if not request.url.path.startswith(router.prefix):
        return await request_validation_exception_handler(request, exc)
    logger.info(
        "[TRACKING] Rejected %s %s: %d validation error(s)",
        request.method, request.url.path, len(exc.errors()),
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


# =============================================================================
# BACKFILL
# =============================================================================

@router.post("/backfill-orders", response_model=BackfillResponse)
def backfill_orders(
    payload: Optional[BackfillRequest] = None,
    store_id: Optional[str] = Query(None, description="Store to backfill"),
    days: Optional[str] = Query(None, description="Trailing window (body value wins)"),
    db: Session = Depends(get_db),
    feed_factory: Callable[[str, str], ShopifyOrderFeed] = Depends(get_order_feed_factory),
):
    """Backfill Purchase/Refund events from the store's order history.

    WHAT:
        Validates input, resolves the Shopify credential, then pages through
        orders created in the trailing window, attributing each one.

    Returns:
        BackfillResponse with running counters. `truncated` is True when the
        run stopped on the time ceiling, the page limit, or an order-feed
        failure (see `stopped_reason` / `errors`).
    """
    store_id = _require_store_id(store_id)
    settings = get_settings()
    raw_days = payload.days if payload and payload.days is not None else days

    try:
        window = clamp_days(raw_days, default=settings.BACKFILL_DEFAULT_DAYS)
        shop_domain, access_token = get_store_credentials(db, store_id)
    except AttributionEngineError as exc:
        logger.warning("[TRACKING] Backfill rejected for store %s: %s", store_id, exc.message)
        _raise_http(exc)

    feed = feed_factory(shop_domain, access_token)
    try:
        summary = run_backfill(
            db,
            store_id,
            window,
            feed,
            shop_domain=shop_domain,
            page_size=settings.BACKFILL_PAGE_SIZE,
            max_pages=settings.BACKFILL_MAX_PAGES,
            max_seconds=settings.BACKFILL_MAX_SECONDS,
            window_minutes=settings.TIME_PROXIMITY_WINDOW_MINUTES,
            utm_resolver=UtmResolver(db, ttl_seconds=settings.TAXONOMY_CACHE_TTL_SECONDS),
        )
    finally:
        feed.close()

    return BackfillResponse(**summary.to_dict())


# =============================================================================
# REPORTING
# =============================================================================

@router.get("/attribution", response_model=AttributionReportResponse)
def get_attribution(
    store_id: Optional[str] = Query(None),
    window: Optional[str] = Query(None, description="1, 7 or 28 (days); defaults to the store's config"),
    db: Session = Depends(get_db),
):
    """Windowed attribution summary (first/last-click revenue, deterministic vs modeled)."""
    store_id = _require_store_id(store_id)
    try:
        report = build_attribution_report(db, store_id, parse_window(window))
    except AttributionEngineError as exc:
        _raise_http(exc)

    return AttributionReportResponse(
        store_id=report.store_id,
        window_days=report.window_days,
        attribution_model=report.attribution_model,
        purchase_count=report.purchase_count,
        purchase_revenue=report.purchase_revenue,
        attributed_revenue=AttributedRevenue(
            first_click=report.attributed_revenue_first_click,
            last_click=report.attributed_revenue_last_click,
        ),
        attributed_count=report.attributed_count,
        deterministic_count=report.deterministic_count,
        modeled_count=report.modeled_count,
        entity_mapped_count=report.entity_mapped_count,
        unattributed_count=report.unattributed_count,
        unattributed_share=report.unattributed_share,
        attribution_rate=report.attribution_rate,
    )


@router.get("/coverage", response_model=CoverageResponse)
def get_coverage(
    store_id: Optional[str] = Query(None),
    days: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Share of de-duplicated purchases mapped to a campaign/adset/ad."""
    store_id = _require_store_id(store_id)
    try:
        report = build_coverage_report(db, store_id, clamp_days(days))
    except AttributionEngineError as exc:
        _raise_http(exc)
    return CoverageResponse(**coverage_to_dict(report))


# =============================================================================
# TOUCH COLLECTION
# =============================================================================

@router.post("/collect", response_model=CollectResponse)
def collect_event(
    request: Request,
    payload: CollectRequest,
    store_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Store one browser/server touch (idempotent on event_id)."""
    try:
        event, result = collect_touch(
            db,
            payload,
            store_id=store_id,
            forwarded_for=request.headers.get("x-forwarded-for"),
            user_agent=request.headers.get("user-agent"),
        )
    except AttributionEngineError as exc:
        _raise_http(exc)

    return CollectResponse(
        status="inserted" if result.inserted else "updated",
        event_id=event.event_id,
        store_id=event.store_id,
        campaign_id=event.campaign_id,
        adset_id=event.adset_id,
        ad_id=event.ad_id,
    )


# =============================================================================
# CONFIG / TAXONOMY / CLEAR
# =============================================================================

def _config_out(store_id: str, config: Optional[TrackingConfig]) -> TrackingConfigOut:
    if config is None:
        return TrackingConfigOut(store_id=store_id, attribution_model="last_click", attribution_window="7day")
    return TrackingConfigOut(
        store_id=store_id,
        attribution_model=config.attribution_model,
        attribution_window=config.attribution_window,
        pixel_id=config.pixel_id,
        domain=config.domain,
    )


@router.get("/config", response_model=TrackingConfigOut)
def read_tracking_config(store_id: Optional[str] = Query(None), db: Session = Depends(get_db)):
    store_id = _require_store_id(store_id)
    return _config_out(store_id, get_tracking_config(db, store_id))


@router.put("/config", response_model=TrackingConfigOut)
def update_tracking_config(
    payload: TrackingConfigUpdate,
    store_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Create or update the store's attribution model/window."""
    store_id = _require_store_id(store_id)
    config = get_tracking_config(db, store_id)
    if config is None:
        config = TrackingConfig(store_id=store_id)
        db.add(config)

    if payload.attribution_model is not None:
        config.attribution_model = payload.attribution_model.value
    if payload.attribution_window is not None:
        config.attribution_window = payload.attribution_window.value
    if payload.pixel_id is not None:
        config.pixel_id = payload.pixel_id
    if payload.domain is not None:
        config.domain = payload.domain
    db.commit()
    db.refresh(config)

    logger.info(
        "[TRACKING] Config for %s: model=%s window=%s",
        store_id, config.attribution_model, config.attribution_window,
    )
    return _config_out(store_id, config)


@router.post("/taxonomy", response_model=TaxonomyResponse)
def upsert_taxonomy(
    payload: TaxonomyRequest,
    store_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Record campaign/adset/ad names used to resolve UTM values to ids."""
    store_id = _require_store_id(store_id)
    created, updated = record_taxonomy(
        db,
        store_id,
        [(row.level.value, row.id, row.name) for row in payload.entities],
        provider=payload.provider,
    )
    return TaxonomyResponse(store_id=store_id, created=created, updated=updated)


@router.delete("/events", response_model=ClearEventsResponse, status_code=status.HTTP_200_OK)
def clear_events(
    store_id: Optional[str] = Query(None),
    source: Optional[str] = Query(None, description="Only clear events from this source"),
    db: Session = Depends(get_db),
):
    """Operator-triggered clear of a store's tracking events."""
    store_id = _require_store_id(store_id)
    deleted = TrackingEventStore(db).clear_events(store_id, source=source)
    return ClearEventsResponse(store_id=store_id, source=source, deleted=deleted)
