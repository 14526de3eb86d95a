"""Pydantic schemas for request/response payloads."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .models import AttributionModelEnum, AttributionWindowEnum, LevelEnum


# =============================================================================
# BACKFILL
# =============================================================================

class BackfillRequest(BaseModel):
    """Optional backfill body. `days` may also be passed as a query parameter."""

    days: Optional[Union[int, float, str]] = Field(
        None,
        description="Trailing window in days; clamped to 1-30, default 7",
        examples=[7],
    )


class BackfillResponse(BaseModel):
    """Counters from one backfill invocation (possibly partial)."""

    store_id: str
    shop_domain: Optional[str] = None
    days: int
    created_at_min: str
    scanned_orders: int
    pages_scanned: int
    inserted_purchase_events: int
    inserted_refund_events: int
    updated_purchase_events: int
    updated_refund_events: int
    mapped_purchase_events: int
    mapped_refund_events: int
    mapped_updated_purchases: int
    mapped_updated_refunds: int
    deterministic_purchases: int
    modeled_purchases: int
    scored_match_lookups: int
    mapping_rate_purchases: float = Field(description="Mapped share of inserted purchases (%)")
    effective_mapped_purchases: int = Field(description="Mapped inserted + mapped updated purchases")
    stopped_reason: str = Field(
        description="exhausted, short_page, max_pages, deadline or upstream_error",
    )
    truncated: bool
    errors: List[str] = Field(default_factory=list)
    duration_seconds: float


# =============================================================================
# REPORTING
# =============================================================================

class AttributedRevenue(BaseModel):
    first_click: float
    last_click: float


class AttributionReportResponse(BaseModel):
    """Windowed attribution summary for one store."""

    store_id: str
    window_days: int
    attribution_model: str
    purchase_count: int
    purchase_revenue: float
    attributed_revenue: AttributedRevenue
    attributed_count: int
    deterministic_count: int = Field(description="Purchases with at least one matching touch")
    modeled_count: int = Field(description="Entity-mapped purchases without a matching touch")
    entity_mapped_count: int
    unattributed_count: int
    unattributed_share: float
    attribution_rate: float = Field(description="Attributed share of purchases (%), 2 decimals")


class CoverageResponse(BaseModel):
    store_id: str
    window_days: int
    since: str
    until: str
    total_purchases: int
    mapped_purchases: int
    mapped_campaign: int
    mapped_adset: int
    mapped_ad: int
    percent: float


# =============================================================================
# TOUCH COLLECTION
# =============================================================================

class CollectUser(BaseModel):
    external_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class CollectRequest(BaseModel):
    """One browser/server touch.

    Example:
        {
            "event_name": "PageView",
            "event_id": "evt_123",
            "page_url": "https://shop.example/?fbclid=abc&campaign_id=120",
            "session_id": "s_1",
            "click_id": "abc",
            "user": {"email": "jane@example.com"}
        }
    """

    store_id: Optional[str] = Field(None, description="Store id (or resolve via pixel_id)")
    pixel_id: Optional[str] = None
    event_name: str = Field(..., min_length=1)
    event_id: Optional[str] = Field(None, description="Idempotency key; generated when absent")
    source: str = Field("browser", pattern="^(browser|server|shopify)$")
    event_time: Optional[str] = Field(None, description="ISO 8601; defaults to now")
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    session_id: Optional[str] = None
    click_id: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    value: Optional[float] = None
    currency: Optional[str] = None
    order_id: Optional[str] = None
    campaign_id: Optional[Union[str, int]] = None
    adset_id: Optional[Union[str, int]] = None
    ad_id: Optional[Union[str, int]] = None
    user: Optional[CollectUser] = None
    properties: Optional[Dict[str, Any]] = None


class CollectResponse(BaseModel):
    status: str = Field(..., description="inserted or updated")
    event_id: str
    store_id: str
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None


# =============================================================================
# TRACKING CONFIG / TAXONOMY / CLEAR
# =============================================================================

class TrackingConfigOut(BaseModel):
    store_id: str
    attribution_model: AttributionModelEnum
    attribution_window: AttributionWindowEnum
    pixel_id: Optional[str] = None
    domain: Optional[str] = None


class TrackingConfigUpdate(BaseModel):
    attribution_model: Optional[AttributionModelEnum] = None
    attribution_window: Optional[AttributionWindowEnum] = None
    pixel_id: Optional[str] = None
    domain: Optional[str] = None


class TaxonomyRow(BaseModel):
    level: LevelEnum
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class TaxonomyRequest(BaseModel):
    provider: str = "meta"
    entities: List[TaxonomyRow]


class TaxonomyResponse(BaseModel):
    store_id: str
    created: int
    updated: int


class ClearEventsResponse(BaseModel):
    store_id: str
    source: Optional[str] = None
    deleted: int


# =============================================================================
# HEALTH
# =============================================================================

class HealthResponse(BaseModel):
    status: str = Field(..., description="Service status", examples=["ok"])
