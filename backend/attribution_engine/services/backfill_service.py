"""Order backfill driver.

WHAT:
    Walks a store's order history for a trailing window (1-30 days) and
    writes one Purchase event per order plus one Refund event per qualifying
    refund, each attributed to a campaign / adset / ad where possible.

    Per order, in priority order:
      1. Direct mapper (ids embedded in URLs / note attributes)
      2. Scored matcher (signal match against stored touches, per-run cache)
      3. Time-proximity fallback (only if the order has >= 1 identity signal)
      4. UTM resolver (fills remaining gaps, never overwrites)

WHY:
    - Pagination is strictly sequential: each page's cursor is the highest
      order id seen so far.
    - Every upsert commits on its own. A run stopped by the wall-clock
      ceiling, the page limit or an order-feed failure keeps everything it
      wrote, and re-running the same (or a smaller) window is safe because
      upserts are idempotent. No resume cursor is stored.
    - Order-feed failures are absorbed into the summary (stopped_reason
      "upstream_error"); only bad input / missing credentials raise.

REFERENCES:
    - attribution_engine/services/event_store.py (idempotent upsert)
    - attribution_engine/services/shopify_client.py (order feed)
    - attribution_engine/routers/tracking.py (HTTP entrypoint)
    - attribution_engine/workers/arq_worker.py (scheduled runs)
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from attribution_engine.exceptions import AuthError, UpstreamPaginationError, ValidationError
from attribution_engine.models import Connection, ProviderEnum, PURCHASE_EVENT, REFUND_EVENT
from attribution_engine.security import decrypt_secret
from attribution_engine.services.direct_mapper import EntityIds, extract_entity_ids
from attribution_engine.services.event_store import TrackingEventInput, TrackingEventStore, UpsertResult
from attribution_engine.services.scored_matcher import ScoredMatcher
from attribution_engine.services.scoring import AttributionMatch, DEFAULT_SCORING, ScoringConfig
from attribution_engine.services.shopify_client import ShopifyAPIError
from attribution_engine.services.signal_extractor import OrderSignals, extract_signals
from attribution_engine.services.time_proximity import TimeProximityFallback
from attribution_engine.services.utm_resolver import UtmResolver
from attribution_engine.telemetry import capture_exception
from attribution_engine.utils.dates import parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

MIN_DAYS = 1
MAX_DAYS = 30
DEFAULT_DAYS = 7

METHOD_DETERMINISTIC = "deterministic"
METHOD_MODELED = "modeled"


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

@dataclass
class BackfillStats:
    """Running counters for one backfill invocation."""
    scanned_orders: int = 0
    pages_scanned: int = 0
    inserted_purchase_events: int = 0
    inserted_refund_events: int = 0
    updated_purchase_events: int = 0
    updated_refund_events: int = 0
    mapped_purchase_events: int = 0
    mapped_refund_events: int = 0
    mapped_updated_purchases: int = 0
    mapped_updated_refunds: int = 0
    deterministic_purchases: int = 0
    modeled_purchases: int = 0
    scored_match_lookups: int = 0

    @property
    def mapping_rate_purchases(self) -> float:
        if self.inserted_purchase_events <= 0:
            return 0.0
        return round(self.mapped_purchase_events / self.inserted_purchase_events * 100, 2)

    @property
    def effective_mapped_purchases(self) -> int:
        return self.mapped_purchase_events + self.mapped_updated_purchases


@dataclass
class BackfillSummary:
    """Result of a backfill, complete or partial."""
    store_id: str
    shop_domain: Optional[str]
    days: int
    created_at_min: datetime
    stats: BackfillStats
    stopped_reason: str = "exhausted"
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def truncated(self) -> bool:
        return self.stopped_reason in ("deadline", "max_pages", "upstream_error")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "store_id": self.store_id,
            "shop_domain": self.shop_domain,
            "days": self.days,
            "created_at_min": to_iso(self.created_at_min),
            **asdict(self.stats),
            "mapping_rate_purchases": self.stats.mapping_rate_purchases,
            "effective_mapped_purchases": self.stats.effective_mapped_purchases,
            "stopped_reason": self.stopped_reason,
            "truncated": self.truncated,
            "errors": list(self.errors),
            "duration_seconds": round(self.duration_seconds, 3),
        }
        return data


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def clamp_days(value: Any, default: int = DEFAULT_DAYS) -> int:
    """Clamp a caller-supplied window to [1, 30] days.

    Raises:
        ValidationError: If the value is present but not numeric
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError("days must be a number")
    try:
        days = int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("days must be a number")
    return max(MIN_DAYS, min(MAX_DAYS, days))


def parse_amount(value: Any) -> Decimal:
    """Money string/number -> Decimal; anything unparseable is 0."""
    if value is None or value == "":
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not amount.is_finite():
        return Decimal("0")
    return amount


def refund_amount(refund: Dict[str, Any]) -> Decimal:
    """Amount refunded by one Shopify refund record.

    Precedence: sum of transactions with kind "refund"; when that is not
    positive, sum of refund line-item subtotals; otherwise 0.
    """
    transactions = refund.get("transactions") if isinstance(refund.get("transactions"), list) else []
    from_transactions = sum(
        (parse_amount(txn.get("amount")) for txn in transactions
         if isinstance(txn, dict) and str(txn.get("kind") or "").lower() == "refund"),
        Decimal("0"),
    )
    if from_transactions > 0:
        return from_transactions

    line_items = refund.get("refund_line_items") if isinstance(refund.get("refund_line_items"), list) else []
    from_line_items = sum(
        (parse_amount(item.get("subtotal")) for item in line_items if isinstance(item, dict)),
        Decimal("0"),
    )
    return from_line_items if from_line_items > 0 else Decimal("0")


def order_refunds(order: Dict[str, Any], order_id: str, value: Decimal, occurred_at: datetime) -> List[Dict[str, Any]]:
    """Explicit refund records, or one synthetic full refund when the order is
    marked refunded but carries none."""
    refunds = order.get("refunds") if isinstance(order.get("refunds"), list) else []
    if refunds:
        return refunds
    if str(order.get("financial_status") or "").lower() == "refunded":
        return [{
            "id": f"{order_id}-status",
            "created_at": order.get("updated_at") or occurred_at,
            "transactions": [{"kind": "refund", "amount": str(value)}],
        }]
    return []


def get_store_credentials(db: Session, store_id: str) -> Tuple[str, str]:
    """Resolve (shop_domain, access_token) for a store's Shopify connection.

    Raises:
        AuthError: No active connection, no domain/token, or undecryptable token
    """
    connection = (
        db.query(Connection)
        .filter(
            Connection.store_id == store_id,
            Connection.provider == ProviderEnum.shopify.value,
            Connection.status == "active",
        )
        .first()
    )
    if not connection or not connection.shop_domain or not connection.access_token_enc:
        raise AuthError("Not authenticated with Shopify", store_id=store_id)

    try:
        token = decrypt_secret(connection.access_token_enc, context=f"shopify:{store_id}:access")
    except ValueError as exc:
        raise AuthError("Stored Shopify token is invalid. Please reconnect.", store_id=store_id) from exc
    return connection.shop_domain, token


# =============================================================================
# BACKFILL DRIVER
# =============================================================================

class OrderBackfill:
    """One backfill invocation for one store.

    Owns its own scored-match cache, so concurrent invocations for different
    stores never share state.

    Usage:
        summary = OrderBackfill(db, feed, store_id="store-1", days=7).run()
    """

    def __init__(
        self,
        db: Session,
        feed: Any,
        store_id: str,
        days: int = DEFAULT_DAYS,
        shop_domain: Optional[str] = None,
        page_size: int = 250,
        max_pages: int = 20,
        max_seconds: Optional[float] = None,
        window_minutes: int = 120,
        utm_resolver: Optional[UtmResolver] = None,
        config: ScoringConfig = DEFAULT_SCORING,
        clock: Callable[[], float] = time.monotonic,
        now: Optional[datetime] = None,
    ):
        if not store_id:
            raise ValidationError("store_id is required")
        self.db = db
        self.feed = feed
        self.store_id = store_id
        self.days = clamp_days(days)
        self.shop_domain = shop_domain
        self.page_size = page_size
        self.max_pages = max_pages
        self.max_seconds = max_seconds
        self.config = config
        self.clock = clock
        self.now = now or utcnow()
        self.created_at_min = self.now - timedelta(days=self.days)

        self.event_store = TrackingEventStore(db, config)
        self.matcher = ScoredMatcher(self.event_store)
        self.proximity = TimeProximityFallback(self.event_store, window_minutes)
        self.utm_resolver = utm_resolver or UtmResolver(db)
        self.stats = BackfillStats()

    def run(self) -> BackfillSummary:
        started = self.clock()
        deadline = started + self.max_seconds if self.max_seconds else None
        summary = BackfillSummary(
            store_id=self.store_id,
            shop_domain=self.shop_domain,
            days=self.days,
            created_at_min=self.created_at_min,
            stats=self.stats,
        )

        logger.info(
            "[BACKFILL] Starting for store %s (days=%d, created_at_min=%s, max_pages=%d)",
            self.store_id, self.days, self.created_at_min, self.max_pages,
        )

        since_id = 0
        pages = 0
        while pages < self.max_pages:
            if deadline is not None and self.clock() >= deadline:
                summary.stopped_reason = "deadline"
                break

            try:
                orders = self._fetch_page(since_id, pages + 1)
            except UpstreamPaginationError as exc:
                logger.error("[BACKFILL] %s", exc.to_user_message())
                capture_exception(exc, extra={
                    "operation": "backfill_orders",
                    "store_id": self.store_id,
                    "since_id": since_id,
                    "page": pages + 1,
                })
                summary.stopped_reason = "upstream_error"
                summary.errors.append(exc.to_user_message())
                break

            if not orders:
                summary.stopped_reason = "exhausted"
                break

            pages += 1
            self.stats.pages_scanned = pages
            logger.info("[BACKFILL] Page %d: %d orders (since_id=%s)", pages, len(orders), since_id)

            timed_out = False
            for order in orders:
                if deadline is not None and self.clock() >= deadline:
                    timed_out = True
                    break
                self.stats.scanned_orders += 1
                self._process_order(order)

            if timed_out:
                summary.stopped_reason = "deadline"
                break

            next_cursor = self._max_order_id(orders)
            if next_cursor is None or next_cursor <= since_id:
                summary.stopped_reason = "exhausted"
                break
            since_id = next_cursor

            if len(orders) < self.page_size:
                summary.stopped_reason = "short_page"
                break
        else:
            summary.stopped_reason = "max_pages"

        self.stats.scored_match_lookups = self.matcher.lookups
        summary.duration_seconds = self.clock() - started

        logger.info(
            "[BACKFILL] Finished for store %s (%s): scanned=%d pages=%d "
            "purchases inserted=%d updated=%d mapped=%d, refunds inserted=%d updated=%d mapped=%d, lookups=%d",
            self.store_id, summary.stopped_reason, self.stats.scanned_orders, self.stats.pages_scanned,
            self.stats.inserted_purchase_events, self.stats.updated_purchase_events,
            self.stats.mapped_purchase_events, self.stats.inserted_refund_events,
            self.stats.updated_refund_events, self.stats.mapped_refund_events,
            self.stats.scored_match_lookups,
        )
        return summary

    # =========================================================================
    # PAGINATION
    # =========================================================================

    def _fetch_page(self, since_id: int, page: int) -> List[Dict[str, Any]]:
        try:
            orders = self.feed.list_orders(since_id=since_id, created_at_min=self.created_at_min, limit=self.page_size)
        except (ShopifyAPIError, httpx.HTTPError) as exc:
            raise UpstreamPaginationError(str(exc), store_id=self.store_id, since_id=since_id, page=page) from exc
        return [order for order in (orders or []) if isinstance(order, dict)]

    @staticmethod
    def _max_order_id(orders: List[Dict[str, Any]]) -> Optional[int]:
        ids = []
        for order in orders:
            try:
                ids.append(int(order.get("id")))
            except (TypeError, ValueError):
                continue
        return max(ids) if ids else None

    # =========================================================================
    # PER-ORDER ATTRIBUTION
    # =========================================================================

    def _attribute(
        self,
        order: Dict[str, Any],
        signals: OrderSignals,
        occurred_at: datetime,
        purchase_event_id: str,
    ) -> Tuple[EntityIds, Optional[AttributionMatch], Optional[str]]:
        """Run the cascade. Returns (entity ids, accepted fallback match, method)."""
        direct = extract_entity_ids(order)
        entity_ids = direct
        fallback: Optional[AttributionMatch] = None

        if not direct.any() and signals.has_identity_signal():
            fallback = self.matcher.match(
                self.store_id,
                occurred_at,
                click_id=signals.click_id,
                fbc=signals.fbc,
                fbp=signals.fbp,
                email_hash=signals.email_hash,
            )
            if fallback is None:
                fallback = self.proximity.match_for(
                    self.store_id, occurred_at, signals, exclude_event_id=purchase_event_id,
                )
            if fallback is not None:
                entity_ids = EntityIds(fallback.campaign_id, fallback.adset_id, fallback.ad_id)

        resolved = self.utm_resolver.resolve(
            self.store_id, signals.utm_campaign, signals.utm_medium, signals.utm_content, entity_ids,
        )

        # Modeled only when the fallback is the sole source: any direct id or
        # UTM input on the order makes the mapping deterministic.
        if not resolved.any():
            method = None
        elif fallback is not None and not direct.any() and not signals.has_utm():
            method = METHOD_MODELED
        else:
            method = METHOD_DETERMINISTIC
        return resolved, fallback, method

    def _process_order(self, order: Dict[str, Any]) -> None:
        order_id = str(order.get("id") or "").strip()
        if not order_id:
            return

        financial_status = str(order.get("financial_status") or "").lower()
        occurred_at = (
            parse_timestamp(order.get("created_at"))
            or parse_timestamp(order.get("updated_at"))
            or self.now
        )
        currency = str(order.get("currency") or "USD")
        value = parse_amount(order.get("total_price"))
        signals = extract_signals(order, now=self.now)

        purchase_event_id = (
            self.event_store.existing_purchase_event_id(self.store_id, order_id)
            or f"shopify-order-{order_id}"
        )
        entity_ids, fallback, method = self._attribute(order, signals, occurred_at, purchase_event_id)
        mapped = entity_ids.any()

        urls = {
            "landing_site": order.get("landing_site") or None,
            "landing_site_ref": order.get("landing_site_ref") or None,
            "referring_site": order.get("referring_site") or None,
            "order_status_url": order.get("order_status_url") or None,
        }
        utms = {
            "utm_campaign": signals.utm_campaign,
            "utm_medium": signals.utm_medium,
            "utm_content": signals.utm_content,
        }

        purchase = TrackingEventInput(
            store_id=self.store_id,
            event_name=PURCHASE_EVENT,
            event_id=purchase_event_id,
            source="shopify",
            occurred_at=occurred_at,
            click_id=signals.click_id,
            fbc=signals.fbc,
            fbp=signals.fbp,
            email_hash=signals.email_hash,
            value=value,
            currency=currency,
            order_id=order_id,
            **entity_ids.as_dict(),
            payload_json={
                "source": f"backfill_{self.days}d_order",
                **urls,
                "financial_status": financial_status or None,
                **utms,
                "fbc_synthesized": signals.fbc_synthesized,
                "attribution_method": method,
                "fallback_attribution": (
                    fallback.to_payload(self.config) if fallback and method == METHOD_MODELED else None
                ),
            },
        )
        result = self.event_store.upsert(purchase)
        self._count(result, mapped, refund=False)
        if result.inserted and method == METHOD_DETERMINISTIC:
            self.stats.deterministic_purchases += 1
        elif result.inserted and method == METHOD_MODELED:
            self.stats.modeled_purchases += 1

        for idx, refund in enumerate(order_refunds(order, order_id, value, occurred_at)):
            if not isinstance(refund, dict):
                continue
            refund_id = str(refund.get("id") or f"{order_id}-{idx + 1}")
            amount = refund_amount(refund)
            if amount <= 0:
                continue

            refund_event = TrackingEventInput(
                store_id=self.store_id,
                event_name=REFUND_EVENT,
                event_id=f"shopify-refund-{refund_id}",
                source="shopify",
                occurred_at=(
                    parse_timestamp(refund.get("created_at"))
                    or parse_timestamp(order.get("updated_at"))
                    or occurred_at
                ),
                click_id=signals.click_id,
                fbc=signals.fbc,
                fbp=signals.fbp,
                email_hash=signals.email_hash,
                value=amount,
                currency=currency,
                order_id=order_id,
                **entity_ids.as_dict(),
                payload_json={
                    "source": f"backfill_{self.days}d_refund",
                    "order_id": order_id,
                    "refund_id": refund_id,
                    **urls,
                    **utms,
                    "attribution_method": method,
                    "fallback_attribution": fallback.to_payload(self.config) if fallback else None,
                },
            )
            self._count(self.event_store.upsert(refund_event), mapped, refund=True)

    def _count(self, result: UpsertResult, mapped: bool, refund: bool) -> None:
        if result.inserted:
            if refund:
                self.stats.inserted_refund_events += 1
                self.stats.mapped_refund_events += int(mapped)
            else:
                self.stats.inserted_purchase_events += 1
                self.stats.mapped_purchase_events += int(mapped)
        elif result.updated:
            if refund:
                self.stats.updated_refund_events += 1
                self.stats.mapped_updated_refunds += int(mapped)
            else:
                self.stats.updated_purchase_events += 1
                self.stats.mapped_updated_purchases += int(mapped)


def run_backfill(
    db: Session,
    store_id: str,
    days: Any,
    feed: Any,
    shop_domain: Optional[str] = None,
    **options: Any,
) -> BackfillSummary:
    """Convenience wrapper: validate, build an OrderBackfill and run it.

    Args:
        db: Database session (each upsert commits on it)
        store_id: Store to backfill (required)
        days: Trailing window; clamped to [1, 30], default 7
        feed: Order feed exposing list_orders(since_id, created_at_min, limit)
        shop_domain: Echoed back in the summary
        **options: Forwarded to OrderBackfill (page_size, max_pages, max_seconds, ...)

    Raises:
        ValidationError: Missing store_id or non-numeric days
    """
    if not store_id:
        raise ValidationError("store_id is required")
    return OrderBackfill(db, feed, store_id, days=clamp_days(days), shop_domain=shop_domain, **options).run()
