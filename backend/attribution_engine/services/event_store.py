"""Idempotent tracking-event storage and attribution lookups.

WHAT:
    TrackingEventStore wraps a SQLAlchemy session with the operations the
    pipeline and reports need:
    - upsert(event) -> UpsertResult(inserted, updated)
    - find_scored_match(...) -> best prior touch sharing a signal
    - find_nearest_in_time(...) -> nearest mapped event inside a window
    - events_since(store_id, since)
    - existing_purchase_event_id(store_id, order_id)
    - clear_events(store_id, source) (operator-triggered clear)

WHY:
    (store_id, event_id) is unique. Upserts never duplicate a row and never
    overwrite a stored value: a re-seen event only fills columns that are
    still NULL, so re-running a backfill leaves stored contents unchanged.
    Each upsert commits on its own; a backfill cut short by its time ceiling
    keeps every event written before the cut.

REFERENCES:
    - attribution_engine/models.py::TrackingEvent
    - attribution_engine/services/scoring.py (score / confidence rules)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attribution_engine.models import TrackingEvent, PURCHASE_EVENT, REFUND_EVENT
from attribution_engine.services.scoring import (
    AttributionMatch,
    DEFAULT_SCORING,
    ScoringConfig,
    SIGNAL_CLICK_ID,
    SIGNAL_EMAIL_HASH,
    SIGNAL_FBC,
    SIGNAL_FBP,
    STRATEGY_SIGNAL_MATCH,
    STRATEGY_TIME_PROXIMITY,
    clamp_window_minutes,
    confidence_from_score,
    proximity_confidence,
    score_signal_match,
)
from attribution_engine.utils.dates import to_naive_utc

logger = logging.getLogger(__name__)


# Columns a later observation may fill when the stored value is NULL
FILLABLE_COLUMNS = (
    "page_url", "referrer", "session_id", "user_agent",
    "click_id", "fbp", "fbc", "external_id", "email_hash", "phone_hash", "ip_hash",
    "value", "currency", "order_id",
    "campaign_id", "adset_id", "ad_id",
    "payload_json",
)

# Tie-break for equally distant time-proximity candidates
SOURCE_RANK = {"shopify": 0, "server": 1}


@dataclass
class TrackingEventInput:
    """One event to upsert. Timestamps may be aware; they are stored as naive UTC."""

    store_id: str
    event_name: str
    event_id: str
    occurred_at: datetime
    source: str = "browser"
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None
    click_id: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    external_id: Optional[str] = None
    email_hash: Optional[str] = None
    phone_hash: Optional[str] = None
    ip_hash: Optional[str] = None
    value: Optional[Any] = None
    currency: Optional[str] = None
    order_id: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    payload_json: Optional[Dict[str, Any]] = field(default=None)

    def column_values(self) -> Dict[str, Any]:
        values = {name: getattr(self, name) for name in FILLABLE_COLUMNS}
        values["value"] = _to_decimal(self.value)
        return values


@dataclass
class UpsertResult:
    inserted: bool = False
    updated: bool = False


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def _has_entity_filter():
    return or_(
        TrackingEvent.campaign_id.isnot(None),
        TrackingEvent.adset_id.isnot(None),
        TrackingEvent.ad_id.isnot(None),
    )


class TrackingEventStore:
    """Tracking-event persistence bound to one session.

    Usage:
        store = TrackingEventStore(db)
        result = store.upsert(TrackingEventInput(...))
        match = store.find_scored_match("store-1", before, click_id="abc")
    """

    def __init__(self, db: Session, config: ScoringConfig = DEFAULT_SCORING):
        self.db = db
        self.config = config

    # =========================================================================
    # WRITES
    # =========================================================================

    def upsert(self, event: TrackingEventInput) -> UpsertResult:
        """Insert the event, or fill NULL columns of the existing row.

        Returns:
            UpsertResult(inserted=True) for a new row, UpsertResult(updated=True)
            when (store_id, event_id) already existed.
        """
        existing = self._get(event.store_id, event.event_id)
        if existing is None:
            row = TrackingEvent(
                store_id=event.store_id,
                event_name=event.event_name,
                event_id=event.event_id,
                source=event.source,
                occurred_at=to_naive_utc(event.occurred_at),
                **event.column_values(),
            )
            self.db.add(row)
            try:
                self.db.commit()
                return UpsertResult(inserted=True)
            except IntegrityError:
                # Lost an insert race with a concurrent run; fall through to update
                self.db.rollback()
                logger.info(
                    "[EVENT_STORE] Concurrent insert for %s/%s, updating instead",
                    event.store_id, event.event_id,
                )
                existing = self._get(event.store_id, event.event_id)
                if existing is None:
                    raise

        for name, value in event.column_values().items():
            if value is not None and getattr(existing, name) is None:
                setattr(existing, name, value)
        self.db.commit()
        return UpsertResult(updated=True)

    def clear_events(self, store_id: str, source: Optional[str] = None) -> int:
        """Delete a store's events (optionally one source only). Returns the row count."""
        query = self.db.query(TrackingEvent).filter(TrackingEvent.store_id == store_id)
        if source:
            query = query.filter(TrackingEvent.source == source)
        deleted = query.delete(synchronize_session=False)
        self.db.commit()
        logger.warning("[EVENT_STORE] Cleared %d events for store %s (source=%s)", deleted, store_id, source)
        return deleted

    # =========================================================================
    # READS
    # =========================================================================

    def _get(self, store_id: str, event_id: str) -> Optional[TrackingEvent]:
        return (
            self.db.query(TrackingEvent)
            .filter(TrackingEvent.store_id == store_id, TrackingEvent.event_id == event_id)
            .first()
        )

    def events_since(self, store_id: str, since: datetime) -> List[TrackingEvent]:
        """Events with occurred_at >= since, oldest first."""
        return (
            self.db.query(TrackingEvent)
            .filter(
                TrackingEvent.store_id == store_id,
                TrackingEvent.occurred_at >= to_naive_utc(since),
            )
            .order_by(TrackingEvent.occurred_at.asc(), TrackingEvent.id.asc())
            .all()
        )

    def existing_purchase_event_id(self, store_id: str, order_id: str) -> Optional[str]:
        """event_id of the latest order-feed Purchase already stored for this order."""
        row = (
            self.db.query(TrackingEvent.event_id)
            .filter(
                TrackingEvent.store_id == store_id,
                TrackingEvent.source == "shopify",
                TrackingEvent.event_name == PURCHASE_EVENT,
                TrackingEvent.order_id == order_id,
            )
            .order_by(TrackingEvent.occurred_at.desc())
            .first()
        )
        return row[0] if row else None

    def find_scored_match(
        self,
        store_id: str,
        before: Optional[datetime],
        click_id: Optional[str] = None,
        fbc: Optional[str] = None,
        fbp: Optional[str] = None,
        email_hash: Optional[str] = None,
    ) -> Optional[AttributionMatch]:
        """Best-scoring mapped event at/before `before` sharing >= 1 signal.

        WHAT:
            Loads up to config.candidate_limit most recent mapped, non-refund
            events sharing any signal, scores each one, and returns the best
            (ties go to the most recent).

        Returns:
            AttributionMatch (strategy=signal_match) or None when nothing
            shares a signal. Acceptance is the caller's decision.
        """
        wanted = {
            SIGNAL_CLICK_ID: (TrackingEvent.click_id, click_id),
            SIGNAL_FBC: (TrackingEvent.fbc, fbc),
            SIGNAL_FBP: (TrackingEvent.fbp, fbp),
            SIGNAL_EMAIL_HASH: (TrackingEvent.email_hash, email_hash),
        }
        conditions = [column == value for column, value in wanted.values() if value]
        if not conditions:
            return None

        query = self.db.query(TrackingEvent).filter(
            TrackingEvent.store_id == store_id,
            or_(*conditions),
            _has_entity_filter(),
            TrackingEvent.event_name != REFUND_EVENT,
        )
        before = to_naive_utc(before) if before else None
        if before is not None:
            query = query.filter(TrackingEvent.occurred_at <= before)
        rows = query.order_by(TrackingEvent.occurred_at.desc()).limit(self.config.candidate_limit).all()

        best: Optional[AttributionMatch] = None
        for row in rows:
            matched = [
                signal for signal, (column, value) in wanted.items()
                if value and getattr(row, column.key) == value
            ]
            if not matched:
                continue

            age_hours = None
            if before is not None:
                age_hours = max(0.0, (before - row.occurred_at).total_seconds() / 3600)

            score = score_signal_match(matched, row.source, age_hours, self.config)
            if best is None or score > best.score or (score == best.score and row.occurred_at > best.matched_at):
                best = AttributionMatch(
                    campaign_id=row.campaign_id,
                    adset_id=row.adset_id,
                    ad_id=row.ad_id,
                    confidence=confidence_from_score(score, self.config),
                    score=score,
                    matched_at=row.occurred_at,
                    source=row.source,
                    age_hours=age_hours,
                    strategy=STRATEGY_SIGNAL_MATCH,
                    matched_signals=matched,
                )
        return best

    def find_nearest_in_time(
        self,
        store_id: str,
        occurred_at: datetime,
        window_minutes: int,
        exclude_event_id: Optional[str] = None,
    ) -> Optional[AttributionMatch]:
        """Nearest mapped, non-refund event within +/- window_minutes.

        WHAT:
            Ignores signal equality. Candidates sort by distance, then source
            (shopify, server, browser), then most recent. If a candidate with
            a *different* campaign/adset/ad mapping sits within
            config.proximity_ambiguity_seconds of the best one, the result is
            ambiguous and None is returned.

        Args:
            exclude_event_id: The event being attributed, so a re-run never
                matches a purchase to itself.

        Returns:
            AttributionMatch (strategy=time_proximity, matched_signals empty)
            or None.
        """
        occurred_at = to_naive_utc(occurred_at)
        window = timedelta(minutes=clamp_window_minutes(window_minutes, self.config))
        limit = self.config.proximity_candidate_limit

        base = self.db.query(TrackingEvent).filter(
            TrackingEvent.store_id == store_id,
            _has_entity_filter(),
            TrackingEvent.event_name != REFUND_EVENT,
        )
        if exclude_event_id:
            base = base.filter(TrackingEvent.event_id != exclude_event_id)

        # Nearest N on each side contain the nearest N overall
        earlier = (
            base.filter(TrackingEvent.occurred_at <= occurred_at, TrackingEvent.occurred_at >= occurred_at - window)
            .order_by(TrackingEvent.occurred_at.desc())
            .limit(limit)
            .all()
        )
        later = (
            base.filter(TrackingEvent.occurred_at > occurred_at, TrackingEvent.occurred_at <= occurred_at + window)
            .order_by(TrackingEvent.occurred_at.asc())
            .limit(limit)
            .all()
        )

        scored = [
            (abs(round((occurred_at - row.occurred_at).total_seconds())), row)
            for row in earlier + later
        ]
        if not scored:
            return None
        scored.sort(key=lambda item: (item[0], SOURCE_RANK.get(item[1].source, 2), -item[1].occurred_at.timestamp()))
        scored = scored[:limit]

        best_diff, best = scored[0]
        best_key = (best.campaign_id or "", best.adset_id or "", best.ad_id or "")
        for diff, row in scored[1:]:
            if (row.campaign_id or "", row.adset_id or "", row.ad_id or "") != best_key:
                if diff - best_diff <= self.config.proximity_ambiguity_seconds:
                    logger.info(
                        "[EVENT_STORE] Ambiguous time-proximity match for store %s at %s (%ds vs %ds)",
                        store_id, occurred_at, best_diff, diff,
                    )
                    return None
                break

        confidence = proximity_confidence(best_diff, self.config)
        return AttributionMatch(
            campaign_id=best.campaign_id,
            adset_id=best.adset_id,
            ad_id=best.ad_id,
            confidence=confidence,
            score=round(confidence * 100),
            matched_at=best.occurred_at,
            source=best.source,
            age_hours=best_diff / 3600,
            strategy=STRATEGY_TIME_PROXIMITY,
        )
