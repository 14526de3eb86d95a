"""Per-run cached signal matching.

WHAT:
    ScoredMatcher.match(store_id, before, click_id, fbc, fbp, email_hash)
    returns an *accepted* AttributionMatch or None.

WHY:
    Guest checkouts repeat the same signal tuple many times in one backfill.
    Lookups are cached per (click_id, fbc, fbp, email_hash, purchase day) in
    an ExpiringCache owned by this matcher, and a matcher is created per
    backfill invocation, so concurrent backfills never share entries.
"""

import logging
from datetime import datetime
from typing import Optional

from attribution_engine.services.event_store import TrackingEventStore
from attribution_engine.services.scoring import AttributionMatch, accept_signal_match
from attribution_engine.services.ttl_cache import ExpiringCache

logger = logging.getLogger(__name__)


class ScoredMatcher:
    def __init__(self, event_store: TrackingEventStore, cache: Optional[ExpiringCache] = None):
        self.event_store = event_store
        self.cache = cache if cache is not None else ExpiringCache()
        self.lookups = 0

    def lookup(
        self,
        store_id: str,
        before: datetime,
        click_id: Optional[str] = None,
        fbc: Optional[str] = None,
        fbp: Optional[str] = None,
        email_hash: Optional[str] = None,
    ) -> Optional[AttributionMatch]:
        """Best candidate (accepted or not), served from the run cache when possible."""
        key = (store_id, click_id or "", fbc or "", fbp or "", email_hash or "", before.date().isoformat())

        def _query() -> Optional[AttributionMatch]:
            self.lookups += 1
            return self.event_store.find_scored_match(
                store_id, before, click_id=click_id, fbc=fbc, fbp=fbp, email_hash=email_hash,
            )

        return self.cache.get_or_compute(key, _query)

    def match(
        self,
        store_id: str,
        before: datetime,
        click_id: Optional[str] = None,
        fbc: Optional[str] = None,
        fbp: Optional[str] = None,
        email_hash: Optional[str] = None,
    ) -> Optional[AttributionMatch]:
        candidate = self.lookup(store_id, before, click_id, fbc, fbp, email_hash)
        if candidate is None:
            return None
        if not accept_signal_match(candidate, self.event_store.config):
            logger.debug(
                "[SCORED_MATCH] Rejected candidate for store %s (confidence=%.3f, signals=%s)",
                store_id, candidate.confidence, candidate.matched_signals,
            )
            return None
        return candidate
