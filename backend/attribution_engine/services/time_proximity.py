"""Time-proximity fallback.

WHAT:
    nearest_touch(store_id, occurred_at, window_minutes) finds the mapped
    event closest in time to a purchase, ignoring signal equality.

WHY:
    Runs only after the scored matcher rejects and only when the purchase
    carries at least one identity signal. Results are tagged
    strategy=time_proximity and always classified "modeled", so reports can
    keep probabilistic coverage apart from deterministic attribution. The
    ambiguity guardrail in the event store drops matches where a different
    mapping is almost as close.
"""

from datetime import datetime
from typing import Optional

from attribution_engine.services.event_store import TrackingEventStore
from attribution_engine.services.scoring import AttributionMatch
from attribution_engine.services.signal_extractor import OrderSignals


class TimeProximityFallback:
    def __init__(self, event_store: TrackingEventStore, window_minutes: int = 120):
        self.event_store = event_store
        self.window_minutes = window_minutes

    def nearest_touch(
        self,
        store_id: str,
        occurred_at: datetime,
        window_minutes: Optional[int] = None,
        exclude_event_id: Optional[str] = None,
    ) -> Optional[AttributionMatch]:
        return self.event_store.find_nearest_in_time(
            store_id,
            occurred_at,
            window_minutes if window_minutes is not None else self.window_minutes,
            exclude_event_id=exclude_event_id,
        )

    def match_for(
        self,
        store_id: str,
        occurred_at: datetime,
        signals: OrderSignals,
        exclude_event_id: Optional[str] = None,
    ) -> Optional[AttributionMatch]:
        """Fallback for a purchase; None when it carries no identity signal at all."""
        if not signals.has_identity_signal():
            return None
        match = self.nearest_touch(store_id, occurred_at, exclude_event_id=exclude_event_id)
        if match is None or not match.has_entity():
            return None
        # Report which of the purchase's own signals were present
        match.matched_signals = signals.present_signals()
        return match
