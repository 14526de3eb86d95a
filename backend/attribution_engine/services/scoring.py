"""Signal-match scoring and acceptance rules.

WHAT:
    - ScoringConfig: versioned weights, recency ladder and acceptance thresholds
    - AttributionMatch: ephemeral result of a scored or time-proximity lookup
    - score_signal_match / confidence_from_score / accept_signal_match
    - proximity_confidence: distance ladder for the time-proximity fallback

WHY:
    The thresholds are hand-tuned. Keeping them in one frozen, named config
    (whose version is written into every modeled attribution's diagnostics)
    makes scoring changes explicit and lets old backfills be compared
    against new rules.

Signal strength ordering: click_id > fbc > {fbp, email_hash}. fbp and
email_hash span many sessions, so they carry the least weight and the
strictest acceptance floor.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple


SIGNAL_CLICK_ID = "click_id"
SIGNAL_FBC = "fbc"
SIGNAL_FBP = "fbp"
SIGNAL_EMAIL_HASH = "email_hash"

# Order used when reporting matched signals
SIGNAL_ORDER = (SIGNAL_CLICK_ID, SIGNAL_FBC, SIGNAL_FBP, SIGNAL_EMAIL_HASH)

STRATEGY_SIGNAL_MATCH = "signal_match"
STRATEGY_TIME_PROXIMITY = "time_proximity"


@dataclass(frozen=True)
class ScoringConfig:
    """Named, versioned scoring constants.

    Bump `version` whenever a number here changes.
    """

    version: str = "2025-01-v1"

    # Base points per matched signal
    signal_weights: Tuple[Tuple[str, float], ...] = (
        (SIGNAL_CLICK_ID, 72.0),
        (SIGNAL_FBC, 58.0),
        (SIGNAL_FBP, 24.0),
        (SIGNAL_EMAIL_HASH, 12.0),
    )
    click_and_fbc_bonus: float = 18.0
    per_extra_signal_bonus: float = 6.0

    # (max age in hours, multiplier); anything older uses stale_multiplier
    recency_ladder: Tuple[Tuple[float, float], ...] = (
        (1.0, 1.0),
        (6.0, 0.97),
        (24.0, 0.9),
        (72.0, 0.75),
        (168.0, 0.55),
    )
    stale_multiplier: float = 0.35

    # Single weak signal decay
    email_only_max_hours: float = 120.0
    email_only_multiplier: float = 0.35
    fbp_only_max_hours: float = 48.0
    fbp_only_multiplier: float = 0.6

    # Touches stored from the order feed may themselves be fallback-derived
    shopify_source_multiplier: float = 0.72

    score_divisor: float = 120.0
    min_confidence: float = 0.05
    max_confidence: float = 0.98

    # Acceptance thresholds, checked strongest signal first
    threshold_click_id: float = 0.20
    threshold_fbc: float = 0.22
    threshold_weak: float = 0.28
    threshold_floor: float = 0.25

    # Scored-match candidate cap (most recent first)
    candidate_limit: int = 250

    # Time-proximity: (max distance in seconds, confidence); beyond uses proximity_floor
    proximity_ladder: Tuple[Tuple[int, float], ...] = (
        (60, 0.76),
        (180, 0.72),
        (300, 0.67),
        (600, 0.6),
        (900, 0.53),
    )
    proximity_floor: float = 0.42
    proximity_candidate_limit: int = 8
    # A different mapping this close to the best candidate makes the match ambiguous
    proximity_ambiguity_seconds: int = 120
    proximity_min_window_minutes: int = 2
    proximity_max_window_minutes: int = 1440


DEFAULT_SCORING = ScoringConfig()


@dataclass
class AttributionMatch:
    """Best touch found for a purchase. Never persisted as-is."""

    campaign_id: Optional[str]
    adset_id: Optional[str]
    ad_id: Optional[str]
    confidence: float
    score: float
    matched_at: datetime
    source: Optional[str]
    age_hours: Optional[float]
    strategy: str = STRATEGY_SIGNAL_MATCH
    matched_signals: List[str] = field(default_factory=list)

    def has_entity(self) -> bool:
        return bool(self.campaign_id or self.adset_id or self.ad_id)

    def to_payload(self, config: ScoringConfig = DEFAULT_SCORING) -> Dict[str, Any]:
        """Diagnostic dict stored under payload_json.fallbackAttribution."""
        return {
            "strategy": self.strategy,
            "confidence": round(self.confidence, 4),
            "score": round(self.score, 2),
            "matched_signals": list(self.matched_signals),
            "matched_at": self.matched_at.isoformat() + "Z" if self.matched_at else None,
            "source": self.source,
            "age_hours": round(self.age_hours, 4) if self.age_hours is not None else None,
            "scoring_version": config.version,
        }


# =============================================================================
# SIGNAL MATCH SCORING
# =============================================================================

def recency_multiplier(age_hours: float, config: ScoringConfig = DEFAULT_SCORING) -> float:
    """Multiplier for a touch `age_hours` old. Ages <= 0 are not decayed."""
    if age_hours <= 0:
        return 1.0
    for max_hours, multiplier in config.recency_ladder:
        if age_hours <= max_hours:
            return multiplier
    return config.stale_multiplier


def score_signal_match(
    matched_signals: Sequence[str],
    source: Optional[str],
    age_hours: Optional[float],
    config: ScoringConfig = DEFAULT_SCORING,
) -> float:
    """Raw score for a touch sharing `matched_signals` with a purchase.

    Args:
        matched_signals: Subset of SIGNAL_ORDER the touch shares with the purchase
        source: Touch source (browser / server / shopify)
        age_hours: Hours between touch and purchase; None skips decay

    Returns:
        Unbounded score (divide by config.score_divisor for confidence)
    """
    has = set(matched_signals)
    score = 0.0
    for signal, weight in config.signal_weights:
        if signal in has:
            score += weight

    if SIGNAL_CLICK_ID in has and SIGNAL_FBC in has:
        score += config.click_and_fbc_bonus
    if len(has) >= 2:
        score += (len(has) - 1) * config.per_extra_signal_bonus

    if age_hours is not None:
        score *= recency_multiplier(age_hours, config)
        if has == {SIGNAL_EMAIL_HASH} and age_hours > config.email_only_max_hours:
            score *= config.email_only_multiplier
        if has == {SIGNAL_FBP} and age_hours > config.fbp_only_max_hours:
            score *= config.fbp_only_multiplier

    if source == "shopify":
        score *= config.shopify_source_multiplier

    return score


def confidence_from_score(score: float, config: ScoringConfig = DEFAULT_SCORING) -> float:
    return max(config.min_confidence, min(config.max_confidence, score / config.score_divisor))


def acceptance_threshold(matched_signals: Sequence[str], config: ScoringConfig = DEFAULT_SCORING) -> float:
    """Threshold for the strongest signal present in `matched_signals`."""
    has = set(matched_signals)
    if SIGNAL_CLICK_ID in has:
        return config.threshold_click_id
    if SIGNAL_FBC in has:
        return config.threshold_fbc
    if SIGNAL_FBP in has or SIGNAL_EMAIL_HASH in has:
        return config.threshold_weak
    return config.threshold_floor


def accept_signal_match(
    match: Optional[AttributionMatch],
    config: ScoringConfig = DEFAULT_SCORING,
) -> bool:
    """Decide whether a scored match is strong enough to attribute.

    Rejects matches without any entity id or without a matched signal,
    regardless of score.
    """
    if match is None or not match.has_entity() or not match.matched_signals:
        return False
    return match.confidence >= acceptance_threshold(match.matched_signals, config)


# =============================================================================
# TIME PROXIMITY
# =============================================================================

def proximity_confidence(diff_seconds: float, config: ScoringConfig = DEFAULT_SCORING) -> float:
    for max_seconds, confidence in config.proximity_ladder:
        if diff_seconds <= max_seconds:
            return confidence
    return config.proximity_floor


def clamp_window_minutes(window_minutes: Any, config: ScoringConfig = DEFAULT_SCORING) -> int:
    try:
        minutes = int(window_minutes)
    except (TypeError, ValueError):
        minutes = config.proximity_min_window_minutes
    return max(config.proximity_min_window_minutes, min(config.proximity_max_window_minutes, minutes))
