"""Name-based entity resolution from UTM parameters.

WHAT:
    UtmResolver.resolve(store_id, utm_campaign, utm_medium, utm_content, known)
    maps UTM names onto campaign / adset / ad ids using a per-store taxonomy
    index built from the locally cached `ad_entities` table.

    Mapping: utm_campaign -> campaign, utm_medium -> adset, utm_content -> ad.

WHY:
    Last resort after direct ids and signal matching. It only fills levels
    that are still missing and never overwrites a known id. A stale or
    partial index simply leaves fields None.

MATCHING:
    Names are normalized (percent-decoded, '+' as space, lowercased,
    non-alphanumerics collapsed to single spaces). An exact normalized match
    wins outright. Otherwise each indexed name is scored:
      - containment: 0.90 + 0.09 * shorter/longer
      - token overlap: common / max(token counts), +0.05 when the first
        tokens agree, capped at 0.89
    Scores below 0.86 are ignored; two different ids tied for the best score
    are ambiguous and resolve to None.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional, Tuple
from urllib.parse import unquote

from sqlalchemy.orm import Session

from attribution_engine.models import AdEntity, LevelEnum
from attribution_engine.services.direct_mapper import EntityIds
from attribution_engine.services.ttl_cache import ExpiringCache

logger = logging.getLogger(__name__)

FUZZY_MATCH_THRESHOLD = 0.86
TIE_EPSILON = 1e-6

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_name(raw: Optional[str]) -> str:
    if not raw:
        return ""
    value = raw.strip()
    if not value:
        return ""
    try:
        value = unquote(value, errors="strict")
    except UnicodeDecodeError:
        pass
    value = value.replace("+", " ").lower()
    return " ".join(_NON_ALNUM.sub(" ", value).split())


def score_name_match(target: str, candidate: str) -> float:
    """Similarity of two normalized names in [0, 1]."""
    if target == candidate:
        return 1.0

    if target in candidate or candidate in target:
        shorter = min(len(target), len(candidate))
        longer = max(len(target), len(candidate)) or 1
        return 0.9 + (shorter / longer) * 0.09

    target_tokens = set(target.split())
    candidate_tokens = set(candidate.split())
    if not target_tokens or not candidate_tokens:
        return 0.0

    common = len(target_tokens & candidate_tokens)
    if common == 0:
        return 0.0

    overlap = common / max(len(target_tokens), len(candidate_tokens))
    target_first = target.split()[0]
    candidate_first = candidate.split()[0]
    prefix_bonus = 0.05 if target_first == candidate_first else 0.0
    return min(0.89, overlap + prefix_bonus)


@dataclass
class TaxonomyIndex:
    """Normalized name -> id maps, one per level. First id seen for a name wins."""

    by_level: Dict[str, Dict[str, str]] = field(
        default_factory=lambda: {level.value: {} for level in LevelEnum}
    )

    def add(self, level: str, name: Optional[str], external_id: Optional[str]) -> None:
        if not name or not external_id or level not in self.by_level:
            return
        key = normalize_name(name)
        if key and key not in self.by_level[level]:
            self.by_level[level][key] = str(external_id)

    def find(self, level: str, raw: Optional[str]) -> Optional[str]:
        target = normalize_name(raw)
        if not target:
            return None
        names = self.by_level.get(level, {})

        exact = names.get(target)
        if exact:
            return exact

        best_id: Optional[str] = None
        best_score = 0.0
        ambiguous = False
        for candidate, candidate_id in names.items():
            score = score_name_match(target, candidate)
            if score < FUZZY_MATCH_THRESHOLD:
                continue
            if score > best_score + TIE_EPSILON:
                best_score = score
                best_id = candidate_id
                ambiguous = False
            elif abs(score - best_score) < TIE_EPSILON and best_id and candidate_id != best_id:
                ambiguous = True

        if not best_id or ambiguous:
            return None
        return best_id

    def size(self) -> int:
        return sum(len(names) for names in self.by_level.values())


def load_taxonomy_index(db: Session, store_id: str) -> TaxonomyIndex:
    """Build a store's index from ad_entities (oldest rows first)."""
    index = TaxonomyIndex()
    rows = (
        db.query(AdEntity)
        .filter(AdEntity.store_id == store_id)
        .order_by(AdEntity.id.asc())
        .all()
    )
    for row in rows:
        index.add(row.level, row.name, row.external_id)
    return index


def record_taxonomy(db: Session, store_id: str, rows: Iterable[Tuple[str, str, str]], provider: str = "meta") -> Tuple[int, int]:
    """Upsert (level, external_id, name) rows into ad_entities.

    Returns:
        (created, updated) counts
    """
    created = 0
    updated = 0
    for level, external_id, name in rows:
        existing = (
            db.query(AdEntity)
            .filter(
                AdEntity.store_id == store_id,
                AdEntity.provider == provider,
                AdEntity.level == level,
                AdEntity.external_id == external_id,
            )
            .first()
        )
        if existing:
            if existing.name != name:
                existing.name = name
                updated += 1
        else:
            db.add(AdEntity(store_id=store_id, provider=provider, level=level, external_id=external_id, name=name))
            created += 1
    db.commit()
    logger.info("[UTM_RESOLVER] Taxonomy for %s: created=%d updated=%d", store_id, created, updated)
    return created, updated


class UtmResolver:
    """Resolves UTM names to entity ids with a TTL-cached per-store index.

    Usage:
        resolver = UtmResolver(db, ttl_seconds=1800)
        ids = resolver.resolve("store-1", "Summer Sale", None, None, EntityIds())
    """

    def __init__(
        self,
        db: Session,
        ttl_seconds: Optional[float] = 1800,
        clock: Callable[[], float] = time.monotonic,
        cache: Optional[ExpiringCache] = None,
    ):
        self.db = db
        self.cache = cache if cache is not None else ExpiringCache(ttl_seconds=ttl_seconds, clock=clock)

    def index_for(self, store_id: str) -> TaxonomyIndex:
        return self.cache.get_or_compute(store_id, lambda: load_taxonomy_index(self.db, store_id))

    def invalidate(self, store_id: Optional[str] = None) -> None:
        self.cache.invalidate(store_id)

    def resolve(
        self,
        store_id: str,
        utm_campaign: Optional[str],
        utm_medium: Optional[str],
        utm_content: Optional[str],
        known: Optional[EntityIds] = None,
    ) -> EntityIds:
        """Fill missing ids in `known` from UTM names. Never raises on bad names."""
        known = known or EntityIds()
        if not known.missing_any() or not (utm_campaign or utm_medium or utm_content):
            return known

        index = self.index_for(store_id)
        if index.size() == 0:
            return known

        return EntityIds(
            campaign_id=known.campaign_id or index.find(LevelEnum.campaign.value, utm_campaign),
            adset_id=known.adset_id or index.find(LevelEnum.adset.value, utm_medium),
            ad_id=known.ad_id or index.find(LevelEnum.ad.value, utm_content),
        )
