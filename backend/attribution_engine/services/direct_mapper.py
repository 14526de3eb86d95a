"""Direct entity-id mapping from URL parameters and note attributes.

WHAT:
    Reads campaign / adset / ad ids that ad-platform URL tagging already
    substituted into the landing link (`?campaign_id={{campaign.id}}`,
    `hsa_cam=...`) or that tracking scripts copied into note attributes.

WHY:
    Ids found here were present at click time, so they are authoritative
    ("deterministic") and skip the scored/time-proximity cascade. The UTM
    resolver may still fill whichever levels are missing.

REFERENCES:
    - attribution_engine/services/signal_extractor.py (shared scan helpers)
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from attribution_engine.services.signal_extractor import (
    Extractor,
    first_hit,
    from_notes,
    from_params,
    read_param,
)


@dataclass
class EntityIds:
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None

    def any(self) -> bool:
        return bool(self.campaign_id or self.adset_id or self.ad_id)

    def missing_any(self) -> bool:
        return not (self.campaign_id and self.adset_id and self.ad_id)

    def fill_from(self, other: "EntityIds") -> "EntityIds":
        """New EntityIds keeping our values and taking `other`'s only where ours are empty."""
        return EntityIds(
            campaign_id=self.campaign_id or other.campaign_id,
            adset_id=self.adset_id or other.adset_id,
            ad_id=self.ad_id or other.ad_id,
        )

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"campaign_id": self.campaign_id, "adset_id": self.adset_id, "ad_id": self.ad_id}


def _level_param_keys(level: str) -> tuple:
    hsa = {"campaign": "hsa_cam", "adset": "hsa_adset", "ad": "hsa_ad"}[level]
    return (f"{level}_id", f"{level}id", f"utm_{level}_id", f"fb_{level}_id", hsa)


def _level_note_keys(level: str) -> tuple:
    hsa = {"campaign": "hsa_cam", "adset": "hsa_adset", "ad": "hsa_ad"}[level]
    return (
        f"_tw_{level}_id", f"_tw_ft_{level}_id", f"_tw_first_{level}_id",
        f"tw_{level}_id", f"tw_ft_{level}_id", f"tw_first_{level}_id",
        f"{level}_id", f"{level}id", f"fb_{level}_id", f"utm_{level}_id", hsa,
    )


ENTITY_EXTRACTORS: Dict[str, Sequence[Extractor]] = {
    level: [from_params(*_level_param_keys(level)), from_notes(*_level_note_keys(level))]
    for level in ("campaign", "adset", "ad")
}


def extract_entity_ids(order: Dict[str, Any]) -> EntityIds:
    """Entity ids embedded in an order's URLs / note attributes (None when absent)."""
    if not isinstance(order, dict):
        return EntityIds()
    return EntityIds(
        campaign_id=first_hit(order, ENTITY_EXTRACTORS["campaign"]),
        adset_id=first_hit(order, ENTITY_EXTRACTORS["adset"]),
        ad_id=first_hit(order, ENTITY_EXTRACTORS["ad"]),
    )


def entity_ids_from_url(url: Optional[str]) -> EntityIds:
    """Entity ids from a single page URL (touch collection)."""
    return EntityIds(
        campaign_id=read_param([url], _level_param_keys("campaign")),
        adset_id=read_param([url], _level_param_keys("adset")),
        ad_id=read_param([url], _level_param_keys("ad")),
    )
