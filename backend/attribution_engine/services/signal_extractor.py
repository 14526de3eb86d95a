"""Canonical identity-signal extraction from raw order records.

WHAT:
    Parses a Shopify order dict into OrderSignals: click id, fbc, fbp,
    email hash and UTM campaign/medium/content.

WHY:
    By the time an order reaches the backend its marketing signals may live in
    any of several places: the landing URL, the order-status URL, the landing
    ref, the referring site, or note attributes written by tracking scripts
    under legacy (`_tw_*`) or current key names. Each signal is defined below
    as an ordered list of extractor functions, evaluated short-circuit; the
    first non-empty value wins. Reordering priorities means reordering a list.

    Nothing in this module raises on malformed input. Broken percent-encoding
    falls back to the raw, space-normalized string and absent data is None.

REFERENCES:
    - attribution_engine/services/direct_mapper.py (same scan for entity ids)
    - Shopify REST Order resource: landing_site, referring_site, note_attributes
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import unquote

from attribution_engine.utils.dates import utcnow


Order = Dict[str, Any]
Extractor = Callable[[Order], Optional[str]]

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


# =============================================================================
# KEY NAMES (priority order)
# =============================================================================

CLICK_ID_NOTE_KEYS = (
    "_tw_click_id", "_tw_ft_click_id", "_tw_first_click_id",
    "tw_click_id", "tw_ft_click_id", "tw_first_click_id",
    "fbclid",
)
FBC_NOTE_KEYS = ("_tw_fbc", "_tw_first_fbc", "tw_fbc", "tw_first_fbc", "fbc")
FBP_NOTE_KEYS = ("_tw_fbp", "tw_fbp", "fbp", "_fbp")
EMAIL_NOTE_KEYS = ("_tw_email", "email")


def utm_note_keys(name: str) -> tuple:
    """Note-attribute keys for `utm_<name>`, legacy prefixes first."""
    return (
        f"_tw_utm_{name}", f"_tw_ft_utm_{name}", f"_tw_first_utm_{name}",
        f"tw_utm_{name}", f"tw_ft_utm_{name}", f"tw_first_utm_{name}",
        f"utm_{name}",
    )


# =============================================================================
# LOW-LEVEL PARSING
# =============================================================================

def decode_component(value: str) -> str:
    """Percent-decode with '+' as space; malformed input returns the raw string."""
    with_spaces = value.replace("+", " ")
    try:
        return unquote(with_spaces, errors="strict")
    except UnicodeDecodeError:
        return with_spaces


def read_query_param(raw_url: Optional[str], keys: Iterable[str]) -> Optional[str]:
    """First non-empty value in `raw_url`'s query string whose key is in `keys`.

    Keys compare case-insensitively. Works on relative URLs
    ("/products/x?fbclid=...") since only the text after '?' is read.
    """
    if not raw_url or not isinstance(raw_url, str):
        return None
    q_idx = raw_url.find("?")
    if q_idx == -1:
        return None
    hash_idx = raw_url.find("#", q_idx + 1)
    query = raw_url[q_idx + 1:] if hash_idx == -1 else raw_url[q_idx + 1:hash_idx]
    if not query:
        return None

    key_set = {key.lower() for key in keys}
    for segment in query.split("&"):
        if not segment:
            continue
        key_raw, _, value_raw = segment.partition("=")
        key = decode_component(key_raw).strip().lower()
        if not key or key not in key_set:
            continue
        value = decode_component(value_raw).strip()
        if value:
            return value
    return None


def order_urls(order: Order) -> List[Optional[str]]:
    """Candidate URLs in scan order."""
    return [
        order.get("landing_site"),
        order.get("order_status_url"),
        order.get("landing_site_ref"),
        order.get("referring_site"),
    ]


def read_param(urls: Sequence[Optional[str]], keys: Iterable[str]) -> Optional[str]:
    keys = tuple(keys)
    for raw_url in urls:
        value = read_query_param(raw_url, keys)
        if value:
            return value
    return None


def read_note_attribute(note_attributes: Any, keys: Iterable[str]) -> Optional[str]:
    """First non-empty note attribute whose (case-insensitive) name is in `keys`.

    Accepts Shopify's list of {"name", "value"} dicts; anything else yields None.
    """
    if not note_attributes or not isinstance(note_attributes, list):
        return None
    key_set = {key.lower() for key in keys}
    for attr in note_attributes:
        if not isinstance(attr, dict):
            continue
        name = str(attr.get("name") or "").strip().lower()
        if not name or name not in key_set:
            continue
        value = attr.get("value")
        value = str(value).strip() if value is not None else ""
        if value:
            return value
    return None


def parse_click_id_from_fbc(fbc: Optional[str]) -> Optional[str]:
    """`fb.1.<ts>.<click id>` -> click id (which may itself contain dots)."""
    if not fbc:
        return None
    parts = fbc.strip().split(".")
    if len(parts) < 4:
        return None
    return ".".join(parts[3:]) or None


def build_fbc(click_id: Optional[str], now: datetime) -> Optional[str]:
    if not click_id:
        return None
    unix_seconds = int((now - datetime(1970, 1, 1)).total_seconds())
    return f"fb.1.{unix_seconds}.{click_id}"


def hash_email(value: Optional[str]) -> Optional[str]:
    """SHA-256 of the trimmed, lowercased email. Existing 64-hex digests pass through."""
    if not value or not isinstance(value, str):
        return None
    clean = value.strip().lower()
    if not clean:
        return None
    if _SHA256_HEX.match(clean):
        return clean
    return hashlib.sha256(clean.encode("utf-8")).hexdigest()


def first_hit(order: Order, extractors: Sequence[Extractor]) -> Optional[str]:
    """Evaluate `extractors` in order, returning the first non-empty result."""
    for extractor in extractors:
        value = extractor(order)
        if value:
            return value
    return None


def from_params(*keys: str) -> Extractor:
    return lambda order: read_param(order_urls(order), keys)


def from_notes(*keys: str) -> Extractor:
    return lambda order: read_note_attribute(order.get("note_attributes"), keys)


# =============================================================================
# SIGNAL EXTRACTOR LISTS
# =============================================================================

CLICK_ID_EXTRACTORS: List[Extractor] = [
    from_params("fbclid"),
    lambda order: parse_click_id_from_fbc(read_param(order_urls(order), ("fbc",))),
    from_notes(*CLICK_ID_NOTE_KEYS),
    lambda order: parse_click_id_from_fbc(read_note_attribute(order.get("note_attributes"), FBC_NOTE_KEYS)),
]

FBC_EXTRACTORS: List[Extractor] = [
    from_params("fbc"),
    from_notes(*FBC_NOTE_KEYS),
]

FBP_EXTRACTORS: List[Extractor] = [
    from_params("fbp"),
    from_notes(*FBP_NOTE_KEYS),
]


def _customer_email(order: Order) -> Optional[str]:
    customer = order.get("customer")
    if isinstance(customer, dict):
        return customer.get("email")
    return None


EMAIL_EXTRACTORS: List[Extractor] = [
    lambda order: order.get("email") if isinstance(order.get("email"), str) else None,
    _customer_email,
    from_notes(*EMAIL_NOTE_KEYS),
]

UTM_CAMPAIGN_EXTRACTORS: List[Extractor] = [from_params("utm_campaign"), from_notes(*utm_note_keys("campaign"))]
UTM_MEDIUM_EXTRACTORS: List[Extractor] = [from_params("utm_medium"), from_notes(*utm_note_keys("medium"))]
UTM_CONTENT_EXTRACTORS: List[Extractor] = [from_params("utm_content"), from_notes(*utm_note_keys("content"))]


# =============================================================================
# PUBLIC API
# =============================================================================

@dataclass
class OrderSignals:
    """Canonical signals for one order."""

    click_id: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    email_hash: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_content: Optional[str] = None
    fbc_synthesized: bool = False

    def has_identity_signal(self) -> bool:
        return bool(self.click_id or self.fbc or self.fbp or self.email_hash)

    def has_utm(self) -> bool:
        return bool(self.utm_campaign or self.utm_medium or self.utm_content)

    def present_signals(self) -> List[str]:
        """Names of the identity signals present, strongest first."""
        present = []
        if self.click_id:
            present.append("click_id")
        if self.fbc:
            present.append("fbc")
        if self.fbp:
            present.append("fbp")
        if self.email_hash:
            present.append("email_hash")
        return present


def extract_signals(order: Order, now: Optional[datetime] = None) -> OrderSignals:
    """Extract canonical signals from a raw order.

    Args:
        order: Shopify REST order dict
        now: Ingestion time (naive UTC) used when an fbc has to be synthesized
             from a click id. Pass one value per backfill run so identical
             signal tuples stay identical within the run.

    Returns:
        OrderSignals (fields None when absent)
    """
    if not isinstance(order, dict):
        return OrderSignals()

    click_id = first_hit(order, CLICK_ID_EXTRACTORS)
    fbc = first_hit(order, FBC_EXTRACTORS)
    synthesized = False
    if not fbc and click_id:
        fbc = build_fbc(click_id, now or utcnow())
        synthesized = True

    return OrderSignals(
        click_id=click_id,
        fbc=fbc,
        fbp=first_hit(order, FBP_EXTRACTORS),
        email_hash=hash_email(first_hit(order, EMAIL_EXTRACTORS)),
        utm_campaign=first_hit(order, UTM_CAMPAIGN_EXTRACTORS),
        utm_medium=first_hit(order, UTM_MEDIUM_EXTRACTORS),
        utm_content=first_hit(order, UTM_CONTENT_EXTRACTORS),
        fbc_synthesized=synthesized,
    )
