"""SQLAlchemy ORM models and enums.

This module defines the tracking schema: stored commerce/marketing events,
per-store upstream credentials, reporting preferences and the locally cached
ad-platform taxonomy used for name-based entity resolution.
"""

from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Integer, Numeric, JSON, Text, UniqueConstraint, Index
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    meta = "meta"
    shopify = "shopify"
    other = "other"


class LevelEnum(str, enum.Enum):
    campaign = "campaign"
    adset = "adset"
    ad = "ad"


class EventSourceEnum(str, enum.Enum):
    browser = "browser"
    server = "server"
    shopify = "shopify"


class AttributionModelEnum(str, enum.Enum):
    first_click = "first_click"
    last_click = "last_click"


class AttributionWindowEnum(str, enum.Enum):
    one_day = "1day"
    seven_day = "7day"
    twenty_eight_day = "28day"


PURCHASE_EVENT = "Purchase"
REFUND_EVENT = "Refund"


# Models --------------------------------------------------------

class Connection(Base):
    """Upstream credential for one store.

    WHAT: Links a store to its commerce platform (shop domain + encrypted token)
    WHY: Backfills need a valid storefront credential; absence maps to HTTP 401
    """
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("store_id", "provider", name="uq_connection_store_provider"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False, default=ProviderEnum.shopify.value)
    shop_domain = Column(String, nullable=True)
    # Fernet ciphertext, see security.encrypt_secret
    access_token_enc = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.provider} - {self.store_id} ({self.shop_domain})"


class TrackingConfig(Base):
    """Per-store reporting preferences (attribution model and window)."""
    __tablename__ = "tracking_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String, nullable=False, unique=True)
    pixel_id = Column(String, nullable=True)
    domain = Column(String, nullable=True)
    attribution_model = Column(String, nullable=False, default=AttributionModelEnum.last_click.value)
    attribution_window = Column(String, nullable=False, default=AttributionWindowEnum.seven_day.value)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.store_id} - {self.attribution_model}/{self.attribution_window}"


class TrackingEvent(Base):
    """One stored touch, purchase or refund.

    WHAT: Keyed by (store_id, event_id) so every ingestion path is an upsert
    WHY: Backfills are re-run freely; the key keeps them from duplicating rows

    All timestamps are naive UTC.
    """
    __tablename__ = "tracking_events"
    __table_args__ = (
        UniqueConstraint("store_id", "event_id", name="uq_tracking_event_store_event"),
        Index("ix_tracking_events_store_occurred", "store_id", "occurred_at"),
        Index("ix_tracking_events_store_name_occurred", "store_id", "event_name", "occurred_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String, nullable=False)
    event_name = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    source = Column(String, nullable=False, default=EventSourceEnum.server.value)
    occurred_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Context
    page_url = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    session_id = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)

    # Identity signals
    click_id = Column(String, nullable=True, index=True)
    fbp = Column(String, nullable=True)
    fbc = Column(String, nullable=True)
    external_id = Column(String, nullable=True)
    email_hash = Column(String(64), nullable=True)
    phone_hash = Column(String(64), nullable=True)
    ip_hash = Column(String(64), nullable=True)

    # Commerce
    value = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    order_id = Column(String, nullable=True)

    # Resolved ad entities
    campaign_id = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)

    # Diagnostics (source, attribution method, fallback match details)
    payload_json = Column(JSON, nullable=True)

    def __str__(self):
        return f"{self.event_name} - {self.event_id} ({self.store_id})"


class AdEntity(Base):
    """Cached ad-platform taxonomy row (campaign / adset / ad name to id).

    WHAT: Local snapshot of entity names per store
    WHY: UTM values carry names, not ids; this table lets the resolver map them
    """
    __tablename__ = "ad_entities"
    __table_args__ = (
        UniqueConstraint("store_id", "provider", "level", "external_id", name="uq_ad_entity"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False, default=ProviderEnum.meta.value)
    level = Column(String, nullable=False)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.level} - {self.name} ({self.external_id})"
