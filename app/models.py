"""SQLAlchemy ORM models for the short-link service.

This module defines the database schema using SQLAlchemy declarative models
with the unique constraints that carry the service's concurrency guarantees.

Data Model Layout
=================
::
    links table
    ├─ id (VARCHAR(36) PRIMARY KEY, uuid4)
    ├─ owner_id (VARCHAR(36), INDEXED)
    ├─ original_url (TEXT NOT NULL)
    ├─ short_code (VARCHAR(32) UNIQUE, case-sensitive)
    ├─ custom_domain / title (nullable)
    ├─ is_active (BOOLEAN), expires_at (nullable)
    ├─ click_count (INTEGER DEFAULT 0, only ever incremented in SQL)
    └─ created_at / updated_at (TIMESTAMPTZ)

    short_code_registry table
    └─ short_code (PRIMARY KEY), link_id, issued_at
       rows outlive their link so a code is never issued twice

    usage_tracking table
    ├─ user_id + month (UNIQUE)
    └─ links_created / api_requests / custom_domains_used / analytics_events

    analytics_events table (append-only)
    ├─ link_id (weak reference, INDEXED), timestamp (INDEXED), request metadata
    └─ device_type / browser / os parsed from the user agent at write time

    subscription_plans table (reference data)
    └─ tier (UNIQUE), limits (JSON), features (JSON)

    users table (owned by the account system; read here for tier and status)

How to Use
===========
**Step 1 — Import**::
    from app.models import Link

**Step 2 — Query links**::
    result = await db.execute(select(Link).where(Link.short_code == "abc123"))
    link = result.scalar_one_or_none()

**Step 3 — Increment clicks**::
    await db.execute(
        update(Link).where(Link.id == link.id).values(click_count=Link.click_count + 1)
    )

Key Behaviours
===============
- Timestamps are written from Python as timezone-aware UTC values.
- ``ensure_utc`` normalizes values read back from backends that drop tzinfo.
- Counters are never written as read-modify-write from Python.

Classes:
    User, Link, ShortCodeRegistration, UsageRecord, AnalyticsEvent, SubscriptionPlan
"""

import datetime
import uuid

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.enums import Role, SubscriptionStatus, Tier

__all__ = [
    "User",
    "Link",
    "ShortCodeRegistration",
    "UsageRecord",
    "AnalyticsEvent",
    "SubscriptionPlan",
    "utc_now",
    "ensure_utc",
    "new_id",
]


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    tier: Mapped[str] = mapped_column(String(20), default=Tier.FREE.value, nullable=False)
    subscription_status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), default=Role.USER.value, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<User(id='{self.id}', tier='{self.tier}', status='{self.subscription_status}')>"


class Link(Base):
    __tablename__ = "links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    short_code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    custom_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    click_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (Index("ix_links_owner_id_created_at", "owner_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<Link(id='{self.id}', short_code='{self.short_code}', clicks={self.click_count})>"


class ShortCodeRegistration(Base):
    __tablename__ = "short_code_registry"

    short_code: Mapped[str] = mapped_column(String(32), primary_key=True)
    link_id: Mapped[str] = mapped_column(String(36), nullable=False)
    issued_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class UsageRecord(Base):
    __tablename__ = "usage_tracking"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    links_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    api_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    custom_domains_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    analytics_events: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (UniqueConstraint("user_id", "month", name="uq_usage_tracking_user_month"),)

    def __repr__(self) -> str:
        return f"<UsageRecord(user_id='{self.user_id}', month='{self.month}', links={self.links_created})>"


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    # No foreign key: events outlive deleted links until the retention sweep.
    link_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    referer: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(String(8), nullable=True)
    city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    browser: Mapped[str | None] = mapped_column(String(64), nullable=True)
    os: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (Index("ix_analytics_events_link_id_timestamp", "link_id", "timestamp"),)

    def __repr__(self) -> str:
        return f"<AnalyticsEvent(link_id='{self.link_id}', timestamp={self.timestamp})>"


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tier: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    price_monthly_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    limits: Mapped[dict] = mapped_column(JSON, nullable=False)
    features: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(tier='{self.tier}')>"
