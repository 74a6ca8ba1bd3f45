"""Pydantic schemas for request/response validation in the short-link service.

This module defines Pydantic models for API input validation and output serialization,
ensuring type safety and automatic OpenAPI documentation generation.

Schema Hierarchy
=================
::
    LinkCreate (Input)
    ├─ originalUrl: str (validated URL)
    ├─ customCode: str | None
    ├─ title: str | None
    ├─ expiresAt: datetime | None
    └─ customDomain: str | None

    LinkResponse (Output)
    ├─ id, shortCode, originalUrl, shortUrl (computed)
    ├─ title, clickCount, isActive, expiresAt
    └─ createdAt

    UsageSummaryResponse / PlanResponse / AnalyticsReportResponse (Output)

    CachedLinkPayload (Redis)
    └─ Every Link column, shared between LinkStore reads and writes

How to Use
===========
**Step 1 — Input validation**::
    @router.post("/links")
    async def create_link(payload: LinkCreate):
        # payload is already validated
        ...

**Step 2 — Response serialization**::
    return LinkResponse.from_link(link, settings.short_url(link.short_code))

Key Behaviours
===============
- Wire names are camelCase; Python attributes stay snake_case
  (``populate_by_name`` accepts either on input).
- URL validation uses the validators library for RFC compliance.
- Custom code rules live in ``ShortCodeGenerator`` so the API and
  programmatic callers share them.
- All datetime fields are timezone-aware.

Classes:
    LinkCreate, LinkUpdate, LinkResponse, LinkListResponse, CachedLinkPayload,
    UsageEntry, UsageSummaryResponse, PlanResponse, AnalyticsReportResponse,
    BillingEvent, SweepResponse, HealthResponse
"""

import datetime

import validators
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.enums import HealthStatus, SubscriptionStatus, Tier
from app.models import Link, ensure_utc

__all__ = [
    "LinkCreate",
    "LinkUpdate",
    "LinkResponse",
    "LinkListResponse",
    "CachedLinkPayload",
    "UsageEntry",
    "UsageSummaryResponse",
    "PlanResponse",
    "AnalyticsReportResponse",
    "LinkClicks",
    "GlobalAnalyticsResponse",
    "BillingEvent",
    "SweepResponse",
    "HealthResponse",
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class LinkCreate(CamelModel):
    original_url: str
    custom_code: str | None = None
    title: str | None = Field(default=None, max_length=512)
    expires_at: datetime.datetime | None = None
    custom_domain: str | None = Field(default=None, max_length=255)

    @field_validator("original_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not validators.url(v):
            raise ValueError("Invalid URL provided")
        return v

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return ensure_utc(v)

    @field_validator("custom_domain")
    @classmethod
    def validate_domain(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        if not validators.domain(v):
            raise ValueError("Invalid custom domain")
        return v


class LinkUpdate(CamelModel):
    title: str | None = Field(default=None, max_length=512)
    is_active: bool | None = None
    expires_at: datetime.datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return ensure_utc(v)


class LinkResponse(CamelModel):
    id: str
    short_code: str
    original_url: str
    short_url: str
    title: str | None
    click_count: int
    is_active: bool
    expires_at: datetime.datetime | None
    custom_domain: str | None
    created_at: datetime.datetime

    @classmethod
    def from_link(cls, link: Link, short_url: str) -> "LinkResponse":
        return cls(
            id=link.id,
            short_code=link.short_code,
            original_url=link.original_url,
            short_url=short_url,
            title=link.title,
            click_count=link.click_count,
            is_active=link.is_active,
            expires_at=ensure_utc(link.expires_at),
            custom_domain=link.custom_domain,
            created_at=ensure_utc(link.created_at),
        )


class LinkListResponse(CamelModel):
    links: list[LinkResponse]
    limit: int
    offset: int


class CachedLinkPayload(BaseModel):
    """Redis cache payload for a link, keyed ``link:{short_code}``."""

    id: str
    owner_id: str
    original_url: str
    short_code: str
    custom_domain: str | None
    title: str | None
    is_active: bool
    expires_at: datetime.datetime | None
    click_count: int
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = {"from_attributes": True}


class UsageEntry(CamelModel):
    current: int
    limit: int
    percentage: int


class UsageSummaryResponse(CamelModel):
    month: str
    tier: Tier
    subscription_status: SubscriptionStatus
    links: UsageEntry
    api_requests: UsageEntry
    custom_domains: UsageEntry
    analytics: UsageEntry


class PlanResponse(CamelModel):
    tier: Tier
    name: str
    price_monthly_cents: int
    limits: dict[str, int]
    features: list[str]


class AnalyticsReportResponse(CamelModel):
    link_id: str
    days: int
    retention_days: int
    total_clicks: int
    clicks_by_date: dict[str, int]
    clicks_by_country: dict[str, int]
    clicks_by_referrer: dict[str, int]
    clicks_by_device: dict[str, int]
    clicks_by_browser: dict[str, int]
    clicks_by_hour: dict[str, int]
    countries_hidden: bool
    devices_hidden: bool
    browsers_hidden: bool
    hourly_hidden: bool


class LinkClicks(CamelModel):
    id: str
    short_code: str
    title: str | None
    click_count: int
    created_at: datetime.datetime
    clicks_in_period: int


class GlobalAnalyticsResponse(CamelModel):
    days: int
    retention_days: int
    links: list[LinkClicks]
    total_clicks: int
    clicks_by_date: dict[str, int]
    clicks_by_country: dict[str, int]
    clicks_by_referrer: dict[str, int]
    clicks_by_device: dict[str, int]
    clicks_by_browser: dict[str, int]
    clicks_by_hour: dict[str, int]
    countries_hidden: bool
    devices_hidden: bool
    browsers_hidden: bool
    hourly_hidden: bool


class BillingEvent(CamelModel):
    user_id: str
    tier: Tier
    status: SubscriptionStatus


class SweepResponse(CamelModel):
    deleted: int


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
