"""Subscription plan reference data.

Plans are immutable, looked up by tier and never owned by a user. The
``PlanCatalog`` holds a read-only snapshot of the ``subscription_plans`` table
and is handed explicitly to the components that need limits; nothing reads
plans from module-level state.

Refresh Policy
==============
::
    get(tier)
       │
       ▼
    snapshot older than refresh_seconds? ──NO──► answer from snapshot
       │ YES
       ▼
    reload all rows ──FAIL──► log, keep last good snapshot
       │ OK
       ▼
    swap snapshot (whole dict, never mutated in place)

Key Behaviours
===============
- A limit of ``-1`` means unlimited.
- ``DEFAULT_PLANS`` seeds an empty table; existing rows are left untouched.
- ``analytics_events_per_month`` is -1 on every default tier; a finite value
  caps recorded clicks for the month without affecting redirects.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.enums import Tier, UsageAction
from app.models import SubscriptionPlan

__all__ = ["UNLIMITED", "PlanLimits", "Plan", "PlanCatalog", "DEFAULT_PLANS", "seed_plans"]

UNLIMITED = -1

logger = logging.getLogger("shortlinks.plans")


@dataclass(frozen=True)
class PlanLimits:
    links_per_month: int
    api_requests_per_month: int
    custom_domains: int
    analytics_retention_days: int
    analytics_events_per_month: int = UNLIMITED

    @classmethod
    def from_dict(cls, raw: dict) -> "PlanLimits":
        return cls(
            links_per_month=int(raw["links_per_month"]),
            api_requests_per_month=int(raw["api_requests_per_month"]),
            custom_domains=int(raw["custom_domains"]),
            analytics_retention_days=int(raw["analytics_retention_days"]),
            analytics_events_per_month=int(raw.get("analytics_events_per_month", UNLIMITED)),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "links_per_month": self.links_per_month,
            "api_requests_per_month": self.api_requests_per_month,
            "custom_domains": self.custom_domains,
            "analytics_retention_days": self.analytics_retention_days,
            "analytics_events_per_month": self.analytics_events_per_month,
        }

    def for_action(self, action: UsageAction) -> int:
        match action:
            case UsageAction.CREATE_LINK:
                return self.links_per_month
            case UsageAction.API_REQUEST:
                return self.api_requests_per_month
            case UsageAction.CUSTOM_DOMAIN:
                return self.custom_domains
            case UsageAction.ANALYTICS:
                return self.analytics_events_per_month
        raise ValueError(f"Unknown usage action: {action!r}")


@dataclass(frozen=True)
class Plan:
    tier: Tier
    name: str
    limits: PlanLimits
    price_monthly_cents: int = 0
    features: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_row(cls, row: SubscriptionPlan) -> "Plan":
        return cls(
            tier=Tier(row.tier),
            name=row.name,
            limits=PlanLimits.from_dict(row.limits),
            price_monthly_cents=row.price_monthly_cents,
            features=frozenset(row.features or ()),
        )

    def has_feature(self, feature: str) -> bool:
        return feature in self.features


DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(
        tier=Tier.FREE,
        name="Free",
        limits=PlanLimits(
            links_per_month=5,
            api_requests_per_month=1000,
            custom_domains=0,
            analytics_retention_days=7,
        ),
    ),
    Plan(
        tier=Tier.PRO,
        name="Pro",
        price_monthly_cents=900,
        limits=PlanLimits(
            links_per_month=500,
            api_requests_per_month=50000,
            custom_domains=1,
            analytics_retention_days=90,
        ),
        features=frozenset({"custom_codes", "full_analytics"}),
    ),
    Plan(
        tier=Tier.PREMIUM,
        name="Premium",
        price_monthly_cents=2900,
        limits=PlanLimits(
            links_per_month=UNLIMITED,
            api_requests_per_month=UNLIMITED,
            custom_domains=10,
            analytics_retention_days=365,
        ),
        features=frozenset({"custom_codes", "full_analytics", "advanced_charts"}),
    ),
)


async def seed_plans(session: AsyncSession, plans: tuple[Plan, ...] = DEFAULT_PLANS) -> int:
    """Insert any of ``plans`` whose tier is missing. Returns rows inserted."""
    result = await session.execute(select(SubscriptionPlan.tier))
    existing = set(result.scalars().all())
    inserted = 0
    for plan in plans:
        if plan.tier.value in existing:
            continue
        session.add(
            SubscriptionPlan(
                tier=plan.tier.value,
                name=plan.name,
                price_monthly_cents=plan.price_monthly_cents,
                limits=plan.limits.to_dict(),
                features=sorted(plan.features),
            )
        )
        inserted += 1
    await session.commit()
    return inserted


class PlanCatalog:
    def __init__(self, session_factory: async_sessionmaker, refresh_seconds: float = 300.0) -> None:
        self._session_factory = session_factory
        self._refresh_seconds = refresh_seconds
        self._plans: dict[Tier, Plan] = {}
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_plans(cls, plans: tuple[Plan, ...], session_factory: async_sessionmaker | None = None) -> "PlanCatalog":
        """Build a catalog pinned to ``plans``; it only reloads when given a session factory."""
        catalog = cls(session_factory, refresh_seconds=float("inf"))
        catalog._plans = {plan.tier: plan for plan in plans}
        catalog._loaded_at = time.monotonic()
        return catalog

    @property
    def is_stale(self) -> bool:
        return self._loaded_at is None or time.monotonic() - self._loaded_at >= self._refresh_seconds

    async def refresh(self) -> None:
        async with self._lock:
            async with self._session_factory() as session:
                result = await session.execute(select(SubscriptionPlan))
                rows = result.scalars().all()
            self._plans = {plan.tier: plan for plan in (Plan.from_row(row) for row in rows)}
            self._loaded_at = time.monotonic()
            logger.info(f"Plan catalog loaded: {sorted(tier.value for tier in self._plans)}")

    async def _refresh_if_stale(self) -> None:
        if not self.is_stale or self._session_factory is None:
            return
        try:
            await self.refresh()
        except SQLAlchemyError as exc:
            if not self._plans:
                raise
            logger.warning(f"Plan catalog refresh failed, serving previous snapshot: {exc}")

    async def get(self, tier: str) -> Plan | None:
        await self._refresh_if_stale()
        try:
            return self._plans.get(Tier(tier))
        except ValueError:
            return None

    async def all(self) -> list[Plan]:
        await self._refresh_if_stale()
        return [self._plans[tier] for tier in Tier if tier in self._plans]
