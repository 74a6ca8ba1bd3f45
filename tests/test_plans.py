"""Plan catalog, capability and plans endpoint tests."""

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.capabilities import Capability, capabilities_for, has_capability
from app.enums import Role, Tier, UsageAction
from app.models import SubscriptionPlan
from app.plans import DEFAULT_PLANS, UNLIMITED, PlanCatalog


def test_user_role_cannot_prune() -> None:
    assert has_capability(Role.USER, Capability.LINKS_WRITE)
    assert not has_capability(Role.USER, Capability.ANALYTICS_PRUNE)


def test_admin_role_has_everything() -> None:
    assert capabilities_for(Role.ADMIN) == frozenset(Capability)


def test_unknown_role_has_nothing() -> None:
    assert capabilities_for("superuser") == frozenset()


def test_capability_is_resource_action_pair() -> None:
    assert (Capability.ANALYTICS_PRUNE.resource, Capability.ANALYTICS_PRUNE.action) == ("analytics", "prune")


def test_default_plan_limits() -> None:
    free, pro, premium = DEFAULT_PLANS
    assert free.limits.for_action(UsageAction.CREATE_LINK) == 5
    assert premium.limits.for_action(UsageAction.CREATE_LINK) == UNLIMITED
    assert not free.has_feature("custom_codes")
    assert pro.has_feature("custom_codes")
    assert all(plan.limits.analytics_events_per_month == UNLIMITED for plan in DEFAULT_PLANS)


@pytest.mark.asyncio
async def test_catalog_loads_seeded_plans(plans: PlanCatalog) -> None:
    assert [plan.tier for plan in await plans.all()] == [Tier.FREE, Tier.PRO, Tier.PREMIUM]
    assert await plans.get("platinum") is None


@pytest.mark.asyncio
async def test_catalog_refresh_picks_up_changes(session_factory: async_sessionmaker, plans: PlanCatalog) -> None:
    assert (await plans.get("free")).limits.links_per_month == 5

    async with session_factory() as session:
        limits = {**DEFAULT_PLANS[0].limits.to_dict(), "links_per_month": 10}
        await session.execute(update(SubscriptionPlan).where(SubscriptionPlan.tier == "free").values(limits=limits))
        await session.commit()

    assert (await plans.get("free")).limits.links_per_month == 5
    await plans.refresh()
    assert (await plans.get("free")).limits.links_per_month == 10


@pytest.mark.asyncio
async def test_catalog_keeps_snapshot_when_refresh_fails(plans: PlanCatalog, monkeypatch: pytest.MonkeyPatch) -> None:
    await plans.refresh()
    monkeypatch.setattr(plans, "_refresh_seconds", 0)
    monkeypatch.setattr(plans, "refresh", AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down"))))

    assert (await plans.get("pro")).name == "Pro"


@pytest.mark.asyncio
async def test_plans_endpoint(client: AsyncClient) -> None:
    response = await client.get("/plans")

    assert response.status_code == 200
    tiers = {plan["tier"]: plan for plan in response.json()}
    assert tiers["premium"]["limits"]["links_per_month"] == UNLIMITED
    assert tiers["pro"]["priceMonthlyCents"] == 900
    assert "custom_codes" in tiers["pro"]["features"]
