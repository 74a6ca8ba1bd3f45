"""AnalyticsRecorder tests: best-effort recording, retention sweep, reports."""

import datetime

import pytest
from conftest import FREE_USER, PREMIUM_USER, PRO_USER
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.analytics import AnalyticsRecorder, ClickMetadata, parse_user_agent
from app.enums import Tier
from app.link_store import LinkDraft, LinkStore
from app.models import AnalyticsEvent, Link, UsageRecord, new_id, utc_now
from app.plans import DEFAULT_PLANS, Plan, PlanCatalog, PlanLimits
from app.shortcode import ShortCodeGenerator

NOW = datetime.datetime(2026, 3, 15, 12, 0, tzinfo=datetime.timezone.utc)
IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
)
WINDOWS_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


async def make_link(session_factory: async_sessionmaker, owner_id: str) -> Link:
    async with session_factory() as session:
        return await LinkStore(session, ShortCodeGenerator()).create(
            LinkDraft(owner_id=owner_id, original_url="https://example.com/a/b")
        )


async def add_event(session_factory: async_sessionmaker, link_id: str, age: datetime.timedelta, **fields) -> None:
    async with session_factory() as session:
        session.add(AnalyticsEvent(id=new_id(), link_id=link_id, timestamp=NOW - age, **fields))
        await session.commit()


async def count_events(session_factory: async_sessionmaker) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(AnalyticsEvent))


@pytest.mark.asyncio
async def test_record_appends_event_and_meters(session_factory: async_sessionmaker, plans: PlanCatalog) -> None:
    link = await make_link(session_factory, PRO_USER)
    recorder = AnalyticsRecorder(session_factory, plans)

    recorded = await recorder.record(
        link.id, PRO_USER, utc_now(), ClickMetadata(ip_address="203.0.113.9", referer="https://news.example", country="ET")
    )

    assert recorded is True
    async with session_factory() as session:
        event = (await session.execute(select(AnalyticsEvent))).scalar_one()
        usage = (await session.execute(select(UsageRecord).where(UsageRecord.user_id == PRO_USER))).scalar_one()
    assert event.link_id == link.id
    assert event.country == "ET"
    assert usage.analytics_events == 1


@pytest.mark.asyncio
async def test_record_stops_at_monthly_event_cap(session_factory: async_sessionmaker) -> None:
    capped = Plan(
        tier=Tier.FREE,
        name="Free",
        limits=PlanLimits(
            links_per_month=5,
            api_requests_per_month=1000,
            custom_domains=0,
            analytics_retention_days=7,
            analytics_events_per_month=2,
        ),
    )
    plans = PlanCatalog.from_plans((capped, *DEFAULT_PLANS[1:]))
    link = await make_link(session_factory, FREE_USER)
    recorder = AnalyticsRecorder(session_factory, plans)

    results = [await recorder.record(link.id, FREE_USER, utc_now(), ClickMetadata()) for _ in range(3)]

    assert results == [True, True, False]
    assert await count_events(session_factory) == 2


@pytest.mark.asyncio
async def test_record_failure_is_swallowed(plans: PlanCatalog) -> None:
    def broken_factory():
        raise ConnectionError("datastore unreachable")

    recorder = AnalyticsRecorder(broken_factory, plans)

    assert await recorder.record("link-id", PRO_USER, utc_now(), ClickMetadata()) is False


@pytest.mark.asyncio
async def test_sweep_applies_owner_plan_retention(session_factory: async_sessionmaker, plans: PlanCatalog) -> None:
    free_link = await make_link(session_factory, FREE_USER)
    pro_link = await make_link(session_factory, PRO_USER)
    days = datetime.timedelta(days=1)

    await add_event(session_factory, free_link.id, 8 * days)  # past free retention (7)
    await add_event(session_factory, free_link.id, 5 * days)
    await add_event(session_factory, pro_link.id, 30 * days)
    await add_event(session_factory, pro_link.id, 100 * days)  # past pro retention (90)
    await add_event(session_factory, "deleted-link", 8 * days)  # orphan, default retention (7)
    await add_event(session_factory, "deleted-link", 3 * days)

    recorder = AnalyticsRecorder(session_factory, plans)

    assert await recorder.sweep(now=NOW) == 3
    assert await count_events(session_factory) == 3
    assert await recorder.sweep(now=NOW) == 0


@pytest.mark.asyncio
async def test_report_hides_breakdowns_without_features(session_factory: async_sessionmaker, plans: PlanCatalog) -> None:
    link = await make_link(session_factory, FREE_USER)
    hours = datetime.timedelta(hours=1)
    await add_event(session_factory, link.id, 2 * hours, country="US", referer="https://a.example")
    await add_event(session_factory, link.id, 3 * hours, country="US")
    await add_event(session_factory, link.id, 20 * datetime.timedelta(days=1), country="FR")  # outside retention

    report = await AnalyticsRecorder(session_factory, plans).link_report(
        link.id, await plans.get("free"), days=30, now=NOW
    )

    assert report["days"] == 7
    assert report["total_clicks"] == 2
    assert report["clicks_by_date"] == {"2026-03-15": 2}
    assert report["clicks_by_referrer"] == {"https://a.example": 1}
    assert report["clicks_by_country"] == {}
    assert report["countries_hidden"] is True
    assert report["hourly_hidden"] is True


@pytest.mark.asyncio
async def test_report_full_breakdown_for_premium(session_factory: async_sessionmaker, plans: PlanCatalog) -> None:
    link = await make_link(session_factory, PREMIUM_USER)
    await add_event(session_factory, link.id, datetime.timedelta(minutes=30), country="ET")
    await add_event(session_factory, link.id, datetime.timedelta(days=20), country="FR")

    report = await AnalyticsRecorder(session_factory, plans).link_report(
        link.id, await plans.get("premium"), days=30, now=NOW
    )

    assert report["total_clicks"] == 2
    assert report["clicks_by_country"] == {"ET": 1, "FR": 1}
    assert report["clicks_by_hour"]["2026-03-15 11:00"] == 1
    assert report["hourly_hidden"] is False


def test_parse_user_agent_mobile() -> None:
    client = parse_user_agent(IPHONE_SAFARI)
    assert (client.device_type, client.browser, client.os) == ("mobile", "Mobile Safari", "iOS")


def test_parse_user_agent_desktop() -> None:
    client = parse_user_agent(WINDOWS_CHROME)
    assert (client.device_type, client.browser) == ("desktop", "Chrome")
    assert client.os.startswith("Windows")


def test_parse_user_agent_bot() -> None:
    assert parse_user_agent(GOOGLEBOT).device_type == "bot"


@pytest.mark.parametrize("user_agent", [None, "", "definitely-not-a-browser"])
def test_parse_user_agent_unrecognised(user_agent: str | None) -> None:
    client = parse_user_agent(user_agent)
    assert (client.device_type, client.browser, client.os) == ("desktop", "unknown", "unknown")


@pytest.mark.asyncio
async def test_record_stores_parsed_client(session_factory: async_sessionmaker, plans: PlanCatalog) -> None:
    link = await make_link(session_factory, PRO_USER)

    await AnalyticsRecorder(session_factory, plans).record(
        link.id, PRO_USER, utc_now(), ClickMetadata(user_agent=IPHONE_SAFARI)
    )

    async with session_factory() as session:
        event = (await session.execute(select(AnalyticsEvent))).scalar_one()
    assert event.user_agent == IPHONE_SAFARI
    assert (event.device_type, event.browser, event.os) == ("mobile", "Mobile Safari", "iOS")


@pytest.mark.asyncio
async def test_report_device_and_browser_need_full_analytics(session_factory: async_sessionmaker, plans: PlanCatalog) -> None:
    free_link = await make_link(session_factory, FREE_USER)
    pro_link = await make_link(session_factory, PRO_USER)
    for link in (free_link, pro_link):
        await add_event(session_factory, link.id, datetime.timedelta(hours=1), device_type="mobile", browser="Mobile Safari")
        await add_event(session_factory, link.id, datetime.timedelta(hours=2), device_type="desktop", browser="Chrome")
    recorder = AnalyticsRecorder(session_factory, plans)

    free = await recorder.link_report(free_link.id, await plans.get("free"), days=7, now=NOW)
    pro = await recorder.link_report(pro_link.id, await plans.get("pro"), days=7, now=NOW)

    assert (free["clicks_by_device"], free["clicks_by_browser"]) == ({}, {})
    assert free["devices_hidden"] is True
    assert free["browsers_hidden"] is True
    assert pro["clicks_by_device"] == {"mobile": 1, "desktop": 1}
    assert pro["clicks_by_browser"] == {"Mobile Safari": 1, "Chrome": 1}
    assert pro["devices_hidden"] is False


@pytest.mark.asyncio
async def test_global_report_spans_owner_links(session_factory: async_sessionmaker, plans: PlanCatalog) -> None:
    first = await make_link(session_factory, PRO_USER)
    second = await make_link(session_factory, PRO_USER)
    stranger = await make_link(session_factory, FREE_USER)
    hours = datetime.timedelta(hours=1)
    await add_event(session_factory, first.id, hours, country="ET", device_type="mobile", browser="Chrome")
    await add_event(session_factory, first.id, 2 * hours, country="US", device_type="desktop", browser="Chrome")
    await add_event(session_factory, second.id, 3 * hours, country="ET")
    await add_event(session_factory, second.id, datetime.timedelta(days=120))  # past pro retention (90)
    await add_event(session_factory, stranger.id, hours)

    report = await AnalyticsRecorder(session_factory, plans).global_report(
        PRO_USER, await plans.get("pro"), days=365, now=NOW
    )

    assert report["days"] == 90
    assert report["total_clicks"] == 3
    assert {link["id"]: link["clicks_in_period"] for link in report["links"]} == {first.id: 2, second.id: 1}
    assert report["clicks_by_country"] == {"ET": 2, "US": 1}
    assert report["clicks_by_browser"] == {"Chrome": 2}
    assert report["clicks_by_hour"] == {}
    assert report["hourly_hidden"] is True
