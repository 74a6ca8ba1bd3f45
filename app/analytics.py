"""Click analytics: append-only event log, retention sweep and reports.

The recorder opens its own session for every write so it can run after the
redirect response has gone out, independently of the request's session.

Flow Diagram — record()
=======================
::
    ┌─────────────┐
    │ redirect is │
    │ Valid       │
    └──────┬──────┘
           ▼
    ┌─────────────┐   denied (monthly cap,
    │ try_reserve │── lapsed subscription) ──► skip, no event
    │ "analytics" │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ INSERT event│
    │ COMMIT      │
    └──────┬──────┘
           ▼
     any failure ──► log + metric, swallowed

Key Behaviours
===============
- Events are never updated; the hot path only inserts.
- ``record`` never raises; redirect correctness does not depend on it.
- ``sweep`` deletes by predicate only (owner's plan retention window), so it
  is idempotent and safe alongside concurrent inserts.
- Events whose link is gone, or whose owner's tier has no plan, fall back to
  ``DEFAULT_ANALYTICS_RETENTION_DAYS``.
- Device type, browser and OS are parsed from the User-Agent when the event is
  written; plans without ``full_analytics`` see those breakdowns hidden, as
  they do countries.
"""

import datetime
import logging
from collections import Counter as Tally
from dataclasses import dataclass

import user_agents
from prometheus_client import Counter
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from app.enums import UsageAction
from app.models import AnalyticsEvent, Link, User, ensure_utc, new_id, utc_now
from app.plans import Plan, PlanCatalog
from app.subscriptions import SubscriptionDirectory
from app.usage import UsageMeter

__all__ = ["ClickMetadata", "ClientInfo", "AnalyticsRecorder", "parse_user_agent"]

ANALYTICS_EVENTS_TOTAL = Counter(
    "shortlinks_analytics_events_total",
    "Analytics event writes by result",
    ["result"],
)
ANALYTICS_EVENTS_PRUNED_TOTAL = Counter(
    "shortlinks_analytics_events_pruned_total",
    "Analytics events deleted by the retention sweep",
)

UNKNOWN = "unknown"

_REPORT_COLUMNS = (
    AnalyticsEvent.link_id,
    AnalyticsEvent.timestamp,
    AnalyticsEvent.country,
    AnalyticsEvent.referer,
    AnalyticsEvent.device_type,
    AnalyticsEvent.browser,
)


@dataclass(frozen=True)
class ClickMetadata:
    """Request details captured for a click; country/city come from the edge."""

    ip_address: str | None = None
    user_agent: str | None = None
    referer: str | None = None
    country: str | None = None
    city: str | None = None


@dataclass(frozen=True)
class ClientInfo:
    device_type: str
    browser: str
    os: str


def parse_user_agent(user_agent: str | None) -> ClientInfo:
    """Classify a User-Agent header; anything unrecognised is a desktop with unknown browser and OS."""
    parsed = user_agents.parse(user_agent or "")
    if parsed.is_tablet:
        device_type = "tablet"
    elif parsed.is_mobile:
        device_type = "mobile"
    elif parsed.is_bot:
        device_type = "bot"
    else:
        device_type = "desktop"

    def family(value: str) -> str:
        return UNKNOWN if not value or value == "Other" else value

    return ClientInfo(device_type=device_type, browser=family(parsed.browser.family), os=family(parsed.os.family))


class AnalyticsRecorder:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        plans: PlanCatalog,
        settings: Settings | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._plans = plans
        self._settings = settings or get_settings()
        self._logger = logger or logging.getLogger("shortlinks.analytics")

    async def record(
        self,
        link_id: str,
        owner_id: str,
        occurred_at: datetime.datetime,
        metadata: ClickMetadata,
    ) -> bool:
        """Append one click event. Returns whether an event was written."""
        try:
            client = parse_user_agent(metadata.user_agent)
            async with self._session_factory() as session:
                meter = UsageMeter(session, self._plans, SubscriptionDirectory(session, self._logger), self._logger)
                decision = await meter.try_reserve(owner_id, UsageAction.ANALYTICS, commit=False)
                if not decision.allowed:
                    await session.rollback()
                    ANALYTICS_EVENTS_TOTAL.labels(result="capped").inc()
                    self._logger.debug(
                        f"Analytics not recorded for link {link_id}: {decision.reason}",
                        extra={"operation": "record_click", "link_id": link_id},
                    )
                    return False
                session.add(
                    AnalyticsEvent(
                        id=new_id(),
                        link_id=link_id,
                        timestamp=occurred_at,
                        ip_address=metadata.ip_address,
                        user_agent=metadata.user_agent,
                        referer=metadata.referer,
                        country=metadata.country,
                        city=metadata.city,
                        device_type=client.device_type,
                        browser=client.browser,
                        os=client.os,
                    )
                )
                await session.commit()
        except Exception as exc:
            ANALYTICS_EVENTS_TOTAL.labels(result="failed").inc()
            self._logger.error(
                f"Analytics recording failed for link {link_id}: {exc}",
                extra={"operation": "record_click", "link_id": link_id},
            )
            return False

        ANALYTICS_EVENTS_TOTAL.labels(result="recorded").inc()
        return True

    async def sweep(self, now: datetime.datetime | None = None) -> int:
        """Delete events older than their owner's plan retention. Returns rows deleted."""
        now = now or utc_now()
        plans = await self._plans.all()
        deleted = 0

        async with self._session_factory() as session:
            for plan in plans:
                cutoff = now - datetime.timedelta(days=plan.limits.analytics_retention_days)
                owned_links = (
                    select(Link.id).join(User, User.id == Link.owner_id).where(User.tier == plan.tier.value)
                )
                result = await session.execute(
                    delete(AnalyticsEvent)
                    .where(AnalyticsEvent.timestamp < cutoff, AnalyticsEvent.link_id.in_(owned_links))
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                deleted += result.rowcount
                self._logger.info(
                    f"Retention sweep pruned {result.rowcount} events for tier {plan.tier.value}",
                    extra={"operation": "retention_sweep", "tier": plan.tier.value},
                )

            default_cutoff = now - datetime.timedelta(days=self._settings.DEFAULT_ANALYTICS_RETENTION_DAYS)
            planned_links = (
                select(Link.id)
                .join(User, User.id == Link.owner_id)
                .where(User.tier.in_([plan.tier.value for plan in plans]))
            )
            result = await session.execute(
                delete(AnalyticsEvent)
                .where(AnalyticsEvent.timestamp < default_cutoff, AnalyticsEvent.link_id.not_in(planned_links))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            deleted += result.rowcount

        ANALYTICS_EVENTS_PRUNED_TOTAL.inc(deleted)
        return deleted

    async def link_report(
        self,
        link_id: str,
        plan: Plan,
        days: int,
        now: datetime.datetime | None = None,
    ) -> dict:
        """Click breakdown for one link, clipped to the plan's retention window."""
        window_days, since = _window(plan, days, now)
        async with self._session_factory() as session:
            result = await session.execute(
                select(*_REPORT_COLUMNS)
                .where(AnalyticsEvent.link_id == link_id, AnalyticsEvent.timestamp >= since)
                .order_by(AnalyticsEvent.timestamp)
            )
            rows = result.all()

        return {
            "link_id": link_id,
            "days": window_days,
            "retention_days": plan.limits.analytics_retention_days,
            **_breakdown(rows, plan),
        }

    async def global_report(
        self,
        owner_id: str,
        plan: Plan,
        days: int,
        now: datetime.datetime | None = None,
    ) -> dict:
        """Click breakdown across every link of ``owner_id``, with per-link counts for the window."""
        window_days, since = _window(plan, days, now)
        async with self._session_factory() as session:
            links = (
                await session.execute(
                    select(Link.id, Link.short_code, Link.title, Link.click_count, Link.created_at)
                    .where(Link.owner_id == owner_id)
                    .order_by(Link.created_at.desc())
                )
            ).all()
            rows = (
                await session.execute(
                    select(*_REPORT_COLUMNS)
                    .where(
                        AnalyticsEvent.link_id.in_(select(Link.id).where(Link.owner_id == owner_id)),
                        AnalyticsEvent.timestamp >= since,
                    )
                    .order_by(AnalyticsEvent.timestamp)
                )
            ).all()

        by_link = Tally(row.link_id for row in rows)
        return {
            "days": window_days,
            "retention_days": plan.limits.analytics_retention_days,
            "links": [
                {
                    "id": link.id,
                    "short_code": link.short_code,
                    "title": link.title,
                    "click_count": link.click_count,
                    "created_at": ensure_utc(link.created_at),
                    "clicks_in_period": by_link[link.id],
                }
                for link in links
            ],
            **_breakdown(rows, plan),
        }


def _window(plan: Plan, days: int, now: datetime.datetime | None) -> tuple[int, datetime.datetime]:
    window_days = max(1, min(days, plan.limits.analytics_retention_days))
    return window_days, (now or utc_now()) - datetime.timedelta(days=window_days)


def _breakdown(rows, plan: Plan) -> dict:
    by_date: Tally[str] = Tally()
    by_hour: Tally[str] = Tally()
    by_country: Tally[str] = Tally()
    by_referrer: Tally[str] = Tally()
    by_device: Tally[str] = Tally()
    by_browser: Tally[str] = Tally()
    for row in rows:
        timestamp = ensure_utc(row.timestamp)
        by_date[timestamp.date().isoformat()] += 1
        by_hour[timestamp.strftime("%Y-%m-%d %H:00")] += 1
        if row.country:
            by_country[row.country] += 1
        if row.referer:
            by_referrer[row.referer] += 1
        if row.device_type:
            by_device[row.device_type] += 1
        if row.browser:
            by_browser[row.browser] += 1

    full = plan.has_feature("full_analytics")
    advanced = plan.has_feature("advanced_charts")
    return {
        "total_clicks": len(rows),
        "clicks_by_date": dict(by_date),
        "clicks_by_country": dict(by_country) if full else {},
        "clicks_by_referrer": dict(by_referrer),
        "clicks_by_device": dict(by_device) if full else {},
        "clicks_by_browser": dict(by_browser) if full else {},
        "clicks_by_hour": dict(by_hour) if advanced else {},
        "countries_hidden": not full,
        "devices_hidden": not full,
        "browsers_hidden": not full,
        "hourly_hidden": not advanced,
    }
