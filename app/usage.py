"""Per-user, per-month usage counters gating quota-limited actions.

Every counter lives on one ``usage_tracking`` row per (user, month); the row is
created lazily with ``INSERT ... ON CONFLICT DO NOTHING`` so concurrent first
touches in a month converge on a single record.

Reservation Flow — try_reserve()
================================
::
    ┌──────────────┐
    │ user + plan  │──► unknown user / plan ──► denied 0/0
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ ensure month │  INSERT ... ON CONFLICT DO NOTHING
    │ record       │
    └──────┬───────┘
           ▼
    ┌──────────────────────────────────────────┐
    │ UPDATE usage_tracking                    │
    │    SET counter = counter + 1             │
    │  WHERE user_id = :u AND month = :m       │
    │    AND counter < :limit   (finite only)  │
    └──────┬───────────────────────────────────┘
           ▼
    rows affected == 1 ──► allowed, else denied

Key Behaviours
===============
- ``try_reserve`` is the only quota gate used by request paths: the check and
  the increment are one conditional UPDATE, so two concurrent requests can
  never both take the last unit.
- ``check_limit`` is read-only apart from creating the month's zeroed record
  and is kept for display (usage banners, summaries).
- A limit of -1 never denies.
- A paid tier whose subscription is not active is denied regardless of counters.
- ``try_reserve(..., commit=False)`` leaves the reservation inside the caller's
  transaction so it rolls back together with whatever it was gating.
"""

import datetime
import logging
from dataclasses import dataclass

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.enums import DenialReason, UsageAction
from app.errors import LimitExceeded, UserNotFound
from app.models import UsageRecord, new_id, utc_now
from app.plans import UNLIMITED, PlanCatalog
from app.subscriptions import SubscriptionDirectory

__all__ = ["COUNTER_COLUMNS", "LimitDecision", "UsageMeter", "current_month"]

COUNTER_COLUMNS: dict[UsageAction, str] = {
    UsageAction.CREATE_LINK: "links_created",
    UsageAction.API_REQUEST: "api_requests",
    UsageAction.CUSTOM_DOMAIN: "custom_domains_used",
    UsageAction.ANALYTICS: "analytics_events",
}

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

USAGE_RESERVATIONS_TOTAL = Counter(
    "shortlinks_usage_reservations_total",
    "Quota reservations by action and decision",
    ["action", "decision"],
)


def current_month(now: datetime.datetime | None = None) -> str:
    now = now or utc_now()
    return now.strftime("%Y-%m")


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    current: int
    limit: int
    reason: DenialReason | None = None

    def raise_for_denial(self, action: UsageAction) -> None:
        if not self.allowed:
            raise LimitExceeded(action.value, self.current, self.limit, (self.reason or DenialReason.LIMIT_REACHED).value)


class UsageMeter:
    def __init__(
        self,
        db: AsyncSession,
        plans: PlanCatalog,
        subscriptions: SubscriptionDirectory,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        clock=utc_now,
    ) -> None:
        self._db = db
        self._plans = plans
        self._subscriptions = subscriptions
        self._logger = logger or logging.getLogger("shortlinks.usage")
        self._clock = clock

    async def check_limit(self, user_id: str, action: UsageAction) -> LimitDecision:
        limit, denial = await self._resolve_limit(user_id, action)
        if denial in (DenialReason.USER_NOT_FOUND, DenialReason.INVALID_PLAN):
            return LimitDecision(False, 0, 0, denial)

        month = current_month(self._clock())
        await self._ensure_record(user_id, month)
        current = await self._read_counter(user_id, month, action)
        await self._db.commit()

        if denial is not None:
            return LimitDecision(False, current, limit, denial)
        allowed = limit == UNLIMITED or current < limit
        return LimitDecision(allowed, current, limit, None if allowed else DenialReason.LIMIT_REACHED)

    async def increment(self, user_id: str, action: UsageAction) -> None:
        """Unconditionally add one to the action's counter for the current month."""
        now = self._clock()
        month = current_month(now)
        await self._ensure_record(user_id, month)
        counter = getattr(UsageRecord, COUNTER_COLUMNS[action])
        await self._db.execute(
            update(UsageRecord)
            .where(UsageRecord.user_id == user_id, UsageRecord.month == month)
            .values({COUNTER_COLUMNS[action]: counter + 1, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()

    async def try_reserve(self, user_id: str, action: UsageAction, *, commit: bool = True) -> LimitDecision:
        limit, denial = await self._resolve_limit(user_id, action)
        if denial in (DenialReason.USER_NOT_FOUND, DenialReason.INVALID_PLAN):
            USAGE_RESERVATIONS_TOTAL.labels(action=action.value, decision="denied").inc()
            return LimitDecision(False, 0, 0, denial)

        now = self._clock()
        month = current_month(now)
        await self._ensure_record(user_id, month)

        reserved = False
        if denial is None:
            column = COUNTER_COLUMNS[action]
            counter = getattr(UsageRecord, column)
            stmt = (
                update(UsageRecord)
                .where(UsageRecord.user_id == user_id, UsageRecord.month == month)
                .values({column: counter + 1, "updated_at": now})
                .execution_options(synchronize_session=False)
            )
            if limit != UNLIMITED:
                stmt = stmt.where(counter < limit)
            result = await self._db.execute(stmt)
            reserved = result.rowcount == 1

        current = await self._read_counter(user_id, month, action)
        if commit:
            await self._db.commit()

        if reserved:
            USAGE_RESERVATIONS_TOTAL.labels(action=action.value, decision="allowed").inc()
            return LimitDecision(True, current, limit)

        reason = denial or DenialReason.LIMIT_REACHED
        USAGE_RESERVATIONS_TOTAL.labels(action=action.value, decision="denied").inc()
        self._logger.info(
            f"Reservation denied for {user_id}: {action.value} {current}/{limit} ({reason.value})",
            extra={"operation": "try_reserve", "user_id": user_id, "action": action.value, "reason": reason.value},
        )
        return LimitDecision(False, current, limit, reason)

    async def summary(self, user_id: str) -> dict:
        """Current month's counters with limit and percentage for each action."""
        subscriber = await self._subscriptions.get_user(user_id)
        if subscriber is None:
            raise UserNotFound(user_id)
        plan = await self._plans.get(subscriber.tier)
        if plan is None:
            raise LookupError(f"No plan configured for tier '{subscriber.tier}'")

        month = current_month(self._clock())
        await self._ensure_record(user_id, month)
        result = await self._db.execute(
            select(UsageRecord).where(UsageRecord.user_id == user_id, UsageRecord.month == month)
        )
        record = result.scalar_one()
        await self._db.commit()

        def entry(action: UsageAction) -> dict:
            current = getattr(record, COUNTER_COLUMNS[action])
            limit = plan.limits.for_action(action)
            percentage = round(current / limit * 100) if limit > 0 else 0
            return {"current": current, "limit": limit, "percentage": percentage}

        return {
            "month": month,
            "tier": subscriber.tier,
            "subscription_status": subscriber.subscription_status,
            "links": entry(UsageAction.CREATE_LINK),
            "api_requests": entry(UsageAction.API_REQUEST),
            "custom_domains": entry(UsageAction.CUSTOM_DOMAIN),
            "analytics": entry(UsageAction.ANALYTICS),
        }

    async def _resolve_limit(self, user_id: str, action: UsageAction) -> tuple[int, DenialReason | None]:
        subscriber = await self._subscriptions.get_user(user_id)
        if subscriber is None:
            return 0, DenialReason.USER_NOT_FOUND
        plan = await self._plans.get(subscriber.tier)
        if plan is None:
            self._logger.error(f"No plan configured for tier '{subscriber.tier}'")
            return 0, DenialReason.INVALID_PLAN
        limit = plan.limits.for_action(action)
        if subscriber.subscription_lapsed:
            return limit, DenialReason.SUBSCRIPTION_INACTIVE
        return limit, None

    async def _ensure_record(self, user_id: str, month: str) -> None:
        dialect = self._db.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Usage records need an upsert-capable backend, got '{dialect}'")
        now = self._clock()
        stmt = (
            insert(UsageRecord)
            .values(
                id=new_id(),
                user_id=user_id,
                month=month,
                links_created=0,
                api_requests=0,
                custom_domains_used=0,
                analytics_events=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "month"])
        )
        await self._db.execute(stmt)

    async def _read_counter(self, user_id: str, month: str, action: UsageAction) -> int:
        counter = getattr(UsageRecord, COUNTER_COLUMNS[action])
        result = await self._db.execute(
            select(counter).where(UsageRecord.user_id == user_id, UsageRecord.month == month)
        )
        return int(result.scalar_one())
