"""Subscription status source backed by the account system's ``users`` table."""

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.enums import Role, SubscriptionStatus, Tier
from app.errors import UserNotFound
from app.models import User, utc_now

__all__ = ["Subscriber", "SubscriptionDirectory"]


@dataclass(frozen=True)
class Subscriber:
    id: str
    tier: str
    subscription_status: str
    role: str = Role.USER.value

    @property
    def is_paid_tier(self) -> bool:
        return self.tier != Tier.FREE.value

    @property
    def subscription_lapsed(self) -> bool:
        """A paid tier whose billing is not active loses its paid-tier actions."""
        return self.is_paid_tier and self.subscription_status != SubscriptionStatus.ACTIVE.value


class SubscriptionDirectory:
    def __init__(self, db: AsyncSession, logger: logging.Logger | logging.LoggerAdapter | None = None) -> None:
        self._db = db
        self._logger = logger or logging.getLogger("shortlinks.subscriptions")

    async def get_user(self, user_id: str) -> Subscriber | None:
        result = await self._db.execute(
            select(User.id, User.tier, User.subscription_status, User.role).where(User.id == user_id)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return Subscriber(id=row.id, tier=row.tier, subscription_status=row.subscription_status, role=row.role)

    async def apply_billing_event(self, user_id: str, tier: Tier, status: SubscriptionStatus) -> Subscriber:
        """Flip a user's tier and subscription status as reported by the billing provider."""
        result = await self._db.execute(
            update(User)
            .where(User.id == user_id)
            .values(tier=tier.value, subscription_status=status.value, updated_at=utc_now())
        )
        if result.rowcount == 0:
            await self._db.rollback()
            raise UserNotFound(user_id)
        await self._db.commit()
        self._logger.info(
            f"Subscription updated for {user_id}: {tier.value}/{status.value}",
            extra={"operation": "billing_event", "user_id": user_id, "tier": tier.value, "status": status.value},
        )
        subscriber = await self.get_user(user_id)
        assert subscriber is not None
        return subscriber
