"""Durable short code → link mapping.

``LinkStore`` is the single source of truth for redirect targets and lifecycle
flags. Redis holds a read-through copy of each link for the redirect hot path;
the datastore decides everything that must be linearizable.

Creation Flow — create()
========================
::
    ┌──────────────┐
    │ draw code    │◄─────────────────────────┐
    │ (or custom)  │                          │
    └──────┬───────┘                          │
           ▼                                  │
    ┌──────────────┐                          │
    │ before_insert│  e.g. quota reservation  │
    │ (same txn)   │                          │
    └──────┬───────┘                          │
           ▼                                  │
    ┌──────────────┐   IntegrityError         │
    │ INSERT link  │──────────┬───────────────┤ random code, attempts left
    │ + registry   │          │ custom code   │
    │ COMMIT       │          ▼               │
    └──────┬───────┘   CodeAlreadyExists      │
           │                                  │
           │           attempts exhausted ──► GenerationExhausted
           ▼
    cache link, return

Key Behaviours
===============
- Uniqueness is enforced by the ``links.short_code`` unique constraint and the
  ``short_code_registry`` primary key, never by a read-then-write check.
- Registry rows survive hard deletes, so a code is never issued twice.
- Every failed attempt rolls back its whole transaction, including whatever
  ``before_insert`` wrote.
- ``increment_clicks`` is a single ``UPDATE ... SET click_count = click_count + 1``.
- Lookups are exact, case-sensitive matches with no normalization.
- Cache reads and writes are best effort; update and delete invalidate.
"""

import datetime
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import ValidationError as PayloadError
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.errors import CodeAlreadyExists, GenerationExhausted, LinkNotFound, ValidationError
from app.models import Link, ShortCodeRegistration, new_id, utc_now
from app.schemas import CachedLinkPayload
from app.shortcode import ShortCodeGenerator

__all__ = ["LinkDraft", "LinkStore", "UPDATABLE_FIELDS"]

UPDATABLE_FIELDS = frozenset({"title", "is_active", "expires_at"})

SHORT_CODE_COLLISIONS_TOTAL = Counter(
    "shortlinks_short_code_collisions_total",
    "Random short code draws rejected by the unique constraint",
)
GENERATION_EXHAUSTED_TOTAL = Counter(
    "shortlinks_generation_exhausted_total",
    "Link creations that ran out of short code attempts",
)
LINK_CACHE_OPERATIONS_TOTAL = Counter(
    "shortlinks_link_cache_operations_total",
    "Link cache operations by result",
    ["result"],
)


@dataclass(frozen=True)
class LinkDraft:
    owner_id: str
    original_url: str
    custom_code: str | None = None
    title: str | None = None
    expires_at: datetime.datetime | None = None
    custom_domain: str | None = None


class LinkStore:
    def __init__(
        self,
        db: AsyncSession,
        generator: ShortCodeGenerator,
        cache: redis.Redis | None = None,
        settings: Settings | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._db = db
        self._generator = generator
        self._cache = cache
        self._settings = settings or get_settings()
        self._logger = logger or logging.getLogger("shortlinks.links")

    # ========================================================================
    # WRITES
    # ========================================================================

    async def create(
        self,
        draft: LinkDraft,
        *,
        before_insert: Callable[[], Awaitable[None]] | None = None,
    ) -> Link:
        """Insert a link under a fresh or custom short code.

        Args:
            draft: Link fields supplied by the creator.
            before_insert: Awaited inside each attempt's transaction before the
                INSERT; anything it writes commits or rolls back with the link.

        Raises:
            ValidationError: The custom code is malformed or reserved.
            CodeAlreadyExists: The custom code is taken. Never retried.
            GenerationExhausted: Every random draw collided.
        """
        max_attempts = 1 if draft.custom_code is not None else self._settings.SHORT_CODE_MAX_ATTEMPTS

        for attempt in range(1, max_attempts + 1):
            short_code = self._generator.generate(draft.custom_code)
            now = utc_now()
            link = Link(
                id=new_id(),
                owner_id=draft.owner_id,
                original_url=draft.original_url,
                short_code=short_code,
                custom_domain=draft.custom_domain,
                title=draft.title,
                is_active=True,
                expires_at=draft.expires_at,
                click_count=0,
                created_at=now,
                updated_at=now,
            )
            try:
                if before_insert is not None:
                    await before_insert()
                self._db.add(ShortCodeRegistration(short_code=short_code, link_id=link.id, issued_at=now))
                self._db.add(link)
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                if draft.custom_code is not None:
                    raise CodeAlreadyExists(short_code) from None
                SHORT_CODE_COLLISIONS_TOTAL.inc()
                self._logger.warning(
                    f"Short code collision on attempt {attempt}/{max_attempts}: {short_code}",
                    extra={"operation": "create_link", "attempt": attempt},
                )
                continue
            except Exception:
                await self._db.rollback()
                raise

            await self._cache_link(link)
            return link

        GENERATION_EXHAUSTED_TOTAL.inc()
        self._logger.error(
            f"Short code generation exhausted after {max_attempts} attempts",
            extra={"operation": "create_link", "owner_id": draft.owner_id},
        )
        raise GenerationExhausted(max_attempts)

    async def increment_clicks(self, link_id: str) -> bool:
        """Atomically add one click. Returns False when the link no longer exists."""
        try:
            result = await self._db.execute(
                update(Link)
                .where(Link.id == link_id)
                .values(click_count=Link.click_count + 1)
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
        except SQLAlchemyError:
            await self._db.rollback()
            raise
        return result.rowcount == 1

    async def update(self, link_id: str, owner_id: str, changes: dict) -> Link:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        link = await self.get_by_id(link_id, owner_id)
        if link is None:
            raise LinkNotFound(link_id)
        for name, value in changes.items():
            setattr(link, name, value)
        link.updated_at = utc_now()
        await self._db.commit()
        await self._invalidate(link.short_code)
        return link

    async def delete(self, link_id: str, owner_id: str) -> None:
        """Hard delete. The short code stays retired in the registry."""
        link = await self.get_by_id(link_id, owner_id)
        if link is None:
            raise LinkNotFound(link_id)
        await self._db.delete(link)
        await self._db.commit()
        await self._invalidate(link.short_code)

    # ========================================================================
    # READS
    # ========================================================================

    async def get_by_short_code(self, short_code: str) -> Link | None:
        cached = await self._lookup_from_cache(short_code)
        if cached is not None:
            return cached

        result = await self._db.execute(select(Link).where(Link.short_code == short_code))
        link = result.scalar_one_or_none()
        if link is not None:
            await self._cache_link(link)
        return link

    async def get_by_id(self, link_id: str, owner_id: str | None = None) -> Link | None:
        stmt = select(Link).where(Link.id == link_id)
        if owner_id is not None:
            stmt = stmt.where(Link.owner_id == owner_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def owner_uses_domain(self, owner_id: str, custom_domain: str) -> bool:
        result = await self._db.execute(
            select(Link.id).where(Link.owner_id == owner_id, Link.custom_domain == custom_domain).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list_by_owner(self, owner_id: str, limit: int, offset: int) -> list[Link]:
        result = await self._db.execute(
            select(Link)
            .where(Link.owner_id == owner_id)
            .order_by(Link.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    # ========================================================================
    # CACHE HELPERS
    # ========================================================================

    @staticmethod
    def _cache_key(short_code: str) -> str:
        return f"link:{short_code}"

    async def _lookup_from_cache(self, short_code: str) -> Link | None:
        if self._cache is None:
            return None
        try:
            cached = await self._cache.get(self._cache_key(short_code))
        except RedisError as exc:
            LINK_CACHE_OPERATIONS_TOTAL.labels(result="error").inc()
            self._logger.warning(f"Link cache read failed for {short_code}: {exc}")
            return None
        if not cached:
            LINK_CACHE_OPERATIONS_TOTAL.labels(result="miss").inc()
            return None
        try:
            payload = CachedLinkPayload.model_validate_json(cached)
        except PayloadError as exc:
            LINK_CACHE_OPERATIONS_TOTAL.labels(result="error").inc()
            self._logger.error(f"Cache deserialization error for {short_code}: {exc}")
            return None
        LINK_CACHE_OPERATIONS_TOTAL.labels(result="hit").inc()
        return Link(**payload.model_dump())

    async def _cache_link(self, link: Link) -> None:
        if self._cache is None:
            return
        payload = CachedLinkPayload.model_validate(link)
        try:
            await self._cache.setex(
                self._cache_key(link.short_code),
                self._settings.LINK_CACHE_TTL_SECONDS,
                payload.model_dump_json(),
            )
        except RedisError as exc:
            LINK_CACHE_OPERATIONS_TOTAL.labels(result="error").inc()
            self._logger.warning(f"Link cache write failed for {link.short_code}: {exc}")

    async def _invalidate(self, short_code: str) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.delete(self._cache_key(short_code))
        except RedisError as exc:
            LINK_CACHE_OPERATIONS_TOTAL.labels(result="error").inc()
            self._logger.error(
                f"Link cache invalidation failed for {short_code}; stale for up to "
                f"{self._settings.LINK_CACHE_TTL_SECONDS}s: {exc}"
            )
