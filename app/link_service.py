"""Link service layer: creation, owner-scoped CRUD and analytics reports.

Architecture Overview
=====================
::
    ┌──────────────────────────────────────────────────────────────┐
    │                        LinkService                           │
    │  ┌──────────────┐  ┌──────────────┐  ┌────────────────────┐  │
    │  │  LinkStore   │  │  UsageMeter  │  │ AnalyticsRecorder  │  │
    │  │ • create     │  │ • try_reserve│  │ • link_report      │  │
    │  │ • CRUD       │  │              │  │                    │  │
    │  └──────────────┘  └──────────────┘  └────────────────────┘  │
    │  ┌──────────────────────┐  ┌──────────────────────────────┐  │
    │  │ SubscriptionDirectory│  │ PlanCatalog (read-only)      │  │
    │  └──────────────────────┘  └──────────────────────────────┘  │
    └──────────────────────────────────────────────────────────────┘

Link Creation Flow
------------------
::
    ┌─────────────┐
    │ POST /links │
    └──────┬──────┘
           ▼
    ┌─────────────┐   unknown ──► UserNotFound (404)
    │ load owner  │
    └──────┬──────┘
           ▼
    ┌─────────────┐   plan lacks custom_codes ──► FeatureNotAvailable (403)
    │ custom code?│
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ page title  │   best effort, only when no title was given
    └──────┬──────┘
           ▼
    ┌───────────────────────────────┐
    │ per attempt, one transaction: │
    │   try_reserve("create_link")  │──► denied ──► LimitExceeded (403)
    │   try_reserve("custom_domain")│──► new domain over limit ──► 403
    │   INSERT link + registry      │──► taken  ──► CodeAlreadyExists (409)
    └──────┬────────────────────────┘──► 5 collisions ──► GenerationExhausted (500)
           ▼
    201 LinkResponse

Key Behaviours
===============
- Quota is reserved and the link inserted in the same transaction, so a
  denied, colliding or failed attempt never leaves a counter incremented.
- A denied reservation leaves no usage mutation behind.
- Every read and write is scoped to the owning user; another user's link is
  reported as not found.
"""

import html
import logging
import re
import time
from typing import TYPE_CHECKING

import httpx
from prometheus_client import Counter, Histogram

from app.analytics import AnalyticsRecorder
from app.config import Settings, get_settings
from app.enums import RequestStatus, UsageAction
from app.errors import (
    CodeAlreadyExists,
    FeatureNotAvailable,
    GenerationExhausted,
    LimitExceeded,
    LinkNotFound,
    UserNotFound,
    ValidationError,
)
from app.link_store import LinkDraft, LinkStore
from app.models import Link
from app.plans import Plan, PlanCatalog
from app.schemas import LinkCreate, LinkUpdate
from app.subscriptions import Subscriber, SubscriptionDirectory
from app.usage import UsageMeter

if TYPE_CHECKING:
    from app.dependencies import RequestContext

__all__ = ["LinkService", "fetch_page_title"]

TITLE_MAX_LENGTH = 512
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


# ============================================================================
# PROMETHEUS METRICS
# ============================================================================

LINK_CREATION_REQUESTS_TOTAL = Counter(
    "shortlinks_link_creation_requests_total",
    "Link creation requests by status",
    ["status"],
)
LINK_CREATION_DURATION = Histogram(
    "shortlinks_link_creation_duration_seconds",
    "Time taken to create links",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)


async def fetch_page_title(url: str, timeout: float = 2.0) -> str | None:
    """Return the destination page's ``<title>``, or None when unavailable."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError:
        return None

    if "html" not in response.headers.get("content-type", ""):
        return None
    match = _TITLE_RE.search(response.text)
    if not match:
        return None
    title = " ".join(html.unescape(match.group(1)).split())
    return title[:TITLE_MAX_LENGTH] or None


# ============================================================================
# CORE SERVICE CLASS
# ============================================================================


class LinkService:
    """Owner-facing link operations.

    Example:
        >>> service = LinkService.from_context(ctx)
        >>> link = await service.create_link(user_id, LinkCreate(original_url="https://example.com/a/b"))
        >>> link.short_code
        'aZ3k9Q'
    """

    def __init__(
        self,
        store: LinkStore,
        meter: UsageMeter,
        subscriptions: SubscriptionDirectory,
        plans: PlanCatalog,
        recorder: AnalyticsRecorder,
        settings: Settings | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._store = store
        self._meter = meter
        self._subscriptions = subscriptions
        self._plans = plans
        self._recorder = recorder
        self._settings = settings or get_settings()
        self._logger = logger or logging.getLogger("shortlinks.links")

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "LinkService":
        """Build the service and its collaborators around the request's session."""
        manager = ctx.service_manager
        subscriptions = SubscriptionDirectory(ctx.database, ctx.logger)
        return cls(
            store=LinkStore(ctx.database, manager.generator, ctx.cache, ctx.settings, ctx.logger),
            meter=UsageMeter(ctx.database, manager.plans, subscriptions, ctx.logger),
            subscriptions=subscriptions,
            plans=manager.plans,
            recorder=AnalyticsRecorder(manager.session_factory, manager.plans, ctx.settings, ctx.logger),
            settings=ctx.settings,
            logger=ctx.logger,
        )

    # ========================================================================
    # PUBLIC API METHODS
    # ========================================================================

    async def create_link(self, owner_id: str, payload: LinkCreate) -> Link:
        """Create a link for ``owner_id`` after reserving one unit of link quota.

        Raises:
            UserNotFound: The owner is unknown to the account system.
            FeatureNotAvailable: A custom code was requested on a plan without it.
            ValidationError: The custom code is malformed or reserved.
            LimitExceeded: The monthly link or custom domain quota is used up,
                or the paid subscription has lapsed.
            CodeAlreadyExists: The custom code is taken.
            GenerationExhausted: Every random short code collided.
        """
        start_time = time.perf_counter()
        status = RequestStatus.ERROR
        try:
            subscriber = await self._require_subscriber(owner_id)
            if payload.custom_code is not None:
                plan = await self._plans.get(subscriber.tier)
                if plan is None or not plan.has_feature("custom_codes"):
                    raise FeatureNotAvailable(f"Custom short codes are not available on the {subscriber.tier} plan")

            title = payload.title
            if title is None and self._settings.FETCH_PAGE_TITLE:
                title = await fetch_page_title(payload.original_url, self._settings.PAGE_TITLE_TIMEOUT_SECONDS)

            draft = LinkDraft(
                owner_id=owner_id,
                original_url=payload.original_url,
                custom_code=payload.custom_code,
                title=title,
                expires_at=payload.expires_at,
                custom_domain=payload.custom_domain,
            )

            async def reserve_link_quota() -> None:
                decision = await self._meter.try_reserve(owner_id, UsageAction.CREATE_LINK, commit=False)
                decision.raise_for_denial(UsageAction.CREATE_LINK)
                # A domain counts once, the first time the owner attaches it.
                if draft.custom_domain and not await self._store.owner_uses_domain(owner_id, draft.custom_domain):
                    decision = await self._meter.try_reserve(owner_id, UsageAction.CUSTOM_DOMAIN, commit=False)
                    decision.raise_for_denial(UsageAction.CUSTOM_DOMAIN)

            link = await self._store.create(draft, before_insert=reserve_link_quota)
            status = RequestStatus.SUCCESS
        except ValidationError as exc:
            status = RequestStatus.VALIDATION_ERROR
            self._logger.warning(f"Link creation rejected: {exc}", extra={"operation": "create_link"})
            raise
        except CodeAlreadyExists as exc:
            status = RequestStatus.CONFLICT
            self._logger.info(f"Link creation conflict: {exc}", extra={"operation": "create_link"})
            raise
        except (LimitExceeded, FeatureNotAvailable) as exc:
            status = RequestStatus.LIMIT_EXCEEDED
            self._logger.info(f"Link creation denied for {owner_id}: {exc}", extra={"operation": "create_link"})
            raise
        except GenerationExhausted:
            status = RequestStatus.EXHAUSTED
            raise
        finally:
            LINK_CREATION_DURATION.observe(time.perf_counter() - start_time)
            LINK_CREATION_REQUESTS_TOTAL.labels(status=status).inc()

        self._logger.info(
            f"Link created: {link.short_code} -> {link.original_url}",
            extra={"operation": "create_link", "link_id": link.id, "short_code": link.short_code},
        )
        return link

    async def list_links(self, owner_id: str, limit: int | None = None, offset: int = 0) -> list[Link]:
        await self._require_subscriber(owner_id)
        limit = min(limit or self._settings.LIST_DEFAULT_LIMIT, self._settings.LIST_MAX_LIMIT)
        return await self._store.list_by_owner(owner_id, limit, offset)

    async def get_link(self, owner_id: str, link_id: str) -> Link:
        link = await self._store.get_by_id(link_id, owner_id)
        if link is None:
            raise LinkNotFound(link_id)
        return link

    async def update_link(self, owner_id: str, link_id: str, payload: LinkUpdate) -> Link:
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("is_active", True) is None:
            raise ValidationError("isActive cannot be null")
        link = await self._store.update(link_id, owner_id, changes)
        self._logger.info(
            f"Link updated: {link.short_code} ({', '.join(sorted(changes)) or 'no changes'})",
            extra={"operation": "update_link", "link_id": link_id},
        )
        return link

    async def delete_link(self, owner_id: str, link_id: str) -> None:
        await self._store.delete(link_id, owner_id)
        self._logger.info(f"Link deleted: {link_id}", extra={"operation": "delete_link", "link_id": link_id})

    async def analytics_report(self, owner_id: str, link_id: str, days: int) -> dict:
        subscriber = await self._require_subscriber(owner_id)
        link = await self.get_link(owner_id, link_id)
        plan = await self._require_plan(subscriber)
        return await self._recorder.link_report(link.id, plan, days)

    async def global_analytics(self, owner_id: str, days: int) -> dict:
        subscriber = await self._require_subscriber(owner_id)
        plan = await self._require_plan(subscriber)
        return await self._recorder.global_report(owner_id, plan, days)

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    async def _require_subscriber(self, user_id: str) -> Subscriber:
        subscriber = await self._subscriptions.get_user(user_id)
        if subscriber is None:
            raise UserNotFound(user_id)
        return subscriber

    async def _require_plan(self, subscriber: Subscriber) -> Plan:
        plan = await self._plans.get(subscriber.tier)
        if plan is None:
            raise LookupError(f"No plan configured for tier '{subscriber.tier}'")
        return plan
