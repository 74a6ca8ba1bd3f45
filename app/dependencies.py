"""Dependency injection with a singleton service manager.

Shared resources (settings, logger, Redis link cache, background session
factory, plan catalog, short-code generator) are created once at startup by
``ServiceManager``; only the database session is per request. Routes build
their services from a ``RequestContext`` so every log line carries the
request's identifiers.

Caller identity is relayed by the front door in ``X-User-ID``; role
capabilities are enforced with ``require(capability)``, and ``metered(capability)``
additionally consumes one unit of the monthly API request quota.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.capabilities import Capability, has_capability
from app.config import Settings, get_settings
from app.database import async_session, get_db
from app.enums import UsageAction
from app.errors import Forbidden, Unauthenticated, UserNotFound
from app.link_service import LinkService
from app.plans import PlanCatalog
from app.resolver import RedirectResolver
from app.shortcode import ShortCodeGenerator
from app.subscriptions import Subscriber, SubscriptionDirectory
from app.usage import UsageMeter


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton service manager for shared resources."""

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(
        self,
        session_factory: async_sessionmaker | None = None,
        cache: redis.Redis | None = None,
    ) -> None:
        """Initialize shared resources once at startup.

        Args:
            session_factory: Factory for sessions opened outside a request
                (analytics writes, plan refresh). Defaults to ``async_session``.
            cache: Link cache client. Defaults to ``REDIS_URL`` when
                ``LINK_CACHE_ENABLED`` is set.
        """
        if not self._initialized:
            self.settings: Settings = get_settings()
            self.logger = self._setup_logger()
            self.session_factory = session_factory or async_session
            self.cache = cache if cache is not None else self._setup_cache()
            self.plans = PlanCatalog(self.session_factory, self.settings.PLAN_REFRESH_SECONDS)
            self.generator = ShortCodeGenerator.from_settings(self.settings)
            self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        logger = logging.getLogger("shortlinks")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
        return logger

    def _setup_cache(self) -> redis.Redis | None:
        if not self.settings.LINK_CACHE_ENABLED:
            return None
        return redis.from_url(self.settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    async def cleanup(self) -> None:
        """Cleanup shared resources at shutdown."""
        if getattr(self, "cache", None) is not None:
            await self.cache.aclose()
        self.cache = None
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request tracking plus access to the shared resources.

    Attributes:
        database: Async database session (only per-request resource)
        service_manager: Singleton service manager with shared resources
        request_id: Unique identifier for this request
        trace_id: Correlation ID for distributed tracing
        user_agent: Client user agent string
        client_ip: Client IP address
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: Optional[str] = None
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    tags: list[str] = field(default_factory=list)

    @property
    def cache(self) -> redis.Redis | None:
        return self.service_manager.cache

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger carrying this request's identifiers."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "trace_id": self.trace_id or self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
                "tags": ",".join(self.tags),
            },
        )

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        database=db,
        service_manager=manager,
        trace_id=request.headers.get("x-trace-id"),
        user_agent=request.headers.get("user-agent"),
        client_ip=request.client.host if request.client else None,
    )


def get_link_service(ctx: RequestContext = Depends(get_request_context)) -> LinkService:
    return LinkService.from_context(ctx)


def get_redirect_resolver(ctx: RequestContext = Depends(get_request_context)) -> RedirectResolver:
    return RedirectResolver.from_context(ctx)


def get_subscription_directory(ctx: RequestContext = Depends(get_request_context)) -> SubscriptionDirectory:
    return SubscriptionDirectory(ctx.database, ctx.logger)


def get_usage_meter(
    ctx: RequestContext = Depends(get_request_context),
    subscriptions: SubscriptionDirectory = Depends(get_subscription_directory),
) -> UsageMeter:
    return UsageMeter(ctx.database, ctx.service_manager.plans, subscriptions, ctx.logger)


async def get_current_user(
    x_user_id: str | None = Header(default=None),
    subscriptions: SubscriptionDirectory = Depends(get_subscription_directory),
) -> Subscriber:
    """Resolve the caller from the identity header relayed by the front door."""
    if not x_user_id:
        raise Unauthenticated("Missing X-User-ID header")
    subscriber = await subscriptions.get_user(x_user_id)
    if subscriber is None:
        raise UserNotFound(x_user_id)
    return subscriber


def require(capability: Capability):
    """Build a dependency that admits callers whose role grants ``capability``."""

    async def dependency(user: Subscriber = Depends(get_current_user)) -> Subscriber:
        if not has_capability(user.role, capability):
            raise Forbidden(f"Role '{user.role}' lacks {capability.resource}:{capability.action}")
        return user

    return dependency


def metered(capability: Capability):
    """Like ``require``, and also reserve one unit of the caller's monthly API request quota."""

    async def dependency(
        user: Subscriber = Depends(require(capability)),
        meter: UsageMeter = Depends(get_usage_meter),
    ) -> Subscriber:
        decision = await meter.try_reserve(user.id, UsageAction.API_REQUEST)
        decision.raise_for_denial(UsageAction.API_REQUEST)
        return user

    return dependency
