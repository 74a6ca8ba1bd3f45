"""FastAPI route definitions for the short-link REST API.

API Endpoint Overview
=====================
::
    GET    /health
        └─ HealthResponse (200)

    POST   /links                      links:write
        ├─ LinkCreate (request body)
        └─ LinkResponse (201) or 403/409/422/500

    GET    /links?limit&offset         links:read
        └─ LinkListResponse (200)

    GET    /links/{id}                 links:read
    PUT    /links/{id}                 links:write
    DELETE /links/{id}                 links:write (204)

    GET    /links/{id}/analytics?days  analytics:read
        └─ AnalyticsReportResponse (200)

    GET    /analytics/global?days      analytics:read
        └─ GlobalAnalyticsResponse (200)

    GET    /usage                      usage:read
    GET    /plans

    POST   /webhooks/billing           X-Billing-Signature when configured
    POST   /admin/analytics/sweep      analytics:prune

    GET    /{short_code}
        └─ redirect to the destination, or to the not-found /
           expired / error page of the frontend

Key Behaviours
===============
- The caller is identified by the ``X-User-ID`` header relayed by the front door.
- Every ``/links`` and ``/analytics`` call consumes one unit of the caller's
  monthly API request quota before it runs.
- Errors raised as ``ShortLinkError`` are rendered by the handler in ``app.main``.
- Analytics for a redirect are written after the response is sent.
- The catch-all redirect route is registered last so it never shadows the API.
"""

import hashlib
import hmac

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse
from sqlalchemy import text

from app.analytics import AnalyticsRecorder, ClickMetadata
from app.capabilities import Capability
from app.dependencies import (
    RequestContext,
    get_link_service,
    get_redirect_resolver,
    get_request_context,
    get_subscription_directory,
    get_usage_meter,
    metered,
    require,
)
from app.enums import HealthStatus, RedirectOutcome
from app.errors import InvalidSignature, ValidationError
from app.link_service import LinkService
from app.resolver import RedirectResolver
from app.schemas import (
    AnalyticsReportResponse,
    BillingEvent,
    GlobalAnalyticsResponse,
    HealthResponse,
    LinkCreate,
    LinkListResponse,
    LinkResponse,
    LinkUpdate,
    PlanResponse,
    SweepResponse,
    UsageSummaryResponse,
)
from app.subscriptions import Subscriber, SubscriptionDirectory
from app.usage import UsageMeter

__all__ = ["router"]

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.DISABLED

    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    if ctx.cache is not None:
        try:
            await ctx.cache.ping()
            cache_status = HealthStatus.HEALTHY
        except Exception as e:
            ctx.logger.error(f"Cache health check failed: {e}")
            cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.UNHEALTHY
        if HealthStatus.UNHEALTHY in (db_status, cache_status)
        else HealthStatus.HEALTHY
    )
    return HealthResponse(status=status, database=db_status, cache=cache_status)


# ============================================================================
# LINKS
# ============================================================================


@router.post("/links", response_model=LinkResponse, status_code=201, tags=["links"])
async def create_link(
    payload: LinkCreate,
    ctx: RequestContext = Depends(get_request_context),
    user: Subscriber = Depends(metered(Capability.LINKS_WRITE)),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    ctx.add_tag("link_creation")
    link = await service.create_link(user.id, payload)
    ctx.logger.info(
        f"Link creation completed: {link.short_code}",
        extra={"operation": "create_link", "duration_ms": ctx.get_duration()},
    )
    return LinkResponse.from_link(link, ctx.settings.short_url(link.short_code))


@router.get("/links", response_model=LinkListResponse, tags=["links"])
async def list_links(
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(get_request_context),
    user: Subscriber = Depends(metered(Capability.LINKS_READ)),
    service: LinkService = Depends(get_link_service),
) -> LinkListResponse:
    limit = min(limit or ctx.settings.LIST_DEFAULT_LIMIT, ctx.settings.LIST_MAX_LIMIT)
    links = await service.list_links(user.id, limit, offset)
    return LinkListResponse(
        links=[LinkResponse.from_link(link, ctx.settings.short_url(link.short_code)) for link in links],
        limit=limit,
        offset=offset,
    )


@router.get("/links/{link_id}", response_model=LinkResponse, tags=["links"])
async def get_link(
    link_id: str,
    ctx: RequestContext = Depends(get_request_context),
    user: Subscriber = Depends(metered(Capability.LINKS_READ)),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.get_link(user.id, link_id)
    return LinkResponse.from_link(link, ctx.settings.short_url(link.short_code))


@router.put("/links/{link_id}", response_model=LinkResponse, tags=["links"])
async def update_link(
    link_id: str,
    payload: LinkUpdate,
    ctx: RequestContext = Depends(get_request_context),
    user: Subscriber = Depends(metered(Capability.LINKS_WRITE)),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.update_link(user.id, link_id, payload)
    return LinkResponse.from_link(link, ctx.settings.short_url(link.short_code))


@router.delete("/links/{link_id}", status_code=204, tags=["links"])
async def delete_link(
    link_id: str,
    user: Subscriber = Depends(metered(Capability.LINKS_WRITE)),
    service: LinkService = Depends(get_link_service),
) -> Response:
    await service.delete_link(user.id, link_id)
    return Response(status_code=204)


@router.get("/links/{link_id}/analytics", response_model=AnalyticsReportResponse, tags=["analytics"])
async def link_analytics(
    link_id: str,
    days: int = Query(default=30, ge=1, le=365),
    user: Subscriber = Depends(metered(Capability.ANALYTICS_READ)),
    service: LinkService = Depends(get_link_service),
) -> AnalyticsReportResponse:
    report = await service.analytics_report(user.id, link_id, days)
    return AnalyticsReportResponse(**report)


@router.get("/analytics/global", response_model=GlobalAnalyticsResponse, tags=["analytics"])
async def global_analytics(
    days: int = Query(default=30, ge=1, le=365),
    user: Subscriber = Depends(metered(Capability.ANALYTICS_READ)),
    service: LinkService = Depends(get_link_service),
) -> GlobalAnalyticsResponse:
    report = await service.global_analytics(user.id, days)
    return GlobalAnalyticsResponse(**report)


# ============================================================================
# USAGE AND PLANS
# ============================================================================


@router.get("/usage", response_model=UsageSummaryResponse, tags=["usage"])
async def usage_summary(
    user: Subscriber = Depends(require(Capability.USAGE_READ)),
    meter: UsageMeter = Depends(get_usage_meter),
) -> UsageSummaryResponse:
    summary = await meter.summary(user.id)
    return UsageSummaryResponse(**summary)


@router.get("/plans", response_model=list[PlanResponse], tags=["usage"])
async def list_plans(ctx: RequestContext = Depends(get_request_context)) -> list[PlanResponse]:
    plans = await ctx.service_manager.plans.all()
    return [
        PlanResponse(
            tier=plan.tier,
            name=plan.name,
            price_monthly_cents=plan.price_monthly_cents,
            limits=plan.limits.to_dict(),
            features=sorted(plan.features),
        )
        for plan in plans
    ]


# ============================================================================
# BILLING AND ADMINISTRATION
# ============================================================================


@router.post("/webhooks/billing", tags=["billing"])
async def billing_webhook(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    subscriptions: SubscriptionDirectory = Depends(get_subscription_directory),
) -> dict:
    body = await request.body()
    secret = ctx.settings.BILLING_WEBHOOK_SECRET
    if secret:
        signature = request.headers.get("x-billing-signature", "")
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(signature.lower(), expected):
            ctx.logger.warning("Billing webhook rejected: bad signature", extra={"operation": "billing_event"})
            raise InvalidSignature("Billing webhook signature mismatch")

    try:
        event = BillingEvent.model_validate_json(body)
    except ValueError as exc:
        raise ValidationError(f"Malformed billing event: {exc}") from exc

    subscriber = await subscriptions.apply_billing_event(event.user_id, event.tier, event.status)
    return {"received": True, "tier": subscriber.tier, "subscriptionStatus": subscriber.subscription_status}


@router.post("/admin/analytics/sweep", response_model=SweepResponse, tags=["admin"])
async def sweep_analytics(
    ctx: RequestContext = Depends(get_request_context),
    user: Subscriber = Depends(require(Capability.ANALYTICS_PRUNE)),
) -> SweepResponse:
    manager = ctx.service_manager
    recorder = AnalyticsRecorder(manager.session_factory, manager.plans, ctx.settings, ctx.logger)
    deleted = await recorder.sweep()
    ctx.logger.info(f"Retention sweep triggered by {user.id}: {deleted} events deleted")
    return SweepResponse(deleted=deleted)


# ============================================================================
# REDIRECT
# ============================================================================


@router.get("/{short_code}", tags=["redirect"])
async def redirect_short_code(
    short_code: str,
    request: Request,
    background_tasks: BackgroundTasks,
    ctx: RequestContext = Depends(get_request_context),
    resolver: RedirectResolver = Depends(get_redirect_resolver),
) -> RedirectResponse:
    ctx.add_tag("redirect")
    metadata = ClickMetadata(
        ip_address=request.headers.get("cf-connecting-ip") or ctx.client_ip,
        user_agent=ctx.user_agent,
        referer=request.headers.get("referer"),
        country=request.headers.get("cf-ipcountry"),
        city=request.headers.get("cf-ipcity"),
    )
    resolution = await resolver.resolve(short_code, metadata, dispatch=background_tasks.add_task)

    settings = ctx.settings
    if resolution.outcome is RedirectOutcome.VALID:
        return RedirectResponse(url=resolution.destination, status_code=settings.REDIRECT_STATUS_CODE)

    pages = {
        RedirectOutcome.NOT_FOUND: settings.NOT_FOUND_PATH,
        RedirectOutcome.EXPIRED: settings.EXPIRED_PATH,
        RedirectOutcome.INACTIVE: settings.INACTIVE_PATH,
    }
    return RedirectResponse(url=settings.frontend_page(pages[resolution.outcome]), status_code=302)
