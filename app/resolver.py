"""Redirect resolution for inbound short-code hits.

Resolution State Machine
========================
::
    ┌─────────────┐
    │   Lookup    │  one "now" snapshot per request
    └──────┬──────┘
           │
    ┌──────┼───────────────┬──────────────────┬─────────────┐
    ▼      ▼               ▼                  ▼             │
 NotFound  Expired         Inactive           Valid         │
 (no row)  (expires_at     (is_active         ├─ dispatch analytics (best effort)
           <= now, even    is False)          ├─ increment clicks (retry once)
           when inactive)                     └─ destination = original_url

Key Behaviours
===============
- The expiry check and the analytics timestamp share the same ``now``, so an
  expired link records nothing after its expiry instant.
- The click increment and the analytics event are independent side effects;
  neither waits for nor undoes the other.
- A click increment that still fails after its retry is dropped, logged and
  counted; the redirect is still served.
"""

import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError

from app.analytics import AnalyticsRecorder, ClickMetadata
from app.config import Settings, get_settings
from app.enums import RedirectOutcome
from app.link_store import LinkStore
from app.models import Link, ensure_utc, utc_now

if TYPE_CHECKING:
    from app.dependencies import RequestContext

__all__ = ["Resolution", "RedirectResolver", "classify"]

REDIRECT_OUTCOMES_TOTAL = Counter(
    "shortlinks_redirect_outcomes_total",
    "Redirect resolutions by outcome",
    ["outcome"],
)
CLICK_INCREMENTS_DROPPED_TOTAL = Counter(
    "shortlinks_click_increments_dropped_total",
    "Click increments dropped after exhausting retries",
)

Dispatch = Callable[..., Any]


@dataclass(frozen=True)
class Resolution:
    """Outcome of one lookup; ``destination`` is set only for Valid."""

    outcome: RedirectOutcome
    resolved_at: datetime.datetime
    link_id: str | None = None
    destination: str | None = None


def classify(link: Link | None, now: datetime.datetime) -> RedirectOutcome:
    if link is None:
        return RedirectOutcome.NOT_FOUND
    expires_at = ensure_utc(link.expires_at)
    if expires_at is not None and expires_at <= now:
        return RedirectOutcome.EXPIRED
    if not link.is_active:
        return RedirectOutcome.INACTIVE
    return RedirectOutcome.VALID


class RedirectResolver:
    def __init__(
        self,
        store: LinkStore,
        recorder: AnalyticsRecorder,
        settings: Settings | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._settings = settings or get_settings()
        self._logger = logger or logging.getLogger("shortlinks.redirect")
        self._clock = clock

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "RedirectResolver":
        manager = ctx.service_manager
        store = LinkStore(ctx.database, manager.generator, ctx.cache, ctx.settings, ctx.logger)
        recorder = AnalyticsRecorder(manager.session_factory, manager.plans, ctx.settings, ctx.logger)
        return cls(store, recorder, ctx.settings, ctx.logger)

    async def resolve(
        self,
        short_code: str,
        metadata: ClickMetadata,
        *,
        dispatch: Dispatch | None = None,
    ) -> Resolution:
        """Classify a short code and apply the Valid-path side effects.

        Args:
            short_code: Exact, case-sensitive code from the request path.
            metadata: Click details stored with the analytics event.
            dispatch: Schedules ``recorder.record`` to run after the response,
                e.g. ``BackgroundTasks.add_task``. When omitted the event is
                recorded inline.

        Raises:
            SQLAlchemyError: The lookup itself failed.
        """
        now = self._clock()
        link = await self._store.get_by_short_code(short_code)
        outcome = classify(link, now)
        REDIRECT_OUTCOMES_TOTAL.labels(outcome=outcome.value).inc()

        if outcome is not RedirectOutcome.VALID:
            self._logger.info(
                f"Redirect for {short_code} resolved as {outcome.value}",
                extra={"operation": "redirect", "short_code": short_code, "outcome": outcome.value},
            )
            return Resolution(outcome, now, link.id if link is not None else None)

        # a failed increment rolls back and expires the instance
        resolution = Resolution(outcome, now, link.id, link.original_url)
        if dispatch is not None:
            dispatch(self._recorder.record, link.id, link.owner_id, now, metadata)
        else:
            await self._recorder.record(link.id, link.owner_id, now, metadata)

        await self._increment_clicks(link.id, short_code)
        return resolution

    async def _increment_clicks(self, link_id: str, short_code: str) -> None:
        attempts = 1 + self._settings.CLICK_INCREMENT_RETRIES
        for attempt in range(1, attempts + 1):
            try:
                await self._store.increment_clicks(link_id)
                return
            except SQLAlchemyError as exc:
                self._logger.warning(
                    f"Click increment failed for {short_code} (attempt {attempt}/{attempts}): {exc}",
                    extra={"operation": "increment_clicks", "link_id": link_id, "attempt": attempt},
                )

        CLICK_INCREMENTS_DROPPED_TOTAL.inc()
        self._logger.error(
            f"Click dropped for {short_code} after {attempts} attempts",
            extra={"operation": "increment_clicks", "link_id": link_id},
        )
