"""Analytics retention sweep entry point.

Runs ``AnalyticsRecorder.sweep`` once, or forever with ``--interval``. Meant to
be driven by an external scheduler (cron, a Kubernetes CronJob)::

    python -m app.sweep
    python -m app.sweep --interval 3600
"""

import argparse
import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from app.analytics import AnalyticsRecorder
from app.config import get_settings
from app.database import async_session, close_db
from app.plans import PlanCatalog

__all__ = ["run"]

logger = logging.getLogger("shortlinks.sweep")


async def run(interval: float | None = None) -> int:
    settings = get_settings()
    plans = PlanCatalog(async_session, settings.PLAN_REFRESH_SECONDS)
    recorder = AnalyticsRecorder(async_session, plans, settings, logger)

    total = 0
    try:
        while True:
            try:
                deleted = await recorder.sweep()
                total += deleted
                logger.info(f"Retention sweep deleted {deleted} events")
            except SQLAlchemyError as e:
                if interval is None:
                    raise
                logger.warning(f"Retention sweep failed: {e}")
            if interval is None:
                return total
            await asyncio.sleep(interval)
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete analytics events past their plan's retention window")
    parser.add_argument("--interval", type=float, default=None, help="seconds between sweeps; omit to run once")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    asyncio.run(run(args.interval))


if __name__ == "__main__":
    main()
