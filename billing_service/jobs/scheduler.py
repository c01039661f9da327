# billing_service/jobs/scheduler.py
# In-process periodic jobs, started from the FastAPI lifespan.
#
#   subscription expiration  -- daily at settings.expiration_job_hour_utc
#   revenue report           -- daily at settings.revenue_report_hour_utc (for yesterday)
#   compensation drain       -- every settings.compensation_drain_interval_seconds
#
# Jobs are sync (SQLAlchemy sessions, httpx.Client), so each run goes through
# asyncio.to_thread and never blocks the event loop. A failing run is logged
# and the loop keeps going.

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from billing_service.core.config import settings
from billing_service.core.dependencies import get_billing_context
from billing_service.db.session import SessionLocal
from billing_service.jobs.compensation_worker import drain_compensation_tasks
from billing_service.jobs.subscription_expiration import update_expired_subscriptions
from billing_service.services.revenue_report import generate_yesterday_report

logger = logging.getLogger("billing.jobs")


def seconds_until_hour(hour: int, now: Optional[datetime] = None) -> float:
    """Seconds from now until the next HH:00 UTC."""
    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def run_expiration_job() -> dict:
    db = SessionLocal()
    try:
        return update_expired_subscriptions(db, get_billing_context().notifier)
    finally:
        db.close()


def run_revenue_report_job() -> dict:
    db = SessionLocal()
    try:
        result = generate_yesterday_report(db)
        return {"report_date": str(result.report.report_date), "is_new": result.is_new}
    finally:
        db.close()


def run_compensation_drain() -> dict:
    return drain_compensation_tasks(get_billing_context()).as_dict()


async def _run_forever(name: str, job: Callable[[], dict], delay: Callable[[], float]) -> None:
    while True:
        await asyncio.sleep(delay())
        try:
            result = await asyncio.to_thread(job)
            logger.info(f"Job {name} finished: {result}")
        except Exception:
            logger.exception(f"Job {name} failed")


def start_background_jobs() -> List[asyncio.Task]:
    return [
        asyncio.create_task(
            _run_forever(
                "subscription_expiration",
                run_expiration_job,
                lambda: seconds_until_hour(settings.expiration_job_hour_utc),
            )
        ),
        asyncio.create_task(
            _run_forever(
                "revenue_report",
                run_revenue_report_job,
                lambda: seconds_until_hour(settings.revenue_report_hour_utc),
            )
        ),
        asyncio.create_task(
            _run_forever(
                "compensation_drain",
                run_compensation_drain,
                lambda: float(settings.compensation_drain_interval_seconds),
            )
        ),
    ]


async def stop_background_jobs(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
