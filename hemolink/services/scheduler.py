import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from hemolink.config import settings
from hemolink.database import async_session
from hemolink.exceptions import UpstreamUnavailable
from hemolink.services.transfusion_service import TransfusionService

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def expire_stale_schedules() -> int:
    """Cancel planned slots nobody booked within the grace period."""
    try:
        async with async_session() as session:
            expired = await TransfusionService(session).sweep_stale_schedules()
    except UpstreamUnavailable as e:
        logger.error(f"Stale schedule sweep failed: {e.detail}")
        return 0

    if expired:
        logger.info(f"Stale schedule sweep cancelled {expired} planned slots")
    return expired


def start_scheduler():
    global scheduler

    if scheduler is not None:
        logger.info("Scheduler already running")
        return

    scheduler = AsyncIOScheduler(
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
    )

    scheduler.add_job(
        expire_stale_schedules,
        trigger="interval",
        minutes=settings.SWEEP_INTERVAL_MINUTES,
        id="expire_stale_schedules",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        f"Maintenance scheduler started, sweeping every {settings.SWEEP_INTERVAL_MINUTES} minutes"
    )


def stop_scheduler():
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Maintenance scheduler stopped")
