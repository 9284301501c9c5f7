"""
Scheduler for the nightly replenishment recompute

Uses APScheduler to recompute every active tenant once a day, after the
overnight sales and inventory syncs have landed.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import asyncio
from typing import Optional

from restock.config import get_settings
from restock.services.recalculation_service import RecalculationService
from restock.utils.cache import ReadThroughCache
from restock.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

# Set by start_scheduler so nightly runs invalidate the API's ranked cache
_ranked_cache: Optional[ReadThroughCache] = None


async def run_nightly_replenishment():
    """Recompute every active tenant (daily, see recompute_schedule)"""
    try:
        log.info("Starting nightly replenishment recompute...")
        service = RecalculationService(settings=settings, cache=_ranked_cache)
        results = await asyncio.to_thread(service.recompute_all_tenants)

        completed = [t for t, r in results.items() if r.get("status") == "completed"]
        failed = {t: r.get("error_code") for t, r in results.items() if r.get("status") != "completed"}
        log.info(f"Nightly replenishment completed: {len(completed)} tenants ok, {len(failed)} failed {failed}")

    except Exception as e:
        log.error(f"Nightly replenishment error: {str(e)}")


def setup_scheduler():
    """
    Configure the scheduler.

    Replenishment: recompute_schedule (crontab, default 03:30 in
    scheduler_timezone). A tenant still locked by a manual recompute is
    reported as failed with recompute_in_progress and picked up the next night.
    """
    scheduler.add_job(
        run_nightly_replenishment,
        trigger=CronTrigger.from_crontab(settings.recompute_schedule, timezone=settings.scheduler_timezone),
        id='nightly_replenishment',
        name='Nightly Replenishment Recompute',
        replace_existing=True,
        max_instances=1
    )


def start_scheduler(cache: Optional[ReadThroughCache] = None):
    """Start the scheduler"""
    global _ranked_cache
    _ranked_cache = cache
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")
