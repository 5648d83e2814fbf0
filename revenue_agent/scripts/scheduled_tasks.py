"""
Scheduled Tasks for the Revenue Intelligence Agent

Cron jobs (scheduler timezone, America/New_York by default):
1. Daily Briefing         - weekdays 7:00
2. Weekly Account Review  - Mondays 6:00
3. Synthesize Learnings   - 1st of the month 3:00
4. Refresh Embeddings     - Sundays 2:00 (re-embed + similarity search)
5. CRM Delivery Retry     - every 4 hours

Each job runs one task per tenant concurrently, each with its own session,
so a slow tenant never holds up the others.

Uses APScheduler for in-process scheduling. For deployments with multiple
workers, enable the scheduler on one worker only.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select, union

from revenue_agent.config import settings
from revenue_agent.db import async_session_maker, Account, OrganizationSettings
from revenue_agent.services.daily_briefing import DailyBriefingService
from revenue_agent.services.delivery_queue import DeliveryQueue
from revenue_agent.services.learnings_service import LearningsService
from revenue_agent.services.similarity_service import SimilarityService
from revenue_agent.services.weekly_review import WeeklyReviewService

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("revenue_agent.scheduler")

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def list_tenant_ids() -> List[str]:
    """Every tenant that has settings or accounts."""
    async with async_session_maker() as db:
        result = await db.execute(
            union(
                select(OrganizationSettings.tenant_id),
                select(Account.tenant_id).distinct(),
            )
        )
        return [row[0] for row in result.fetchall()]


async def run_for_all_tenants(job_name: str, task: Callable[[str], Awaitable[object]]) -> int:
    """
    Run `task` for every tenant concurrently.

    Returns:
        Number of tenants whose task raised
    """
    tenant_ids = await list_tenant_ids()
    logger.info(f"[SCHEDULER] {job_name}: starting for {len(tenant_ids)} tenants")

    results = await asyncio.gather(*[task(t) for t in tenant_ids], return_exceptions=True)

    failures = 0
    for tenant_id, result in zip(tenant_ids, results):
        if isinstance(result, BaseException):
            failures += 1
            logger.error(f"[SCHEDULER] {job_name} failed for tenant {tenant_id}: {result}")
        else:
            logger.info(f"[SCHEDULER] {job_name} tenant {tenant_id}: {result}")

    logger.info(f"[SCHEDULER] {job_name}: complete ({failures} tenant failures)")
    return failures


async def _daily_briefing(tenant_id: str):
    async with async_session_maker() as db:
        return await DailyBriefingService(db).run(tenant_id)


async def _weekly_review(tenant_id: str):
    async with async_session_maker() as db:
        return await WeeklyReviewService(db).run(tenant_id)


async def _synthesize_learnings(tenant_id: str):
    async with async_session_maker() as db:
        return await LearningsService(db).synthesize(tenant_id)


async def _refresh_embeddings(tenant_id: str):
    async with async_session_maker() as db:
        return await SimilarityService(db).refresh_all(tenant_id)


async def _retry_deliveries(tenant_id: str):
    return await DeliveryQueue().process_pending(tenant_id)


async def run_daily_briefings():
    await run_for_all_tenants("daily-briefing", _daily_briefing)


async def run_weekly_reviews():
    await run_for_all_tenants("weekly-account-review", _weekly_review)


async def run_learning_synthesis():
    await run_for_all_tenants("synthesize-learnings", _synthesize_learnings)


async def run_embedding_refresh():
    await run_for_all_tenants("refresh-embeddings", _refresh_embeddings)


async def run_delivery_retry():
    await run_for_all_tenants("crm-delivery-retry", _retry_deliveries)


def setup_scheduler(timezone: Optional[str] = None) -> AsyncIOScheduler:
    """
    Set up the APScheduler with the agent's cron jobs.

    Args:
        timezone: IANA timezone for the cron triggers (default: settings.scheduler_timezone)

    Returns:
        Configured scheduler instance
    """
    global scheduler

    tz = timezone or settings.scheduler_timezone
    scheduler = AsyncIOScheduler(timezone=tz)

    scheduler.add_job(
        run_daily_briefings,
        trigger=CronTrigger(day_of_week="mon-fri", hour=7, minute=0, timezone=tz),
        id="daily_briefing",
        name="Daily Briefing (weekdays 7AM)",
        replace_existing=True,
    )

    scheduler.add_job(
        run_weekly_reviews,
        trigger=CronTrigger(day_of_week="mon", hour=6, minute=0, timezone=tz),
        id="weekly_account_review",
        name="Weekly Account Review (Mon 6AM)",
        replace_existing=True,
    )

    scheduler.add_job(
        run_learning_synthesis,
        trigger=CronTrigger(day=1, hour=3, minute=0, timezone=tz),
        id="synthesize_learnings",
        name="Synthesize Learnings (1st of month 3AM)",
        replace_existing=True,
    )

    scheduler.add_job(
        run_embedding_refresh,
        trigger=CronTrigger(day_of_week="sun", hour=2, minute=0, timezone=tz),
        id="refresh_embeddings",
        name="Refresh Embeddings + Similarity (Sun 2AM)",
        replace_existing=True,
    )

    scheduler.add_job(
        run_delivery_retry,
        trigger=CronTrigger(hour="*/4", minute=0, timezone=tz),
        id="crm_delivery_retry",
        name="CRM Delivery Retry (every 4h)",
        replace_existing=True,
    )

    logger.info(f"[SCHEDULER] Configured {len(scheduler.get_jobs())} jobs ({tz})")
    return scheduler


def start_scheduler():
    """Start the scheduler if not already running."""
    global scheduler

    if scheduler is None:
        scheduler = setup_scheduler()

    if not scheduler.running:
        scheduler.start()
        logger.info("[SCHEDULER] Agent scheduler started")


def stop_scheduler():
    """Stop the scheduler if running."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("[SCHEDULER] Agent scheduler stopped")


async def run_all_once():
    """Run every job once, in the order their outputs feed each other."""
    for label, job in (
        ("refreshing embeddings", run_embedding_refresh),
        ("synthesizing learnings", run_learning_synthesis),
        ("weekly review", run_weekly_reviews),
        ("daily briefing", run_daily_briefings),
        ("retrying CRM deliveries", run_delivery_retry),
    ):
        logger.info(f"[SCHEDULER] Manual run: {label}")
        await job()


# Run the jobs once by hand
if __name__ == "__main__":
    asyncio.run(run_all_once())
