"""
APScheduler Configuration

Background job scheduler for the storefront. The only recurring job is the
order status scheduler (app.jobs.order_jobs), which advances orders whose
automatic transition time has passed.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings

logger = logging.getLogger(__name__)

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}


def build_scheduler(timezone: Optional[str] = None) -> AsyncIOScheduler:
    """Create a scheduler with its own job store and executor."""
    return AsyncIOScheduler(
        jobstores={'default': MemoryJobStore()},
        executors={'default': AsyncIOExecutor()},
        job_defaults=job_defaults,
        timezone=timezone or settings.SCHEDULER_TIMEZONE,
    )


# Create scheduler
scheduler = build_scheduler()


def start_scheduler():
    """Start the background job scheduler and register the order jobs."""
    if not settings.ORDER_SCHEDULER_ENABLED:
        logger.info("Order scheduler disabled (ORDER_SCHEDULER_ENABLED=false)")
        return

    from app.jobs.order_jobs import order_status_scheduler

    order_status_scheduler.start()

    # Log all scheduled jobs
    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


async def shutdown_scheduler():
    """Stop the order jobs, wait for an in-flight tick, then stop the scheduler."""
    from app.jobs.order_jobs import order_status_scheduler

    await order_status_scheduler.stop()

    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")

