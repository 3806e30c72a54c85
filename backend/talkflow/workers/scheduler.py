# /talkflow/workers/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from talkflow.config.settings import settings
from talkflow.services.audit_service import purge_expired
from talkflow.services.db_service import DatabaseService
from talkflow.utils.logging import setup_logging

logger = logging.getLogger("SchedulerService")


def build_scheduler(database) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")

    # Audit retention: drop rows past AUDIT_RETENTION_DAYS every night
    scheduler.add_job(
        purge_expired,
        'cron',
        hour=3,
        minute=0,
        args=[database],
        id="audit_retention_job",
        replace_existing=True
    )
    logger.info(f"Scheduled job: purge_expired (daily at 03:00 UTC, {settings.audit_retention_days} day retention).")
    return scheduler


async def main():
    setup_logging()
    database = DatabaseService(settings.mongo_uri)
    scheduler = build_scheduler(database)
    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        scheduler.shutdown()
        database.close()


if __name__ == "__main__":
    asyncio.run(main())
