"""APScheduler configuration for the LinkedIn invitation cron."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import logging

from app.config import settings
from app.database import session_scope
from app.exceptions import UnipileConfigurationError
from app.services.cron_orchestrator import CronOrchestrator
from app.services.unipile_client import UnipileClient

logger = logging.getLogger(__name__)

# Create scheduler instance
scheduler = AsyncIOScheduler()


async def run_linkedin_cron():
    """
    One pass of the invitation cron - called by APScheduler.

    Overlapping passes (other instances, or the HTTP trigger) are kept out by
    the orchestrator's advisory lock.
    """
    try:
        unipile = UnipileClient.from_settings()
    except UnipileConfigurationError as e:
        logger.error(f"❌ LinkedIn cron skipped: {e}")
        return None

    try:
        async with session_scope() as db:
            report = await CronOrchestrator(db, unipile).run()
        logger.info(f"LinkedIn cron finished: {report.get('skipped') or len(report.get('processed', []))}")
        return report
    except Exception as e:
        logger.error(f"❌ Error in LinkedIn cron: {e}")
        return None


def start_scheduler():
    """
    Initialize and start the APScheduler.

    Jobs:
    - LinkedIn invitation cron: minute expression LINKEDIN_CRON_MINUTES
    """
    if scheduler.running:
        logger.info("Scheduler already running")
        return

    try:
        scheduler.add_job(
            run_linkedin_cron,
            trigger=CronTrigger(minute=settings.LINKEDIN_CRON_MINUTES),
            id='linkedin_invitation_cron',
            name='LinkedIn Invitation Cron',
            replace_existing=True,
            max_instances=1
        )
        logger.info(f"✅ Scheduled: LinkedIn Invitation Cron (minute={settings.LINKEDIN_CRON_MINUTES})")

        scheduler.start()
        logger.info("✅ APScheduler started successfully!")

        for job in scheduler.get_jobs():
            logger.info(f"   • {job.name}: Next run at {job.next_run_time}")

    except Exception as e:
        logger.error(f"❌ Error starting scheduler: {e}")


def stop_scheduler():
    """Stop the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
