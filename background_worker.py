"""Background Worker for the Reminder Scheduling Service.

Runs the job queue: polls the scheduled_jobs table, fires due send_reminder
jobs (at most JOB_CONCURRENCY at a time) and lets recurring reminders queue
their next horizon of occurrences.
"""

import asyncio
import signal
import sys

import database
from config import settings
from job_queue import JobQueue
from logger_config import setup_logger
from notifier import NotificationService
from reminder_jobs import register_reminder_jobs
from scheduler import ReminderScheduler

logger = setup_logger(__name__, 'worker.log')


def build_queue(session_factory=None) -> JobQueue:
    """Wire the queue, scheduler, notifier and send_reminder handler together."""
    session_factory = session_factory or database.SessionLocal
    queue = JobQueue(
        session_factory,
        lock_lifetime=settings.JOB_LOCK_LIFETIME,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        retry_backoff=settings.JOB_RETRY_BACKOFF,
        poll_interval=settings.WORKER_CHECK_INTERVAL,
    )
    scheduler = ReminderScheduler(
        queue,
        horizon_days=settings.SCHEDULE_HORIZON_DAYS,
        max_horizon_days=settings.MAX_HORIZON_DAYS,
    )
    notifier = NotificationService(session_factory)
    register_reminder_jobs(
        session_factory,
        queue,
        scheduler,
        notifier,
        concurrency=settings.JOB_CONCURRENCY,
        drift_tolerance=settings.DRIFT_TOLERANCE_SECONDS,
        horizon_days=settings.SCHEDULE_HORIZON_DAYS,
    )
    return queue


async def worker_loop(queue: JobQueue):
    """Run the queue until a shutdown signal arrives."""
    logger.info("Background worker started")
    logger.info(f"Worker enabled: {settings.WORKER_ENABLED}")
    logger.info(f"Check interval: {settings.WORKER_CHECK_INTERVAL} seconds")
    logger.info(f"Concurrency: {settings.JOB_CONCURRENCY}, lock lifetime: {settings.JOB_LOCK_LIFETIME}s")

    if not settings.WORKER_ENABLED:
        logger.warning("Worker is disabled in configuration. Exiting.")
        return

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, _request_shutdown, queue, signum)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(signum, lambda s, f: _request_shutdown(queue, s))

    await queue.start()
    logger.info("Background worker shutting down gracefully")


def _request_shutdown(queue: JobQueue, signum):
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    queue.stop()


def main():
    """Main entry point for the background worker."""
    logger.info("=" * 60)
    logger.info("Reminder Scheduling Service - Background Worker")
    logger.info("=" * 60)

    try:
        database.init_db()
        asyncio.run(worker_loop(build_queue()))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error in background worker: {str(e)}", exc_info=True)
        sys.exit(1)

    logger.info("Background worker stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
