"""Job handler that fires reminder notifications.

One send_reminder job carries only a reminder id and an occurrence date.
Everything else is re-read from the database when the job runs, because the
reminder may have been edited or deleted since the job was queued.

Each run ends in one of the JobOutcome states:
- ORPHANED_CANCELLED: reminder gone or deleted; its remaining jobs are removed
- STALE_RESCHEDULED: job ran too early for its occurrence; re-armed for it
- ALREADY_SENT: last_sent_at shows the occurrence was delivered already
- FIRED: notification sent and last_sent_at stored

Recurring reminders then queue the next horizon of occurrences, which is how
a series keeps going without ever holding more than one horizon of jobs.
"""

import enum
from datetime import datetime, timedelta
from typing import Callable, Optional

import crud
from config import settings
from job_queue import Job, JobQueue
from logger_config import setup_logger
from notifier import NotificationService
from scheduler import SEND_REMINDER_JOB, ReminderScheduler
from timezone_utils import build_localized_metadata, ensure_timezone, parse_date_input_to_utc

logger = setup_logger(__name__, 'worker.log')


class JobOutcome(enum.Enum):
    FIRED = "fired"
    STALE_RESCHEDULED = "stale_rescheduled"
    ORPHANED_CANCELLED = "orphaned_cancelled"
    ALREADY_SENT = "already_sent"


class ReminderJobHandler:
    """Runs send_reminder jobs. Exceptions propagate to the queue."""

    def __init__(
        self,
        session_factory,
        queue: JobQueue,
        scheduler: ReminderScheduler,
        notifier: NotificationService,
        *,
        drift_tolerance: int = settings.DRIFT_TOLERANCE_SECONDS,
        horizon_days: int = settings.SCHEDULE_HORIZON_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.scheduler = scheduler
        self.notifier = notifier
        self.drift_tolerance = timedelta(seconds=drift_tolerance)
        self.horizon_days = horizon_days
        self.clock = clock or queue.clock

    async def __call__(self, job: Job) -> JobOutcome:
        if not job.reminder_id:
            raise ValueError("Missing reminder_id in job data")

        db = self.session_factory()
        try:
            reminder = crud.get_reminder_by_id(db, job.reminder_id)
        finally:
            db.close()

        if reminder is None or reminder.is_deleted:
            self.queue.cancel(job.reminder_id)
            logger.info(f"Reminder {job.reminder_id} no longer exists, cancelled its remaining jobs")
            return JobOutcome.ORPHANED_CANCELLED

        time_zone = ensure_timezone(reminder.timezone)
        now = parse_date_input_to_utc(self.clock(), time_zone)
        occurrence = parse_date_input_to_utc(job.occurrence_date, time_zone)

        if occurrence > now + self.drift_tolerance:
            self.queue.requeue(job, occurrence)
            logger.info(
                f"Job for reminder {reminder.id} ran at {now.isoformat()}, "
                f"ahead of occurrence {occurrence.isoformat()}; re-armed"
            )
            return JobOutcome.STALE_RESCHEDULED

        # An occurrence may fire up to drift_tolerance early, so last_sent_at can
        # precede it
        if reminder.last_sent_at is not None and reminder.last_sent_at >= occurrence - self.drift_tolerance:
            logger.info(f"Occurrence {occurrence.isoformat()} of reminder {reminder.id} already sent")
            outcome = JobOutcome.ALREADY_SENT
        else:
            await self._send(reminder, occurrence, time_zone)
            db = self.session_factory()
            try:
                crud.mark_reminder_sent(db, reminder.id, now)
            finally:
                db.close()
            outcome = JobOutcome.FIRED

        if reminder.recurrence.is_recurring:
            self.scheduler.schedule_occurrences(reminder, horizon_days=self.horizon_days, now=now)

        return outcome

    async def _send(self, reminder, occurrence: datetime, time_zone: str):
        metadata = {
            "reminder_id": reminder.id,
            "occurrence_date": occurrence.isoformat(),
        }
        metadata.update(build_localized_metadata(occurrence, time_zone))
        await self.notifier.notify(
            [reminder.user_id],
            title=reminder.title or "Reminder",
            body=reminder.description or reminder.title or "Reminder is due",
            metadata=metadata,
        )
        logger.info(f"Sent reminder {reminder.id} for occurrence {occurrence.isoformat()}")


def register_reminder_jobs(
    session_factory,
    queue: JobQueue,
    scheduler: ReminderScheduler,
    notifier: NotificationService,
    concurrency: int = settings.JOB_CONCURRENCY,
    **handler_options,
) -> ReminderJobHandler:
    """Create the send_reminder handler and register it on the queue."""
    handler = ReminderJobHandler(session_factory, queue, scheduler, notifier, **handler_options)
    queue.define(SEND_REMINDER_JOB, handler, concurrency=concurrency)
    return handler
