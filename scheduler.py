"""Occurrence scheduler: turns reminders into queued jobs.

Called by the reminder CRUD layer on create, update and delete. Only a rolling
horizon of occurrences is queued; the job handler extends it as occurrences
fire.
"""

from datetime import datetime, timedelta
from typing import Optional

from config import settings
from job_queue import JobQueue
from logger_config import setup_logger
from recurrence import expand_occurrences
from timezone_utils import as_utc

logger = setup_logger(__name__, 'scheduler.log')

SEND_REMINDER_JOB = "send_reminder"


class ReminderScheduler:
    """Schedules and cancels send_reminder jobs for reminders.

    Job store errors are not caught here: a reminder mutation whose jobs could
    not be written or cancelled must fail as a whole.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        horizon_days: int = settings.SCHEDULE_HORIZON_DAYS,
        max_horizon_days: int = settings.MAX_HORIZON_DAYS,
    ):
        self.queue = queue
        self.horizon_days = horizon_days
        self.max_horizon_days = max_horizon_days

    def horizon(self, horizon_days: Optional[int] = None) -> timedelta:
        days = self.horizon_days if horizon_days is None else horizon_days
        return timedelta(days=max(0, min(days, self.max_horizon_days)))

    def schedule_occurrences(
        self,
        reminder,
        horizon_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Queue one job per occurrence in [now, now + horizon).

        Occurrences that already have a job are skipped, so calling this again
        for an unchanged reminder creates nothing.

        Returns:
            int: Number of jobs created
        """
        if reminder is None or not getattr(reminder, "id", None):
            return 0
        if getattr(reminder, "is_deleted", False):
            logger.info(f"Not scheduling deleted reminder {reminder.id}")
            return 0

        window_start = as_utc(now) if now else self.queue.clock()
        window_end = window_start + self.horizon(horizon_days)

        created = 0
        for occurrence in expand_occurrences(reminder, window_start, window_end):
            if self.queue.schedule_unique(SEND_REMINDER_JOB, occurrence.reminder_id, occurrence.occurrence_date):
                created += 1

        logger.info(
            f"Scheduled {created} new job(s) for reminder {reminder.id} "
            f"in [{window_start.isoformat()}, {window_end.isoformat()})"
        )
        return created

    def cancel_jobs_for_reminder(self, reminder_id) -> int:
        """Remove all pending jobs of a reminder, whatever their occurrence date."""
        return self.queue.cancel(str(reminder_id), job_type=SEND_REMINDER_JOB)

    def reschedule_reminder(
        self,
        reminder,
        horizon_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Cancel the reminder's jobs, then queue fresh ones unless it is deleted.

        Returns:
            int: Number of jobs created
        """
        self.cancel_jobs_for_reminder(reminder.id)
        if getattr(reminder, "is_deleted", False):
            return 0
        return self.schedule_occurrences(reminder, horizon_days=horizon_days, now=now)
