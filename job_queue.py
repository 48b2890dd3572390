"""Persistent job queue for the Reminder Scheduling Service.

Jobs live in the scheduled_jobs table. A queue instance is created once per
process and handed to the components that schedule or run jobs.

Semantics:
- schedule_unique() is the only way a job is created; the
  (job_type, reminder_id, occurrence_date) key is unique, so scheduling the
  same occurrence twice is a no-op
- a running job holds a lock; when a worker dies the lock expires after
  lock_lifetime seconds and another worker picks the job up again
- handler exceptions mark the job failed and retry it with exponential backoff
  until max_attempts runs have been made; a job whose lock expires after its
  last attempt is marked failed instead of being claimed again
- completed rows are kept only while their occurrence can still fall inside a
  scheduling window (completed_retention seconds), then pruned
- any database error surfaces as JobStoreUnavailableError
"""

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import settings
from database import JobStatusEnum, ScheduledJob, utcnow
from exceptions import JobStoreUnavailableError
from logger_config import setup_logger
from timezone_utils import as_utc

logger = setup_logger(__name__, 'worker.log')


@dataclass
class Job:
    """A claimed job as seen by its handler."""

    id: int
    job_type: str
    reminder_id: str
    occurrence_date: datetime
    attempts: int
    requeued_at: Optional[datetime] = None


JobHandler = Callable[[Job], Awaitable[Any]]


@dataclass
class JobDefinition:
    handler: JobHandler
    concurrency: int


class JobQueue:
    """Job store plus the polling loop that runs due jobs."""

    def __init__(
        self,
        session_factory,
        *,
        lock_lifetime: int = settings.JOB_LOCK_LIFETIME,
        max_attempts: int = settings.JOB_MAX_ATTEMPTS,
        retry_backoff: int = settings.JOB_RETRY_BACKOFF,
        poll_interval: int = settings.WORKER_CHECK_INTERVAL,
        completed_retention: int = settings.DRIFT_TOLERANCE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.lock_lifetime = timedelta(seconds=lock_lifetime)
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.poll_interval = poll_interval
        self.completed_retention = timedelta(seconds=completed_retention)
        self.clock = clock
        self._definitions: Dict[str, JobDefinition] = {}
        self._running = False

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise JobStoreUnavailableError(f"Job store error: {e}") from e
        finally:
            db.close()

    def define(self, job_type: str, handler: JobHandler, concurrency: int = settings.JOB_CONCURRENCY):
        """Register the async handler that runs jobs of job_type."""
        self._definitions[job_type] = JobDefinition(handler, concurrency)
        logger.info(f"Defined job type '{job_type}' (concurrency={concurrency})")

    def schedule_unique(
        self,
        job_type: str,
        reminder_id: str,
        occurrence_date: datetime,
        run_at: Optional[datetime] = None,
    ) -> bool:
        """Create a job for one occurrence unless one already exists.

        Returns:
            bool: True if a job was created, False if the key already existed

        Raises:
            JobStoreUnavailableError: On database errors
        """
        occurrence_date = as_utc(occurrence_date)
        run_at = as_utc(run_at) if run_at else occurrence_date
        reminder_id = str(reminder_id)
        try:
            with self._session() as db:
                existing = db.query(ScheduledJob.id).filter(
                    ScheduledJob.job_type == job_type,
                    ScheduledJob.reminder_id == reminder_id,
                    ScheduledJob.occurrence_date == occurrence_date,
                ).first()
                if existing:
                    return False
                db.add(ScheduledJob(
                    job_type=job_type,
                    reminder_id=reminder_id,
                    occurrence_date=occurrence_date,
                    run_at=run_at,
                    status=JobStatusEnum.PENDING,
                    attempts=0,
                    created_at=self.clock(),
                ))
                db.flush()
        except JobStoreUnavailableError as e:
            # Lost a race with another writer for the same key
            if isinstance(e.__cause__, IntegrityError):
                return False
            raise
        return True

    def cancel(self, reminder_id: str, job_type: Optional[str] = None) -> int:
        """Remove every job of a reminder that has not completed.

        Returns:
            int: Number of jobs removed
        """
        with self._session() as db:
            query = db.query(ScheduledJob).filter(
                ScheduledJob.reminder_id == str(reminder_id),
                ScheduledJob.status != JobStatusEnum.COMPLETED,
            )
            if job_type:
                query = query.filter(ScheduledJob.job_type == job_type)
            removed = query.delete(synchronize_session=False)
        if removed:
            logger.info(f"Cancelled {removed} job(s) for reminder {reminder_id}")
        return removed

    def requeue(self, job: Job, run_at: datetime):
        """Put a running job back in the queue for a later time."""
        run_at = as_utc(run_at)
        with self._session() as db:
            db.query(ScheduledJob).filter(ScheduledJob.id == job.id).update(
                {
                    ScheduledJob.status: JobStatusEnum.PENDING,
                    ScheduledJob.run_at: run_at,
                    ScheduledJob.locked_at: None,
                },
                synchronize_session=False,
            )
        job.requeued_at = run_at

    def prune_completed(self, now: Optional[datetime] = None) -> int:
        """Delete completed jobs whose occurrence can no longer be rescheduled.

        A completed row is needed only while its occurrence_date is later than
        now - completed_retention; scheduling windows never start earlier.

        Returns:
            int: Number of rows deleted
        """
        now = as_utc(now) if now else self.clock()
        with self._session() as db:
            removed = db.query(ScheduledJob).filter(
                ScheduledJob.status == JobStatusEnum.COMPLETED,
                ScheduledJob.occurrence_date < now - self.completed_retention,
            ).delete(synchronize_session=False)
        if removed:
            logger.debug(f"Pruned {removed} completed job(s)")
        return removed

    def pending_jobs(self, reminder_id: Optional[str] = None, job_type: Optional[str] = None) -> List[ScheduledJob]:
        """Jobs that have not run yet (or are running), earliest first."""
        with self._session() as db:
            query = db.query(ScheduledJob).filter(
                ScheduledJob.status.in_([JobStatusEnum.PENDING, JobStatusEnum.RUNNING])
            )
            if reminder_id is not None:
                query = query.filter(ScheduledJob.reminder_id == str(reminder_id))
            if job_type:
                query = query.filter(ScheduledJob.job_type == job_type)
            return query.order_by(ScheduledJob.run_at, ScheduledJob.id).all()

    def _claim(self, job_type: str, limit: int, now: datetime) -> List[Job]:
        lock_expired = now - self.lock_lifetime
        claimed = []
        with self._session() as db:
            candidates = db.query(ScheduledJob).filter(
                ScheduledJob.job_type == job_type,
                or_(
                    and_(ScheduledJob.status == JobStatusEnum.PENDING, ScheduledJob.run_at <= now),
                    and_(ScheduledJob.status == JobStatusEnum.RUNNING, ScheduledJob.locked_at < lock_expired),
                ),
            ).order_by(ScheduledJob.run_at).limit(limit).all()

            for row in candidates:
                # Conditional update so two workers never claim the same row
                unchanged = [ScheduledJob.id == row.id, ScheduledJob.status == row.status]
                if row.locked_at is None:
                    unchanged.append(ScheduledJob.locked_at.is_(None))
                else:
                    unchanged.append(ScheduledJob.locked_at == row.locked_at)

                if row.status == JobStatusEnum.RUNNING and row.attempts >= self.max_attempts:
                    # The worker died during the last allowed attempt
                    expired = db.query(ScheduledJob).filter(*unchanged).update(
                        {
                            ScheduledJob.status: JobStatusEnum.FAILED,
                            ScheduledJob.locked_at: None,
                            ScheduledJob.last_finished_at: now,
                            ScheduledJob.last_error: "lock expired",
                        },
                        synchronize_session=False,
                    )
                    if expired:
                        logger.warning(
                            f"Job {row.id} for reminder {row.reminder_id} lost its lock "
                            f"after {row.attempts} attempt(s); marked failed"
                        )
                    continue

                updated = db.query(ScheduledJob).filter(*unchanged).update(
                    {
                        ScheduledJob.status: JobStatusEnum.RUNNING,
                        ScheduledJob.locked_at: now,
                        ScheduledJob.attempts: row.attempts + 1,
                    },
                    synchronize_session=False,
                )
                if updated:
                    claimed.append(Job(
                        id=row.id,
                        job_type=row.job_type,
                        reminder_id=row.reminder_id,
                        occurrence_date=row.occurrence_date,
                        attempts=row.attempts + 1,
                    ))
        return claimed

    def _finish(self, job: Job, error: Optional[BaseException] = None):
        if job.requeued_at is not None and error is None:
            return
        now = self.clock()
        with self._session() as db:
            row = db.get(ScheduledJob, job.id)
            if row is None:
                # Cancelled while running
                return
            row.locked_at = None
            row.last_finished_at = now
            if error is None:
                row.status = JobStatusEnum.COMPLETED
                row.last_error = None
            elif job.attempts < self.max_attempts:
                row.status = JobStatusEnum.PENDING
                row.run_at = now + timedelta(seconds=self.retry_backoff * 2 ** (job.attempts - 1))
                row.last_error = repr(error)
            else:
                row.status = JobStatusEnum.FAILED
                row.last_error = repr(error)

    async def _run(self, definition: JobDefinition, job: Job):
        logger.info(
            f"Job starting: {job.job_type} reminder={job.reminder_id} "
            f"occurrence={job.occurrence_date.isoformat()} attempt={job.attempts}"
        )
        try:
            await definition.handler(job)
        except Exception as e:
            logger.error(
                f"Job failed: {job.job_type} reminder={job.reminder_id} "
                f"occurrence={job.occurrence_date.isoformat()}: {e}",
                exc_info=True,
            )
            self._finish(job, error=e)
            return
        self._finish(job)
        logger.info(f"Job finished: {job.job_type} reminder={job.reminder_id}")

    async def run_due_jobs(self, now: Optional[datetime] = None) -> int:
        """Claim and run the jobs that are due.

        At most `concurrency` jobs per type are claimed, and therefore run
        concurrently, per call.

        Returns:
            int: Number of jobs run
        """
        now = as_utc(now) if now else self.clock()
        self.prune_completed(now)
        runs = []
        jobs = []
        for job_type, definition in self._definitions.items():
            for job in self._claim(job_type, definition.concurrency, now):
                runs.append(self._run(definition, job))
                jobs.append(job)
        if runs:
            results = await asyncio.gather(*runs, return_exceptions=True)
            for job, result in zip(jobs, results):
                if isinstance(result, Exception):
                    # Lock stays held; the job is picked up again once it expires
                    logger.error(
                        f"Could not record result of job {job.id} "
                        f"(reminder={job.reminder_id}): {result}"
                    )
        return len(runs)

    async def start(self):
        """Poll for due jobs until stop() is called."""
        self._running = True
        logger.info(f"Job queue started (poll interval {self.poll_interval}s)")
        while self._running:
            try:
                await self.run_due_jobs()
            except JobStoreUnavailableError as e:
                logger.error(f"Job store unavailable, will retry: {e}")

            # Sleep in 1-second steps to allow quick shutdown
            for _ in range(max(1, self.poll_interval)):
                if not self._running:
                    break
                await asyncio.sleep(1)
        logger.info("Job queue stopped")

    def stop(self):
        self._running = False
