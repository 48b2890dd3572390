"""Tests for the persistent job queue."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

import database
from database import JobStatusEnum, ScheduledJob
from exceptions import JobStoreUnavailableError
from job_queue import JobQueue

JOB = "send_reminder"


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def all_jobs(session_factory):
    db = session_factory()
    try:
        return db.query(ScheduledJob).order_by(ScheduledJob.id).all()
    finally:
        db.close()


def test_schedule_unique_is_idempotent(queue, session_factory):
    assert queue.schedule_unique(JOB, "r-1", utc(2025, 10, 27, 13)) is True
    assert queue.schedule_unique(JOB, "r-1", utc(2025, 10, 27, 13)) is False
    # Same instant expressed in another offset is the same key
    same_instant = datetime(2025, 10, 27, 9, tzinfo=timezone(timedelta(hours=-4)))
    assert queue.schedule_unique(JOB, "r-1", same_instant) is False

    assert queue.schedule_unique(JOB, "r-1", utc(2025, 10, 28, 13)) is True
    assert queue.schedule_unique(JOB, "r-2", utc(2025, 10, 27, 13)) is True
    assert queue.schedule_unique("other_job", "r-1", utc(2025, 10, 27, 13)) is True

    jobs = all_jobs(session_factory)
    assert len(jobs) == 4
    assert jobs[0].run_at == utc(2025, 10, 27, 13)
    assert jobs[0].status == JobStatusEnum.PENDING
    assert jobs[0].attempts == 0


def test_unique_constraint_rejects_duplicate_rows(session_factory):
    db = session_factory()
    try:
        for _ in range(2):
            db.add(ScheduledJob(
                job_type=JOB, reminder_id="r-1",
                occurrence_date=utc(2025, 10, 27, 13), run_at=utc(2025, 10, 27, 13),
            ))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
    finally:
        db.close()


def test_cancel_removes_only_unfinished_jobs(queue, session_factory):
    for day in (27, 28, 29):
        queue.schedule_unique(JOB, "r-1", utc(2025, 10, day, 13))
    queue.schedule_unique(JOB, "r-2", utc(2025, 10, 27, 13))

    db = session_factory()
    first = db.query(ScheduledJob).filter(ScheduledJob.reminder_id == "r-1").order_by(ScheduledJob.id).first()
    first.status = JobStatusEnum.COMPLETED
    db.commit()
    db.close()

    assert queue.cancel("r-1") == 2
    assert queue.cancel("r-1") == 0

    remaining = all_jobs(session_factory)
    assert [(j.reminder_id, j.status) for j in remaining] == [
        ("r-1", JobStatusEnum.COMPLETED),
        ("r-2", JobStatusEnum.PENDING),
    ]
    # The completed occurrence cannot be queued again
    assert queue.schedule_unique(JOB, "r-1", utc(2025, 10, 27, 13)) is False


def test_cancel_filters_by_job_type(queue):
    queue.schedule_unique(JOB, "r-1", utc(2025, 10, 27, 13))
    queue.schedule_unique("digest", "r-1", utc(2025, 10, 27, 13))
    assert queue.cancel("r-1", job_type=JOB) == 1
    assert [j.job_type for j in queue.pending_jobs("r-1")] == ["digest"]


def test_pending_jobs_in_run_order(queue):
    queue.schedule_unique(JOB, "r-1", utc(2025, 10, 29, 13))
    queue.schedule_unique(JOB, "r-1", utc(2025, 10, 27, 13))
    queue.schedule_unique(JOB, "r-2", utc(2025, 10, 28, 13))
    assert [j.occurrence_date for j in queue.pending_jobs()] == [
        utc(2025, 10, 27, 13), utc(2025, 10, 28, 13), utc(2025, 10, 29, 13),
    ]
    assert len(queue.pending_jobs("r-1")) == 2


def test_run_due_jobs_runs_only_due_jobs(queue, clock, session_factory):
    seen = []

    async def handler(job):
        seen.append((job.reminder_id, job.occurrence_date, job.attempts))

    queue.define(JOB, handler)
    queue.schedule_unique(JOB, "r-1", clock.now)
    queue.schedule_unique(JOB, "r-1", clock.now + timedelta(hours=1))

    assert asyncio.run(queue.run_due_jobs()) == 1
    assert seen == [("r-1", clock.now, 1)]
    assert asyncio.run(queue.run_due_jobs()) == 0

    jobs = all_jobs(session_factory)
    assert jobs[0].status == JobStatusEnum.COMPLETED
    assert jobs[0].locked_at is None
    assert jobs[0].last_finished_at == clock.now
    assert jobs[1].status == JobStatusEnum.PENDING

    clock.advance(hours=1)
    assert asyncio.run(queue.run_due_jobs()) == 1
    assert len(seen) == 2


def test_run_due_jobs_respects_concurrency(queue, clock):
    running = []
    peak = []

    async def handler(job):
        running.append(job.id)
        peak.append(len(running))
        await asyncio.sleep(0)
        running.remove(job.id)

    queue.define(JOB, handler, concurrency=2)
    for hour in range(3):
        queue.schedule_unique(JOB, "r-1", clock.now - timedelta(hours=hour))

    assert asyncio.run(queue.run_due_jobs()) == 2
    assert max(peak) <= 2
    assert asyncio.run(queue.run_due_jobs()) == 1
    assert asyncio.run(queue.run_due_jobs()) == 0


def test_failed_job_is_retried_with_backoff(queue, clock, session_factory):
    async def handler(job):
        raise RuntimeError("sink down")

    queue.define(JOB, handler)
    queue.schedule_unique(JOB, "r-1", clock.now)

    assert asyncio.run(queue.run_due_jobs()) == 1
    [job] = all_jobs(session_factory)
    assert job.status == JobStatusEnum.PENDING
    assert job.attempts == 1
    assert "sink down" in job.last_error
    assert job.run_at == clock.now + timedelta(seconds=60)

    # Not due again until the backoff has passed
    assert asyncio.run(queue.run_due_jobs()) == 0
    clock.advance(seconds=60)
    assert asyncio.run(queue.run_due_jobs()) == 1
    [job] = all_jobs(session_factory)
    assert job.attempts == 2
    assert job.run_at == clock.now + timedelta(seconds=120)

    clock.advance(seconds=120)
    assert asyncio.run(queue.run_due_jobs()) == 1
    [job] = all_jobs(session_factory)
    assert job.attempts == 3
    assert job.status == JobStatusEnum.FAILED

    clock.advance(days=1)
    assert asyncio.run(queue.run_due_jobs()) == 0


def test_expired_lock_is_reclaimed(queue, clock, session_factory):
    seen = []

    async def handler(job):
        seen.append(job.id)

    queue.define(JOB, handler)
    queue.schedule_unique(JOB, "r-1", clock.now - timedelta(hours=1))
    queue.schedule_unique(JOB, "r-2", clock.now - timedelta(hours=1))

    db = session_factory()
    stale, fresh = db.query(ScheduledJob).order_by(ScheduledJob.id).all()
    # Worker that claimed `stale` died 11 minutes ago; `fresh` is still being run
    stale.status, stale.locked_at, stale.attempts = JobStatusEnum.RUNNING, clock.now - timedelta(minutes=11), 1
    fresh.status, fresh.locked_at, fresh.attempts = JobStatusEnum.RUNNING, clock.now - timedelta(minutes=1), 1
    stale_id = stale.id
    db.commit()
    db.close()

    assert asyncio.run(queue.run_due_jobs()) == 1
    assert seen == [stale_id]
    jobs = all_jobs(session_factory)
    assert jobs[0].status == JobStatusEnum.COMPLETED
    assert jobs[0].attempts == 2
    assert jobs[1].status == JobStatusEnum.RUNNING


def test_expired_lock_after_last_attempt_fails_the_job(queue, clock, session_factory):
    seen = []

    async def handler(job):
        seen.append(job.id)

    queue.define(JOB, handler)
    queue.schedule_unique(JOB, "r-1", clock.now - timedelta(hours=1))

    db = session_factory()
    [job] = db.query(ScheduledJob).all()
    # Worker died during the third and last allowed attempt
    job.status, job.locked_at, job.attempts = JobStatusEnum.RUNNING, clock.now - timedelta(minutes=11), 3
    db.commit()
    db.close()

    assert asyncio.run(queue.run_due_jobs()) == 0
    assert seen == []
    [job] = all_jobs(session_factory)
    assert job.status == JobStatusEnum.FAILED
    assert job.attempts == 3
    assert job.last_error == "lock expired"
    assert job.locked_at is None

    clock.advance(days=1)
    assert asyncio.run(queue.run_due_jobs()) == 0


def test_requeue_rearms_running_job(queue, clock, session_factory):
    later = clock.now + timedelta(days=2)

    async def handler(job):
        queue.requeue(job, later)

    queue.define(JOB, handler)
    queue.schedule_unique(JOB, "r-1", later, run_at=clock.now)

    assert asyncio.run(queue.run_due_jobs()) == 1
    [job] = all_jobs(session_factory)
    assert job.status == JobStatusEnum.PENDING
    assert job.run_at == later
    assert job.locked_at is None


def test_job_cancelled_while_running_stays_deleted(queue, clock, session_factory):
    async def handler(job):
        queue.cancel(job.reminder_id)

    queue.define(JOB, handler)
    queue.schedule_unique(JOB, "r-1", clock.now)
    assert asyncio.run(queue.run_due_jobs()) == 1
    assert all_jobs(session_factory) == []


def test_store_errors_raise_job_store_unavailable(clock):
    # No tables: every statement fails
    broken = database.make_session_factory(database.make_engine("sqlite://"))
    queue = JobQueue(broken, clock=clock)
    with pytest.raises(JobStoreUnavailableError):
        queue.schedule_unique(JOB, "r-1", clock.now)
    with pytest.raises(JobStoreUnavailableError):
        queue.cancel("r-1")
    with pytest.raises(JobStoreUnavailableError):
        queue.pending_jobs()


def test_poll_loop_stops(queue, clock):
    seen = []

    async def handler(job):
        seen.append(job.id)
        queue.stop()

    queue.define(JOB, handler)
    queue.schedule_unique(JOB, "r-1", clock.now)
    asyncio.run(asyncio.wait_for(queue.start(), timeout=5))
    assert len(seen) == 1


def test_old_completed_jobs_are_pruned(queue, clock, session_factory):
    async def handler(job):
        pass

    fired, tomorrow = clock.now, clock.now + timedelta(days=1)
    queue.define(JOB, handler)
    queue.schedule_unique(JOB, "r-1", fired)
    queue.schedule_unique(JOB, "r-1", tomorrow)
    assert asyncio.run(queue.run_due_jobs()) == 1

    # Within the retention window the completed row still blocks its occurrence
    clock.advance(seconds=300)
    assert asyncio.run(queue.run_due_jobs()) == 0
    assert len(all_jobs(session_factory)) == 2
    assert queue.schedule_unique(JOB, "r-1", fired) is False

    clock.advance(seconds=1)
    assert asyncio.run(queue.run_due_jobs()) == 0
    [job] = all_jobs(session_factory)
    assert job.status == JobStatusEnum.PENDING
    assert job.occurrence_date == tomorrow


def test_store_error_finishing_one_job_leaves_the_others_running(queue, clock, session_factory, monkeypatch):
    async def handler(job):
        await asyncio.sleep(0)

    queue.define(JOB, handler, concurrency=2)
    queue.schedule_unique(JOB, "r-1", clock.now)
    queue.schedule_unique(JOB, "r-2", clock.now)

    finish = queue._finish

    def flaky_finish(job, error=None):
        if job.reminder_id == "r-1":
            raise JobStoreUnavailableError("Job store error: disk I/O error")
        finish(job, error=error)

    monkeypatch.setattr(queue, "_finish", flaky_finish)

    assert asyncio.run(queue.run_due_jobs()) == 2
    jobs = all_jobs(session_factory)
    assert [(j.reminder_id, j.status) for j in jobs] == [
        ("r-1", JobStatusEnum.RUNNING),
        ("r-2", JobStatusEnum.COMPLETED),
    ]
