"""Shared fixtures: in-memory database, controllable clock, queue and scheduler."""

from datetime import datetime, timedelta, timezone

import pytest

import crud
import database
from job_queue import JobQueue
from reminder_jobs import register_reminder_jobs
from scheduler import ReminderScheduler

# Monday 2025-10-27, 08:00 in New York
START = datetime(2025, 10, 27, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def set(self, now: datetime):
        self.now = now


class RecordingNotifier:
    """Stands in for NotificationService; records instead of delivering."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    async def notify(self, user_ids, title, body, metadata=None, notification_type="reminder"):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({
            "user_ids": list(user_ids),
            "title": title,
            "body": body,
            "metadata": metadata or {},
        })
        return len(self.sent[-1]["user_ids"])


@pytest.fixture
def engine():
    engine = database.make_engine("sqlite://")
    database.init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return database.make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def queue(session_factory, clock):
    return JobQueue(
        session_factory,
        lock_lifetime=600,
        max_attempts=3,
        retry_backoff=60,
        poll_interval=1,
        clock=clock,
    )


@pytest.fixture
def scheduler(queue):
    return ReminderScheduler(queue, horizon_days=30, max_horizon_days=90)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def handler(session_factory, queue, scheduler, notifier):
    return register_reminder_jobs(
        session_factory,
        queue,
        scheduler,
        notifier,
        concurrency=5,
        drift_tolerance=300,
        horizon_days=30,
    )


@pytest.fixture
def make_reminder(db):
    """Create a reminder through the CRUD layer; defaults to Mon/Wed/Fri 09:00 New York."""

    def _make(**overrides):
        data = {
            "user_id": "user-1",
            "title": "Standup",
            "description": "Daily sync",
            "scheduled_at": "2025-10-27T09:00:00-04:00",
            "timezone": "America/New_York",
            "recurrence": {"cadence": "weekly", "interval": 1, "days_of_week": [1, 3, 5]},
        }
        data.update(overrides)
        return crud.create_reminder(db, data)

    return _make
