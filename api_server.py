"""FastAPI REST API server for the Reminder Scheduling Service.

Reminder CRUD plus the scheduling hooks it has to drive: every create and
update reschedules the reminder's jobs, every delete cancels them. A reminder
whose jobs could not be written is reported as a failed request (503) so the
client can retry.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import crud
import schemas
import database
from config import settings
from exceptions import DateParseError, JobStoreUnavailableError, ReminderNotFoundError
from job_queue import JobQueue
from logger_config import setup_logger
from recurrence import expand_occurrences
from scheduler import SEND_REMINDER_JOB, ReminderScheduler
from timezone_utils import get_end_of_day_utc, get_start_of_day_utc, parse_date_input_to_utc

logger = setup_logger(__name__, 'api.log')

_scheduler = ReminderScheduler(JobQueue(database.SessionLocal))


def get_scheduler() -> ReminderScheduler:
    """Scheduler dependency for FastAPI."""
    return _scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.init_db()
    logger.info("Reminder API started")
    yield


app = FastAPI(
    title="Reminder Scheduling Service API",
    description="Reminders with timezone-aware recurrence and job scheduling",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:8081"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(JobStoreUnavailableError)
async def job_store_unavailable_handler(request: Request, exc: JobStoreUnavailableError):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Reminder schedule could not be updated, please retry"},
    )


@app.exception_handler(ReminderNotFoundError)
async def reminder_not_found_handler(request: Request, exc: ReminderNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Reminder not found"})


def _parse_query_date(value: Optional[str], time_zone: str, name: str, end_of_day: bool = False):
    if value is None:
        return None
    override = {"hour": 23, "minute": 59, "second": 59, "microsecond": 999999} if end_of_day else None
    try:
        return parse_date_input_to_utc(value, time_zone, override_parts=override)
    except DateParseError as e:
        raise HTTPException(status_code=422, detail=f"Invalid {name}: {e}")


def _get_live_reminder(db: Session, reminder_id: str, user_id: str):
    reminder = crud.get_reminder(db, reminder_id, user_id)
    if not reminder:
        raise ReminderNotFoundError(reminder_id)
    return reminder


@app.get("/")
def root():
    """Root endpoint - service information"""
    return {
        "service": "Reminder Scheduling Service API",
        "version": "1.0.0",
        "status": "healthy",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "reminders": "/reminders",
            "notifications": "/notifications"
        }
    }


@app.get("/health")
def health_check():
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "service": "reminder_scheduler",
        "database": settings.DATABASE_URL.split("://")[0]
    }


@app.post("/reminders", response_model=schemas.ReminderResponse, status_code=201)
def create_reminder(
    reminder: schemas.ReminderCreate,
    db: Session = Depends(database.get_db),
    scheduler: ReminderScheduler = Depends(get_scheduler)
):
    """Create a reminder and queue its first horizon of occurrences.

    Request body example:
    ```json
    {
        "user_id": "u-123",
        "title": "Standup",
        "scheduled_at": "2025-10-27T09:00:00-04:00",
        "timezone": "America/New_York",
        "recurrence": {"cadence": "weekly", "interval": 1, "days_of_week": [1, 3, 5]}
    }
    ```
    """
    try:
        created = crud.create_reminder(db, reminder.model_dump())
    except DateParseError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        scheduler.reschedule_reminder(created)
    except JobStoreUnavailableError:
        # Do not leave a reminder behind that will never fire
        crud.soft_delete_reminder(db, created.id, created.user_id)
        raise
    return created


@app.get("/reminders", response_model=List[schemas.ReminderResponse])
def list_reminders(
    user_id: str = Query(..., description="Owner of the reminders"),
    status: Optional[str] = Query(None, pattern="^(pending|completed|cancelled)$"),
    scheduled_from: Optional[str] = Query(None, alias="from", description="ISO instant or YYYY-MM-DD"),
    scheduled_to: Optional[str] = Query(None, alias="to", description="ISO instant or YYYY-MM-DD (inclusive)"),
    day: Optional[str] = Query(None, description="Only reminders on this local day (YYYY-MM-DD)"),
    timezone: str = Query("UTC", description="Zone for date-only filters"),
    limit: int = Query(50, ge=1, le=1000),
    db: Session = Depends(database.get_db)
):
    """List a user's live reminders, earliest first."""
    start = _parse_query_date(scheduled_from, timezone, "from")
    end = _parse_query_date(scheduled_to, timezone, "to", end_of_day=True)
    if day is not None:
        reference = _parse_query_date(day, timezone, "day")
        start = get_start_of_day_utc(timezone, reference)
        end = get_end_of_day_utc(timezone, reference)
    return crud.get_reminders_by_user(db, user_id, status, start, end, limit)


@app.get("/reminders/{reminder_id}", response_model=schemas.ReminderResponse)
def get_reminder(
    reminder_id: str,
    user_id: str = Query(..., description="Owner of the reminder"),
    db: Session = Depends(database.get_db)
):
    """Get a specific reminder by ID."""
    return _get_live_reminder(db, reminder_id, user_id)


@app.patch("/reminders/{reminder_id}", response_model=schemas.ReminderResponse)
def update_reminder(
    reminder_id: str,
    updates: schemas.ReminderUpdate,
    user_id: str = Query(..., description="Owner of the reminder"),
    db: Session = Depends(database.get_db),
    scheduler: ReminderScheduler = Depends(get_scheduler)
):
    """Update a reminder and rebuild its job schedule.

    Only provided fields are updated. Pending jobs are always cancelled and
    recreated from the updated reminder.
    """
    try:
        reminder = crud.update_reminder(db, reminder_id, user_id, updates.model_dump(exclude_unset=True))
    except DateParseError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not reminder:
        raise ReminderNotFoundError(reminder_id)

    scheduler.reschedule_reminder(reminder)
    return reminder


@app.delete("/reminders/{reminder_id}", status_code=200)
def delete_reminder(
    reminder_id: str,
    user_id: str = Query(..., description="Owner of the reminder"),
    db: Session = Depends(database.get_db),
    scheduler: ReminderScheduler = Depends(get_scheduler)
):
    """Soft-delete a reminder and cancel all of its pending jobs."""
    reminder = crud.soft_delete_reminder(db, reminder_id, user_id)
    if not reminder:
        raise ReminderNotFoundError(reminder_id)

    cancelled = scheduler.cancel_jobs_for_reminder(reminder.id)
    return {
        "message": "Reminder deleted successfully",
        "reminder_id": reminder_id,
        "cancelled_jobs": cancelled
    }


@app.get("/reminders/{reminder_id}/occurrences", response_model=List[schemas.OccurrenceResponse])
def preview_occurrences(
    reminder_id: str,
    user_id: str = Query(..., description="Owner of the reminder"),
    start: Optional[str] = Query(None, description="Window start (default: now)"),
    end: Optional[str] = Query(None, description="Window end, exclusive (default: start + horizon)"),
    db: Session = Depends(database.get_db),
    scheduler: ReminderScheduler = Depends(get_scheduler)
):
    """Expand a reminder's occurrences in [start, end) without scheduling anything.

    The window is capped at the maximum scheduling horizon.
    """
    reminder = _get_live_reminder(db, reminder_id, user_id)
    window_start = _parse_query_date(start, reminder.timezone, "start") or scheduler.queue.clock()
    window_end = _parse_query_date(end, reminder.timezone, "end") or window_start + scheduler.horizon()
    window_end = min(window_end, window_start + timedelta(days=scheduler.max_horizon_days))
    return expand_occurrences(reminder, window_start, window_end)


@app.get("/reminders/{reminder_id}/jobs", response_model=List[schemas.JobResponse])
def list_pending_jobs(
    reminder_id: str,
    user_id: str = Query(..., description="Owner of the reminder"),
    db: Session = Depends(database.get_db),
    scheduler: ReminderScheduler = Depends(get_scheduler)
):
    """Pending jobs of a reminder, earliest first."""
    reminder = _get_live_reminder(db, reminder_id, user_id)
    return scheduler.queue.pending_jobs(reminder.id, job_type=SEND_REMINDER_JOB)


@app.get("/notifications", response_model=List[schemas.NotificationResponse])
def list_notifications(
    user_id: str = Query(..., description="Recipient"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(database.get_db)
):
    """Notifications delivered to a user, newest first."""
    return crud.get_notifications_for_user(db, user_id, limit)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )
