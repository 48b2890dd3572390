"""Reminder Scheduling Service - recurring reminders fired exactly once per occurrence.

Reminders carry a recurrence rule (none, daily, weekly, custom) and an IANA
timezone. Occurrences are expanded in the reminder's local time, queued as
uniquely keyed jobs over a rolling horizon, and fired by a background worker
that keeps recurring series going one horizon at a time.

Components:
- config: Application settings
- logger_config: Rotating file + console logging
- timezone_utils: Local wall-clock <-> UTC conversion
- recurrence: Occurrence expansion
- database: SQLAlchemy models and session management
- crud: Reminder persistence
- job_queue: Persistent job store and polling runner
- scheduler: Cancel/reschedule of a reminder's jobs
- reminder_jobs: send_reminder job handler
- notifier: Notification storage and push delivery
- schemas: Pydantic request/response schemas
- api_server: FastAPI REST API
- background_worker: Job worker process

Usage:
    python main.py              # API + worker
    python api_server.py        # API only
    python background_worker.py # worker only
"""

__version__ = "1.0.0"
__description__ = "Timezone-aware recurring reminder scheduling service"
