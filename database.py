"""Database module for the Reminder Scheduling Service.

This module defines SQLAlchemy models and database session management.
All datetime columns hold UTC; they are read back as timezone-aware UTC
datetimes on every backend, SQLite included.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from datetime import datetime, timezone
import enum

from config import settings
from recurrence import Cadence, Recurrence

# SQLAlchemy Base
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """DateTime stored as naive UTC and returned as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class PriorityEnum(enum.Enum):
    """Priority levels for reminders"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StatusEnum(enum.Enum):
    """Status values for reminders"""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class JobStatusEnum(enum.Enum):
    """Lifecycle of a scheduled job"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reminder(Base):
    """Reminder model.

    Reminders are soft-deleted: is_deleted flips to True and the row stays.
    Occurrences are never stored here; they are recomputed from the
    recurrence columns within a bounded horizon.
    """

    __tablename__ = "reminders"

    id = Column(String, primary_key=True, doc="Unique reminder ID (UUID)")
    user_id = Column(String, nullable=False, index=True, doc="Owner of the reminder")

    title = Column(String(200), nullable=False)
    description = Column(String(2000), default="")

    scheduled_at = Column(UTCDateTime, nullable=False, doc="First/reference occurrence (UTC)")
    timezone = Column(String(60), nullable=False, default="UTC", doc="IANA zone for local-time semantics")

    # Recurrence rule
    cadence = Column(SQLEnum(Cadence), nullable=False, default=Cadence.NONE)
    interval = Column(Integer, nullable=False, default=1)
    days_of_week = Column(JSON, nullable=False, default=list, doc="0=Sunday .. 6=Saturday")
    custom_rule = Column(String(280), nullable=False, default="")
    anchor_date = Column(UTCDateTime, nullable=True, doc="Defaults to scheduled_at when empty")

    category = Column(String(50), default="personal")
    priority = Column(SQLEnum(PriorityEnum), default=PriorityEnum.MEDIUM)
    status = Column(SQLEnum(StatusEnum), default=StatusEnum.PENDING, index=True)

    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(UTCDateTime, nullable=True)
    last_sent_at = Column(UTCDateTime, nullable=True, doc="Last successful notification")

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_user_scheduled_deleted', 'user_id', 'scheduled_at', 'is_deleted'),
    )

    @property
    def recurrence(self) -> Recurrence:
        return Recurrence(
            cadence=self.cadence or Cadence.NONE,
            interval=self.interval or 1,
            days_of_week=tuple(self.days_of_week or ()),
            custom_rule=self.custom_rule or "",
            anchor_date=self.anchor_date,
        )

    def __repr__(self):
        return (
            f"<Reminder(id={self.id}, user={self.user_id}, title={self.title}, "
            f"scheduled_at={self.scheduled_at}, cadence={self.cadence}, deleted={self.is_deleted})>"
        )


class ScheduledJob(Base):
    """A promise to run a job for one (reminder, occurrence) pair.

    The (job_type, reminder_id, occurrence_date) triple is unique; completed
    rows are kept so an occurrence that already fired cannot be queued again.
    """

    __tablename__ = "scheduled_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(64), nullable=False)
    reminder_id = Column(String, nullable=False, index=True)
    occurrence_date = Column(UTCDateTime, nullable=False)
    run_at = Column(UTCDateTime, nullable=False)

    status = Column(SQLEnum(JobStatusEnum), nullable=False, default=JobStatusEnum.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    locked_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    last_finished_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('job_type', 'reminder_id', 'occurrence_date', name='uq_job_occurrence'),
        Index('idx_job_status_run_at', 'status', 'run_at'),
    )

    def __repr__(self):
        return (
            f"<ScheduledJob(id={self.id}, type={self.job_type}, reminder={self.reminder_id}, "
            f"occurrence={self.occurrence_date}, status={self.status.value})>"
        )


class Notification(Base):
    """Stored copy of every notification sent to a user"""

    __tablename__ = "notifications"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    type = Column(String(50), nullable=False, default="reminder")
    title = Column(String(200), nullable=False)
    message = Column(String(2000), default="")
    details = Column("metadata", JSON, default=dict)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


def make_engine(url: str = None):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    url = url or settings.DATABASE_URL
    kwargs = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def make_session_factory(bind):
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=bind)


def init_db(bind=None):
    """Create all tables."""
    Base.metadata.create_all(bind=bind or engine)


# Database Engine Setup
engine = make_engine()

# Session Factory
SessionLocal = make_session_factory(engine)


def get_db():
    """Database session dependency for FastAPI.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
