"""CRUD operations for the Reminder Scheduling Service.

Reminders are never hard-deleted; soft_delete_reminder() flags them instead.
Scheduling of jobs is left to the caller (see api_server), which must
reschedule after create/update and cancel after delete.
"""

from sqlalchemy.orm import Session
from typing import List, Optional
import uuid
from datetime import datetime

from config import settings
from database import Notification, PriorityEnum, Reminder, StatusEnum, utcnow
from recurrence import parse_cadence
from timezone_utils import ensure_timezone, parse_date_input_to_utc
from logger_config import setup_logger

logger = setup_logger(__name__, 'crud.log')


def _apply_recurrence(reminder: Reminder, recurrence: dict):
    """Copy a recurrence dict onto the reminder's recurrence columns."""
    if 'cadence' in recurrence:
        reminder.cadence = parse_cadence(recurrence['cadence'])
    if 'interval' in recurrence:
        reminder.interval = int(recurrence['interval'] or 1)
    if 'days_of_week' in recurrence:
        days = recurrence['days_of_week'] or []
        reminder.days_of_week = sorted({int(day) for day in days if 0 <= int(day) <= 6})
    if 'custom_rule' in recurrence:
        reminder.custom_rule = (recurrence['custom_rule'] or '').strip()
    if 'anchor_date' in recurrence:
        anchor = recurrence['anchor_date']
        reminder.anchor_date = parse_date_input_to_utc(anchor, reminder.timezone) if anchor else None


def create_reminder(db: Session, reminder_data: dict) -> Reminder:
    """Create a new reminder in the database.

    Args:
        db: Database session
        reminder_data: Dictionary with reminder fields
            - user_id: str
            - title: str
            - scheduled_at: datetime, ISO string, or YYYY-MM-DD (local midnight)
            - timezone: Optional[str] (invalid zones fall back to UTC)
            - recurrence: Optional[dict] with cadence, interval, days_of_week,
              custom_rule, anchor_date
            - description, category, priority: Optional

    Returns:
        Reminder: Created reminder

    Raises:
        DateParseError: If scheduled_at cannot be parsed
        SQLAlchemyError: On database errors
    """
    now = utcnow()
    time_zone = ensure_timezone(reminder_data.get('timezone') or settings.TIMEZONE)

    priority = reminder_data.get('priority') or 'medium'
    if isinstance(priority, str):
        priority = PriorityEnum[priority.upper()]

    db_reminder = Reminder(
        id=str(uuid.uuid4()),
        user_id=str(reminder_data['user_id']),
        title=reminder_data['title'].strip(),
        description=reminder_data.get('description') or '',
        scheduled_at=parse_date_input_to_utc(reminder_data['scheduled_at'], time_zone),
        timezone=time_zone,
        cadence=parse_cadence(None),
        interval=1,
        days_of_week=[],
        custom_rule='',
        category=(reminder_data.get('category') or 'personal').lower(),
        priority=priority,
        status=StatusEnum.PENDING,
        is_deleted=False,
        version=1,
        created_at=now,
        updated_at=now,
    )
    _apply_recurrence(db_reminder, reminder_data.get('recurrence') or {})

    db.add(db_reminder)
    db.commit()
    db.refresh(db_reminder)
    logger.info(f"Created reminder {db_reminder.id} for user {db_reminder.user_id}")
    return db_reminder


def get_reminder_by_id(db: Session, reminder_id: str) -> Optional[Reminder]:
    """Get a reminder by ID regardless of owner, including deleted ones."""
    return db.query(Reminder).filter(Reminder.id == str(reminder_id)).first()


def get_reminder(db: Session, reminder_id: str, user_id: str) -> Optional[Reminder]:
    """Get a live (not deleted) reminder owned by user_id."""
    return db.query(Reminder).filter(
        Reminder.id == str(reminder_id),
        Reminder.user_id == str(user_id),
        Reminder.is_deleted.is_(False),
    ).first()


def get_reminders_by_user(
    db: Session,
    user_id: str,
    status: Optional[str] = None,
    scheduled_from: Optional[datetime] = None,
    scheduled_to: Optional[datetime] = None,
    limit: int = 50
) -> List[Reminder]:
    """Get live reminders for a user, earliest first.

    Args:
        db: Database session
        user_id: Owner
        status: Optional status filter (pending, completed, cancelled)
        scheduled_from: Optional inclusive lower bound on scheduled_at
        scheduled_to: Optional inclusive upper bound on scheduled_at
        limit: Maximum number of results (default: 50)
    """
    query = db.query(Reminder).filter(
        Reminder.user_id == str(user_id),
        Reminder.is_deleted.is_(False),
    )

    if status:
        query = query.filter(Reminder.status == StatusEnum[status.upper()])
    if scheduled_from is not None:
        query = query.filter(Reminder.scheduled_at >= scheduled_from)
    if scheduled_to is not None:
        query = query.filter(Reminder.scheduled_at <= scheduled_to)

    return query.order_by(Reminder.scheduled_at).limit(limit).all()


def update_reminder(
    db: Session,
    reminder_id: str,
    user_id: str,
    updates: dict
) -> Optional[Reminder]:
    """Update an existing reminder.

    Args:
        db: Database session
        reminder_id: Reminder UUID
        user_id: Owner (for security)
        updates: Fields to update; None values are ignored. timezone is
            applied before scheduled_at so date-only strings use the new zone.

    Returns:
        Optional[Reminder]: Updated reminder, None if not found
    """
    reminder = get_reminder(db, reminder_id, user_id)
    if not reminder:
        return None

    if updates.get('timezone'):
        reminder.timezone = ensure_timezone(updates['timezone'])

    for key, value in updates.items():
        if value is None or key in ('timezone', 'recurrence'):
            continue
        if key == 'scheduled_at':
            value = parse_date_input_to_utc(value, reminder.timezone)
        elif key == 'priority' and isinstance(value, str):
            value = PriorityEnum[value.upper()]
        elif key == 'status' and isinstance(value, str):
            value = StatusEnum[value.upper()]
        elif key == 'category':
            value = value.lower()
        setattr(reminder, key, value)

    if updates.get('recurrence') is not None:
        _apply_recurrence(reminder, updates['recurrence'])

    reminder.version = (reminder.version or 1) + 1
    reminder.updated_at = utcnow()

    db.commit()
    db.refresh(reminder)
    return reminder


def soft_delete_reminder(db: Session, reminder_id: str, user_id: str) -> Optional[Reminder]:
    """Flag a reminder as deleted.

    Returns:
        Optional[Reminder]: The deleted reminder, None if not found
    """
    reminder = get_reminder(db, reminder_id, user_id)
    if not reminder:
        return None

    now = utcnow()
    reminder.is_deleted = True
    reminder.deleted_at = now
    reminder.updated_at = now
    reminder.version = (reminder.version or 1) + 1
    db.commit()
    db.refresh(reminder)
    logger.info(f"Soft-deleted reminder {reminder.id}")
    return reminder


def mark_reminder_sent(db: Session, reminder_id: str, sent_at: datetime) -> Optional[Reminder]:
    """Record the time of the latest delivered notification."""
    reminder = get_reminder_by_id(db, reminder_id)
    if not reminder:
        return None
    reminder.last_sent_at = sent_at
    db.commit()
    db.refresh(reminder)
    return reminder


def get_notifications_for_user(db: Session, user_id: str, limit: int = 50) -> List[Notification]:
    """Most recent notifications first."""
    return db.query(Notification).filter(
        Notification.user_id == str(user_id)
    ).order_by(Notification.created_at.desc()).limit(limit).all()
