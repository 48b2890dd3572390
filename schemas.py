"""Pydantic schemas for the Reminder Scheduling Service.

Date fields on requests are accepted as strings: full ISO-8601 instants
("2025-10-26T15:00:00Z", "2025-10-26T15:00:00+05:30") or date-only values
("2025-10-26"), which are read as local midnight in the reminder's timezone.
"""

import enum
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from timezone_utils import parse_date_input_to_utc


def _check_date_input(value: Optional[str]) -> Optional[str]:
    """Reject strings that cannot be read as a date; keep the original text."""
    if value is not None:
        parse_date_input_to_utc(value)
    return value


def _enum_value(value):
    return value.value if isinstance(value, enum.Enum) else value


class RecurrenceSchema(BaseModel):
    """Recurrence rule of a reminder."""

    cadence: str = Field(
        default="none",
        pattern="^(none|daily|weekly|custom)$",
        description="Recurrence family"
    )

    interval: int = Field(
        default=1,
        ge=1,
        le=365,
        description="Every Nth day (daily) or week (weekly)"
    )

    days_of_week: List[int] = Field(
        default_factory=list,
        description="Weekdays for weekly cadence, 0 = Sunday .. 6 = Saturday",
        examples=[[1, 3, 5]]
    )

    custom_rule: str = Field(
        default="",
        max_length=280,
        description="Free-text rule for the custom cadence"
    )

    anchor_date: Optional[str] = Field(
        None,
        description="Reference instant for the series (defaults to scheduled_at)"
    )

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, value: List[int]) -> List[int]:
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week must be integers between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @field_validator("anchor_date")
    @classmethod
    def validate_anchor_date(cls, value: Optional[str]) -> Optional[str]:
        return _check_date_input(value)


class ReminderCreate(BaseModel):
    """Schema for creating a new reminder."""

    user_id: str = Field(..., min_length=1, max_length=120, description="Owner of the reminder")

    title: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Reminder title",
        examples=["Doctor Appointment", "Team Meeting"]
    )

    description: Optional[str] = Field(default="", max_length=2000)

    scheduled_at: str = Field(
        ...,
        description="First occurrence: ISO 8601 instant or YYYY-MM-DD in the reminder's timezone",
        examples=["2025-10-26T15:00:00Z", "2025-10-26"]
    )

    timezone: Optional[str] = Field(
        None,
        max_length=60,
        description="IANA timezone; unknown zones fall back to UTC",
        examples=["America/New_York"]
    )

    recurrence: Optional[RecurrenceSchema] = None

    category: Optional[str] = Field(default="personal", max_length=50)

    priority: str = Field(
        default="medium",
        pattern="^(low|medium|high|critical)$"
    )

    @field_validator("scheduled_at")
    @classmethod
    def validate_scheduled_at(cls, value: Optional[str]) -> Optional[str]:
        return _check_date_input(value)


class ReminderUpdate(BaseModel):
    """Schema for updating an existing reminder.

    All fields are optional - only provided fields will be updated.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    scheduled_at: Optional[str] = None
    timezone: Optional[str] = Field(None, max_length=60)
    recurrence: Optional[RecurrenceSchema] = None
    category: Optional[str] = Field(None, max_length=50)
    priority: Optional[str] = Field(None, pattern="^(low|medium|high|critical)$")
    status: Optional[str] = Field(None, pattern="^(pending|completed|cancelled)$")

    @field_validator("scheduled_at")
    @classmethod
    def validate_scheduled_at(cls, value: Optional[str]) -> Optional[str]:
        return _check_date_input(value)


class RecurrenceResponse(BaseModel):
    cadence: str
    interval: int
    days_of_week: List[int]
    custom_rule: str
    anchor_date: Optional[datetime] = None

    @field_validator("cadence", mode="before")
    @classmethod
    def cadence_value(cls, value):
        return _enum_value(value)

    class Config:
        from_attributes = True


class ReminderResponse(BaseModel):
    """Schema for reminder responses. All datetimes are UTC."""

    id: str
    user_id: str
    title: str
    description: str
    scheduled_at: datetime
    timezone: str
    recurrence: RecurrenceResponse
    category: str
    priority: str
    status: str
    is_deleted: bool
    last_sent_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime

    @field_validator("priority", "status", mode="before")
    @classmethod
    def enum_values(cls, value):
        return _enum_value(value)

    class Config:
        """Pydantic configuration"""
        from_attributes = True


class OccurrenceResponse(BaseModel):
    reminder_id: str
    occurrence_date: datetime
    local: Dict[str, str]

    class Config:
        from_attributes = True


class JobResponse(BaseModel):
    id: int
    reminder_id: str
    occurrence_date: datetime
    run_at: datetime
    status: str
    attempts: int
    last_error: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, value):
        return _enum_value(value)

    class Config:
        from_attributes = True


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    type: str
    title: str
    message: str
    details: Dict = Field(default_factory=dict)
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True
