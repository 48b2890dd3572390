"""Exceptions raised by the Reminder Scheduling Service.

Invalid timezones, stale occurrences and orphaned jobs are recovered where
they are detected and have no exception type here.
"""


class ReminderServiceError(Exception):
    """Base class for service errors."""


class DateParseError(ReminderServiceError, ValueError):
    """Date input could not be interpreted as an instant."""


class JobStoreUnavailableError(ReminderServiceError):
    """The job store could not be read or written.

    Callers must treat the surrounding reminder mutation as failed and retry.
    """


class NotificationDeliveryError(ReminderServiceError):
    """The notification sink rejected or failed to deliver a notification."""


class ReminderNotFoundError(ReminderServiceError):
    """No live reminder with the requested id exists for the user."""

    def __init__(self, reminder_id: str):
        super().__init__(f"Reminder {reminder_id} not found")
        self.reminder_id = reminder_id
