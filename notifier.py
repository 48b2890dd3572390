"""Notification delivery for fired reminders.

Each notification is stored per user and, when push is enabled, forwarded to
the push gateway over HTTP. Failures raise NotificationDeliveryError so the
job that triggered the notification is marked failed and retried by the queue.
"""

import uuid
from typing import Iterable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import Notification, utcnow
from exceptions import NotificationDeliveryError
from logger_config import setup_logger

logger = setup_logger(__name__, 'worker.log')


class NotificationService:
    """Stores notifications and pushes them to users' devices."""

    def __init__(
        self,
        session_factory,
        *,
        push_enabled: bool = settings.PUSH_ENABLED,
        push_api_url: str = settings.PUSH_API_URL,
        timeout: float = settings.PUSH_TIMEOUT,
    ):
        self.session_factory = session_factory
        self.push_enabled = push_enabled
        self.push_api_url = push_api_url.rstrip("/")
        self.timeout = timeout

    async def notify(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        metadata: Optional[dict] = None,
        notification_type: str = "reminder",
    ) -> int:
        """Notify each user once.

        Returns:
            int: Number of users notified (0 when user_ids is empty)

        Raises:
            NotificationDeliveryError: If storing or pushing fails
        """
        recipients = [str(user_id) for user_id in user_ids if user_id]
        if not recipients:
            return 0

        self._save(recipients, title, body, metadata or {}, notification_type)
        if self.push_enabled:
            await self._push(recipients, title, body, metadata or {})
        return len(recipients)

    def _save(self, recipients, title, body, metadata, notification_type):
        db = self.session_factory()
        try:
            now = utcnow()
            for user_id in recipients:
                db.add(Notification(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    type=notification_type,
                    title=title,
                    message=body,
                    details=metadata,
                    created_at=now,
                ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise NotificationDeliveryError(f"Unable to store notification: {e}") from e
        finally:
            db.close()

    async def _push(self, recipients, title, body, metadata):
        api_url = f"{self.push_api_url}/api/push/send"
        payload = {
            "user_ids": recipients,
            "title": title,
            "body": body,
            "metadata": metadata,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(api_url, json=payload)
        except httpx.TimeoutException as e:
            raise NotificationDeliveryError(f"Timeout while pushing notification to {api_url}") from e
        except httpx.RequestError as e:
            raise NotificationDeliveryError(f"Network error while pushing notification: {e}") from e

        if response.status_code >= 300:
            raise NotificationDeliveryError(
                f"Push gateway rejected notification. Status: {response.status_code}, Response: {response.text}"
            )
        logger.info(f"Pushed '{title}' to {len(recipients)} user(s)")
