"""
services/notification/dispatcher.py
Fire-and-forget notifications for booking transitions.
notify() hands the payload to a Celery task and returns. It never raises:
the transition it reports on has already been committed.
"""

import logging
from enum import Enum
from typing import Optional

from config.settings import settings

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    BOOKING_REQUESTED_TO_COACH = "booking_requested_to_coach"
    BOOKING_REQUEST_SUBMITTED_TO_ATHLETE = "booking_request_submitted_to_athlete"
    BOOKING_STATUS_CHANGED_TO_ATHLETE = "booking_status_changed_to_athlete"


class NotificationDispatcher:
    def __init__(self, enabled: Optional[bool] = None):
        self._enabled = settings.NOTIFICATIONS_ENABLED if enabled is None else enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def notify(self, event: NotificationEvent, payload: dict) -> None:
        if not self.enabled:
            return
        try:
            self._enqueue(NotificationEvent(event), payload)
        except Exception as e:
            logger.warning(f"Notification {event} for booking {payload.get('booking_id')} not queued: {e}")

    def _enqueue(self, event: NotificationEvent, payload: dict) -> None:
        from tasks.notification_tasks import TASKS_BY_EVENT

        TASKS_BY_EVENT[event].apply_async(kwargs={"payload": payload}, retry=False)


_notifier: Optional[NotificationDispatcher] = None


def get_notifier() -> NotificationDispatcher:
    """FastAPI dependency."""
    global _notifier
    if _notifier is None:
        _notifier = NotificationDispatcher()
    return _notifier
