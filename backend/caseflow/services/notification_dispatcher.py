"""
Notification collaborator port

The workflow engine only emits (recipient, event type, payload) triples after a
successful commit and hands them to a scheduler, so an operation never waits on
delivery. Retries belong to the notification service.
"""
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from caseflow.core.config import get_settings
from caseflow.core.logging_config import LoggingConfig
from caseflow.core.metrics import notification_dispatch_total

logger = LoggingConfig.get_logger(__name__)


class NotificationEvent(str, Enum):
    """Lifecycle events published to the notification service"""
    CASE_CREATED = "case_created"
    PAYMENT_CONFIRMED = "payment_confirmed"
    COUNSELOR_ASSIGNED = "counselor_assigned"
    ANALYST_ASSIGNED = "analyst_assigned"
    PRESCRIPTION_ISSUED = "prescription_issued"
    ANALYSIS_COMPLETED = "analysis_completed"
    CYCLE_STARTED = "cycle_started"
    CASE_COMPLETED = "case_completed"
    CASE_CANCELLED = "case_cancelled"


@dataclass
class Notification:
    recipient_id: Optional[str]
    event_type: NotificationEvent
    payload: Dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(ABC):
    """Port to the external notification service"""

    @abstractmethod
    def dispatch(self, recipient_id: str, event_type: NotificationEvent, payload: Dict[str, Any]) -> None:
        """Deliver one notification; may raise on delivery failure"""


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Dispatcher that only writes notifications to the log"""

    def dispatch(self, recipient_id: str, event_type: NotificationEvent, payload: Dict[str, Any]) -> None:
        logger.info(
            f"Notification {event_type.value} for {recipient_id}",
            extra={"recipient_id": recipient_id, "event_type": event_type.value, "payload": payload}
        )


class HttpNotificationDispatcher(NotificationDispatcher):
    """Dispatcher that POSTs notifications to a webhook"""

    def __init__(self, webhook_url: str, timeout_seconds: float = 5.0, client: Optional[httpx.Client] = None):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    def dispatch(self, recipient_id: str, event_type: NotificationEvent, payload: Dict[str, Any]) -> None:
        body = {
            "recipient_id": recipient_id,
            "event_type": event_type.value,
            "payload": payload,
        }
        if self._client is not None:
            response = self._client.post(self.webhook_url, json=body, timeout=self.timeout_seconds)
            response.raise_for_status()
            return

        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(
                self.webhook_url,
                json=body,
                headers={"Content-Type": "application/json"}
            )
            response.raise_for_status()


def dispatch_all(dispatcher: NotificationDispatcher, notifications: List[Notification]) -> int:
    """
    Fire-and-forget delivery of collected notifications

    Each notification is attempted at most once. Failures are logged and counted,
    never raised.

    Returns:
        Number of notifications delivered
    """
    settings = get_settings()
    sent = 0
    for notification in notifications:
        event = notification.event_type.value
        if not settings.notifications_enabled or not notification.recipient_id:
            notification_dispatch_total.labels(event_type=event, status="skipped").inc()
            continue
        try:
            dispatcher.dispatch(notification.recipient_id, notification.event_type, notification.payload)
        except Exception as e:
            notification_dispatch_total.labels(event_type=event, status="failed").inc()
            logger.warning(
                f"Notification dispatch failed: {e}",
                exc_info=True,
                extra={
                    "recipient_id": notification.recipient_id,
                    "event_type": event,
                    "error_type": type(e).__name__,
                }
            )
            continue
        notification_dispatch_total.labels(event_type=event, status="sent").inc()
        sent += 1
    return sent


# Takes a callable and its arguments and runs it later, e.g. BackgroundTasks.add_task
NotificationScheduler = Callable[..., Any]


def dispatch_in_background(func: Callable[..., Any], *args: Any) -> None:
    """Run a dispatch call on a daemon thread; the caller returns immediately"""
    thread = threading.Thread(target=func, args=args, daemon=True, name="notification-dispatch")
    thread.start()


def get_notification_dispatcher() -> NotificationDispatcher:
    """Dispatcher selected by settings: webhook when configured, log otherwise"""
    settings = get_settings()
    if settings.notification_webhook_url:
        return HttpNotificationDispatcher(
            settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
        )
    return LoggingNotificationDispatcher()
