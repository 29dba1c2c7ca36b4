"""
Tests for notification dispatch
"""
import json

import httpx

from caseflow.services.notification_dispatcher import (
    HttpNotificationDispatcher, LoggingNotificationDispatcher, Notification,
    NotificationEvent, dispatch_all, get_notification_dispatcher)

WEBHOOK_URL = "http://notifications.local/hooks/caseflow"


def test_http_dispatcher_posts_notification():
    """Test webhook payload"""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    dispatcher = HttpNotificationDispatcher(WEBHOOK_URL, client=client)

    dispatcher.dispatch("student-1", NotificationEvent.PAYMENT_CONFIRMED, {"case_id": "c-1"})

    assert len(requests) == 1
    assert str(requests[0].url) == WEBHOOK_URL
    assert json.loads(requests[0].content) == {
        "recipient_id": "student-1",
        "event_type": "payment_confirmed",
        "payload": {"case_id": "c-1"},
    }


def test_dispatch_all_isolates_failures():
    """Test a failing webhook does not stop the remaining notifications"""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(body["recipient_id"])
        if body["recipient_id"] == "planner-1":
            return httpx.Response(503)
        return httpx.Response(200)

    dispatcher = HttpNotificationDispatcher(
        WEBHOOK_URL, client=httpx.Client(transport=httpx.MockTransport(handler))
    )
    notifications = [
        Notification("planner-1", NotificationEvent.CASE_CANCELLED, {"reason": "withdrawn"}),
        Notification("student-1", NotificationEvent.CASE_CANCELLED, {"reason": "withdrawn"}),
    ]

    sent = dispatch_all(dispatcher, notifications)

    assert sent == 1
    assert calls == ["planner-1", "student-1"]


def test_dispatch_all_skips_missing_recipient(dispatcher):
    """Test notifications without a recipient are skipped"""
    notifications = [
        Notification(None, NotificationEvent.ANALYST_ASSIGNED),
        Notification("analyst-1", NotificationEvent.ANALYST_ASSIGNED),
    ]

    assert dispatch_all(dispatcher, notifications) == 1
    assert dispatcher.recipients_of(NotificationEvent.ANALYST_ASSIGNED) == ["analyst-1"]


def test_default_dispatcher_logs():
    """Test the dispatcher chosen without a webhook"""
    dispatcher = get_notification_dispatcher()

    assert isinstance(dispatcher, LoggingNotificationDispatcher)
    dispatcher.dispatch("student-1", NotificationEvent.CASE_CREATED, {"case_id": "c-1"})
