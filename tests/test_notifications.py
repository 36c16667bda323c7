"""
Tests for the notification sink and its delivery channels.
"""
from datetime import timedelta
from unittest import mock

import pytest
import requests

from crewboard.errors import NotFound
from crewboard.notifications import NotificationSink, TelegramDelivery, WebhookDelivery
from crewboard.schema import Notification, NotificationType, utc_now

ALICE = "alice@example.com"
BOB = "bob@example.com"


def make_notification(recipient=ALICE, kind=NotificationType.ASSIGNED):
    return Notification(
        notification_id="n1",
        recipient=recipient,
        type=kind,
        title="New Task Assigned",
        message="You were assigned to: x",
        task_id="t1",
    )


class TestSink:

    def test_emit_and_list(self, sink):
        sink.emit("Alice@Example.com", NotificationType.ASSIGNED, "Hi", "msg", task_id="t1",
                  metadata={"priority": "high"})
        notifications = sink.list_for(ALICE)
        assert len(notifications) == 1
        assert notifications[0].recipient == ALICE
        assert notifications[0].metadata == {"priority": "high"}
        assert notifications[0].read is False

    def test_list_is_newest_first(self, sink):
        now = utc_now()
        sink.emit(ALICE, NotificationType.STALE, "old", "m", created_at=now - timedelta(hours=2))
        sink.emit(ALICE, NotificationType.STALE, "new", "m", created_at=now)
        assert [n.title for n in sink.list_for(ALICE)] == ["new", "old"]

    def test_recently_sent_respects_window(self, sink):
        now = utc_now()
        sink.emit(ALICE, NotificationType.DEADLINE_OVERDUE, "t", "m", task_id="t1", created_at=now)
        assert sink.recently_sent(ALICE, "t1", NotificationType.DEADLINE_OVERDUE, now - timedelta(hours=4))
        assert not sink.recently_sent(ALICE, "t1", NotificationType.DEADLINE_OVERDUE, now + timedelta(seconds=1))
        assert not sink.recently_sent(ALICE, "t1", NotificationType.DEADLINE_APPROACHING, now - timedelta(hours=4))
        assert not sink.recently_sent(BOB, "t1", NotificationType.DEADLINE_OVERDUE, now - timedelta(hours=4))

    def test_mark_read(self, sink):
        first = sink.emit(ALICE, NotificationType.STALE, "a", "m")
        sink.emit(ALICE, NotificationType.STALE, "b", "m")
        assert sink.unread_count(ALICE) == 2

        sink.mark_read(first.notification_id, ALICE)
        assert sink.unread_count(ALICE) == 1
        assert len(sink.list_for(ALICE, unread_only=True)) == 1

        assert sink.mark_all_read(ALICE) == 1
        assert sink.unread_count(ALICE) == 0

    def test_cannot_mark_someone_elses_notification(self, sink):
        n = sink.emit(ALICE, NotificationType.STALE, "a", "m")
        with pytest.raises(NotFound):
            sink.mark_read(n.notification_id, BOB)
        assert sink.unread_count(ALICE) == 1

    def test_delivery_failure_keeps_record(self, db_path):
        channel = mock.Mock()
        channel.deliver.return_value = False
        sink = NotificationSink(db_path, deliveries=[channel])
        sink.emit(ALICE, NotificationType.ASSIGNED, "t", "m")
        channel.deliver.assert_called_once()
        assert len(sink.list_for(ALICE)) == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Delivery channels
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_webhook_posts_json():
    with mock.patch("crewboard.notifications.requests.post") as post:
        post.return_value = mock.Mock(ok=True, status_code=200)
        assert WebhookDelivery("http://hooks.local/n").deliver(make_notification())
        _, kwargs = post.call_args
        assert kwargs["timeout"] == 2.0
        assert '"recipient": "alice@example.com"' in kwargs["data"]


def test_webhook_failure_is_logged_not_raised():
    with mock.patch("crewboard.notifications.requests.post",
                    side_effect=requests.ConnectionError("refused")):
        assert WebhookDelivery("http://hooks.local/n").deliver(make_notification()) is False


def test_telegram_skips_unmapped_recipients():
    delivery = TelegramDelivery("token", {"Alice@Example.com": "42"})
    with mock.patch.object(delivery, "_send") as send:
        assert delivery.deliver(make_notification(recipient=BOB)) is False
        send.assert_not_called()


def test_telegram_sends_to_mapped_chat():
    delivery = TelegramDelivery("token", {"Alice@Example.com": "42"})
    with mock.patch.object(delivery, "_send", new=mock.AsyncMock()) as send:
        assert delivery.deliver(make_notification()) is True
        chat_id, text = send.call_args[0]
        assert chat_id == "42"
        assert "New Task Assigned" in text


def test_telegram_failure_returns_false():
    delivery = TelegramDelivery("token", {ALICE: "42"})
    with mock.patch.object(delivery, "_send", new=mock.AsyncMock(side_effect=RuntimeError("boom"))):
        assert delivery.deliver(make_notification()) is False
