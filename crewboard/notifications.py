"""
Notification sink: persists directed notifications and optionally delivers them.

Delivery is best-effort. A delivery failure is logged and never undoes the
persisted record. A persistence failure raises TransientResolutionFailure so
callers (the deadline scheduler) can log it and move on to the next recipient.
"""
import asyncio
import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import requests
from telegram import Bot

from .db import connect, ensure_parent, reading, transaction
from .errors import NotFound, TransientResolutionFailure
from .schema import (
    Notification,
    NotificationType,
    normalize_identity,
    parse_datetime,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Delivery channels
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class WebhookDelivery:
    """POSTs each notification as JSON to a webhook."""

    def __init__(self, url: str, timeout: float = 2.0):
        self.url = url
        self.timeout = timeout

    def deliver(self, notification: Notification) -> bool:
        try:
            r = requests.post(
                self.url,
                data=json.dumps(notification.to_dict()),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Webhook delivery failed for {notification.notification_id}: {e}")
            return False
        if not r.ok:
            logger.error(f"Webhook rejected {notification.notification_id}: HTTP {r.status_code}")
        return r.ok


class TelegramDelivery:
    """Sends notifications to Telegram chats mapped from recipient identities."""

    def __init__(self, token: str, chats: Dict[str, str]):
        self.token = token
        self.chats = {normalize_identity(k): v for k, v in chats.items()}

    @staticmethod
    def format(notification: Notification) -> str:
        icon = {
            NotificationType.DEADLINE_OVERDUE: "⏰",
            NotificationType.DEADLINE_APPROACHING: "⌛",
            NotificationType.ASSIGNED: "📌",
            NotificationType.STALE: "💤",
        }.get(notification.type, "🔔")
        return f"{icon} {notification.title}\n{notification.message}"

    async def _send(self, chat_id: str, text: str):
        async with Bot(self.token) as bot:
            await bot.send_message(chat_id=chat_id, text=text)

    def deliver(self, notification: Notification) -> bool:
        chat_id = self.chats.get(notification.recipient)
        if not chat_id:
            return False
        try:
            asyncio.run(self._send(chat_id, self.format(notification)))
            return True
        except Exception as e:
            logger.error(f"Telegram delivery to {chat_id} failed: {e}")
            return False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Sink
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class NotificationSink:
    """SQLite-backed notification table plus optional delivery channels."""

    def __init__(self, db_path: str, deliveries: Optional[Iterable] = None):
        self.db_path = db_path
        self.deliveries = list(deliveries or [])
        ensure_parent(db_path)
        self._init_schema()

    def _init_schema(self):
        conn = connect(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    notification_id TEXT PRIMARY KEY,
                    recipient TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    task_id TEXT,
                    metadata TEXT,  -- JSON object
                    created_at TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0
                )
            """)
            # Supports the de-duplication lookup of the deadline scheduler
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_dedup
                ON notifications(recipient, task_id, type, created_at)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_unread
                ON notifications(recipient, read)
            """)
        finally:
            conn.close()

    def emit(
        self,
        recipient: str,
        type: NotificationType,
        title: str,
        message: str,
        task_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Notification:
        """Persist one notification, then hand it to the delivery channels."""
        notification = Notification(
            notification_id=uuid.uuid4().hex,
            recipient=normalize_identity(recipient),
            type=type,
            title=title,
            message=message,
            task_id=task_id,
            metadata=metadata or {},
            created_at=created_at or utc_now(),
        )
        try:
            with transaction(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO notifications
                    (notification_id, recipient, type, title, message, task_id, metadata, created_at, read)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        notification.notification_id,
                        notification.recipient,
                        notification.type.value,
                        notification.title,
                        notification.message,
                        notification.task_id,
                        json.dumps(notification.metadata),
                        to_iso(notification.created_at),
                    ),
                )
        except sqlite3.Error as e:
            raise TransientResolutionFailure(
                f"Failed to store notification for {notification.recipient}", details=str(e)
            )

        for channel in self.deliveries:
            channel.deliver(notification)
        return notification

    def recently_sent(
        self,
        recipient: str,
        task_id: str,
        type: NotificationType,
        since: datetime,
    ) -> bool:
        """True if a notification of this type for this task reached the recipient since `since`."""
        with reading(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT 1 FROM notifications
                WHERE recipient = ? AND task_id = ? AND type = ? AND created_at >= ?
                LIMIT 1
                """,
                (normalize_identity(recipient), task_id, type.value, to_iso(since)),
            ).fetchone()
        return row is not None

    def list_for(self, recipient: str, unread_only: bool = False, limit: int = 100) -> List[Notification]:
        """Newest first."""
        sql = "SELECT * FROM notifications WHERE recipient = ?"
        params: list = [normalize_identity(recipient)]
        if unread_only:
            sql += " AND read = 0"
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with reading(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_notification(r) for r in rows]

    def unread_count(self, recipient: str) -> int:
        with reading(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE recipient = ? AND read = 0",
                (normalize_identity(recipient),),
            ).fetchone()
        return row[0]

    def mark_read(self, notification_id: str, recipient: str) -> None:
        """Recipients can only flip their own notifications."""
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE notifications SET read = 1 WHERE notification_id = ? AND recipient = ?",
                (notification_id, normalize_identity(recipient)),
            )
            if cur.rowcount == 0:
                raise NotFound(f"Notification not found: {notification_id}")

    def mark_all_read(self, recipient: str) -> int:
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE notifications SET read = 1 WHERE recipient = ? AND read = 0",
                (normalize_identity(recipient),),
            )
            return cur.rowcount

    def _row_to_notification(self, row: sqlite3.Row) -> Notification:
        data = dict(row)
        try:
            metadata = json.loads(data.get("metadata") or "{}")
        except (json.JSONDecodeError, TypeError):
            metadata = {}
        return Notification(
            notification_id=data["notification_id"],
            recipient=data["recipient"],
            type=NotificationType(data["type"]),
            title=data["title"],
            message=data["message"],
            task_id=data.get("task_id"),
            metadata=metadata,
            created_at=parse_datetime(data["created_at"]),
            read=bool(data["read"]),
        )
