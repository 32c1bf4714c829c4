"""
Notification dispatch.

Domain operations never talk to the mail server or the websocket layer.
They append events to an ``Outbox``; ``NotificationDispatcher.dispatch``
persists the notification records and hands email and realtime push to
FastAPI background tasks, which only log their failures.
"""
import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks
from pymongo.errors import BulkWriteError

import config
from database import DataStore, serialize_doc
from schemas import Notification

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    user_id: str
    type: str
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    priority: str = "normal"

    def to_document(self) -> Dict[str, Any]:
        return Notification(
            user_id=self.user_id,
            type=self.type,
            title=self.title,
            message=self.message,
            metadata=self.metadata,
            priority=self.priority,
        ).model_dump()


@dataclass
class BulkNotificationEvent:
    events: List[NotificationEvent]


@dataclass
class EmailEvent:
    to: str
    subject: str
    body: str


@dataclass
class Outbox:
    notifications: List[NotificationEvent] = field(default_factory=list)
    bulk: List[BulkNotificationEvent] = field(default_factory=list)
    emails: List[EmailEvent] = field(default_factory=list)

    def notify(self, user_id: str, type: str, title: str, message: str, metadata=None, priority: str = "normal"):
        self.notifications.append(NotificationEvent(user_id, type, title, message, metadata or {}, priority))

    def notify_many(self, user_ids: List[str], type: str, title: str, message: str, metadata=None, priority: str = "normal"):
        events = [NotificationEvent(uid, type, title, message, metadata or {}, priority) for uid in user_ids]
        if events:
            self.bulk.append(BulkNotificationEvent(events))

    def email(self, to: Optional[str], subject: str, body: str):
        if to:
            self.emails.append(EmailEvent(to, subject, body))

    def __len__(self):
        return len(self.notifications) + sum(len(b.events) for b in self.bulk) + len(self.emails)


class Mailer:
    def __init__(self, host=config.SMTP_HOST, port=config.SMTP_PORT, user=config.SMTP_USER,
                 password=config.SMTP_PASSWORD, sender=config.EMAIL_FROM):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def send(self, to: str, subject: str, body: str) -> None:
        if not self.enabled:
            logger.debug("SMTP not configured, skipping email to %s: %s", to, subject)
            return
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password or "")
            smtp.send_message(msg)


def send_email_quietly(mailer: Mailer, event: EmailEvent) -> None:
    try:
        mailer.send(event.to, event.subject, event.body)
    except Exception as e:
        logger.error("Email to %s failed (%s): %s", event.to, event.subject, e)


async def push_quietly(gateway, user_id: str, payload: Dict[str, Any]) -> None:
    try:
        await gateway.push(user_id, payload)
    except Exception as e:
        logger.error("Realtime push to %s failed: %s", user_id, e)


class NotificationDispatcher:
    def __init__(self, store: DataStore, mailer: Mailer, gateway=None):
        self.store = store
        self.mailer = mailer
        self.gateway = gateway

    def create(self, user_id: str, type: str, title: str, message: str, metadata=None, priority: str = "normal") -> Dict[str, Any]:
        event = NotificationEvent(user_id, type, title, message, metadata or {}, priority)
        return self.store.insert("notification", event.to_document())

    def create_many(self, events: List[NotificationEvent]) -> List[Dict[str, Any]]:
        docs = [e.to_document() for e in events]
        try:
            ids = self.store.insert_many("notification", docs)
        except BulkWriteError as e:
            inserted = e.details.get("nInserted", 0)
            logger.error("Bulk notification insert stored %s of %s records: %s", inserted, len(docs), e.details.get("writeErrors"))
            return []
        for doc, _id in zip(docs, ids):
            doc["_id"] = _id
        return docs

    def dispatch(self, outbox: Outbox, background: Optional[BackgroundTasks] = None) -> List[Dict[str, Any]]:
        """Persist every notification now; schedule pushes and emails after the response."""
        created = [self.create(**vars(n)) for n in outbox.notifications]
        for bulk in outbox.bulk:
            created.extend(self.create_many(bulk.events))
        if background is None:
            if outbox.emails:
                logger.warning("No background runner, dropping %d email(s)", len(outbox.emails))
            return created
        if self.gateway is not None:
            for doc in created:
                background.add_task(push_quietly, self.gateway, doc["user_id"],
                                    {"event": "notification", "data": serialize_doc(doc)})
        for email in outbox.emails:
            background.add_task(send_email_quietly, self.mailer, email)
        return created

    # ----------------------
    # Reading / read state
    # ----------------------
    def list_for(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
        q: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            q["is_read"] = False
        return self.store.find("notification", q, sort=[("created_at", -1)], limit=limit)

    def mark_read(self, user_id: str, notification_id: str) -> Optional[Dict[str, Any]]:
        doc = self.store.get("notification", notification_id)
        if not doc or doc.get("user_id") != user_id:
            return None
        return self.store.update("notification", notification_id, {"is_read": True})

    def mark_all_read(self, user_id: str) -> int:
        res = self.store.update_where("notification", {"user_id": user_id, "is_read": False}, {"$set": {"is_read": True}})
        return res.modified_count


mailer = Mailer()


def get_mailer() -> Mailer:
    return mailer
