# notifier.py — In-app notification persistence + best-effort email fan-out
# Never raises past its boundary: a failed write or send is logged and the caller carries on.
import os
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from mailer import Mailer
from models import Notification, NotificationType, NotificationPriority, User, utcnow
from telemetry import start_span

logger = logging.getLogger("itsm.notifier")

MAIL_CONCURRENCY = int(os.getenv("MAIL_CONCURRENCY", "8"))
TITLE_MAX_LENGTH = 100


@dataclass
class NotificationRequest:
    title: str
    message: str
    recipient: User
    type: str = NotificationType.SYSTEM.value
    priority: str = NotificationPriority.MEDIUM.value
    related_item: Optional[str] = None
    email_requested: bool = False


@dataclass
class _Outgoing:
    notification_id: str
    to: str
    subject: str
    body: str


class NotificationDispatcher:
    def __init__(self, db: AsyncSession, mailer: Mailer, concurrency: int = MAIL_CONCURRENCY):
        self.db = db
        self.mailer = mailer
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    async def dispatch(self, req: NotificationRequest) -> Optional[Notification]:
        results = await self.dispatch_many([req])
        return results[0]

    async def dispatch_many(self, requests: Sequence[NotificationRequest]) -> List[Optional[Notification]]:
        """Persist one notification per request, then send the requested emails together.

        Recipient addresses are read up front: a rollback after a failed write
        expires every instance in the session, and expired rows cannot be
        lazily reloaded on an AsyncSession.
        """
        recipients = [(req.recipient.id, req.recipient.email) for req in requests]
        persisted: List[Optional[Notification]] = []
        outgoing: List[_Outgoing] = []

        with start_span("notifications.dispatch", recipients=len(requests)):
            for req, (user_id, email) in zip(requests, recipients):
                notif, title = await self._persist(req, user_id)
                persisted.append(notif)
                if notif is not None and req.email_requested:
                    outgoing.append(_Outgoing(notif.id, email, title, req.message))

            if outgoing:
                outcomes = await asyncio.gather(
                    *(self._send_email(mail) for mail in outgoing),
                    return_exceptions=True,
                )
                delivered = [mail.notification_id for mail, ok in zip(outgoing, outcomes) if ok is True]
                await self._mark_emailed(delivered)
        return persisted

    async def _persist(self, req: NotificationRequest, user_id: str) -> Tuple[Optional[Notification], str]:
        priority = req.priority if req.priority in NotificationPriority._value2member_map_ else NotificationPriority.MEDIUM.value
        title = (req.title or "")[:TITLE_MAX_LENGTH]
        try:
            notif = Notification(
                user_id=user_id,
                title=title,
                message=req.message,
                type=req.type,
                priority=priority,
                related_item=req.related_item,
                email_requested=req.email_requested,
            )
            self.db.add(notif)
            await self.db.commit()
        except Exception:
            logger.error(f"Error creating notification for user {user_id}", exc_info=True)
            await self.db.rollback()
            return None, title
        return notif, title

    async def _send_email(self, mail: _Outgoing) -> bool:
        async with self._semaphore:
            try:
                await self.mailer.send(to=mail.to, subject=mail.subject, body=mail.body)
            except Exception as e:
                logger.warning(f"Email could not be sent for notification {mail.notification_id} to {mail.to}: {e}")
                return False
        return True

    async def _mark_emailed(self, notification_ids: List[str]) -> None:
        if not notification_ids:
            return
        try:
            await self.db.execute(
                update(Notification)
                .where(Notification.id.in_(notification_ids))
                .values(emailed_at=utcnow())
            )
            await self.db.commit()
        except Exception:
            logger.error("Could not record email delivery time", exc_info=True)
            await self.db.rollback()
