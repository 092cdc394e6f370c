# routers/notifications.py — In-app notification inbox
import uuid
from typing import Optional, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_permission, CurrentUser
from change_workflow import validate_object_id
from database import get_db_session
from directory import UserDirectory
from mailer import Mailer, get_mailer
from models import Notification, AuditLog, AuditEventType
from notifier import NotificationDispatcher, NotificationRequest

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# --- Schemas ---

class NotificationOut(BaseModel):
    id: str
    title: str
    message: str
    type: str
    priority: str
    read: bool
    user: str
    related_item: Optional[str] = None
    email_requested: bool
    emailed_at: Optional[str] = None
    created_at: str


class NotificationCreate(BaseModel):
    user: str
    title: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=2000)
    type: Literal["ticket", "change", "knowledge", "solution", "system"] = "system"
    priority: Literal["low", "medium", "high", "critical"] = "medium"
    related_item: Optional[str] = None
    send_email: bool = False


def _notif_out(n: Notification) -> dict:
    return NotificationOut(
        id=n.id, title=n.title, message=n.message,
        type=n.type, priority=n.priority, read=n.read,
        user=n.user_id, related_item=n.related_item,
        email_requested=n.email_requested,
        emailed_at=n.emailed_at.isoformat() if n.emailed_at else None,
        created_at=n.created_at.isoformat() if n.created_at else "",
    ).model_dump()


async def _own_notification(db: AsyncSession, notification_id: str, user: CurrentUser) -> Notification:
    validate_object_id(notification_id, "notification")
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user.id,
        )
    )
    notif = result.scalar_one_or_none()
    if not notif:
        raise HTTPException(404, f"Notification not found with id of {notification_id}")
    return notif


# ============================================================
# LIST
# ============================================================

@router.get("")
async def list_notifications(
    unread_only: bool = Query(default=False),
    type: Optional[str] = Query(None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    query = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        query = query.where(Notification.read == False)  # noqa: E712
    if type:
        query = query.where(Notification.type == type)
    query = query.order_by(Notification.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    notifications = [_notif_out(n) for n in result.scalars().all()]
    return {"count": len(notifications), "notifications": notifications}


# ============================================================
# COUNT
# ============================================================

@router.get("/unread/count")
async def unread_count(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    unread = (await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user.id,
            Notification.read == False,  # noqa: E712
        )
    )).scalar() or 0
    return {"count": unread}


# ============================================================
# CREATE (admin)
# ============================================================

@router.post("", status_code=201)
async def create_notification(
    data: NotificationCreate,
    db: AsyncSession = Depends(get_db_session),
    mailer: Mailer = Depends(get_mailer),
    user: CurrentUser = Depends(require_permission("send_notifications")),
):
    validate_object_id(data.user, "user")
    recipient = await UserDirectory(db).find_by_id(data.user)
    if not recipient:
        raise HTTPException(404, f"User not found with id of {data.user}")

    notif = await NotificationDispatcher(db, mailer).dispatch(NotificationRequest(
        title=data.title,
        message=data.message,
        recipient=recipient,
        type=data.type,
        priority=data.priority,
        related_item=data.related_item,
        email_requested=data.send_email,
    ))
    if notif is None:
        raise HTTPException(500, "Notification could not be created")

    db.add(AuditLog(
        event_type=AuditEventType.NOTIFICATION_BROADCAST.value,
        user_id=user.id,
        resource_type="notification",
        resource_id=notif.id,
        details={"recipient": data.user, "send_email": data.send_email},
        request_id=str(uuid.uuid4()),
    ))
    await db.commit()
    await db.refresh(notif)
    return _notif_out(notif)


# ============================================================
# MARK READ
# ============================================================

@router.put("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.read == False)  # noqa: E712
        .values(read=True)
    )
    await db.commit()
    return {"marked": result.rowcount or 0}


@router.put("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    notif = await _own_notification(db, notification_id, user)
    notif.read = True
    await db.commit()
    return _notif_out(notif)


# ============================================================
# DELETE
# ============================================================

@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    notif = await _own_notification(db, notification_id, user)
    await db.delete(notif)
    await db.commit()
    return {"status": "deleted", "id": notification_id}
