# change_workflow.py — Change request lifecycle and review workflow
# - Create / read / list / update / delete with owner-or-role authorization
# - Reviewer roster with per-reviewer votes, comment thread, file attachments
# - Workflow notifications on create, status change and reviewer assignment
# - Optional status transition table (CHANGE_ENFORCE_TRANSITIONS=true)

import os
import re
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, List, Literal, Tuple, Iterable

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from directory import UserDirectory
from exceptions import ValidationError, NotFoundError, AuthorizationError, UploadError
from models import (
    ChangeRequest, ChangeStatus, ReviewStatus, NotificationType, AuditLog, AuditEventType,
    User, utcnow,
)
from notifier import NotificationDispatcher, NotificationRequest
from permissions import (
    CHANGE_EDIT_ROLES, CHANGE_DELETE_ROLES, CHANGE_VIEW_ALL_ROLES, CHANGE_NOTIFY_ROLES, to_role,
)
from storage import StorageError

logger = logging.getLogger("itsm.changes")

MAX_FILE_UPLOAD = int(os.getenv("MAX_FILE_UPLOAD", "1000000"))
ENFORCE_TRANSITIONS = os.getenv("CHANGE_ENFORCE_TRANSITIONS", "false").lower() == "true"
ATTACHMENT_FOLDER = "changes"

OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")

# draft → submitted → under-review → approved|rejected → implemented → closed
STATUS_TRANSITIONS = {
    ChangeStatus.DRAFT.value: {ChangeStatus.SUBMITTED.value},
    ChangeStatus.SUBMITTED.value: {ChangeStatus.UNDER_REVIEW.value, ChangeStatus.DRAFT.value},
    ChangeStatus.UNDER_REVIEW.value: {ChangeStatus.APPROVED.value, ChangeStatus.REJECTED.value},
    ChangeStatus.APPROVED.value: {ChangeStatus.IMPLEMENTED.value},
    ChangeStatus.REJECTED.value: {ChangeStatus.DRAFT.value, ChangeStatus.CLOSED.value},
    ChangeStatus.IMPLEMENTED.value: {ChangeStatus.CLOSED.value},
    ChangeStatus.CLOSED.value: set(),
}

ImpactLiteral = Literal["low", "medium", "high", "critical"]
StatusLiteral = Literal["draft", "submitted", "under-review", "approved", "rejected", "implemented", "closed"]
CategoryLiteral = Literal["hardware", "software", "network", "security", "process", "other"]
ReviewLiteral = Literal["pending", "approved", "rejected"]

# Columns that may not be cleared once set
REQUIRED_FIELDS = (
    "title", "description", "impact", "status", "category",
    "planned_start_date", "planned_end_date",
)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class ReviewerIn(BaseModel):
    user: str
    status: ReviewLiteral = "pending"
    comments: Optional[str] = Field(None, max_length=2000)


class CommentIn(BaseModel):
    # Author and timestamp are stamped server-side; client-sent values are ignored
    text: str = Field(..., min_length=1, max_length=5000)


class ChangeCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1)
    impact: ImpactLiteral = "medium"
    status: StatusLiteral = "draft"
    category: CategoryLiteral = "other"
    planned_start_date: datetime
    planned_end_date: datetime
    actual_start_date: Optional[datetime] = None
    actual_end_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    reviewers: List[ReviewerIn] = []
    comments: List[CommentIn] = []

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v


class ChangeUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1)
    impact: Optional[ImpactLiteral] = None
    status: Optional[StatusLiteral] = None
    category: Optional[CategoryLiteral] = None
    planned_start_date: Optional[datetime] = None
    planned_end_date: Optional[datetime] = None
    actual_start_date: Optional[datetime] = None
    actual_end_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    reviewers: Optional[List[ReviewerIn]] = None
    comments: Optional[List[CommentIn]] = None

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v


class ReviewSubmit(BaseModel):
    status: ReviewLiteral
    comments: Optional[str] = Field(None, max_length=2000)


class CommentCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)


# ============================================================
# HELPERS
# ============================================================

def validate_object_id(value: str, label: str = "change") -> None:
    if not value or not OBJECT_ID_RE.match(value):
        raise ValidationError(f"Invalid {label} ID format: {value}")


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return _as_utc(dt).isoformat() if dt else None


def change_out(change: ChangeRequest) -> dict:
    return {
        "id": change.id,
        "title": change.title,
        "description": change.description,
        "impact": change.impact,
        "status": change.status,
        "category": change.category,
        "planned_start_date": _iso(change.planned_start_date),
        "planned_end_date": _iso(change.planned_end_date),
        "actual_start_date": _iso(change.actual_start_date),
        "actual_end_date": _iso(change.actual_end_date),
        "assigned_to": change.assigned_to,
        "reviewers": list(change.reviewers or []),
        "attachments": list(change.attachments or []),
        "comments": list(change.comments or []),
        "user": change.user_id,
        "created_at": _iso(change.created_at),
        "updated_at": _iso(change.updated_at),
    }


# ============================================================
# WORKFLOW ENGINE
# ============================================================

class ChangeWorkflow:
    """Business rules for change requests.

    Authorization is decided here from the caller's identity and the stored
    owner, so every entry point (REST route, seed script, test) gets the same
    checks. Notifications are sent after the mutation has been committed and
    never fail the operation that triggered them.
    """

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        storage,
        directory: UserDirectory,
        enforce_transitions: bool = ENFORCE_TRANSITIONS,
        max_upload: int = MAX_FILE_UPLOAD,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.storage = storage
        self.directory = directory
        self.enforce_transitions = enforce_transitions
        self.max_upload = max_upload

    # ── Loading & authorization ──────────────────────────────

    async def _load(self, change_id: str) -> ChangeRequest:
        validate_object_id(change_id)
        result = await self.db.execute(select(ChangeRequest).where(ChangeRequest.id == change_id))
        change = result.scalar_one_or_none()
        if not change:
            raise NotFoundError(f"Change not found with id of {change_id}")
        return change

    @staticmethod
    def _ensure_allowed(change: ChangeRequest, user: CurrentUser, roles: Iterable, action: str) -> None:
        if change.user_id == user.id:
            return
        try:
            role = to_role(user.role)
        except ValueError:
            role = None
        if role in roles:
            return
        raise AuthorizationError(f"User {user.id} is not authorized to {action} this change")

    # ── Field checks ─────────────────────────────────────────

    @staticmethod
    def _check_schedule(start: Optional[datetime], end: Optional[datetime]) -> None:
        if start and end and _as_utc(end) < _as_utc(start):
            raise ValidationError("Planned end date cannot be before the planned start date")

    def _check_transition(self, old: str, new: str) -> None:
        if not self.enforce_transitions or old == new:
            return
        if new not in STATUS_TRANSITIONS.get(old, set()):
            raise ValidationError(f"Cannot move change from {old} to {new}")

    async def _build_reviewers(self, entries: List[ReviewerIn], previous: List[dict]) -> Tuple[List[dict], List[User]]:
        ids = [e.user for e in entries]
        seen = set()
        for user_id in ids:
            validate_object_id(user_id, "reviewer")
            if user_id in seen:
                raise ValidationError(f"Reviewer {user_id} is listed more than once")
            seen.add(user_id)

        users = await self.directory.find_by_ids(ids)
        found = {u.id for u in users}
        for user_id in ids:
            if user_id not in found:
                raise ValidationError(f"Reviewer not found with id of {user_id}")

        prev_by_user = {r.get("user"): r for r in previous}
        now = utcnow().isoformat()
        roster = []
        for entry in entries:
            prev = prev_by_user.get(entry.user, {})
            reviewed_at = prev.get("reviewed_at") if prev.get("status") == entry.status else None
            if entry.status != ReviewStatus.PENDING.value and reviewed_at is None:
                reviewed_at = now
            roster.append({
                "user": entry.user,
                "status": entry.status,
                "comments": entry.comments,
                "reviewed_at": reviewed_at,
            })
        return roster, users

    @staticmethod
    def _build_comments(entries: List[CommentIn], user: CurrentUser, previous: Optional[List[dict]] = None) -> List[dict]:
        """Entries matching the stored thread position-for-position keep their author;
        anything else is attributed to the caller."""
        previous = previous or []
        now = _iso(utcnow())
        thread = []
        for i, c in enumerate(entries):
            prev = previous[i] if i < len(previous) else None
            if prev and prev.get("text") == c.text:
                thread.append({"text": c.text, "user": prev.get("user"), "created_at": prev.get("created_at")})
            else:
                thread.append({"text": c.text, "user": user.id, "created_at": now})
        return thread

    async def _resolve_assignee(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        validate_object_id(value, "user")
        if not await self.directory.find_by_id(value):
            raise ValidationError(f"Assigned user not found with id of {value}")
        return value

    def _audit(self, event: AuditEventType, change_id: str, user: CurrentUser, details: Optional[dict] = None) -> None:
        self.db.add(AuditLog(
            request_id=str(uuid.uuid4()),
            user_id=user.id,
            event_type=event.value,
            resource_type="change_request",
            resource_id=change_id,
            details=details or {},
        ))

    # ── Operations ───────────────────────────────────────────

    async def create(self, data: ChangeCreate, user: CurrentUser) -> ChangeRequest:
        fields = data.model_dump()
        self._check_schedule(fields["planned_start_date"], fields["planned_end_date"])
        fields["assigned_to"] = await self._resolve_assignee(fields.get("assigned_to"))

        roster, reviewer_users = await self._build_reviewers(data.reviewers, previous=[])
        fields["reviewers"] = roster
        fields["comments"] = self._build_comments(data.comments, user)

        now = utcnow()
        change = ChangeRequest(
            **fields,
            attachments=[],
            user_id=user.id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(change)
        await self.db.flush()
        self._audit(AuditEventType.CHANGE_CREATED, change.id, user, {"status": change.status, "impact": change.impact})
        await self.db.commit()
        logger.info(f"Change {change.id} created by {user.id} (status={change.status})")

        await self._notify_created(change, user, reviewer_users)
        await self.db.refresh(change)
        return change

    async def get(self, change_id: str, user: CurrentUser) -> ChangeRequest:
        change = await self._load(change_id)
        self._ensure_allowed(change, user, CHANGE_VIEW_ALL_ROLES, "access")
        return change

    async def list_changes(
        self,
        owner_id: Optional[str] = None,
        status: Optional[str] = None,
        impact: Optional[str] = None,
        category: Optional[str] = None,
        assigned_to: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[int, List[ChangeRequest]]:
        """Newest first. ``owner_id`` restricts the result to one owner's changes."""
        query = select(ChangeRequest)
        if owner_id:
            query = query.where(ChangeRequest.user_id == owner_id)
        if status:
            query = query.where(ChangeRequest.status == status)
        if impact:
            query = query.where(ChangeRequest.impact == impact)
        if category:
            query = query.where(ChangeRequest.category == category)
        if assigned_to:
            query = query.where(ChangeRequest.assigned_to == assigned_to)
        if search:
            query = query.where(ChangeRequest.title.ilike(f"%{search}%"))

        total = (await self.db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
        result = await self.db.execute(
            query.order_by(ChangeRequest.created_at.desc()).offset(skip).limit(limit)
        )
        return total, list(result.scalars().all())

    async def update(self, change_id: str, data: ChangeUpdate, user: CurrentUser) -> ChangeRequest:
        change = await self._load(change_id)
        self._ensure_allowed(change, user, CHANGE_EDIT_ROLES, "update")

        fields = data.model_dump(exclude_unset=True)
        for name in REQUIRED_FIELDS:
            if name in fields and fields[name] is None:
                raise ValidationError(f"{name} cannot be empty")
        if "assigned_to" in fields:
            fields["assigned_to"] = await self._resolve_assignee(fields["assigned_to"])

        old_status = change.status
        old_reviewer_ids = {r.get("user") for r in (change.reviewers or [])}
        added_reviewers: List[User] = []

        if "reviewers" in fields:
            roster, reviewer_users = await self._build_reviewers(data.reviewers or [], previous=change.reviewers or [])
            fields["reviewers"] = roster
            added_reviewers = [u for u in reviewer_users if u.id not in old_reviewer_ids]
        if "comments" in fields:
            fields["comments"] = self._build_comments(data.comments or [], user, previous=change.comments or [])
        if "status" in fields:
            self._check_transition(old_status, fields["status"])
        self._check_schedule(
            fields.get("planned_start_date", change.planned_start_date),
            fields.get("planned_end_date", change.planned_end_date),
        )

        for name, value in fields.items():
            setattr(change, name, value)
        change.updated_at = utcnow()

        details = {"fields": sorted(fields)}
        if change.status != old_status:
            details["status"] = {"old": old_status, "new": change.status}
        self._audit(AuditEventType.CHANGE_UPDATED, change.id, user, details)
        await self.db.commit()
        logger.info(f"Change {change.id} updated by {user.id}: {', '.join(sorted(fields)) or 'no fields'}")

        await self._notify_updated(change, user, old_status, added_reviewers)
        await self.db.refresh(change)
        return change

    async def delete(self, change_id: str, user: CurrentUser) -> None:
        change = await self._load(change_id)
        self._ensure_allowed(change, user, CHANGE_DELETE_ROLES, "delete")

        self._audit(AuditEventType.CHANGE_DELETED, change.id, user, {"title": change.title})
        await self.db.delete(change)
        await self.db.commit()
        logger.info(f"Change {change_id} deleted by {user.id}")

    async def upload_attachment(
        self,
        change_id: str,
        filename: str,
        content_type: Optional[str],
        data: bytes,
        user: CurrentUser,
    ) -> ChangeRequest:
        change = await self._load(change_id)
        self._ensure_allowed(change, user, CHANGE_EDIT_ROLES, "update")

        if not filename or data is None:
            raise ValidationError("Please upload a file")
        if len(data) > self.max_upload:
            raise UploadError(f"Please upload a file less than {self.max_upload / 1000000:g}MB", 400)

        ext = os.path.splitext(filename)[1]
        stored_name = f"change_{change.id}_{int(time.time() * 1000)}{ext}"
        try:
            path = await self.storage.store(data, ATTACHMENT_FOLDER, stored_name, content_type)
        except StorageError as e:
            logger.error(f"Attachment upload for change {change.id} failed: {e}")
            raise UploadError("Problem with file upload", 500)

        change.attachments = list(change.attachments or []) + [{
            "name": stored_name,
            "path": path,
            "content_type": content_type,
            "size": len(data),
            "uploaded_at": utcnow().isoformat(),
        }]
        change.updated_at = utcnow()
        self._audit(AuditEventType.CHANGE_ATTACHMENT_ADDED, change.id, user, {"name": stored_name, "size": len(data)})
        await self.db.commit()
        logger.info(f"Attachment {stored_name} added to change {change.id}")
        return change

    async def add_comment(self, change_id: str, text: str, user: CurrentUser) -> ChangeRequest:
        change = await self.get(change_id, user)
        thread = [CommentIn(text=c["text"]) for c in (change.comments or [])]
        thread.append(CommentIn(text=text))
        return await self.update(change_id, ChangeUpdate(comments=thread), user)

    async def submit_review(self, change_id: str, status: str, comments: Optional[str], user: CurrentUser) -> ChangeRequest:
        """Record or replace the caller's own vote in the reviewer roster."""
        change = await self.get(change_id, user)
        mine = ReviewerIn(user=user.id, status=status, comments=comments)
        roster, replaced = [], False
        for entry in change.reviewers or []:
            if entry.get("user") == user.id:
                roster.append(mine)
                replaced = True
            else:
                roster.append(ReviewerIn(**entry))
        if not replaced:
            roster.append(mine)
        return await self.update(change_id, ChangeUpdate(reviewers=roster), user)

    # ── Notifications ────────────────────────────────────────

    @staticmethod
    def _review_requests(change: ChangeRequest, reviewers: List[User]) -> List[NotificationRequest]:
        return [
            NotificationRequest(
                title="Review Request",
                message=f'You have been requested to review change request "{change.title}"',
                recipient=reviewer,
                type=NotificationType.CHANGE.value,
                priority=change.impact,
                related_item=change.id,
                email_requested=True,
            )
            for reviewer in reviewers
        ]

    async def _notify_created(self, change: ChangeRequest, user: CurrentUser, reviewers: List[User]) -> None:
        try:
            recipients = await self.directory.find_by_role_in(CHANGE_NOTIFY_ROLES)
            requests = [
                NotificationRequest(
                    title="New Change Request",
                    message=f'A new change request "{change.title}" has been submitted by {user.name}',
                    recipient=recipient,
                    type=NotificationType.CHANGE.value,
                    priority=change.impact,
                    related_item=change.id,
                    email_requested=True,
                )
                for recipient in recipients
            ]
            requests.extend(self._review_requests(change, reviewers))
            if requests:
                await self.dispatcher.dispatch_many(requests)
        except Exception:
            logger.error(f"Error sending notifications for new change {change.id}", exc_info=True)

    async def _notify_updated(
        self,
        change: ChangeRequest,
        user: CurrentUser,
        old_status: str,
        added_reviewers: List[User],
    ) -> None:
        try:
            requests: List[NotificationRequest] = []
            if change.status != old_status:
                message = f'Change request "{change.title}" status changed from {old_status} to {change.status}'
                if change.user_id != user.id:
                    owner = await self.directory.find_by_id(change.user_id)
                    if owner:
                        requests.append(NotificationRequest(
                            title="Change Request Status Updated",
                            message=message,
                            recipient=owner,
                            type=NotificationType.CHANGE.value,
                            priority=change.impact,
                            related_item=change.id,
                            email_requested=True,
                        ))
                for staff in await self.directory.find_by_role_in(CHANGE_NOTIFY_ROLES):
                    if staff.id == user.id:
                        continue
                    requests.append(NotificationRequest(
                        title="Change Request Status Updated",
                        message=message,
                        recipient=staff,
                        type=NotificationType.CHANGE.value,
                        priority=change.impact,
                        related_item=change.id,
                        email_requested=False,
                    ))

            requests.extend(self._review_requests(change, added_reviewers))

            if requests:
                await self.dispatcher.dispatch_many(requests)
        except Exception:
            logger.error(f"Error sending notifications for change {change.id}", exc_info=True)
