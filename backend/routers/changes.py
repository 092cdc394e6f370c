# routers/changes.py — Change request endpoints
# Thin HTTP layer over ChangeWorkflow: role-based list scoping happens here,
# every other rule lives in the workflow engine.
from typing import Optional

from fastapi import APIRouter, Depends, Query, UploadFile, File as FastAPIFile
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_permission, CurrentUser
from change_workflow import (
    ChangeWorkflow, ChangeCreate, ChangeUpdate, ReviewSubmit, CommentCreate, change_out,
)
from database import get_db_session
from directory import UserDirectory
from mailer import Mailer, get_mailer
from notifier import NotificationDispatcher
from permissions import CHANGE_VIEW_ALL_ROLES, to_role
from storage import get_storage

router = APIRouter(prefix="/api/v1/changes", tags=["Changes"])


def get_change_workflow(
    db: AsyncSession = Depends(get_db_session),
    mailer: Mailer = Depends(get_mailer),
    storage=Depends(get_storage),
) -> ChangeWorkflow:
    return ChangeWorkflow(
        db=db,
        dispatcher=NotificationDispatcher(db, mailer),
        storage=storage,
        directory=UserDirectory(db),
    )


@router.get("")
async def list_changes(
    status: Optional[str] = None,
    impact: Optional[str] = None,
    category: Optional[str] = None,
    assigned_to: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=100),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    workflow: ChangeWorkflow = Depends(get_change_workflow),
    user: CurrentUser = Depends(get_current_user),
):
    # Roles outside the view-all set only ever see their own changes
    owner_id = None if to_role(user.role) in CHANGE_VIEW_ALL_ROLES else user.id
    total, changes = await workflow.list_changes(
        owner_id=owner_id,
        status=status,
        impact=impact,
        category=category,
        assigned_to=assigned_to,
        search=search,
        skip=skip,
        limit=limit,
    )
    return {"total": total, "count": len(changes), "changes": [change_out(c) for c in changes]}


@router.post("", status_code=201)
async def create_change(
    body: ChangeCreate,
    workflow: ChangeWorkflow = Depends(get_change_workflow),
    user: CurrentUser = Depends(get_current_user),
):
    change = await workflow.create(body, user)
    return change_out(change)


@router.get("/{change_id}")
async def get_change(
    change_id: str,
    workflow: ChangeWorkflow = Depends(get_change_workflow),
    user: CurrentUser = Depends(get_current_user),
):
    change = await workflow.get(change_id, user)
    return change_out(change)


@router.put("/{change_id}")
async def update_change(
    change_id: str,
    body: ChangeUpdate,
    workflow: ChangeWorkflow = Depends(get_change_workflow),
    user: CurrentUser = Depends(get_current_user),
):
    change = await workflow.update(change_id, body, user)
    return change_out(change)


@router.delete("/{change_id}")
async def delete_change(
    change_id: str,
    workflow: ChangeWorkflow = Depends(get_change_workflow),
    user: CurrentUser = Depends(get_current_user),
):
    await workflow.delete(change_id, user)
    return {"status": "deleted", "id": change_id}


@router.put("/{change_id}/attachment")
async def upload_change_attachment(
    change_id: str,
    file: UploadFile = FastAPIFile(...),
    workflow: ChangeWorkflow = Depends(get_change_workflow),
    user: CurrentUser = Depends(get_current_user),
):
    # One byte past the limit is enough for the size check to fail
    data = await file.read(workflow.max_upload + 1)
    change = await workflow.upload_attachment(change_id, file.filename, file.content_type, data, user)
    return change_out(change)


@router.post("/{change_id}/comments", status_code=201)
async def add_change_comment(
    change_id: str,
    body: CommentCreate,
    workflow: ChangeWorkflow = Depends(get_change_workflow),
    user: CurrentUser = Depends(get_current_user),
):
    change = await workflow.add_comment(change_id, body.text, user)
    return change_out(change)


@router.post("/{change_id}/review")
async def review_change(
    change_id: str,
    body: ReviewSubmit,
    workflow: ChangeWorkflow = Depends(get_change_workflow),
    user: CurrentUser = Depends(require_permission("review_changes")),
):
    change = await workflow.submit_review(change_id, body.status, body.comments, user)
    return change_out(change)
