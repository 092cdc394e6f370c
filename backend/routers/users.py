# routers/users.py — User directory, account administration and role management
import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auth import AuthService, UserRegister, authorize, get_current_user, CurrentUser
from change_workflow import validate_object_id
from database import get_db_session
from models import User, ChangeRequest, AuditLog, AuditEventType, UserRole
from permissions import CHANGE_VIEW_ALL_ROLES, to_role

logger = logging.getLogger("itsm.users")

router = APIRouter(prefix="/api/v1/users", tags=["Users"])

ADMIN_ROLES = (UserRole.ADMIN, UserRole.ENTERPRISE_ADMIN)


# --- Schemas ---

class UserOut(BaseModel):
    id: str
    name: str
    email: str
    role: str
    is_active: bool
    last_login_at: Optional[str] = None
    created_at: str


class RoleUpdate(BaseModel):
    role: str = Field(..., description="One of: user, editor, staff, admin, enterprise_admin")


class UserCreate(UserRegister):
    role: str = Field(default=UserRole.USER.value, description="One of: user, editor, staff, admin, enterprise_admin")
    is_active: bool = True


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None


# --- Helpers ---

def _user_to_out(u: User) -> dict:
    return UserOut(
        id=u.id,
        name=u.name or "",
        email=u.email,
        role=u.role.value if isinstance(u.role, UserRole) else u.role,
        is_active=u.is_active,
        last_login_at=u.last_login_at.isoformat() if u.last_login_at else None,
        created_at=u.created_at.isoformat() if u.created_at else "",
    ).model_dump()


def _parse_role(value: str) -> UserRole:
    try:
        return UserRole(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid role: {value}")


def _is_enterprise_admin(current_user: CurrentUser) -> bool:
    return current_user.role == UserRole.ENTERPRISE_ADMIN.value


def _check_role_assignment(current_user: CurrentUser, role: UserRole) -> None:
    """Only enterprise_admin hands out admin roles"""
    if role in ADMIN_ROLES and not _is_enterprise_admin(current_user):
        raise HTTPException(status_code=403, detail="You don't have permission to manage administrators")


def _check_manage_target(current_user: CurrentUser, target: User) -> None:
    """Admins may manage themselves but not other administrators"""
    if target.id == current_user.id or _is_enterprise_admin(current_user):
        return
    if to_role(target.role) in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="You don't have permission to manage administrators")


async def _load_user(db: AsyncSession, user_id: str, *options) -> User:
    validate_object_id(user_id, "user")
    result = await db.execute(select(User).options(*options).where(User.id == user_id))
    target = result.scalar_one_or_none()
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


async def _email_taken(db: AsyncSession, email: str, exclude_id: Optional[str] = None) -> bool:
    stmt = select(User.id).where(User.email == email)
    if exclude_id:
        stmt = stmt.where(User.id != exclude_id)
    return (await db.execute(stmt)).first() is not None


def _audit(db: AsyncSession, event: AuditEventType, actor: CurrentUser, user_id: str, details: Optional[dict] = None) -> None:
    db.add(AuditLog(
        event_type=event.value,
        user_id=actor.id,
        resource_type="user",
        resource_id=user_id,
        details=details or {},
        request_id=str(uuid.uuid4()),
    ))


# --- Endpoints ---

@router.get("")
async def list_users(
    user: CurrentUser = Depends(authorize(UserRole.STAFF, UserRole.EDITOR)),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    role: Optional[str] = None,
    active_only: bool = True,
):
    """List users, e.g. to pick reviewers or an assignee"""
    stmt = select(User)
    if active_only:
        stmt = stmt.where(User.is_active == True)  # noqa: E712
    if role:
        stmt = stmt.where(User.role == _parse_role(role))

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    result = await db.execute(stmt.order_by(User.created_at.desc()).offset(offset).limit(limit))
    users = [_user_to_out(u) for u in result.scalars().all()]
    return {"total": total, "count": len(users), "users": users}


@router.post("", status_code=201)
async def create_user(
    body: UserCreate,
    current_user: CurrentUser = Depends(authorize(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create an account on someone's behalf (admin+)"""
    role = _parse_role(body.role)
    _check_role_assignment(current_user, role)
    if await _email_taken(db, body.email):
        raise HTTPException(status_code=409, detail="User already exists")

    new_user = User(
        name=body.name,
        email=body.email,
        password_hash=AuthService.hash_password(body.password),
        role=role,
        is_active=body.is_active,
    )
    db.add(new_user)
    await db.flush()
    _audit(db, AuditEventType.USER_CREATED, current_user, new_user.id, {"role": role.value})
    await db.commit()
    await db.refresh(new_user)
    logger.info(f"User {new_user.id} created by {current_user.id} with role {role.value}")
    return _user_to_out(new_user)


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Own profile, or anyone's for roles that see every change"""
    if user_id != current_user.id and to_role(current_user.role) not in CHANGE_VIEW_ALL_ROLES:
        raise HTTPException(status_code=403, detail="You don't have permission to view users")
    return _user_to_out(await _load_user(db, user_id))


@router.put("/{user_id}")
async def update_user(
    user_id: str,
    body: UserUpdate,
    current_user: CurrentUser = Depends(authorize(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    target = await _load_user(db, user_id)
    _check_manage_target(current_user, target)

    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if "role" in fields:
        new_role = _parse_role(fields["role"])
        if new_role != to_role(target.role):
            _check_role_assignment(current_user, new_role)
        fields["role"] = new_role
    if "email" in fields and await _email_taken(db, fields["email"], exclude_id=target.id):
        raise HTTPException(status_code=409, detail="Email is already in use")

    for name, value in fields.items():
        setattr(target, name, value)
    _audit(db, AuditEventType.USER_UPDATED, current_user, target.id, {"fields": sorted(fields)})
    await db.commit()
    logger.info(f"User {target.id} updated by {current_user.id}: {', '.join(sorted(fields)) or 'no fields'}")
    return _user_to_out(target)


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    current_user: CurrentUser = Depends(authorize(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    target = await _load_user(db, user_id, selectinload(User.notifications))
    if target.id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    _check_manage_target(current_user, target)

    owned = (await db.execute(
        select(func.count(ChangeRequest.id)).where(ChangeRequest.user_id == target.id)
    )).scalar() or 0
    if owned:
        raise HTTPException(
            status_code=409,
            detail=f"User owns {owned} change request(s); reassign or delete them first",
        )

    await db.delete(target)
    _audit(db, AuditEventType.USER_DELETED, current_user, user_id, {"email": target.email})
    await db.commit()
    logger.info(f"User {user_id} deleted by {current_user.id}")
    return {"status": "deleted", "id": user_id}


@router.patch("/{user_id}/role")
async def update_user_role(
    user_id: str,
    role_update: RoleUpdate,
    current_user: CurrentUser = Depends(authorize(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Change a user's role (admin+; admin roles only by enterprise_admin)"""
    new_role = _parse_role(role_update.role)
    _check_role_assignment(current_user, new_role)

    result = await db.execute(select(User).where(User.id == user_id))
    target = result.scalar_one_or_none()
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    old_role = target.role.value if isinstance(target.role, UserRole) else target.role
    if to_role(old_role) in ADMIN_ROLES and not _is_enterprise_admin(current_user):
        raise HTTPException(status_code=403, detail="You don't have permission to manage administrators")

    target.role = new_role
    _audit(db, AuditEventType.USER_ROLE_CHANGED, current_user, user_id, {"old_role": old_role, "new_role": new_role.value})
    await db.commit()

    return {"user_id": user_id, "old_role": old_role, "new_role": new_role.value}
