# routers/auth.py — Registration, login and token refresh
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    get_current_user, CurrentUser, ACCESS_TOKEN_EXPIRE_MINUTES, MIN_PASSWORD_LENGTH,
)
from database import get_db_session
from models import User, UserRole, AuditLog, AuditEventType

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class PasswordChange(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"New password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


def _build_token_response(user_obj: User) -> TokenResponse:
    role = user_obj.role.value if isinstance(user_obj.role, UserRole) else user_obj.role
    token_data = {"sub": user_obj.id, "email": user_obj.email, "role": role}

    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        refresh_token=AuthService.create_refresh_token(token_data),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "name": user_obj.name or "",
            "email": user_obj.email,
            "role": role,
            "permissions": AuthService.get_user_permissions(role),
        },
    )


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new account with the default user role"""
    user = await AuthService.register_user(user_data, db)
    return _build_token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    user = await AuthService.authenticate_user(
        credentials.email, credentials.password, db, request
    )
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _build_token_response(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token for a new token pair"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token type. Expected refresh token.")

    result = await db.execute(select(User).where(User.id == payload.get("sub")))
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return _build_token_response(user)


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Current identity, role and effective permissions"""
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "is_active": user.is_active,
        "permissions": user.permissions,
    }


@router.post("/change-password")
async def change_password(
    password_data: PasswordChange,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(select(User).where(User.id == user.id))
    user_obj = result.scalar_one_or_none()
    if not user_obj:
        raise HTTPException(status_code=404, detail="User not found")

    if not AuthService.verify_password(password_data.current_password, user_obj.password_hash):
        raise HTTPException(status_code=401, detail="Current password is incorrect")

    user_obj.password_hash = AuthService.hash_password(password_data.new_password)
    db.add(AuditLog(
        event_type=AuditEventType.PASSWORD_CHANGED.value,
        user_id=user.id,
        resource_type="user",
        resource_id=user.id,
        request_id=str(uuid.uuid4()),
    ))
    await db.commit()

    return {"status": "password_changed", "message": "Password updated successfully"}
