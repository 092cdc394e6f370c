# routers/settings.py — Site branding (singleton settings row)
import os
import time
import uuid
import logging
from typing import Optional, Literal

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File as FastAPIFile
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from change_workflow import MAX_FILE_UPLOAD
from database import get_db_session
from models import Setting, SETTINGS_ID, AuditLog, AuditEventType, utcnow
from storage import get_storage, StorageError

logger = logging.getLogger("itsm.settings")

router = APIRouter(prefix="/api/v1/settings", tags=["Settings"])

BRANDING_FOLDER = "branding"


class SettingsUpdate(BaseModel):
    site_name: Optional[str] = Field(None, min_length=1, max_length=100)
    company_name: Optional[str] = Field(None, min_length=1, max_length=100)
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = Field(None, max_length=50)
    contact_address: Optional[str] = Field(None, max_length=300)
    primary_color: Optional[str] = Field(None, pattern=r"^#[0-9a-fA-F]{6}$")
    secondary_color: Optional[str] = Field(None, pattern=r"^#[0-9a-fA-F]{6}$")


def _settings_out(s: Setting) -> dict:
    return {
        "id": s.id,
        "site_name": s.site_name,
        "logo": s.logo,
        "favicon": s.favicon,
        "banner": s.banner,
        "company_name": s.company_name,
        "contact_email": s.contact_email,
        "contact_phone": s.contact_phone,
        "contact_address": s.contact_address,
        "primary_color": s.primary_color,
        "secondary_color": s.secondary_color,
        "updated_by": s.updated_by,
        "updated_at": s.updated_at.isoformat() if s.updated_at else None,
    }


async def _create_singleton(db: AsyncSession) -> Setting:
    settings = Setting(id=SETTINGS_ID)
    db.add(settings)
    try:
        await db.commit()
    except IntegrityError:
        # Another request created the row first
        await db.rollback()
        result = await db.execute(select(Setting).where(Setting.id == SETTINGS_ID))
        return result.scalar_one()
    await db.refresh(settings)
    return settings


async def _get_or_create(db: AsyncSession) -> Setting:
    result = await db.execute(select(Setting).where(Setting.id == SETTINGS_ID))
    settings = result.scalar_one_or_none()
    if not settings:
        settings = await _create_singleton(db)
    return settings


def _audit(db: AsyncSession, settings: Setting, user: CurrentUser, fields) -> None:
    db.add(AuditLog(
        event_type=AuditEventType.SETTINGS_UPDATED.value,
        user_id=user.id,
        resource_type="settings",
        resource_id=settings.id,
        details={"fields": sorted(fields)},
        request_id=str(uuid.uuid4()),
    ))


@router.get("")
async def get_settings(db: AsyncSession = Depends(get_db_session)):
    """Public: the login page renders branding before anyone signs in"""
    return _settings_out(await _get_or_create(db))


@router.put("")
async def update_settings(
    body: SettingsUpdate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_permission("manage_settings")),
):
    settings = await _get_or_create(db)
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    for name, value in fields.items():
        setattr(settings, name, value)
    settings.updated_by = user.id
    settings.updated_at = utcnow()
    _audit(db, settings, user, fields)
    await db.commit()
    logger.info(f"Settings updated by {user.id}: {', '.join(sorted(fields)) or 'no fields'}")
    return _settings_out(settings)


@router.put("/{asset}")
async def upload_branding_asset(
    asset: Literal["logo", "favicon", "banner"],
    file: UploadFile = FastAPIFile(...),
    db: AsyncSession = Depends(get_db_session),
    storage=Depends(get_storage),
    user: CurrentUser = Depends(require_permission("manage_settings")),
):
    if not (file.content_type or "").startswith("image"):
        raise HTTPException(400, "Please upload an image file")
    data = await file.read(MAX_FILE_UPLOAD + 1)
    if len(data) > MAX_FILE_UPLOAD:
        raise HTTPException(400, f"Please upload an image less than {MAX_FILE_UPLOAD / 1000000:g}MB")

    filename = f"{asset}_{int(time.time() * 1000)}{os.path.splitext(file.filename or '')[1]}"
    try:
        path = await storage.store(data, BRANDING_FOLDER, filename, file.content_type)
    except StorageError as e:
        logger.error(f"Branding upload {filename} failed: {e}")
        raise HTTPException(500, "Problem with file upload")

    settings = await _get_or_create(db)
    setattr(settings, asset, path)
    settings.updated_by = user.id
    settings.updated_at = utcnow()
    _audit(db, settings, user, [asset])
    await db.commit()
    return _settings_out(settings)
