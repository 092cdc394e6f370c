# routers/upload.py — Generic file upload into the shared attachment folders
import os
import re
import time
import logging

from fastapi import APIRouter, Depends, UploadFile, File as FastAPIFile

from auth import get_current_user, CurrentUser
from change_workflow import MAX_FILE_UPLOAD
from exceptions import ValidationError, NotFoundError, UploadError
from storage import get_storage, StorageError

logger = logging.getLogger("itsm.upload")

router = APIRouter(prefix="/api/v1/upload", tags=["Upload"])

UPLOAD_FOLDERS = {"tickets", "changes", "knowledge", "solutions", "branding"}
ALLOWED_TYPES = {"image/jpeg", "image/png", "application/pdf", "text/plain"}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_STORED_NAME = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")


def _check_folder(folder: str) -> None:
    if folder not in UPLOAD_FOLDERS:
        raise ValidationError(f"Invalid folder: {folder}")


def _stored_name(original: str) -> str:
    base = _UNSAFE_CHARS.sub("_", os.path.basename(original)).lstrip(".") or "file"
    return f"{int(time.time() * 1000)}-{base}"


@router.post("/{folder}", status_code=201)
async def upload_file(
    folder: str,
    file: UploadFile = FastAPIFile(...),
    storage=Depends(get_storage),
    user: CurrentUser = Depends(get_current_user),
):
    _check_folder(folder)
    if not file.filename:
        raise ValidationError("Please upload a file")
    if file.content_type not in ALLOWED_TYPES:
        raise ValidationError("File type not supported")
    data = await file.read(MAX_FILE_UPLOAD + 1)
    if len(data) > MAX_FILE_UPLOAD:
        raise UploadError(f"Please upload a file less than {MAX_FILE_UPLOAD / 1000000:g}MB", 400)

    file_name = _stored_name(file.filename)
    try:
        path = await storage.store(data, folder, file_name, file.content_type)
    except StorageError as e:
        logger.error(f"Upload of {folder}/{file_name} failed: {e}")
        raise UploadError("Problem with file upload", 500)

    logger.info(f"{user.id} uploaded {folder}/{file_name} ({len(data)} bytes)")
    return {
        "file_name": file_name,
        "file_path": path,
        "file_type": file.content_type,
        "file_size": len(data),
    }


@router.delete("/{folder}/{file_name}")
async def delete_file(
    folder: str,
    file_name: str,
    storage=Depends(get_storage),
    user: CurrentUser = Depends(get_current_user),
):
    _check_folder(folder)
    if not _STORED_NAME.match(file_name):
        raise ValidationError(f"Invalid file name: {file_name}")

    try:
        removed = await storage.delete(storage.public_path(folder, file_name))
    except StorageError as e:
        logger.error(f"Delete of {folder}/{file_name} failed: {e}")
        raise UploadError("Problem with file deletion", 500)
    if not removed:
        raise NotFoundError("File not found")

    logger.info(f"{user.id} deleted {folder}/{file_name}")
    return {"status": "deleted", "file_name": file_name}
