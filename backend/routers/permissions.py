# routers/permissions.py — Serves the role policy so clients gate UI from the same table
from fastapi import APIRouter, Depends

from auth import get_current_user, CurrentUser
from permissions import policy_document

router = APIRouter(prefix="/api/v1/permissions", tags=["Permissions"])


@router.get("")
async def get_permission_policy():
    return policy_document()


@router.get("/me")
async def get_my_permissions(user: CurrentUser = Depends(get_current_user)):
    return {"role": user.role, "permissions": user.permissions}
