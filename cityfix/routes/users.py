from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from cityfix.core.dependencies import get_user_service
from cityfix.core.permissions import require_role
from cityfix.models.user_model import Role, RoleUpdate, DisabledUpdate
from cityfix.services.user_service import UserService
from cityfix.utils.helpers import serialize_document

logger = logging.getLogger(__name__)

router = APIRouter()

PUBLIC_USER_FIELDS = ("_id", "email", "name", "role", "disabled")


def _public(user: dict) -> dict:
    return serialize_document({k: v for k, v in user.items() if k in PUBLIC_USER_FIELDS})


@router.get("")
async def list_users(
    role: Optional[str] = Query(None),
    current_user: dict = Depends(require_role(Role.ADMIN)),
    users: UserService = Depends(get_user_service),
):
    result = await users.list_users(role)
    return {"success": True, "count": len(result), "users": [_public(user) for user in result]}


@router.get("/engineers")
async def list_engineers(
    current_user: dict = Depends(require_role(Role.DISPATCHER, Role.ADMIN)),
    users: UserService = Depends(get_user_service),
):
    """Active engineers a dispatcher can assign to."""
    engineers = await users.list_engineers()
    return {"success": True, "engineers": [_public(e) for e in engineers]}


@router.put("/{user_id}/role")
async def change_role(
    user_id: str,
    request: RoleUpdate,
    current_user: dict = Depends(require_role(Role.ADMIN)),
    users: UserService = Depends(get_user_service),
):
    user = await users.change_role(current_user, user_id, request.role)
    return {"success": True, "user": _public(user)}


@router.put("/{user_id}/disabled")
async def set_disabled(
    user_id: str,
    request: DisabledUpdate,
    current_user: dict = Depends(require_role(Role.ADMIN)),
    users: UserService = Depends(get_user_service),
):
    user = await users.set_disabled(current_user, user_id, request.disabled)
    return {"success": True, "user": _public(user)}
