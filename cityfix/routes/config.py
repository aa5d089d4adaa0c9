from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import List
import logging

from cityfix.core.auth import get_current_user
from cityfix.core.dependencies import get_audit, get_config_service
from cityfix.core.permissions import require_role
from cityfix.models.user_model import Role
from cityfix.services.audit_service import AuditService
from cityfix.services.config_service import ConfigService

logger = logging.getLogger(__name__)

router = APIRouter()


class CategoriesUpdate(BaseModel):
    categories: List[str]


@router.get("/categories")
async def get_categories(
    current_user: dict = Depends(get_current_user),
    config: ConfigService = Depends(get_config_service),
):
    return {"success": True, "categories": await config.get_categories()}


@router.put("/categories")
async def replace_categories(
    request: CategoriesUpdate,
    current_user: dict = Depends(require_role(Role.ADMIN)),
    config: ConfigService = Depends(get_config_service),
    audit: AuditService = Depends(get_audit),
):
    categories = await config.set_categories(request.categories)
    await audit.log_action(current_user, "categories_updated", None, ", ".join(categories))
    return {"success": True, "categories": categories}
