from fastapi import APIRouter, Depends, Query
from typing import Optional

from cityfix.core.dependencies import get_audit
from cityfix.core.permissions import require_role
from cityfix.models.user_model import Role
from cityfix.services.audit_service import AuditService
from cityfix.utils.helpers import serialize_documents

router = APIRouter()


@router.get("")
async def recent_logs(
    action: Optional[str] = Query(None, description="Only entries for this action"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role(Role.ADMIN)),
    audit: AuditService = Depends(get_audit),
):
    entries = await audit.recent(limit=limit, action=action)
    return {"success": True, "count": len(entries), "logs": serialize_documents(entries)}
