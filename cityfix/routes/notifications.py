"""
Notification API Routes for the mobile app
"""

from fastapi import APIRouter, HTTPException, Depends, Query
import logging

from cityfix.core.auth import get_current_user
from cityfix.core.dependencies import get_store
from cityfix.services.document_store import DocumentStore
from cityfix.services.notification_service import (
    get_user_notifications,
    mark_notification_as_read,
    get_unread_count
)
from cityfix.utils.helpers import serialize_documents

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("")
async def get_notifications(
    unread_only: bool = Query(False, description="Only return unread notifications"),
    limit: int = Query(50, ge=1, le=200, description="Maximum number of notifications"),
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    """
    Get the caller's notifications, newest first
    """
    notifications = await get_user_notifications(
        store,
        user_id=current_user["id"],
        unread_only=unread_only,
        limit=limit
    )

    return {
        "success": True,
        "count": len(notifications),
        "notifications": serialize_documents(notifications)
    }


@router.get("/unread-count")
async def unread_count(
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    count = await get_unread_count(store, current_user["id"])
    return {"success": True, "unread_count": count}


@router.put("/{notification_id}/read")
async def mark_as_read(
    notification_id: str,
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    success = await mark_notification_as_read(store, notification_id, current_user["id"])
    if not success:
        raise HTTPException(status_code=404, detail="Notification not found")

    logger.info(f"✅ Notification {notification_id} marked as read")
    return {"success": True, "message": "Notification marked as read"}
