"""
Read-side queues and listings for each role.
"""

import logging
from typing import Any, Dict, List, Optional

from cityfix.core.config import REPORTS, ADMIN_PAGE_SIZE
from cityfix.core.errors import ValidationError
from cityfix.models.report_model import ReportStatus
from cityfix.services.document_store import DocumentStore

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("createdAt", -1)]

DISPATCHER_FILTERS = {
    "new": [ReportStatus.SUBMITTED.value],
    "assigned": [ReportStatus.ASSIGNED.value, ReportStatus.IN_PROGRESS.value],
    "all": None,
}

QA_FILTERS = {
    "resolved": [ReportStatus.RESOLVED.value],
    "verified": [ReportStatus.VERIFIED.value],
    "reopened": [ReportStatus.REOPENED.value],
    "all": [ReportStatus.RESOLVED.value, ReportStatus.VERIFIED.value, ReportStatus.REOPENED.value],
}


class ReportQueryService:

    def __init__(self, store: DocumentStore):
        self.store = store

    async def citizen_reports(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.store.find(
            REPORTS, {"userId": user_id, "isDeleted": {"$ne": True}}, sort=NEWEST_FIRST
        )

    async def dispatcher_queue(self, filter_name: str = "new") -> List[Dict[str, Any]]:
        if filter_name not in DISPATCHER_FILTERS:
            raise ValidationError(f"Unknown filter '{filter_name}'")
        filters: Dict[str, Any] = {
            "isDraft": {"$ne": True},
            "isDeleted": {"$ne": True},
            "isDuplicateOf": None,
        }
        statuses = DISPATCHER_FILTERS[filter_name]
        if statuses:
            filters["status"] = {"$in": statuses}
        else:
            filters["status"] = {"$ne": ReportStatus.DRAFT.value}
        return await self.store.find(REPORTS, filters, sort=NEWEST_FIRST)

    async def engineer_queue(self, engineer_id: str) -> List[Dict[str, Any]]:
        return await self.store.find(
            REPORTS,
            {"assignedTo": engineer_id, "isDeleted": {"$ne": True}, "isDuplicateOf": None},
            sort=[("deadline", 1)],
        )

    async def qa_queue(self, filter_name: str = "resolved") -> List[Dict[str, Any]]:
        if filter_name not in QA_FILTERS:
            raise ValidationError(f"Unknown filter '{filter_name}'")
        return await self.store.find(
            REPORTS,
            {
                "status": {"$in": QA_FILTERS[filter_name]},
                "isDeleted": {"$ne": True},
                "isDuplicateOf": None,
            },
            sort=NEWEST_FIRST,
        )

    async def admin_page(self, page: int = 1, status: Optional[str] = None) -> Dict[str, Any]:
        if page < 1:
            raise ValidationError("Page must be 1 or greater")
        filters: Dict[str, Any] = {"isDeleted": {"$ne": True}}
        if status:
            try:
                filters["status"] = ReportStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown status '{status}'")
        total = await self.store.count(REPORTS, filters)
        items = await self.store.find(
            REPORTS, filters, sort=NEWEST_FIRST, limit=ADMIN_PAGE_SIZE, skip=(page - 1) * ADMIN_PAGE_SIZE
        )
        return {
            "items": items,
            "page": page,
            "page_size": ADMIN_PAGE_SIZE,
            "total": total,
            "pages": (total + ADMIN_PAGE_SIZE - 1) // ADMIN_PAGE_SIZE,
        }
