"""
Audit log of staff and citizen actions (`logs` collection).

Writes never raise into the action being audited; the caller gets an
AuditResult and decides whether a failure matters.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from cityfix.core.config import LOGS
from cityfix.services.document_store import DocumentStore
from cityfix.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass
class AuditResult:
    ok: bool
    log_id: Optional[str] = None
    error: Optional[str] = None


class AuditService:

    def __init__(self, store: DocumentStore):
        self.store = store

    async def log_action(
        self,
        actor: Optional[Dict[str, Any]],
        action: str,
        report_id: Optional[str] = None,
        details: str = "",
    ) -> AuditResult:
        if not actor:
            return AuditResult(ok=False, error="no actor")

        entry = {
            "timestamp": utcnow(),
            "userId": actor.get("id"),
            "userEmail": actor.get("email") or "unknown",
            "userRole": actor.get("role") or "citizen",
            "action": action,
            "reportId": report_id,
            "details": details,
        }
        try:
            log_id = await self.store.insert(LOGS, entry)
            return AuditResult(ok=True, log_id=log_id)
        except Exception as e:
            logger.error(f"❌ Failed to write audit entry '{action}' for {report_id}: {e}")
            return AuditResult(ok=False, error=str(e))

    async def recent(self, limit: int = 100, action: Optional[str] = None) -> List[Dict[str, Any]]:
        filters = {"action": action} if action else {}
        return await self.store.find(LOGS, filters, sort=[("timestamp", -1)], limit=limit)
