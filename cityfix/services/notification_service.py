"""
In-App Notification Service for CityFix
Fans a report's status change out to the citizen, the assigned engineer and
the staff roles, then delivers push messages through Expo
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from cityfix.core.config import NOTIFICATIONS, USERS
from cityfix.core.errors import NotificationDeliveryFailure
from cityfix.models.notification_model import NotificationModel, PushMessage
from cityfix.models.report_model import ReportStatus
from cityfix.models.user_model import Role
from cityfix.services.document_store import DocumentStore
from cityfix.services.push_service import PushClient, is_expo_push_token
from cityfix.services.report_state import coerce_status
from cityfix.utils.helpers import utcnow

logger = logging.getLogger(__name__)

S = ReportStatus

# Fixed sentence per (recipient rule, new status); a missing entry means no message
CITIZEN_MESSAGES = {
    S.SUBMITTED: "Your report has been submitted",
    S.ASSIGNED: "Your report has been assigned to an engineer",
    S.IN_PROGRESS: "An engineer has started working on your report",
    S.RESOLVED: "Your report has been marked as resolved",
    S.VERIFIED: "Your report has been verified – issue fixed",
    S.REOPENED: "Your report has been reopened for further work",
    S.MERGED: "Your report has been merged with similar reports",
}

ENGINEER_MESSAGES = {
    S.ASSIGNED: "You have been assigned a new report",
    S.REOPENED: "A report you worked on has been reopened by QA – Needs more work!",
    S.MERGED: "A report you are assigned to has been merged with similar reports",
    S.VERIFIED: "A report you fixed has been verified by QA – Well Done!",
}

ROLE_MESSAGES = {
    Role.DISPATCHER: {
        S.SUBMITTED: "New report submitted for triage",
        S.IN_PROGRESS: "A report has started work",
        S.RESOLVED: "A report has been marked as resolved",
        S.VERIFIED: "A report has been verified",
        S.MERGED: "A report has been merged",
    },
    Role.QA: {
        S.RESOLVED: "New report awaiting quality verification",
        S.MERGED: "A merged report needs review",
    },
    Role.ADMIN: {
        S.SUBMITTED: "New report submitted",
        S.VERIFIED: "A report has been verified",
        S.MERGED: "A report has been merged",
    },
}

Roster = Dict[Role, List[str]]


def status_changed(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> bool:
    if not after:
        return False
    return (before or {}).get("status") != after.get("status")


def plan_notifications(
    before: Optional[Dict[str, Any]],
    after: Dict[str, Any],
    roster: Roster,
) -> List[Tuple[str, str]]:
    """
    Resolve the (user_id, message) pairs for one observed report change.

    `roster` maps each staff role to its user ids. A user matched by more than
    one rule is messaged once, by the first rule in the order citizen,
    engineer, dispatcher, qa, admin.
    """
    if not status_changed(before, after):
        return []
    try:
        status = coerce_status(after.get("status"))
    except ValueError:
        return []

    planned: Dict[str, str] = {}

    def add(user_id: Optional[str], message: Optional[str]):
        if user_id and message and user_id not in planned:
            planned[user_id] = message

    add(after.get("userId"), CITIZEN_MESSAGES.get(status))
    add(after.get("assignedTo"), ENGINEER_MESSAGES.get(status))
    for role in (Role.DISPATCHER, Role.QA, Role.ADMIN):
        message = ROLE_MESSAGES[role].get(status)
        for user_id in roster.get(role, []):
            add(user_id, message)

    return list(planned.items())


@dataclass
class FanoutResult:
    report_id: str
    status: Optional[str] = None
    notified: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    # Recipients whose notification record could not be written
    failed: List[str] = field(default_factory=list)
    pushes_queued: int = 0
    chunks_sent: int = 0
    failures: List[NotificationDeliveryFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.failed


class NotificationFanout:
    """
    Two-phase fan-out: persist every notification record, then dispatch the
    queued pushes. Records are written first so a push failure never loses
    the in-app notification.
    """

    def __init__(self, store: DocumentStore, push_client: Optional[PushClient] = None):
        self.store = store
        self.push_client = push_client or PushClient()

    async def load_roster(self) -> Roster:
        roster: Roster = {}
        for role in ROLE_MESSAGES:
            users = await self.store.find(USERS, {"role": role.value, "disabled": {"$ne": True}})
            roster[role] = [user["_id"] for user in users]
        return roster

    async def handle_change(
        self,
        report_id: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
    ) -> FanoutResult:
        result = FanoutResult(report_id=report_id, status=(after or {}).get("status"))
        if not status_changed(before, after):
            return result

        roster = await self.load_roster()
        planned = plan_notifications(before, after, roster)

        # Phase 1: persist records, queue pushes
        messages: List[PushMessage] = []
        for user_id, message in planned:
            try:
                user = await self.store.get(USERS, user_id)
                if user is None:
                    result.skipped.append(user_id)
                    continue
                await create_notification(self.store, user_id, message, report_id)
            except Exception as e:
                logger.error(f"❌ Could not notify {user_id} about report {report_id}: {e}")
                result.failed.append(user_id)
                continue
            result.notified.append(user_id)

            token = user.get("expoPushToken")
            if is_expo_push_token(token):
                messages.append(PushMessage(to=token, body=message, data={"reportId": report_id}))

        result.pushes_queued = len(messages)

        # Phase 2: dispatch in chunks
        for outcome in await self.push_client.send(messages):
            if outcome.ok:
                result.chunks_sent += 1
            else:
                result.failures.append(outcome.error)

        logger.info(
            f"📬 Report {report_id} -> '{result.status}': {len(result.notified)} notified, "
            f"{result.pushes_queued} push(es), {len(result.failures)} failed chunk(s)"
        )
        if result.failed:
            logger.error(f"❌ Notification records missing for report {report_id}: {result.failed}")
        if result.failures:
            logger.error(
                f"❌ Push delivery failed for report {report_id}: "
                f"{[failure.chunk_index for failure in result.failures]}"
            )
        return result


async def create_notification(
    store: DocumentStore,
    user_id: str,
    message: str,
    report_id: Optional[str] = None,
) -> str:
    """Append a notification record under `user_id`; returns its id."""
    notification_doc = NotificationModel(
        userId=user_id,
        message=message,
        reportId=report_id,
        createdAt=utcnow(),
    ).model_dump(exclude={"id"})
    notification_id = await store.insert(NOTIFICATIONS, notification_doc)
    logger.debug(f"Notification {notification_id} created for user {user_id}")
    return notification_id


async def get_user_notifications(
    store: DocumentStore,
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """Newest first."""
    query: Dict[str, Any] = {"userId": user_id}
    if unread_only:
        query["read"] = False
    return await store.find(NOTIFICATIONS, query, sort=[("createdAt", -1)], limit=limit)


async def mark_notification_as_read(store: DocumentStore, notification_id: str, user_id: str) -> bool:
    """Returns False when the notification does not exist or belongs to someone else."""
    return await store.update(
        NOTIFICATIONS, notification_id, {"read": True}, expected={"userId": user_id}
    )


async def mark_report_notifications_as_read(store: DocumentStore, user_id: str, report_id: str) -> int:
    """Opening a report consumes every unread notification that links to it."""
    unread = await store.find(NOTIFICATIONS, {"userId": user_id, "reportId": report_id, "read": False})
    marked = 0
    for notification in unread:
        if await store.update(NOTIFICATIONS, notification["_id"], {"read": True}):
            marked += 1
    return marked


async def get_unread_count(store: DocumentStore, user_id: str) -> int:
    return await store.count(NOTIFICATIONS, {"userId": user_id, "read": False})
