"""
Report status machine.

Single source of truth for which action may move a report from which status
to which status. The lifecycle engine, the API and the notification fan-out
all ask this module instead of comparing status strings themselves.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from cityfix.core.errors import StateViolation
from cityfix.models.report_model import ReportStatus


class Action(str, Enum):
    SAVE_DRAFT = "save draft"
    SUBMIT = "submit"
    ASSIGN = "assign"
    START = "start"
    SAVE_PROGRESS = "save progress"
    RESOLVE = "resolve"
    VERIFY = "verify"
    REOPEN = "reopen"


# action -> (allowed source statuses, target status); None means "no document yet"
TRANSITIONS: Dict[Action, Tuple[FrozenSet[Optional[ReportStatus]], ReportStatus]] = {
    Action.SAVE_DRAFT: (frozenset({None, ReportStatus.DRAFT}), ReportStatus.DRAFT),
    Action.SUBMIT: (frozenset({None, ReportStatus.DRAFT}), ReportStatus.SUBMITTED),
    Action.ASSIGN: (frozenset({ReportStatus.SUBMITTED}), ReportStatus.ASSIGNED),
    Action.START: (frozenset({ReportStatus.ASSIGNED, ReportStatus.REOPENED}), ReportStatus.IN_PROGRESS),
    Action.SAVE_PROGRESS: (frozenset({ReportStatus.IN_PROGRESS}), ReportStatus.IN_PROGRESS),
    Action.RESOLVE: (frozenset({ReportStatus.IN_PROGRESS}), ReportStatus.RESOLVED),
    Action.VERIFY: (frozenset({ReportStatus.RESOLVED}), ReportStatus.VERIFIED),
    Action.REOPEN: (frozenset({ReportStatus.RESOLVED}), ReportStatus.REOPENED),
}

# Fields (besides status) each action may write
CONTENT_FIELDS = frozenset({"title", "description", "category", "address", "location", "userId", "userName"})

SIDE_EFFECT_FIELDS: Dict[Action, FrozenSet[str]] = {
    Action.SAVE_DRAFT: CONTENT_FIELDS | {"isDraft", "updatedAt"},
    Action.SUBMIT: CONTENT_FIELDS | {"photoUrls", "videoUrl", "isDraft", "submittedAt", "updatedAt"},
    Action.ASSIGN: frozenset(
        {"assignedTo", "assignedToName", "priority", "deadline", "dispatcherNotes", "assignedAt"}
    ),
    Action.START: frozenset({"startedAt"}),
    Action.SAVE_PROGRESS: frozenset({"resolutionNotes", "afterPhotos", "afterVideos"}),
    Action.RESOLVE: frozenset({"resolutionNotes", "afterPhotos", "afterVideos", "resolvedAt"}),
    Action.VERIFY: frozenset({"qaFeedback", "verifiedAt"}),
    Action.REOPEN: frozenset({"reopenReason", "qaFeedback", "reopenedAt", "reopenNotes"}),
}


def coerce_status(value) -> Optional[ReportStatus]:
    if value is None or isinstance(value, ReportStatus):
        return value
    return ReportStatus(value)


def next_status(action: Action, current) -> ReportStatus:
    """Target status of `action` from `current`, or StateViolation."""
    current = coerce_status(current)
    sources, target = TRANSITIONS[action]
    if current not in sources:
        raise StateViolation(action.value, current.value if current else None)
    return target


def undeclared_fields(action: Action, payload: Dict) -> List[str]:
    """Fields in `payload` that `action` is not allowed to write."""
    return sorted(set(payload) - {"status"} - SIDE_EFFECT_FIELDS[action])
