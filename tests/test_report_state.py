import pytest

from cityfix.core.errors import StateViolation
from cityfix.models.report_model import ReportStatus
from cityfix.services.report_state import (
    SIDE_EFFECT_FIELDS,
    TRANSITIONS,
    Action,
    next_status,
    undeclared_fields,
)


@pytest.mark.parametrize(
    "action,current,expected",
    [
        (Action.SUBMIT, None, ReportStatus.SUBMITTED),
        (Action.SUBMIT, "draft", ReportStatus.SUBMITTED),
        (Action.SAVE_DRAFT, None, ReportStatus.DRAFT),
        (Action.ASSIGN, "submitted", ReportStatus.ASSIGNED),
        (Action.START, "assigned", ReportStatus.IN_PROGRESS),
        (Action.START, "reopened", ReportStatus.IN_PROGRESS),
        (Action.SAVE_PROGRESS, "in progress", ReportStatus.IN_PROGRESS),
        (Action.RESOLVE, "in progress", ReportStatus.RESOLVED),
        (Action.VERIFY, "resolved", ReportStatus.VERIFIED),
        (Action.REOPEN, "resolved", ReportStatus.REOPENED),
    ],
)
def test_allowed_transitions(action, current, expected):
    assert next_status(action, current) == expected


@pytest.mark.parametrize(
    "action,current",
    [
        (Action.ASSIGN, "draft"),
        (Action.ASSIGN, "assigned"),
        (Action.START, "submitted"),
        (Action.RESOLVE, "assigned"),
        (Action.VERIFY, "in progress"),
        (Action.VERIFY, "verified"),
        (Action.REOPEN, "verified"),
        (Action.SUBMIT, "submitted"),
    ],
)
def test_rejected_transitions(action, current):
    with pytest.raises(StateViolation) as exc:
        next_status(action, current)
    assert exc.value.current_status == current


def test_verified_is_terminal():
    assert all(ReportStatus.VERIFIED not in sources for sources, _ in TRANSITIONS.values())


def test_merged_status_has_no_outgoing_or_incoming_transition():
    assert all(ReportStatus.MERGED not in sources for sources, _ in TRANSITIONS.values())
    assert all(target != ReportStatus.MERGED for _, target in TRANSITIONS.values())
    with pytest.raises(StateViolation):
        next_status(Action.START, "merged")


def test_every_action_declares_its_fields():
    assert set(SIDE_EFFECT_FIELDS) == set(TRANSITIONS)
    assert undeclared_fields(Action.START, {"status": "in progress", "startedAt": 1}) == []
    assert undeclared_fields(Action.START, {"status": "in progress", "assignedTo": "x"}) == ["assignedTo"]


def test_new_report_message_mentions_new():
    with pytest.raises(StateViolation, match="status 'new'"):
        next_status(Action.VERIFY, None)
