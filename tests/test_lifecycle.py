import asyncio
from datetime import timedelta

import pytest

from cityfix.core.config import LOGS, REPORTS
from cityfix.core.errors import (
    NotAuthorized,
    StateViolation,
    UploadCancelled,
    UploadFailure,
    ValidationError,
)
from cityfix.models.report_model import Location, Report, ReportContent, ReportStatus
from cityfix.services.report_state import SIDE_EFFECT_FIELDS, Action
from cityfix.services.storage_service import CancelToken

from conftest import NOW, photo, video


def pothole(**overrides):
    data = dict(
        title="Pothole on Elm St",
        description="Deep hole in the right lane",
        category="Pothole",
        location=Location(latitude=52.52, longitude=13.405),
    )
    data.update(overrides)
    return ReportContent(**data)


# --- submit ---

async def test_submit_new_report(lifecycle, store, users):
    result = await lifecycle.submit(users["citizen"], pothole(), [photo()])

    assert result.status == ReportStatus.SUBMITTED
    doc = store.raw(REPORTS, result.report_id)
    assert doc["status"] == "submitted"
    assert doc["isDraft"] is False
    assert doc["submittedAt"] == NOW
    assert doc["createdAt"] == NOW
    assert doc["userId"] == "u-citizen"
    assert len(doc["photoUrls"]) == 1
    assert doc["videoUrl"] is None
    Report.from_document(doc)


async def test_submit_requires_all_fields_and_media(lifecycle, store, blobs, users):
    with pytest.raises(ValidationError, match="complete all fields"):
        await lifecycle.submit(users["citizen"], pothole(description=""), [photo()])
    with pytest.raises(ValidationError):
        await lifecycle.submit(users["citizen"], pothole(), [])

    assert store.writes_to(REPORTS) == []
    assert blobs.blobs == {}


async def test_video_over_limit_is_rejected_before_upload(lifecycle, store, blobs, users):
    with pytest.raises(ValidationError, match="16.0 MB"):
        await lifecycle.submit(users["citizen"], pothole(), [photo(), video(16)])

    assert store.writes_to(REPORTS) == []
    assert blobs.blobs == {}


async def test_video_under_limit_is_accepted(lifecycle, store, users):
    result = await lifecycle.submit(users["citizen"], pothole(), [video(14)])

    doc = store.raw(REPORTS, result.report_id)
    assert doc["videoUrl"].startswith("mem://")
    assert doc["photoUrls"] == []


async def test_too_many_photos_rejected(lifecycle, users):
    with pytest.raises(ValidationError, match="At most 4 photos"):
        await lifecycle.submit(users["citizen"], pothole(), [photo(f"{i}.jpg") for i in range(5)])


async def test_unknown_category_rejected_when_list_configured(lifecycle, store, users):
    store.seed("config", {"_id": "categories", "list": ["Streetlight"]})

    with pytest.raises(ValidationError, match="Unknown category"):
        await lifecycle.submit(users["citizen"], pothole(), [photo()])


async def test_submit_is_audited(lifecycle, store, users):
    result = await lifecycle.submit(users["citizen"], pothole(), [photo()])

    entries = list(store.collections[LOGS].values())
    assert [e["action"] for e in entries] == ["report_submitted"]
    assert entries[0]["reportId"] == result.report_id
    assert entries[0]["userRole"] == "citizen"


# --- drafts ---

async def test_save_draft_then_submit(lifecycle, store, users):
    draft = await lifecycle.save_draft(users["citizen"], pothole(location=None))
    assert store.raw(REPORTS, draft.report_id)["status"] == "draft"
    assert store.raw(REPORTS, draft.report_id)["isDraft"] is True

    content = ReportContent(location=Location(latitude=52.52, longitude=13.405))
    result = await lifecycle.submit(users["citizen"], content, [photo()], report_id=draft.report_id)

    doc = store.raw(REPORTS, draft.report_id)
    assert result.report_id == draft.report_id
    assert doc["status"] == "submitted"
    assert doc["isDraft"] is False
    assert doc["title"] == "Pothole on Elm St"


async def test_draft_needs_title(lifecycle, users):
    with pytest.raises(ValidationError, match="title"):
        await lifecycle.save_draft(users["citizen"], ReportContent(description="no title"))


async def test_cannot_submit_someone_elses_draft(lifecycle, users, make_report):
    report_id = make_report("draft", userId="u-someone-else")

    with pytest.raises(NotAuthorized):
        await lifecycle.submit(users["citizen"], pothole(), [photo()], report_id=report_id)


async def test_cannot_resubmit_submitted_report(lifecycle, store, users, make_report):
    report_id = make_report("submitted")

    with pytest.raises(StateViolation):
        await lifecycle.submit(users["citizen"], pothole(), [photo()], report_id=report_id)
    assert store.writes_to(REPORTS) == []


# --- assign ---

async def test_assign_sets_all_assignment_fields(lifecycle, store, users, make_report):
    report_id = make_report("submitted")

    result = await lifecycle.assign(
        users["dispatcher"], report_id, "u-engineer", NOW + timedelta(days=3), priority="high", notes="Urgent"
    )

    doc = store.raw(REPORTS, report_id)
    assert result.status == ReportStatus.ASSIGNED
    assert doc["status"] == "assigned"
    assert doc["assignedTo"] == "u-engineer"
    assert doc["assignedToName"] == "Eli Engineer"
    assert doc["priority"] == "high"
    assert doc["deadline"] == NOW + timedelta(days=3)
    assert doc["dispatcherNotes"] == "Urgent"
    assert doc["assignedAt"] == NOW
    assert result.propagation.updated == 0
    Report.from_document(doc)


async def test_assign_accepts_tomorrow_as_date_string(lifecycle, store, users, make_report):
    report_id = make_report("submitted")
    tomorrow = (NOW + timedelta(days=1)).date().isoformat()

    await lifecycle.assign(users["dispatcher"], report_id, "u-engineer", tomorrow)

    assert store.raw(REPORTS, report_id)["status"] == "assigned"


async def test_assign_rejects_past_deadline(lifecycle, store, users, make_report):
    report_id = make_report("submitted")
    yesterday = (NOW - timedelta(days=1)).date().isoformat()

    with pytest.raises(ValidationError, match="Invalid Deadline"):
        await lifecycle.assign(users["dispatcher"], report_id, "u-engineer", yesterday)

    assert store.raw(REPORTS, report_id)["status"] == "submitted"
    assert store.writes_to(REPORTS) == []


async def test_assign_rejects_unparseable_deadline(lifecycle, users, make_report):
    report_id = make_report("submitted")

    with pytest.raises(ValidationError, match="Invalid Deadline"):
        await lifecycle.assign(users["dispatcher"], report_id, "u-engineer", "next friday")


async def test_assign_requires_an_engineer(lifecycle, users, make_report):
    report_id = make_report("submitted")

    with pytest.raises(ValidationError, match="not an engineer"):
        await lifecycle.assign(users["dispatcher"], report_id, "u-qa", NOW + timedelta(days=1))


async def test_assign_requires_dispatcher(lifecycle, store, users, make_report):
    report_id = make_report("submitted")

    with pytest.raises(NotAuthorized):
        await lifecycle.assign(users["qa"], report_id, "u-engineer", NOW + timedelta(days=1))
    assert store.writes_to(REPORTS) == []


async def test_assign_from_wrong_status_writes_nothing(lifecycle, store, users, make_report):
    report_id = make_report("resolved")

    with pytest.raises(StateViolation) as exc:
        await lifecycle.assign(users["dispatcher"], report_id, "u-engineer", NOW + timedelta(days=1))

    assert exc.value.current_status == "resolved"
    assert store.writes_to(REPORTS) == []


async def test_duplicates_cannot_be_actioned_directly(lifecycle, users, make_report):
    master_id = make_report("submitted", duplicateCount=1)
    duplicate_id = make_report("submitted", isDuplicateOf=master_id)

    with pytest.raises(ValidationError, match="merged into"):
        await lifecycle.assign(users["dispatcher"], duplicate_id, "u-engineer", NOW + timedelta(days=1))


async def test_concurrent_change_is_reported_as_state_violation(lifecycle, store, users, make_report, monkeypatch):
    report_id = make_report("submitted")
    stale = await store.get(REPORTS, report_id)
    store.raw(REPORTS, report_id).update(
        {"status": "assigned", "assignedTo": "u-other_engineer", "assignedAt": NOW}
    )

    async def stale_read(_):
        return stale

    monkeypatch.setattr(lifecycle, "get_report", stale_read)

    with pytest.raises(StateViolation) as exc:
        await lifecycle.assign(users["dispatcher"], report_id, "u-engineer", NOW + timedelta(days=1))

    assert exc.value.current_status == "assigned"
    assert store.raw(REPORTS, report_id)["assignedTo"] == "u-other_engineer"


# --- engineer ---

async def test_start_sets_started_at(lifecycle, store, users, make_report):
    report_id = make_report("assigned")

    result = await lifecycle.start(users["engineer"], report_id)

    doc = store.raw(REPORTS, report_id)
    assert result.status == ReportStatus.IN_PROGRESS
    assert doc["status"] == "in progress"
    assert doc["startedAt"] == NOW


async def test_only_assignee_can_start(lifecycle, store, users, make_report):
    report_id = make_report("assigned")

    with pytest.raises(NotAuthorized):
        await lifecycle.start(users["other_engineer"], report_id)
    assert store.raw(REPORTS, report_id)["status"] == "assigned"


async def test_restart_after_reopen(lifecycle, store, users, make_report):
    report_id = make_report("reopened")

    await lifecycle.start(users["engineer"], report_id)

    assert store.raw(REPORTS, report_id)["status"] == "in progress"


async def test_start_from_submitted_is_a_state_violation(lifecycle, store, users, make_report):
    report_id = make_report("submitted", assignedTo="u-engineer")

    with pytest.raises(StateViolation):
        await lifecycle.start(users["engineer"], report_id)
    assert store.writes_to(REPORTS) == []


async def test_save_progress_keeps_status(lifecycle, store, users, make_report):
    report_id = make_report("in progress")

    result = await lifecycle.save_progress(users["engineer"], report_id, "Half done", [photo("after1.jpg")])

    doc = store.raw(REPORTS, report_id)
    assert "status" not in result.payload
    assert doc["status"] == "in progress"
    assert doc["resolutionNotes"] == "Half done"
    assert len(doc["afterPhotos"]) == 1
    assert result.propagation is None


async def test_resolve_with_notes_and_after_photo(lifecycle, store, users, make_report):
    report_id = make_report("in progress")

    result = await lifecycle.resolve(users["engineer"], report_id, "Filled and resurfaced", [photo("after.jpg")])

    doc = store.raw(REPORTS, report_id)
    assert result.status == ReportStatus.RESOLVED
    assert doc["resolutionNotes"] == "Filled and resurfaced"
    assert len(doc["afterPhotos"]) == 1
    assert doc["afterVideos"] == []
    assert doc["resolvedAt"] == NOW


async def test_resolve_requires_notes(lifecycle, store, users, make_report):
    report_id = make_report("in progress")

    with pytest.raises(ValidationError, match="resolution notes"):
        await lifecycle.resolve(users["engineer"], report_id, "  ", [photo()])
    assert store.raw(REPORTS, report_id)["status"] == "in progress"


async def test_resolve_requires_after_evidence(lifecycle, users, make_report):
    report_id = make_report("in progress")

    with pytest.raises(ValidationError, match="after photo or video"):
        await lifecycle.resolve(users["engineer"], report_id, "Done", [])


async def test_resolve_reuses_saved_progress_evidence(lifecycle, store, users, make_report):
    report_id = make_report("in progress")
    await lifecycle.save_progress(users["engineer"], report_id, "Half done", [photo("a.jpg")])

    await lifecycle.resolve(users["engineer"], report_id, "Done", [])

    doc = store.raw(REPORTS, report_id)
    assert doc["status"] == "resolved"
    assert len(doc["afterPhotos"]) == 1


async def test_after_evidence_limit_counts_saved_media(lifecycle, users, make_report):
    report_id = make_report("in progress")
    await lifecycle.save_progress(users["engineer"], report_id, "", [photo(f"{i}.jpg") for i in range(4)])

    with pytest.raises(ValidationError, match="At most 4 photos"):
        await lifecycle.resolve(users["engineer"], report_id, "Done", [photo("extra.jpg")])


# --- QA ---

async def test_verify_defaults_feedback(lifecycle, store, users, make_report):
    report_id = make_report("resolved")

    await lifecycle.verify(users["qa"], report_id)

    doc = store.raw(REPORTS, report_id)
    assert doc["status"] == "verified"
    assert doc["qaFeedback"] == "Approved"
    assert doc["verifiedAt"] == NOW
    Report.from_document(doc)


async def test_verify_from_in_progress_is_rejected(lifecycle, store, users, make_report):
    report_id = make_report("in progress")

    with pytest.raises(StateViolation):
        await lifecycle.verify(users["qa"], report_id)
    assert store.writes_to(REPORTS) == []


async def test_reopen_without_reason_keeps_resolved(lifecycle, store, users, make_report):
    report_id = make_report("resolved")

    with pytest.raises(ValidationError, match="reason"):
        await lifecycle.reopen(users["qa"], report_id, "")

    assert store.raw(REPORTS, report_id)["status"] == "resolved"
    assert store.writes_to(REPORTS) == []


async def test_reopen_with_reason_and_notes(lifecycle, store, users, make_report):
    report_id = make_report("resolved")

    await lifecycle.reopen(users["qa"], report_id, "Incomplete repair", feedback="Edges crumbling", notes="Redo")

    doc = store.raw(REPORTS, report_id)
    assert doc["status"] == "reopened"
    assert doc["reopenReason"] == "Incomplete repair"
    assert doc["qaFeedback"] == "Edges crumbling"
    assert doc["reopenNotes"] == "Redo"
    assert doc["reopenedAt"] == NOW


async def test_engineer_cannot_verify(lifecycle, users, make_report):
    report_id = make_report("resolved")

    with pytest.raises(NotAuthorized):
        await lifecycle.verify(users["engineer"], report_id)


# --- admin ---

async def test_soft_delete_blocks_further_actions(lifecycle, store, users, make_report):
    report_id = make_report("assigned")

    await lifecycle.soft_delete(users["admin"], report_id)

    assert store.raw(REPORTS, report_id)["isDeleted"] is True
    with pytest.raises(StateViolation, match="deleted"):
        await lifecycle.start(users["engineer"], report_id)


async def test_only_admin_deletes(lifecycle, users, make_report):
    report_id = make_report("submitted")

    with pytest.raises(NotAuthorized):
        await lifecycle.soft_delete(users["dispatcher"], report_id)


# --- uploads ---

async def test_cancel_before_upload_leaves_nothing(lifecycle, store, blobs, users):
    token = CancelToken()
    token.cancel()

    with pytest.raises(UploadCancelled):
        await lifecycle.submit(users["citizen"], pothole(), [photo()], cancel_token=token)

    assert store.writes_to(REPORTS) == []
    assert blobs.blobs == {}


async def test_cancel_between_items_discards_uploaded_blobs(lifecycle, store, blobs, users):
    token = CancelToken()

    def on_progress(progress):
        if progress.index == 1:
            token.cancel()

    with pytest.raises(UploadCancelled):
        await lifecycle.submit(
            users["citizen"], pothole(), [photo("a.jpg"), photo("b.jpg")],
            cancel_token=token, on_progress=on_progress,
        )

    assert blobs.blobs == {}
    assert len(blobs.deleted) == 2
    assert store.writes_to(REPORTS) == []


async def test_cancel_interrupts_in_flight_upload(lifecycle, store, blobs, users, make_report):
    report_id = make_report("in progress")
    blobs.gate = asyncio.Event()
    token = CancelToken()

    def on_progress(progress):
        if progress.bytes_sent < progress.total_bytes:
            token.cancel()

    with pytest.raises(UploadCancelled):
        await lifecycle.resolve(
            users["engineer"], report_id, "Done", [photo()], cancel_token=token, on_progress=on_progress
        )

    assert blobs.blobs == {}
    doc = store.raw(REPORTS, report_id)
    assert doc["status"] == "in progress"
    assert "afterPhotos" not in doc


async def test_cancel_after_commit_has_no_effect(lifecycle, store, users):
    token = CancelToken()

    result = await lifecycle.submit(users["citizen"], pothole(), [photo()], cancel_token=token)

    assert token.sealed
    assert token.cancel() is False
    assert store.raw(REPORTS, result.report_id)["status"] == "submitted"


async def test_upload_failure_discards_partial_upload(lifecycle, store, blobs, users):
    blobs.fail_on_call = 1

    with pytest.raises(UploadFailure):
        await lifecycle.submit(users["citizen"], pothole(), [photo("a.jpg"), photo("b.jpg")])

    assert len(blobs.deleted) == 1
    assert blobs.blobs == {}
    assert store.writes_to(REPORTS) == []


async def test_progress_is_reported_per_item(lifecycle, users):
    seen = []

    await lifecycle.submit(
        users["citizen"], pothole(), [photo("a.jpg"), video(1)], on_progress=seen.append
    )

    assert {p.index for p in seen} == {0, 1}
    assert all(p.total_items == 2 for p in seen)
    assert seen[-1].bytes_sent == seen[-1].total_bytes


# --- after evidence edits ---

async def test_reopened_job_can_swap_an_after_photo(lifecycle, store, blobs, users, make_report):
    stored = [f"mem://seed/after{i}" for i in range(4)]
    report_id = make_report("reopened", afterPhotos=stored, afterVideos=[], resolutionNotes="Filled")
    await lifecycle.start(users["engineer"], report_id)

    await lifecycle.resolve(
        users["engineer"], report_id, "Redone properly", [photo("redo.jpg")], remove_after=[stored[0]]
    )

    doc = store.raw(REPORTS, report_id)
    assert doc["status"] == "resolved"
    assert doc["afterPhotos"][:3] == stored[1:]
    assert len(doc["afterPhotos"]) == 4
    assert doc["afterPhotos"][3].endswith("redo.jpg")
    assert blobs.deleted == [stored[0]]


async def test_save_progress_removes_after_items(lifecycle, store, blobs, users, make_report):
    report_id = make_report("in progress", afterPhotos=["mem://seed/a", "mem://seed/b"], afterVideos=["mem://seed/v"])

    await lifecycle.save_progress(users["engineer"], report_id, "Tidying", remove_after=["mem://seed/a", "mem://seed/v"])

    doc = store.raw(REPORTS, report_id)
    assert doc["afterPhotos"] == ["mem://seed/b"]
    assert doc["afterVideos"] == []
    assert blobs.deleted == ["mem://seed/a", "mem://seed/v"]


async def test_removing_unknown_after_item_is_rejected(lifecycle, store, blobs, users, make_report):
    report_id = make_report("in progress", afterPhotos=["mem://seed/a"])

    with pytest.raises(ValidationError, match="Not part of this job"):
        await lifecycle.save_progress(users["engineer"], report_id, "", remove_after=["mem://elsewhere/x"])

    assert store.writes_to(REPORTS) == []
    assert blobs.deleted == []


async def test_resolve_needs_evidence_left_after_removal(lifecycle, store, users, make_report):
    report_id = make_report("in progress", afterPhotos=["mem://seed/a"])

    with pytest.raises(ValidationError, match="after photo or video"):
        await lifecycle.resolve(users["engineer"], report_id, "Done", [], remove_after=["mem://seed/a"])
    assert store.raw(REPORTS, report_id)["status"] == "in progress"


async def test_failed_commit_keeps_removed_items(lifecycle, store, blobs, users, make_report):
    report_id = make_report("in progress", afterPhotos=["mem://seed/a", "mem://seed/b"])
    store.fail_updates_for.add(report_id)

    with pytest.raises(ConnectionError):
        await lifecycle.resolve(users["engineer"], report_id, "Done", [], remove_after=["mem://seed/a"])

    assert blobs.deleted == []
    assert store.raw(REPORTS, report_id)["afterPhotos"] == ["mem://seed/a", "mem://seed/b"]


# --- written fields ---

async def test_deadline_equal_to_now_is_rejected(lifecycle, store, users, make_report):
    report_id = make_report("submitted")

    with pytest.raises(ValidationError, match="Invalid Deadline"):
        await lifecycle.assign(users["dispatcher"], report_id, "u-engineer", NOW)
    assert store.writes_to(REPORTS) == []


async def test_transitions_change_only_their_own_fields(lifecycle, store, users, make_report):
    report_id = make_report("submitted")
    steps = [
        (Action.ASSIGN, lambda: lifecycle.assign(users["dispatcher"], report_id, "u-engineer", NOW + timedelta(days=2))),
        (Action.START, lambda: lifecycle.start(users["engineer"], report_id)),
        (Action.SAVE_PROGRESS, lambda: lifecycle.save_progress(users["engineer"], report_id, "Half", [photo("a.jpg")])),
        (Action.RESOLVE, lambda: lifecycle.resolve(users["engineer"], report_id, "Done", [])),
        (Action.REOPEN, lambda: lifecycle.reopen(users["qa"], report_id, "Incomplete", notes="Edges")),
        (Action.START, lambda: lifecycle.start(users["engineer"], report_id)),
        (Action.RESOLVE, lambda: lifecycle.resolve(users["engineer"], report_id, "Redone", [])),
        (Action.VERIFY, lambda: lifecycle.verify(users["qa"], report_id)),
    ]

    for action, run in steps:
        before = dict(store.raw(REPORTS, report_id))
        await run()
        after = store.raw(REPORTS, report_id)

        changed = {key for key in set(before) | set(after) if before.get(key) != after.get(key)}
        assert changed <= SIDE_EFFECT_FIELDS[action] | {"status"}, action
        Report.from_document(after)


async def test_inconsistent_stored_report_is_not_written(lifecycle, store, users, make_report):
    report_id = make_report("assigned", deadline=None, assignedAt=None)

    with pytest.raises(ValidationError, match="cannot be updated"):
        await lifecycle.start(users["engineer"], report_id)

    assert store.raw(REPORTS, report_id)["status"] == "assigned"
    assert store.writes_to(REPORTS) == []


def test_writes_outside_declared_fields_are_refused(lifecycle):
    doc = {"_id": "r1", "status": "assigned", "isDraft": False}

    with pytest.raises(ValueError, match="may not write"):
        lifecycle._check_shape(Action.START, doc, {"status": "in progress", "startedAt": NOW, "priority": "low"})


# --- propagation lookup ---

async def test_failed_duplicate_lookup_is_reported(lifecycle, store, users, make_report):
    report_id = make_report("assigned", duplicateCount=1)

    async def broken_find(collection, filters=None, **kwargs):
        raise ConnectionError("reports unavailable")

    store.find = broken_find

    result = await lifecycle.start(users["engineer"], report_id)

    assert store.raw(REPORTS, report_id)["status"] == "in progress"
    assert result.propagation.ok is False
    assert result.propagation.failed_ids == []
    assert "reports unavailable" in result.propagation.lookup_error
