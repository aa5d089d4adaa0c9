"""
Report lifecycle routes: citizen submission, dispatcher triage, engineer
jobs, QA review, admin management and duplicate merging
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel

from cityfix.core.auth import get_current_user
from cityfix.core.dependencies import get_lifecycle, get_merger, get_queries, get_store
from cityfix.core.config import MAX_VIDEO_BYTES
from cityfix.core.errors import NotAuthorized, ValidationError
from cityfix.core.permissions import require_role
from cityfix.models.report_model import Location, Priority, ReportContent
from cityfix.models.user_model import Role
from cityfix.services.document_store import DocumentStore
from cityfix.services.lifecycle_service import ReportLifecycle, TransitionResult
from cityfix.services.merge_service import DuplicateMerger
from cityfix.services.notification_service import mark_report_notifications_as_read
from cityfix.services.report_query_service import ReportQueryService
from cityfix.services.storage_service import PHOTO, UPLOAD_CHUNK_BYTES, VIDEO, EvidenceItem
from cityfix.utils.helpers import serialize_document, serialize_documents

router = APIRouter()

logger = logging.getLogger(__name__)

STAFF_ROLES = {Role.DISPATCHER.value, Role.ENGINEER.value, Role.QA.value, Role.ADMIN.value}


# --- Models ---
class DraftRequest(BaseModel):
    title: str
    description: str = ""
    category: Optional[str] = None
    address: Optional[str] = None
    location: Optional[Location] = None


class AssignRequest(BaseModel):
    engineer_id: str
    deadline: str
    priority: Priority = Priority.MEDIUM
    notes: str = ""


class VerifyRequest(BaseModel):
    feedback: Optional[str] = None


class ReopenRequest(BaseModel):
    reason: str = ""
    feedback: str = ""
    notes: str = ""


class MergeRequest(BaseModel):
    duplicate_ids: List[str]


# --- Helpers ---
def _too_large(upload: UploadFile, limit: int) -> ValidationError:
    return ValidationError(f"{upload.filename or 'Upload'} is too large; the limit is {limit // (1024 * 1024)} MB")


async def _read_upload(upload: UploadFile, limit: Optional[int]) -> bytes:
    """Read an upload in chunks, stopping as soon as it passes `limit` bytes."""
    if limit is not None and upload.size is not None and upload.size > limit:
        raise _too_large(upload, limit)
    chunks = []
    received = 0
    while True:
        chunk = await upload.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        received += len(chunk)
        if limit is not None and received > limit:
            raise _too_large(upload, limit)
        chunks.append(chunk)
    return b"".join(chunks)


async def _read_evidence(photos: Optional[List[UploadFile]], videos: Optional[List[UploadFile]]) -> List[EvidenceItem]:
    items = []
    for kind, files, limit in ((PHOTO, photos or [], None), (VIDEO, videos or [], MAX_VIDEO_BYTES)):
        for upload in files:
            data = await _read_upload(upload, limit)
            if data:
                items.append(EvidenceItem(kind, data, upload.filename or "", upload.content_type))
    return items


def _location(latitude: Optional[float], longitude: Optional[float]) -> Optional[Location]:
    if latitude is None or longitude is None:
        return None
    return Location(latitude=latitude, longitude=longitude)


def _transition_response(result: TransitionResult) -> Dict[str, Any]:
    response = {
        "success": True,
        "report_id": result.report_id,
        "action": result.action.value,
        "status": result.status.value,
    }
    if result.propagation is not None:
        response["propagation"] = result.propagation.as_dict()
    return response


# --- Citizen ---
@router.post("/drafts")
async def create_draft(
    request: DraftRequest,
    current_user: dict = Depends(require_role(Role.CITIZEN)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    result = await lifecycle.save_draft(current_user, ReportContent(**request.model_dump()))
    return _transition_response(result)


@router.put("/drafts/{report_id}")
async def update_draft(
    report_id: str,
    request: DraftRequest,
    current_user: dict = Depends(require_role(Role.CITIZEN)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    result = await lifecycle.save_draft(current_user, ReportContent(**request.model_dump()), report_id)
    return _transition_response(result)


@router.post("")
async def submit_report(
    title: str = Form(""),
    description: str = Form(""),
    category: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    photos: Optional[List[UploadFile]] = File(None),
    videos: Optional[List[UploadFile]] = File(None),
    current_user: dict = Depends(require_role(Role.CITIZEN)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    """Submit a new report with its before evidence (multipart)."""
    content = ReportContent(
        title=title,
        description=description,
        category=category,
        address=address,
        location=_location(latitude, longitude),
    )
    evidence = await _read_evidence(photos, videos)
    result = await lifecycle.submit(current_user, content, evidence)
    return _transition_response(result)


@router.post("/{report_id}/submit")
async def submit_draft(
    report_id: str,
    title: str = Form(""),
    description: str = Form(""),
    category: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    photos: Optional[List[UploadFile]] = File(None),
    videos: Optional[List[UploadFile]] = File(None),
    current_user: dict = Depends(require_role(Role.CITIZEN)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    """Submit a saved draft; empty form fields keep the draft's values."""
    content = ReportContent(
        title=title,
        description=description,
        category=category,
        address=address,
        location=_location(latitude, longitude),
    )
    evidence = await _read_evidence(photos, videos)
    result = await lifecycle.submit(current_user, content, evidence, report_id=report_id)
    return _transition_response(result)


@router.get("/mine")
async def my_reports(
    current_user: dict = Depends(get_current_user),
    queries: ReportQueryService = Depends(get_queries),
):
    reports = await queries.citizen_reports(current_user["id"])
    return {"success": True, "count": len(reports), "reports": serialize_documents(reports)}


# --- Queues ---
@router.get("/queue/dispatcher")
async def dispatcher_queue(
    filter: str = Query("new", description="new | assigned | all"),
    current_user: dict = Depends(require_role(Role.DISPATCHER)),
    queries: ReportQueryService = Depends(get_queries),
):
    reports = await queries.dispatcher_queue(filter)
    return {"success": True, "filter": filter, "count": len(reports), "reports": serialize_documents(reports)}


@router.get("/queue/engineer")
async def engineer_queue(
    current_user: dict = Depends(require_role(Role.ENGINEER)),
    queries: ReportQueryService = Depends(get_queries),
):
    reports = await queries.engineer_queue(current_user["id"])
    return {"success": True, "count": len(reports), "reports": serialize_documents(reports)}


@router.get("/queue/qa")
async def qa_queue(
    filter: str = Query("resolved", description="resolved | verified | reopened | all"),
    current_user: dict = Depends(require_role(Role.QA)),
    queries: ReportQueryService = Depends(get_queries),
):
    reports = await queries.qa_queue(filter)
    return {"success": True, "filter": filter, "count": len(reports), "reports": serialize_documents(reports)}


@router.get("")
async def admin_list_reports(
    page: int = Query(1, ge=1),
    status: Optional[str] = Query(None),
    current_user: dict = Depends(require_role(Role.ADMIN)),
    queries: ReportQueryService = Depends(get_queries),
):
    result = await queries.admin_page(page, status)
    result["items"] = serialize_documents(result["items"])
    return {"success": True, **result}


# --- Duplicates ---
@router.get("/duplicate-groups")
async def duplicate_groups(
    current_user: dict = Depends(require_role(Role.DISPATCHER, Role.ADMIN)),
    merger: DuplicateMerger = Depends(get_merger),
):
    """Possible duplicates awaiting a manual merge decision."""
    groups = await merger.review_groups()
    return {
        "success": True,
        "count": len(groups),
        "groups": [
            {"master": serialize_document(group[0]), "candidates": serialize_documents(group[1:])}
            for group in groups
        ],
    }


@router.post("/auto-merge")
async def auto_merge(
    current_user: dict = Depends(require_role(Role.DISPATCHER, Role.ADMIN)),
    merger: DuplicateMerger = Depends(get_merger),
):
    results = await merger.auto_merge(actor=current_user)
    return {
        "success": True,
        "merged_groups": [{"master_id": r.master_id, "merged_ids": r.merged_ids} for r in results],
    }


@router.post("/{report_id}/merge")
async def merge_reports(
    report_id: str,
    request: MergeRequest,
    current_user: dict = Depends(require_role(Role.DISPATCHER, Role.ADMIN)),
    merger: DuplicateMerger = Depends(get_merger),
):
    result = await merger.merge(report_id, request.duplicate_ids, actor=current_user)
    return {"success": True, "master_id": result.master_id, "merged_ids": result.merged_ids}


@router.get("/{report_id}/duplicates")
async def list_duplicates(
    report_id: str,
    current_user: dict = Depends(get_current_user),
    merger: DuplicateMerger = Depends(get_merger),
):
    if current_user.get("role") not in STAFF_ROLES:
        raise NotAuthorized("Staff access required")
    duplicates = await merger.list_duplicates(report_id)
    return {"success": True, "count": len(duplicates), "reports": serialize_documents(duplicates)}


# --- Dispatcher ---
@router.post("/{report_id}/assign")
async def assign_report(
    report_id: str,
    request: AssignRequest,
    current_user: dict = Depends(require_role(Role.DISPATCHER)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    result = await lifecycle.assign(
        current_user,
        report_id,
        request.engineer_id,
        request.deadline,
        priority=request.priority.value,
        notes=request.notes,
    )
    return _transition_response(result)


# --- Engineer ---
@router.post("/{report_id}/start")
async def start_job(
    report_id: str,
    current_user: dict = Depends(require_role(Role.ENGINEER)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    result = await lifecycle.start(current_user, report_id)
    return _transition_response(result)


@router.post("/{report_id}/progress")
async def save_progress(
    report_id: str,
    notes: str = Form(""),
    photos: Optional[List[UploadFile]] = File(None),
    videos: Optional[List[UploadFile]] = File(None),
    remove_after: Optional[List[str]] = Form(None),
    current_user: dict = Depends(require_role(Role.ENGINEER)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    evidence = await _read_evidence(photos, videos)
    result = await lifecycle.save_progress(current_user, report_id, notes, evidence, remove_after=remove_after)
    return _transition_response(result)


@router.post("/{report_id}/resolve")
async def resolve_job(
    report_id: str,
    notes: str = Form(""),
    photos: Optional[List[UploadFile]] = File(None),
    videos: Optional[List[UploadFile]] = File(None),
    remove_after: Optional[List[str]] = Form(None),
    current_user: dict = Depends(require_role(Role.ENGINEER)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    evidence = await _read_evidence(photos, videos)
    result = await lifecycle.resolve(current_user, report_id, notes, evidence, remove_after=remove_after)
    return _transition_response(result)


# --- QA ---
@router.post("/{report_id}/verify")
async def verify_report(
    report_id: str,
    request: Optional[VerifyRequest] = None,
    current_user: dict = Depends(require_role(Role.QA)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    result = await lifecycle.verify(current_user, report_id, request.feedback if request else None)
    return _transition_response(result)


@router.post("/{report_id}/reopen")
async def reopen_report(
    report_id: str,
    request: ReopenRequest,
    current_user: dict = Depends(require_role(Role.QA)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    result = await lifecycle.reopen(
        current_user, report_id, request.reason, feedback=request.feedback, notes=request.notes
    )
    return _transition_response(result)


# --- Admin ---
@router.delete("/{report_id}")
async def delete_report(
    report_id: str,
    current_user: dict = Depends(require_role(Role.ADMIN)),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
):
    result = await lifecycle.soft_delete(current_user, report_id)
    return {"success": True, **result}


# --- Detail ---
@router.get("/{report_id}")
async def get_report(
    report_id: str,
    current_user: dict = Depends(get_current_user),
    lifecycle: ReportLifecycle = Depends(get_lifecycle),
    store: DocumentStore = Depends(get_store),
):
    """Report detail; opening it marks the caller's notifications for it as read."""
    report = await lifecycle.get_report(report_id)
    if current_user.get("role") not in STAFF_ROLES and report.get("userId") != current_user["id"]:
        raise NotAuthorized("You can only view your own reports")

    await mark_report_notifications_as_read(store, current_user["id"], report_id)
    return {"success": True, "report": serialize_document(report)}
