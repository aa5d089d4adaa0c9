"""
Report Lifecycle Engine

Validates and applies every status transition of a report:

    (new) --submit--> submitted --assign--> assigned --start--> in progress
    in progress --resolve--> resolved --verify--> verified
                                      --reopen--> reopened --start--> in progress

Each transition is one document write guarded by the status the engine read,
so a concurrent transition shows up as StateViolation instead of a
half-applied update. After a master write the Duplicate-Merge Propagator
replays the change onto the master's duplicates.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as ModelValidationError

from cityfix.core.config import REPORTS, USERS
from cityfix.core.errors import (
    NotAuthorized,
    ReportNotFound,
    StateViolation,
    UploadCancelled,
    ValidationError,
)
from cityfix.models.report_model import Priority, Report, ReportContent, ReportStatus
from cityfix.models.user_model import Role
from cityfix.services.audit_service import AuditService
from cityfix.services.config_service import ConfigService
from cityfix.services.document_store import DocumentStore
from cityfix.services.merge_service import DuplicatePropagator, PropagationResult
from cityfix.services.report_state import Action, next_status, undeclared_fields
from cityfix.services.storage_service import (
    CancelToken,
    EvidenceItem,
    EvidenceUploader,
    ProgressCallback,
    UploadedEvidence,
    validate_evidence,
)
from cityfix.utils.helpers import new_id, parse_datetime, utcnow

logger = logging.getLogger(__name__)

Actor = Dict[str, Any]


@dataclass
class TransitionResult:
    report_id: str
    action: Action
    status: ReportStatus
    payload: Dict[str, Any]
    propagation: Optional[PropagationResult] = None


class ReportLifecycle:

    def __init__(
        self,
        store: DocumentStore,
        uploader: EvidenceUploader,
        propagator: Optional[DuplicatePropagator] = None,
        audit: Optional[AuditService] = None,
        config: Optional[ConfigService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.uploader = uploader
        self.propagator = propagator or DuplicatePropagator(store)
        self.audit = audit
        self.config = config
        self.clock = clock

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def get_report(self, report_id: str) -> Dict[str, Any]:
        """Point read; soft-deleted reports stay addressable."""
        doc = await self.store.get(REPORTS, report_id)
        if doc is None:
            raise ReportNotFound(report_id)
        return doc

    @staticmethod
    def _require_role(actor: Actor, *roles: Role):
        if not actor or actor.get("role") not in {role.value for role in roles}:
            allowed = ", ".join(role.value for role in roles)
            raise NotAuthorized(f"This action requires role: {allowed}")

    @staticmethod
    def _require_assignee(actor: Actor, doc: Dict[str, Any]):
        if not actor or doc.get("assignedTo") != actor.get("id"):
            raise NotAuthorized("Only the assigned engineer can work on this job")

    @staticmethod
    def _check_transition(action: Action, doc: Optional[Dict[str, Any]]) -> ReportStatus:
        if doc is not None and doc.get("isDeleted"):
            raise StateViolation(action.value, "deleted")
        target = next_status(action, doc.get("status") if doc else None)
        if doc is not None and doc.get("isDuplicateOf") and action not in (Action.SAVE_DRAFT, Action.SUBMIT):
            raise ValidationError(
                f"Report is merged into {doc['isDuplicateOf']}; update the master report instead"
            )
        return target

    @staticmethod
    def _check_shape(action: Action, doc: Optional[Dict[str, Any]], payload: Dict[str, Any]):
        """Refuse writes outside the action's declared fields or that leave an invalid report."""
        extra = undeclared_fields(action, payload)
        if extra:
            raise ValueError(f"'{action.value}' may not write {extra}")
        try:
            Report.from_document({**(doc or {"_id": ""}), **payload})
        except ModelValidationError as e:
            reason = e.errors()[0].get("msg", str(e))
            report_id = (doc or {}).get("_id", "new report")
            logger.error(f"❌ '{action.value}' would leave report {report_id} inconsistent: {reason}")
            raise ValidationError(f"Report {report_id} cannot be updated: {reason}")

    async def _insert(self, action: Action, payload: Dict[str, Any]) -> str:
        self._check_shape(action, None, payload)
        payload.update({"_id": new_id(), "createdAt": payload["updatedAt"], "isDeleted": False})
        return await self.store.insert(REPORTS, payload)

    async def _commit(self, action: Action, doc: Dict[str, Any], payload: Dict[str, Any]):
        self._check_shape(action, doc, payload)
        applied = await self.store.update(
            REPORTS, doc["_id"], payload, expected={"status": doc.get("status")}
        )
        if not applied:
            latest = await self.store.get(REPORTS, doc["_id"])
            if latest is None:
                raise ReportNotFound(doc["_id"])
            logger.warning(f"⚠️ Report {doc['_id']} changed before '{action.value}' could be applied")
            raise StateViolation(action.value, latest.get("status"))

    async def _propagate(self, report_id: str, payload: Dict[str, Any]) -> PropagationResult:
        try:
            return await self.propagator.propagate(report_id, payload)
        except Exception as e:
            # The master write already succeeded; the duplicates lookup itself failed
            logger.error(f"❌ Could not propagate '{payload.get('status')}' from {report_id}: {e}")
            return PropagationResult(master_id=report_id, lookup_error=str(e))

    async def _audit(self, actor: Actor, action: str, report_id: str, details: str = ""):
        if self.audit:
            await self.audit.log_action(actor, action, report_id, details)

    async def _upload(
        self,
        items: List[EvidenceItem],
        prefix: str,
        cancel_token: Optional[CancelToken],
        on_progress: Optional[ProgressCallback],
    ) -> UploadedEvidence:
        uploaded = UploadedEvidence()
        if items:
            uploaded = await self.uploader.upload(items, prefix, cancel_token, on_progress)
        # Point of no return: the status write is next
        if cancel_token is not None and not cancel_token.seal():
            await self.uploader.discard(uploaded.urls)
            raise UploadCancelled()
        return uploaded

    # ------------------------------------------------------------------
    # citizen
    # ------------------------------------------------------------------

    async def save_draft(
        self, actor: Actor, content: ReportContent, report_id: Optional[str] = None
    ) -> TransitionResult:
        doc = None
        if report_id:
            doc = await self.get_report(report_id)
            if doc.get("userId") != actor.get("id"):
                raise NotAuthorized("You can only edit your own drafts")
        target = self._check_transition(Action.SAVE_DRAFT, doc)

        if not content.title.strip():
            raise ValidationError("Please add a title")

        now = self.clock()
        payload = {
            "title": content.title.strip(),
            "description": content.description.strip(),
            "category": content.category,
            "address": content.address,
            "location": content.location.model_dump() if content.location else None,
            "userId": actor.get("id"),
            "userName": actor.get("name"),
            "status": target.value,
            "isDraft": True,
            "updatedAt": now,
        }

        if doc is None:
            report_id = await self._insert(Action.SAVE_DRAFT, payload)
            logger.info(f"📝 Draft {report_id} created by {actor.get('id')}")
        else:
            await self._commit(Action.SAVE_DRAFT, doc, payload)
            logger.info(f"📝 Draft {report_id} updated")

        return TransitionResult(report_id, Action.SAVE_DRAFT, target, payload)

    async def submit(
        self,
        actor: Actor,
        content: ReportContent,
        evidence: List[EvidenceItem],
        report_id: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TransitionResult:
        """Submit a new report, or a saved draft when `report_id` is given."""
        doc = None
        if report_id:
            doc = await self.get_report(report_id)
            if doc.get("userId") != actor.get("id"):
                raise NotAuthorized("You can only submit your own drafts")
        target = self._check_transition(Action.SUBMIT, doc)

        draft = doc or {}
        title = (content.title or draft.get("title") or "").strip()
        description = (content.description or draft.get("description") or "").strip()
        category = content.category or draft.get("category")
        address = content.address or draft.get("address")
        location = content.location.model_dump() if content.location else draft.get("location")

        if not title or not description or not category or not location or not evidence:
            raise ValidationError("Please complete all fields and add media")
        validate_evidence(evidence, "report")
        if self.config:
            await self.config.ensure_category(category)

        uploaded = await self._upload(evidence, f"reports/{actor.get('id')}", cancel_token, on_progress)

        now = self.clock()
        payload = {
            "title": title,
            "description": description,
            "category": category,
            "address": address,
            "location": location,
            "photoUrls": uploaded.photo_urls,
            "videoUrl": uploaded.video_urls[0] if uploaded.video_urls else None,
            "userId": actor.get("id"),
            "userName": actor.get("name"),
            "status": target.value,
            "isDraft": False,
            "submittedAt": now,
            "updatedAt": now,
        }

        try:
            if doc is None:
                report_id = await self._insert(Action.SUBMIT, payload)
            else:
                await self._commit(Action.SUBMIT, doc, payload)
        except Exception:
            await self.uploader.discard(uploaded.urls)
            raise

        logger.info(f"✅ Report {report_id} submitted by {actor.get('id')}")
        await self._audit(actor, "report_submitted", report_id, f"Title: {title}")
        return TransitionResult(report_id, Action.SUBMIT, target, payload)

    # ------------------------------------------------------------------
    # dispatcher
    # ------------------------------------------------------------------

    async def assign(
        self,
        actor: Actor,
        report_id: str,
        engineer_id: str,
        deadline: Any,
        priority: str = Priority.MEDIUM.value,
        notes: str = "",
    ) -> TransitionResult:
        self._require_role(actor, Role.DISPATCHER)
        doc = await self.get_report(report_id)
        target = self._check_transition(Action.ASSIGN, doc)

        if not engineer_id:
            raise ValidationError("Please select an engineer")
        engineer = await self.store.get(USERS, engineer_id)
        if engineer is None or engineer.get("role") != Role.ENGINEER.value:
            raise ValidationError("Selected user is not an engineer")
        if engineer.get("disabled"):
            raise ValidationError("Selected engineer account is disabled")

        now = self.clock()
        due = parse_datetime(deadline)
        if due is None or due <= now:
            raise ValidationError("Invalid Deadline")

        try:
            priority_value = Priority(priority).value
        except ValueError:
            raise ValidationError(f"Unknown priority '{priority}'")

        payload = {
            "status": target.value,
            "assignedTo": engineer_id,
            "assignedToName": engineer.get("name") or engineer.get("email"),
            "priority": priority_value,
            "deadline": due,
            "dispatcherNotes": (notes or "").strip(),
            "assignedAt": now,
        }
        await self._commit(Action.ASSIGN, doc, payload)
        logger.info(f"📋 Report {report_id} assigned to {engineer_id} by {actor.get('id')}")

        propagation = await self._propagate(report_id, payload)
        await self._audit(actor, "report_assigned", report_id, f"Engineer: {payload['assignedToName']}")
        return TransitionResult(report_id, Action.ASSIGN, target, payload, propagation)

    # ------------------------------------------------------------------
    # engineer
    # ------------------------------------------------------------------

    async def start(self, actor: Actor, report_id: str) -> TransitionResult:
        """Start an assigned job, or restart one QA reopened."""
        doc = await self.get_report(report_id)
        target = self._check_transition(Action.START, doc)
        self._require_assignee(actor, doc)

        payload = {"status": target.value, "startedAt": self.clock()}
        await self._commit(Action.START, doc, payload)
        logger.info(f"🔧 Job {report_id} started by {actor.get('id')} (was {doc.get('status')})")

        propagation = await self._propagate(report_id, payload)
        await self._audit(actor, "job_started", report_id)
        return TransitionResult(report_id, Action.START, target, payload, propagation)

    @staticmethod
    def _kept_after(doc: Dict[str, Any], remove_after: Optional[List[str]]):
        """Split the stored after evidence into (kept photos, kept videos, removed urls)."""
        photos = list(doc.get("afterPhotos") or [])
        videos = list(doc.get("afterVideos") or [])
        remove = set(remove_after or [])
        unknown = remove - set(photos) - set(videos)
        if unknown:
            raise ValidationError(f"Not part of this job's after evidence: {sorted(unknown)[0]}")
        return (
            [url for url in photos if url not in remove],
            [url for url in videos if url not in remove],
            [url for url in photos + videos if url in remove],
        )

    async def save_progress(
        self,
        actor: Actor,
        report_id: str,
        notes: str = "",
        evidence: Optional[List[EvidenceItem]] = None,
        remove_after: Optional[List[str]] = None,
        cancel_token: Optional[CancelToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TransitionResult:
        """Store notes and after evidence without changing status; `remove_after` drops stored items."""
        evidence = evidence or []
        doc = await self.get_report(report_id)
        target = self._check_transition(Action.SAVE_PROGRESS, doc)
        self._require_assignee(actor, doc)

        photos, videos, removed = self._kept_after(doc, remove_after)
        validate_evidence(evidence, "after", len(photos), len(videos))
        uploaded = await self._upload(evidence, f"jobs/{report_id}", cancel_token, on_progress)

        payload = {
            "resolutionNotes": (notes or "").strip(),
            "afterPhotos": photos + uploaded.photo_urls,
            "afterVideos": videos + uploaded.video_urls,
        }
        try:
            await self._commit(Action.SAVE_PROGRESS, doc, payload)
        except Exception:
            await self.uploader.discard(uploaded.urls)
            raise

        await self.uploader.discard(removed)
        logger.info(f"💾 Progress saved on job {report_id} ({len(removed)} item(s) removed)")
        return TransitionResult(report_id, Action.SAVE_PROGRESS, target, payload)

    async def resolve(
        self,
        actor: Actor,
        report_id: str,
        notes: str,
        evidence: Optional[List[EvidenceItem]] = None,
        remove_after: Optional[List[str]] = None,
        cancel_token: Optional[CancelToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TransitionResult:
        evidence = evidence or []
        doc = await self.get_report(report_id)
        target = self._check_transition(Action.RESOLVE, doc)
        self._require_assignee(actor, doc)

        if not (notes or "").strip():
            raise ValidationError("Please add resolution notes")
        photos, videos, removed = self._kept_after(doc, remove_after)
        if not evidence and not photos and not videos:
            raise ValidationError("Please add at least one after photo or video")
        validate_evidence(evidence, "after", len(photos), len(videos))

        uploaded = await self._upload(evidence, f"jobs/{report_id}", cancel_token, on_progress)

        payload = {
            "status": target.value,
            "resolutionNotes": notes.strip(),
            "afterPhotos": photos + uploaded.photo_urls,
            "afterVideos": videos + uploaded.video_urls,
            "resolvedAt": self.clock(),
        }
        try:
            await self._commit(Action.RESOLVE, doc, payload)
        except Exception:
            await self.uploader.discard(uploaded.urls)
            raise

        await self.uploader.discard(removed)
        logger.info(f"✅ Job {report_id} resolved by {actor.get('id')}")
        propagation = await self._propagate(report_id, payload)
        await self._audit(actor, "job_resolved", report_id, f"Notes: {payload['resolutionNotes']}")
        return TransitionResult(report_id, Action.RESOLVE, target, payload, propagation)

    # ------------------------------------------------------------------
    # QA
    # ------------------------------------------------------------------

    async def verify(self, actor: Actor, report_id: str, feedback: Optional[str] = None) -> TransitionResult:
        self._require_role(actor, Role.QA)
        doc = await self.get_report(report_id)
        target = self._check_transition(Action.VERIFY, doc)

        payload = {
            "status": target.value,
            "qaFeedback": (feedback or "").strip() or "Approved",
            "verifiedAt": self.clock(),
        }
        await self._commit(Action.VERIFY, doc, payload)
        logger.info(f"✅ Report {report_id} verified by {actor.get('id')}")

        propagation = await self._propagate(report_id, payload)
        await self._audit(actor, "report_verified", report_id, f"Feedback: {payload['qaFeedback']}")
        return TransitionResult(report_id, Action.VERIFY, target, payload, propagation)

    async def reopen(
        self,
        actor: Actor,
        report_id: str,
        reason: str,
        feedback: str = "",
        notes: str = "",
    ) -> TransitionResult:
        self._require_role(actor, Role.QA)
        doc = await self.get_report(report_id)
        target = self._check_transition(Action.REOPEN, doc)

        if not (reason or "").strip():
            raise ValidationError("Please select a reason for reopening")

        payload = {
            "status": target.value,
            "reopenReason": reason.strip(),
            "qaFeedback": (feedback or "").strip(),
            "reopenedAt": self.clock(),
        }
        if (notes or "").strip():
            payload["reopenNotes"] = notes.strip()

        await self._commit(Action.REOPEN, doc, payload)
        logger.info(f"🔁 Report {report_id} reopened by {actor.get('id')}: {payload['reopenReason']}")

        propagation = await self._propagate(report_id, payload)
        details = f"Reason: {payload['reopenReason']}"
        if payload.get("reopenNotes"):
            details += f" - {payload['reopenNotes']}"
        await self._audit(actor, "report_reopened", report_id, details)
        return TransitionResult(report_id, Action.REOPEN, target, payload, propagation)

    # ------------------------------------------------------------------
    # admin
    # ------------------------------------------------------------------

    async def soft_delete(self, actor: Actor, report_id: str) -> Dict[str, Any]:
        self._require_role(actor, Role.ADMIN)
        doc = await self.get_report(report_id)
        if not doc.get("isDeleted"):
            await self.store.update(REPORTS, report_id, {"isDeleted": True})
            logger.info(f"🗑️ Report {report_id} soft-deleted by {actor.get('id')}")
            await self._audit(actor, "report_deleted", report_id, "Deleted by admin")
        return {"report_id": report_id, "isDeleted": True}
