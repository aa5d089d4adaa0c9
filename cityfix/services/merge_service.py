"""
Duplicate handling: merging reports into a master and keeping duplicates in sync.

Duplicates are never edited by staff directly. Each master transition is
replayed onto every duplicate as a status-scoped subset of the master's
update, so citizens who filed the same issue see the same progress.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from cityfix.core.config import (
    REPORTS,
    AUTO_MERGE_RADIUS_KM,
    AUTO_MERGE_TIME_HOURS,
    MANUAL_REVIEW_RADIUS_KM,
    MANUAL_REVIEW_TIME_HOURS,
)
from cityfix.core.errors import PropagationPartialFailure, ReportNotFound, StateViolation, ValidationError
from cityfix.models.report_model import ReportStatus
from cityfix.services.document_store import DocumentStore
from cityfix.services.report_state import coerce_status
from cityfix.utils.geo import haversine_km
from cityfix.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

# status -> fields copied from the master update (status itself is always copied)
SYNCED_FIELDS: Dict[ReportStatus, tuple] = {
    ReportStatus.ASSIGNED: (
        "assignedTo",
        "assignedToName",
        "priority",
        "deadline",
        "dispatcherNotes",
        "assignedAt",
    ),
    ReportStatus.IN_PROGRESS: ("startedAt",),
    ReportStatus.RESOLVED: ("afterPhotos", "afterVideos", "resolutionNotes", "resolvedAt"),
    ReportStatus.VERIFIED: ("qaFeedback", "verifiedAt"),
    ReportStatus.REOPENED: ("reopenReason", "qaFeedback", "reopenedAt"),
}


def sync_payload(update_payload: Dict[str, Any]) -> Dict[str, Any]:
    """Status-scoped subset of a master update to apply to each duplicate."""
    status = coerce_status(update_payload["status"])
    data = {"status": status.value}
    for name in SYNCED_FIELDS.get(status, ()):
        if name in update_payload:
            data[name] = update_payload[name]
    return data


@dataclass
class PropagationResult:
    master_id: str
    attempted: int = 0
    succeeded: int = 0
    failed_ids: List[str] = field(default_factory=list)
    # Set when the duplicates could not even be listed; nothing was attempted
    lookup_error: Optional[str] = None

    @property
    def updated(self) -> int:
        return self.succeeded

    @property
    def ok(self) -> bool:
        return not self.failed_ids and self.lookup_error is None

    def raise_for_failures(self):
        if not self.ok:
            raise PropagationPartialFailure(
                self.master_id, self.attempted, self.succeeded, self.failed_ids, self.lookup_error
            )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed_ids": list(self.failed_ids),
            "lookup_error": self.lookup_error,
        }


class DuplicatePropagator:

    def __init__(self, store: DocumentStore):
        self.store = store

    async def propagate(self, master_id: str, update_payload: Dict[str, Any]) -> PropagationResult:
        """
        Apply the status-scoped part of `update_payload` to every duplicate of
        `master_id`. Call only after the master write returned.

        Duplicates are written concurrently and independently; failures are
        collected in the result instead of aborting the others.
        """
        result = PropagationResult(master_id=master_id)
        duplicates = await self.store.find(REPORTS, {"isDuplicateOf": master_id})
        if not duplicates:
            return result

        data = sync_payload(update_payload)
        result.attempted = len(duplicates)

        async def apply(duplicate_id: str) -> bool:
            return await self.store.update(REPORTS, duplicate_id, dict(data))

        ids = [doc["_id"] for doc in duplicates]
        outcomes = await asyncio.gather(*(apply(dup_id) for dup_id in ids), return_exceptions=True)

        for dup_id, outcome in zip(ids, outcomes):
            if outcome is True:
                result.succeeded += 1
            else:
                result.failed_ids.append(dup_id)
                logger.error(f"❌ Failed to sync duplicate {dup_id} of {master_id}: {outcome!r}")

        if result.ok:
            logger.info(f"✅ Synced '{data['status']}' to {result.succeeded} duplicate(s) of {master_id}")
        else:
            logger.warning(
                f"⚠️ Synced {result.succeeded}/{result.attempted} duplicate(s) of {master_id}; "
                f"failed: {result.failed_ids}"
            )
        return result


def _created_at(report: Dict[str, Any], default: datetime) -> datetime:
    value = report.get("createdAt")
    return as_utc(value) if isinstance(value, datetime) else default


def find_duplicate_groups(
    reports: Iterable[Dict[str, Any]],
    radius_km: float,
    window_hours: float,
    now: Optional[datetime] = None,
    skip_masters: bool = False,
) -> List[List[Dict[str, Any]]]:
    """
    Group reports of the same category created close together in space and time.

    The first report of each group (earliest created) is its master. Reports
    without a location never group.
    """
    now = now or utcnow()
    ordered = sorted(
        (r for r in reports if r.get("location")),
        key=lambda r: _created_at(r, now),
    )
    processed = set()
    groups = []

    for report in ordered:
        if report["_id"] in processed:
            continue
        processed.add(report["_id"])
        if skip_masters and report.get("duplicateCount", 0) > 0:
            continue

        group = [report]
        for other in ordered:
            if other["_id"] in processed or other.get("category") != report.get("category"):
                continue
            if skip_masters and other.get("duplicateCount", 0) > 0:
                continue
            distance = haversine_km(
                report["location"]["latitude"],
                report["location"]["longitude"],
                other["location"]["latitude"],
                other["location"]["longitude"],
            )
            if distance > radius_km:
                continue
            hours = abs((_created_at(report, now) - _created_at(other, now)).total_seconds()) / 3600
            if hours > window_hours:
                continue
            group.append(other)
            processed.add(other["_id"])

        if len(group) > 1:
            groups.append(group)
    return groups


@dataclass
class MergeResult:
    master_id: str
    merged_ids: List[str]
    auto: bool = False


class DuplicateMerger:

    def __init__(self, store: DocumentStore, audit=None, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self.clock = clock

    async def _load(self, report_id: str) -> Dict[str, Any]:
        doc = await self.store.get(REPORTS, report_id)
        if doc is None:
            raise ReportNotFound(report_id)
        return doc

    async def merge(
        self,
        master_id: str,
        duplicate_ids: List[str],
        actor: Optional[Dict[str, Any]] = None,
        auto: bool = False,
    ) -> MergeResult:
        """Mark `duplicate_ids` as duplicates of `master_id`."""
        duplicate_ids = list(dict.fromkeys(duplicate_ids))
        if not duplicate_ids:
            raise ValidationError("Select at least one report to merge")
        if master_id in duplicate_ids:
            raise ValidationError("A report cannot be merged into itself")

        master = await self._load(master_id)
        if master.get("isDeleted"):
            raise ValidationError("Cannot merge into a deleted report")
        if master.get("isDuplicateOf"):
            raise ValidationError("A duplicate report cannot become a master")
        if master.get("status") != ReportStatus.SUBMITTED.value:
            raise ValidationError("Only submitted reports can be merged")

        duplicates = [await self._load(dup_id) for dup_id in duplicate_ids]
        for dup in duplicates:
            if dup.get("isDeleted"):
                raise ValidationError(f"Report {dup['_id']} is deleted")
            if dup.get("isDuplicateOf"):
                raise ValidationError(f"Report {dup['_id']} is already merged")
            if dup.get("duplicateCount", 0) > 0:
                raise ValidationError(f"Report {dup['_id']} already has duplicates of its own")
            if dup.get("status") != ReportStatus.SUBMITTED.value:
                raise ValidationError("Only submitted reports can be merged")

        merged_at = self.clock()
        merged_ids = []
        for dup in duplicates:
            applied = await self.store.update(
                REPORTS,
                dup["_id"],
                {"isDuplicateOf": master_id, "mergedAt": merged_at, "autoMerged": auto},
                expected={"isDuplicateOf": None, "status": ReportStatus.SUBMITTED.value},
            )
            if applied:
                merged_ids.append(dup["_id"])
            else:
                logger.warning(f"⚠️ Report {dup['_id']} changed during merge; skipped")

        if merged_ids:
            master_fields = {
                "duplicateCount": master.get("duplicateCount", 0) + len(merged_ids),
                "mergedReportIds": list(master.get("mergedReportIds", [])) + merged_ids,
            }
            if auto:
                master_fields["autoMerged"] = True
            # Master must still be submitted and unchanged since it was read
            applied = await self.store.update(
                REPORTS,
                master_id,
                master_fields,
                expected={
                    "status": ReportStatus.SUBMITTED.value,
                    "isDuplicateOf": None,
                    "duplicateCount": master.get("duplicateCount"),
                },
            )
            if not applied:
                await self._unmerge(master_id, merged_ids)
                latest = await self._load(master_id)
                if latest.get("status") != ReportStatus.SUBMITTED.value:
                    raise StateViolation("merge", latest.get("status"))
                raise ValidationError(f"Report {master_id} changed during the merge; please try again")
            logger.info(f"🔗 Merged {len(merged_ids)} report(s) into {master_id} (auto={auto})")

            if self.audit:
                await self.audit.log_action(
                    actor, "reports_merged", master_id, f"Merged: {', '.join(merged_ids)}"
                )

        return MergeResult(master_id=master_id, merged_ids=merged_ids, auto=auto)

    async def _unmerge(self, master_id: str, duplicate_ids: List[str]):
        for dup_id in duplicate_ids:
            try:
                await self.store.update(
                    REPORTS,
                    dup_id,
                    {"isDuplicateOf": None, "mergedAt": None, "autoMerged": None},
                    expected={"isDuplicateOf": master_id},
                )
            except Exception as e:
                logger.error(f"❌ Could not undo merge of {dup_id} into {master_id}: {e}")
        logger.warning(f"⚠️ Master {master_id} changed during merge; {len(duplicate_ids)} merge(s) undone")

    async def _open_submitted(self) -> List[Dict[str, Any]]:
        return await self.store.find(
            REPORTS,
            {
                "status": ReportStatus.SUBMITTED.value,
                "isDeleted": {"$ne": True},
                "isDuplicateOf": None,
            },
        )

    async def auto_merge(self, actor: Optional[Dict[str, Any]] = None) -> List[MergeResult]:
        """Merge obvious duplicates (same category, within 30 m and 12 h)."""
        reports = await self._open_submitted()
        groups = find_duplicate_groups(
            reports, AUTO_MERGE_RADIUS_KM, AUTO_MERGE_TIME_HOURS, now=self.clock(), skip_masters=True
        )
        results = []
        for group in groups:
            results.append(
                await self.merge(group[0]["_id"], [r["_id"] for r in group[1:]], actor=actor, auto=True)
            )
        return results

    async def review_groups(self) -> List[List[Dict[str, Any]]]:
        """Possible duplicates for manual review (within 50 m and 24 h)."""
        reports = await self._open_submitted()
        return find_duplicate_groups(
            reports, MANUAL_REVIEW_RADIUS_KM, MANUAL_REVIEW_TIME_HOURS, now=self.clock()
        )

    async def list_duplicates(self, master_id: str) -> List[Dict[str, Any]]:
        return await self.store.find(REPORTS, {"isDuplicateOf": master_id, "isDeleted": {"$ne": True}})
