from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class ReportStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in progress"
    RESOLVED = "resolved"
    VERIFIED = "verified"
    REOPENED = "reopened"
    # Reserved: notification messages exist for it but no transition sets it
    MERGED = "merged"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# Statuses that only exist once a dispatcher assigned the report
ASSIGNED_STATUSES = {
    ReportStatus.ASSIGNED,
    ReportStatus.IN_PROGRESS,
    ReportStatus.RESOLVED,
    ReportStatus.VERIFIED,
    ReportStatus.REOPENED,
}


class Location(BaseModel):
    latitude: float
    longitude: float


class ReportContent(BaseModel):
    """What a citizen fills in; evidence travels separately as uploads."""

    title: str = ""
    description: str = ""
    category: Optional[str] = None
    address: Optional[str] = None
    location: Optional[Location] = None


class Assignment(BaseModel):
    assignedTo: str
    assignedToName: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    deadline: datetime
    dispatcherNotes: str = ""
    assignedAt: datetime


class Resolution(BaseModel):
    resolutionNotes: str = ""
    afterPhotos: List[str] = []
    afterVideos: List[str] = []
    resolvedAt: Optional[datetime] = None


class QAReview(BaseModel):
    qaFeedback: str = ""
    reopenReason: Optional[str] = None
    reopenNotes: Optional[str] = None
    verifiedAt: Optional[datetime] = None
    reopenedAt: Optional[datetime] = None


_BLOCKS = {
    "assignment": Assignment,
    "resolution": Resolution,
    "qa": QAReview,
}


class Report(BaseModel):
    """
    A report document with its stage data grouped into optional blocks.

    The stored document is flat (camelCase fields); from_document() groups the
    stage fields. The validator rejects combinations no lifecycle path can
    produce, and the engine runs every write through it before committing.
    """

    id: str = Field(alias="_id")
    title: str = ""
    description: str = ""
    category: Optional[str] = None
    address: Optional[str] = None
    location: Optional[Location] = None
    photoUrls: List[str] = []
    videoUrl: Optional[str] = None
    userId: Optional[str] = None
    userName: Optional[str] = None

    status: ReportStatus = ReportStatus.DRAFT
    isDraft: bool = False
    isDeleted: bool = False
    startedAt: Optional[datetime] = None

    assignment: Optional[Assignment] = None
    resolution: Optional[Resolution] = None
    qa: Optional[QAReview] = None

    duplicateCount: int = Field(default=0, ge=0)
    mergedReportIds: List[str] = []
    isDuplicateOf: Optional[str] = None
    mergedAt: Optional[datetime] = None
    autoMerged: Optional[bool] = None

    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    submittedAt: Optional[datetime] = None

    class Config:
        populate_by_name = True

    @model_validator(mode="after")
    def check_stage_fields(self):
        if self.status in ASSIGNED_STATUSES and self.assignment is None:
            raise ValueError(f"status '{self.status.value}' requires assignment fields")
        if self.status in (ReportStatus.RESOLVED, ReportStatus.VERIFIED):
            if self.resolution is None or self.resolution.resolvedAt is None:
                raise ValueError(f"status '{self.status.value}' requires resolution fields")
        if self.status == ReportStatus.VERIFIED and (self.qa is None or self.qa.verifiedAt is None):
            raise ValueError("status 'verified' requires verifiedAt")
        if self.status == ReportStatus.REOPENED and (self.qa is None or not self.qa.reopenReason):
            raise ValueError("status 'reopened' requires reopenReason")
        if self.isDuplicateOf and self.duplicateCount > 0:
            raise ValueError("a duplicate report cannot itself have duplicates")
        if self.isDraft != (self.status == ReportStatus.DRAFT):
            raise ValueError("isDraft must be set exactly when status is 'draft'")
        return self

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Report":
        data = dict(doc)
        for block_name, block_cls in _BLOCKS.items():
            block_fields = {name: data.pop(name) for name in block_cls.model_fields if name in data}
            # Null placeholders (e.g. resolvedAt=None on a saved progress) do not start a block
            if any(value is not None for value in block_fields.values()):
                data[block_name] = block_cls(**{k: v for k, v in block_fields.items() if v is not None})
        return cls.model_validate(data)

