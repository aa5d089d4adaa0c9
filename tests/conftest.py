import asyncio
import copy
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Dict, List, Optional

import pytest

from cityfix.core.config import USERS
from cityfix.services.audit_service import AuditService
from cityfix.services.config_service import ConfigService
from cityfix.services.document_store import DocumentStore
from cityfix.services.lifecycle_service import ReportLifecycle
from cityfix.services.storage_service import BlobStore, EvidenceItem, EvidenceUploader, PHOTO, VIDEO
from cityfix.utils.helpers import new_id

NOW = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)


def _matches(doc: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, condition in filters.items():
        value = doc.get(key)
        if isinstance(condition, dict):
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$ne" in condition and value == condition["$ne"]:
                return False
        elif value != condition:
            return False
    return True


class InMemoryStore(DocumentStore):
    """DocumentStore double with write counting and per-document failure injection."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.writes: List[tuple] = []
        self.fail_updates_for = set()

    def _col(self, name):
        return self.collections.setdefault(name, {})

    def seed(self, collection: str, document: Dict[str, Any]) -> str:
        doc = copy.deepcopy(document)
        doc.setdefault("_id", new_id())
        self._col(collection)[doc["_id"]] = doc
        return doc["_id"]

    def raw(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self._col(collection).get(doc_id)

    def writes_to(self, collection: str) -> List[tuple]:
        return [w for w in self.writes if w[1] == collection]

    async def get(self, collection, doc_id):
        doc = self._col(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def insert(self, collection, document):
        doc = copy.deepcopy(document)
        doc.setdefault("_id", new_id())
        self._col(collection)[doc["_id"]] = doc
        self.writes.append(("insert", collection, doc["_id"], copy.deepcopy(doc)))
        return doc["_id"]

    async def update(self, collection, doc_id, fields, expected=None):
        if doc_id in self.fail_updates_for:
            raise ConnectionError(f"write to {doc_id} failed")
        doc = self._col(collection).get(doc_id)
        if doc is None or (expected and not _matches(doc, expected)):
            return False
        doc.update(copy.deepcopy(fields))
        self.writes.append(("update", collection, doc_id, copy.deepcopy(fields)))
        return True

    async def find(self, collection, filters=None, sort=None, limit=None, skip=None):
        docs = [copy.deepcopy(d) for d in self._col(collection).values() if _matches(d, filters or {})]
        for key, direction in reversed(sort or []):
            docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction < 0)
        if skip:
            docs = docs[skip:]
        if limit:
            docs = docs[:limit]
        return docs

    async def count(self, collection, filters=None):
        return len(await self.find(collection, filters))


class InMemoryBlobStore(BlobStore):

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_on_call: Optional[int] = None
        self.gate: Optional[asyncio.Event] = None
        self._calls = count()

    async def upload(self, name, data, content_type=None, on_progress=None):
        call = next(self._calls)
        if self.fail_on_call is not None and call == self.fail_on_call:
            raise ConnectionError("blob store unavailable")
        if on_progress:
            on_progress(len(data) // 2, len(data))
        if self.gate is not None:
            await self.gate.wait()
        if on_progress:
            on_progress(len(data), len(data))
        url = f"mem://{call}/{name}"
        self.blobs[url] = data
        return url

    async def delete(self, url):
        self.blobs.pop(url, None)
        self.deleted.append(url)


def photo(name="before.jpg", size=1024) -> EvidenceItem:
    return EvidenceItem(PHOTO, b"\xff" * size, name, "image/jpeg")


def video(size_mb: float = 1, name="clip.mp4") -> EvidenceItem:
    return EvidenceItem(VIDEO, b"\x00" * int(size_mb * 1024 * 1024), name, "video/mp4")


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def users(store):
    """One user per role plus a second dispatcher; returns actor dicts keyed by name."""
    people = {
        "citizen": ("citizen", "Casey Citizen", "ExponentPushToken[citizen]"),
        "engineer": ("engineer", "Eli Engineer", "ExponentPushToken[engineer]"),
        "other_engineer": ("engineer", "Olu Engineer", None),
        "dispatcher": ("dispatcher", "Dana Dispatcher", "ExponentPushToken[dispatcher]"),
        "dispatcher2": ("dispatcher", "Dev Dispatcher", None),
        "qa": ("qa", "Quinn QA", "ExpoPushToken[qa]"),
        "admin": ("admin", "Ada Admin", None),
    }
    actors = {}
    for key, (role, name, token) in people.items():
        store.seed(USERS, {
            "_id": f"u-{key}",
            "email": f"{key}@cityfix.org",
            "name": name,
            "role": role,
            "disabled": False,
            "expoPushToken": token,
        })
        actors[key] = {"id": f"u-{key}", "email": f"{key}@cityfix.org", "role": role, "name": name}
    return actors


@pytest.fixture
def audit(store):
    return AuditService(store)


@pytest.fixture
def lifecycle(store, blobs, audit, clock):
    return ReportLifecycle(
        store,
        EvidenceUploader(blobs),
        audit=audit,
        config=ConfigService(store),
        clock=clock,
    )


@pytest.fixture
def make_report(store):
    """Seed a report document directly in a given lifecycle stage."""

    def _make(status="submitted", **fields):
        doc = {
            "title": "Pothole on Elm St",
            "description": "Deep hole in the right lane",
            "category": "Pothole",
            "location": {"latitude": 52.5200, "longitude": 13.4050},
            "photoUrls": ["mem://seed/photo"],
            "userId": "u-citizen",
            "userName": "Casey Citizen",
            "status": status,
            "isDraft": status == "draft",
            "isDeleted": False,
            "createdAt": NOW - timedelta(hours=1),
        }
        if status in ("assigned", "in progress", "resolved", "verified", "reopened"):
            doc.update({
                "assignedTo": "u-engineer",
                "assignedToName": "Eli Engineer",
                "priority": "medium",
                "deadline": NOW + timedelta(days=3),
                "dispatcherNotes": "",
                "assignedAt": NOW - timedelta(minutes=30),
            })
        if status in ("resolved", "verified"):
            doc.update({
                "resolutionNotes": "Filled",
                "afterPhotos": ["mem://seed/after"],
                "afterVideos": [],
                "resolvedAt": NOW - timedelta(minutes=5),
            })
        if status == "reopened":
            doc.update({"reopenReason": "Incomplete", "reopenedAt": NOW - timedelta(minutes=1)})
        doc.update(fields)
        return store.seed("reports", doc)

    return _make
