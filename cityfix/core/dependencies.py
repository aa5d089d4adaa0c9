# 🔌 FastAPI dependency providers
# Routes ask for services through these so tests can swap the store and blob store

import logging

from fastapi import Depends, HTTPException

from cityfix.services.audit_service import AuditService
from cityfix.services.config_service import ConfigService
from cityfix.services.document_store import DocumentStore
from cityfix.services.lifecycle_service import ReportLifecycle
from cityfix.services.merge_service import DuplicateMerger
from cityfix.services.mongodb_service import get_mongodb_service
from cityfix.services.report_query_service import ReportQueryService
from cityfix.services.storage_service import BlobStore, EvidenceUploader, GridFSBlobStore
from cityfix.services.user_service import UserService

logger = logging.getLogger(__name__)


async def get_store() -> DocumentStore:
    mongo_service = await get_mongodb_service()
    if mongo_service is None or mongo_service.store is None:
        logger.error("❌ Database unavailable")
        raise HTTPException(status_code=503, detail="Database unavailable")
    return mongo_service.store


async def get_blob_store() -> BlobStore:
    mongo_service = await get_mongodb_service()
    if mongo_service is None or mongo_service.fs is None:
        raise HTTPException(status_code=503, detail="Media storage unavailable")
    return GridFSBlobStore(mongo_service.fs)


def get_audit(store: DocumentStore = Depends(get_store)) -> AuditService:
    return AuditService(store)


def get_config_service(store: DocumentStore = Depends(get_store)) -> ConfigService:
    return ConfigService(store)


def get_lifecycle(
    store: DocumentStore = Depends(get_store),
    blob_store: BlobStore = Depends(get_blob_store),
    audit: AuditService = Depends(get_audit),
    config: ConfigService = Depends(get_config_service),
) -> ReportLifecycle:
    return ReportLifecycle(store, EvidenceUploader(blob_store), audit=audit, config=config)


def get_merger(
    store: DocumentStore = Depends(get_store),
    audit: AuditService = Depends(get_audit),
) -> DuplicateMerger:
    return DuplicateMerger(store, audit=audit)


def get_queries(store: DocumentStore = Depends(get_store)) -> ReportQueryService:
    return ReportQueryService(store)


def get_user_service(
    store: DocumentStore = Depends(get_store),
    audit: AuditService = Depends(get_audit),
) -> UserService:
    return UserService(store, audit=audit)
