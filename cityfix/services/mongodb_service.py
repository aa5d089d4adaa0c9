"""
MongoDB service for CityFix

Owns the motor client, the GridFS bucket and the collection indexes, and
implements the DocumentStore boundary on top of motor collections.
"""

import logging
import asyncio
from typing import Optional, List, Dict, Any
import motor.motor_asyncio
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import IndexModel, ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure

from cityfix.core.config import settings, REPORTS, USERS, NOTIFICATIONS, LOGS
from cityfix.services.document_store import DocumentStore, Document, SortSpec
from cityfix.utils.helpers import new_id

logger = logging.getLogger(__name__)


class MongoDocumentStore(DocumentStore):
    """DocumentStore backed by a motor database handle."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        return await self.db[collection].find_one({"_id": doc_id})

    async def insert(self, collection: str, document: Document) -> str:
        doc = dict(document)
        doc.setdefault("_id", new_id())
        result = await self.db[collection].insert_one(doc)
        return str(result.inserted_id)

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Document,
        expected: Optional[Document] = None,
    ) -> bool:
        query = {"_id": doc_id}
        if expected:
            query.update(expected)
        result = await self.db[collection].update_one(query, {"$set": fields})
        return result.matched_count > 0

    async def find(
        self,
        collection: str,
        filters: Optional[Document] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Document]:
        cursor = self.db[collection].find(filters or {})
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=limit)

    async def count(self, collection: str, filters: Optional[Document] = None) -> int:
        return await self.db[collection].count_documents(filters or {})


class MongoDBService:
    """Connection holder for the CityFix database."""

    def __init__(self, mongo_uri: Optional[str] = None, db_name: Optional[str] = None):
        self.mongo_uri = mongo_uri or settings.mongo_uri
        self.db_name = db_name or settings.db_name

        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self.fs: Optional[motor.motor_asyncio.AsyncIOMotorGridFSBucket] = None
        self.store: Optional[MongoDocumentStore] = None

        self._connect_lock = asyncio.Lock()

        self.index_definitions = {
            REPORTS: [
                IndexModel([("isDuplicateOf", ASCENDING)], name="is_duplicate_of"),
                IndexModel([("status", ASCENDING), ("createdAt", DESCENDING)], name="status_created"),
                IndexModel([("userId", ASCENDING), ("createdAt", DESCENDING)], name="user_created"),
                IndexModel([("assignedTo", ASCENDING), ("createdAt", DESCENDING)], name="assignee_created"),
            ],
            USERS: [
                IndexModel([("email", ASCENDING)], unique=True, name="email_unique"),
                IndexModel([("role", ASCENDING)], name="role"),
            ],
            NOTIFICATIONS: [
                IndexModel([("userId", ASCENDING), ("createdAt", DESCENDING)], name="user_created"),
                IndexModel([("userId", ASCENDING), ("read", ASCENDING)], name="user_read"),
            ],
            LOGS: [
                IndexModel([("timestamp", DESCENDING)], name="timestamp_desc"),
            ],
        }

    async def connect(self) -> bool:
        async with self._connect_lock:
            if self.db is not None:
                return True

            try:
                self.client = AsyncIOMotorClient(
                    self.mongo_uri,
                    tz_aware=True,
                    serverSelectionTimeoutMS=30000,
                    connectTimeoutMS=30000,
                    socketTimeoutMS=30000,
                    maxPoolSize=20,
                    minPoolSize=0,
                    retryWrites=True,
                )
                await self.client.admin.command("ping")

                self.db = self.client[self.db_name]
                self.fs = motor.motor_asyncio.AsyncIOMotorGridFSBucket(self.db)
                self.store = MongoDocumentStore(self.db)

                await self._create_indexes()
                logger.info(f"✅ MongoDB connected: {self.db_name}")
                return True

            except Exception as e:
                logger.error(f"❌ Failed to connect to MongoDB: {e}")
                if self.client:
                    self.client.close()
                    self.client = None
                self.db = None
                self.fs = None
                self.store = None
                return False

    async def disconnect(self):
        if self.client:
            self.client.close()
            logger.info("🔒 MongoDB connection closed")
        self.client = None
        self.db = None
        self.fs = None
        self.store = None

    async def _create_indexes(self):
        for collection_name, indexes in self.index_definitions.items():
            try:
                await self.db[collection_name].create_indexes(indexes)
                logger.info(f"📊 Created {len(indexes)} indexes for {collection_name}")
            except Exception as e:
                # Code 85: index exists with different options
                if getattr(e, "code", 0) == 85 or "already exists" in str(e):
                    logger.info(f"ℹ️ Indexes for '{collection_name}' already exist (skipping)")
                else:
                    logger.error(f"❌ Failed to create indexes for {collection_name}: {e}")

    def get_store(self) -> MongoDocumentStore:
        if self.store is None:
            raise ConnectionFailure("MongoDB database not initialized")
        return self.store

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.client.admin.command("ping")
            return {"status": "healthy", "database": self.db_name}
        except Exception as e:
            logger.error(f"❌ MongoDB health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}


_mongodb_service: Optional[MongoDBService] = None


async def init_mongodb() -> MongoDBService:
    global _mongodb_service

    if _mongodb_service is None:
        _mongodb_service = MongoDBService()
        await _mongodb_service.connect()

    return _mongodb_service


async def get_mongodb_service() -> Optional[MongoDBService]:
    return _mongodb_service


async def close_mongodb():
    global _mongodb_service

    if _mongodb_service:
        await _mongodb_service.disconnect()
        _mongodb_service = None
