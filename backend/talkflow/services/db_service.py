# /talkflow/services/db_service.py

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING as MONGO_ASC, DESCENDING as MONGO_DESC
from pymongo.errors import PyMongoError

from talkflow.config.settings import settings
from talkflow.services.repositories import AuditPublisher, BaseSession, Filter, Sort
from talkflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)


def _encode(value: Any) -> Any:
    """Make a pydantic python-mode dump storable by BSON."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _to_document(entity_dump: Dict[str, Any]) -> Dict[str, Any]:
    document = _encode(entity_dump)
    document["_id"] = document.pop("id")
    return document


def _from_document(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if document is None:
        return None
    document["id"] = str(document.pop("_id"))
    return document


class MongoSession(BaseSession):
    """Session over MongoDB. Each primitive is a single autocommitted operation."""

    def __init__(self, db, audit_publisher: Optional[AuditPublisher] = None):
        super().__init__(audit_publisher)
        self.db = db

    async def _run(self, operation: str, coro):
        try:
            result = await coro
            database_operations_counter.labels(operation=operation, status="success").inc()
            return result
        except PyMongoError as e:
            database_operations_counter.labels(operation=operation, status="error").inc()
            logger.error(f"MongoDB {operation} failed: {e}")
            raise

    async def _fetch(self, collection, entity_id):
        document = await self._run("find_one", self.db[collection].find_one({"_id": entity_id}))
        return _from_document(document)

    async def _find_many(self, collection, query: Filter, sort: Sort = None, limit: int = 0) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(_encode(query))
        if sort:
            field, direction = sort
            cursor = cursor.sort(field, MONGO_DESC if direction < 0 else MONGO_ASC)
        if limit:
            cursor = cursor.limit(limit)
        documents = await self._run("find", cursor.to_list(length=limit or None))
        return [_from_document(d) for d in documents]

    async def _insert(self, collection, document):
        await self._run("insert_one", self.db[collection].insert_one(_to_document(document)))

    async def _replace(self, collection, document):
        doc = _to_document(document)
        await self._run("replace_one", self.db[collection].replace_one({"_id": doc["_id"]}, doc, upsert=True))

    async def _delete_many(self, collection, query):
        result = await self._run("delete_many", self.db[collection].delete_many(_encode(query)))
        return result.deleted_count


class DatabaseService:
    """
    Owns the MongoDB client and hands out one session per unit of work.
    """

    def __init__(self, mongo_uri: str, audit_publisher: Optional[AuditPublisher] = None):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            self.audit_publisher = audit_publisher
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    def session(self) -> MongoSession:
        return MongoSession(self.db, self.audit_publisher)

    async def create_indexes(self):
        """Indexes backing the engine's queries."""
        try:
            await self.db.talk_messages.create_index([("talk_id", MONGO_ASC), ("sent_at", MONGO_DESC)])
            await self.db.talk_messages.create_index([("talk_id", MONGO_ASC), ("direction", MONGO_ASC), ("sent_at", MONGO_DESC)])
            await self.db.agents.create_index([("organization_id", MONGO_ASC), ("active", MONGO_ASC), ("available", MONGO_ASC)])
            await self.db.audit_logs.create_index([("created_at", MONGO_ASC)])
            await self.db.audit_logs.create_index([("entity_class", MONGO_ASC), ("entity_id", MONGO_ASC)])
            logger.info("MongoDB indexes ensured.")
        except PyMongoError as e:
            logger.error(f"Failed to create MongoDB indexes: {e}")

    def close(self):
        if self.client:
            self.client.close()
