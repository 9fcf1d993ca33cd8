import logging
import os
from typing import Optional, Dict, Any, List

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import (
    DuplicateKeyError, ExecutionTimeout, NetworkTimeout, PyMongoError, ServerSelectionTimeoutError,
)

from errors import Internal, Timeout, ValidationError
from models_repo import COLLECTIONS, TaskKind, gen_id

logger = logging.getLogger(__name__)

MONGO_URI = os.environ.get("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB = os.environ.get("MONGO_DB", "hungrysaver")
MONGO_TIMEOUT_MS = int(os.environ.get("MONGO_TIMEOUT_MS", "5000"))

_TIMEOUT_ERRORS = (ExecutionTimeout, NetworkTimeout, ServerSelectionTimeoutError)

# Only users carry a unique secondary index (email).
DUPLICATE_MESSAGES = {COLLECTIONS["users"]: "Email is already registered"}


def _out(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc["id"] = str(doc.pop("_id"))
    return doc


class MongoRepo:
    """Document store over MongoDB. Ids are our own uuid strings kept in ``_id``."""

    def __init__(self, uri: str = MONGO_URI, db_name: str = MONGO_DB, client: Optional[AsyncIOMotorClient] = None):
        self.client = client or AsyncIOMotorClient(
            uri, serverSelectionTimeoutMS=MONGO_TIMEOUT_MS, uuidRepresentation="standard"
        )
        self.database = self.client[db_name]

    async def init_indexes(self):
        users = self.database[COLLECTIONS["users"]]
        await users.create_index(
            [("email", ASCENDING)], unique=True, partialFilterExpression={"email": {"$type": "string"}}
        )
        await users.create_index([("role", ASCENDING), ("status", ASCENDING), ("location", ASCENDING)])
        for kind in TaskKind:
            coll = self.database[COLLECTIONS[kind]]
            await coll.create_index([("location_lowercase", ASCENDING), ("status", ASCENDING)])
            await coll.create_index([("assigned_to", ASCENDING), ("status", ASCENDING)])
            await coll.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        audit = self.database[COLLECTIONS["audit_logs"]]
        await audit.create_index([("item_id", ASCENDING), ("item_type", ASCENDING), ("timestamp", ASCENDING)])
        await audit.create_index([("user_id", ASCENDING), ("timestamp", DESCENDING)])
        await audit.create_index([("timestamp", DESCENDING)])
        notifications = self.database[COLLECTIONS["notifications"]]
        await notifications.create_index([("user_id", ASCENDING), ("read", ASCENDING), ("created_at", DESCENDING)])

    async def close(self):
        self.client.close()

    async def _call(self, op: str, awaitable, duplicate_message: str = "Document already exists"):
        try:
            return await awaitable
        except DuplicateKeyError as e:
            logger.warning(f"MongoDB {op} rejected a duplicate key: {e}")
            raise ValidationError(duplicate_message) from e
        except _TIMEOUT_ERRORS as e:
            logger.error(f"MongoDB {op} timed out: {e}")
            raise Timeout("Document store timed out")
        except PyMongoError as e:
            logger.exception(f"MongoDB {op} failed")
            raise Internal(f"Document store failure during {op}") from e

    # CRUD Helpers

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = await self._call("get", self.database[collection].find_one({"_id": doc_id}))
        return _out(doc)

    async def add(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        doc["_id"] = doc.pop("id", None) or gen_id()
        await self._call(
            "insert",
            self.database[collection].insert_one(doc),
            duplicate_message=DUPLICATE_MESSAGES.get(collection, "Document already exists"),
        )
        return _out(doc)

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self.database[collection].find(filters or {})
        if order_by:
            cursor = cursor.sort("_id" if order_by == "id" else order_by, DESCENDING if descending else ASCENDING)
        if offset:
            cursor = cursor.skip(offset)
        if limit is not None:
            cursor = cursor.limit(limit)

        async def _collect():
            return [_out(d) async for d in cursor]

        return await self._call("query", _collect())

    async def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return await self._call("count", self.database[collection].count_documents(filters or {}))

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
        add_to_set: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        # The precondition rides in the filter, so check-and-write is one server-side operation.
        query = {"_id": doc_id, **(expected or {})}
        update: Dict[str, Any] = {}
        if fields:
            update["$set"] = fields
        if add_to_set:
            update["$addToSet"] = add_to_set
        res = await self._call(
            "update",
            self.database[collection].find_one_and_update(query, update, return_document=ReturnDocument.AFTER),
        )
        return _out(res)

    async def delete(self, collection: str, doc_id: str, expected: Optional[Dict[str, Any]] = None) -> bool:
        res = await self._call("delete", self.database[collection].delete_one({"_id": doc_id, **(expected or {})}))
        return res.deleted_count == 1


async def init_db(uri: str = MONGO_URI, db_name: str = MONGO_DB) -> MongoRepo:
    repo = MongoRepo(uri, db_name)
    await repo.init_indexes()
    logger.info(f"Connected to MongoDB database {db_name}")
    return repo
