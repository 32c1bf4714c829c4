"""
MongoDB access for Learnhub.

``db`` is the configured database handle (``None`` when DATABASE_URL or
DATABASE_NAME is unset, so the app can still start). ``DataStore`` wraps a
database handle with the handful of document operations the services need.
"""
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    try:
        _client = MongoClient(config.DATABASE_URL)
        db = _client[config.DATABASE_NAME]
    except PyMongoError as e:
        logger.error("Could not connect to MongoDB: %s", e)
        db = None

SortSpec = Sequence[Tuple[str, int]]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # PyMongo hands back naive datetimes that are already UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def oid(id_str: Union[str, ObjectId]) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationError("Invalid id format")


def serialize_doc(doc: Any) -> Any:
    """Make a document JSON ready: ``_id`` becomes ``id``, ids and datetimes become strings."""
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return as_utc(doc).isoformat()
    if not isinstance(doc, dict):
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return {k: serialize_doc(v) for k, v in d.items()}


class DataStore:
    def __init__(self, database):
        self.db = database
        self._locks: Dict[Tuple, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def collection(self, name: str):
        return self.db[name]

    # ----------------------
    # Create
    # ----------------------
    def insert(self, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
        doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        stamp = now_utc()
        doc.setdefault("created_at", stamp)
        doc["updated_at"] = stamp
        res = self.db[collection].insert_one(doc)
        doc["_id"] = res.inserted_id
        return doc

    def insert_many(self, collection: str, docs: Iterable[Dict[str, Any]]) -> List[str]:
        stamp = now_utc()
        batch = [{**d, "created_at": stamp, "updated_at": stamp} for d in docs]
        if not batch:
            return []
        res = self.db[collection].insert_many(batch, ordered=False)
        return [str(i) for i in res.inserted_ids]

    # ----------------------
    # Read
    # ----------------------
    def get(self, collection: str, id_str: Union[str, ObjectId]) -> Optional[Dict[str, Any]]:
        return self.db[collection].find_one({"_id": oid(id_str)})

    def require(self, collection: str, id_str: Union[str, ObjectId], label: Optional[str] = None) -> Dict[str, Any]:
        doc = self.get(collection, id_str)
        if not doc:
            raise NotFoundError(f"{label or collection.capitalize()} not found")
        return doc

    def find_one(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.db[collection].find_one(filter_dict)

    def find(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
        projection: Optional[Dict[str, int]] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filter_dict or {}, projection)
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def count(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        return self.db[collection].count_documents(filter_dict or {})

    def related(self, collection: str, ids: Iterable[str], projection: Optional[Dict[str, int]] = None) -> Dict[str, Dict[str, Any]]:
        """Fetch the documents a list of foreign keys points at, keyed by string id."""
        object_ids = []
        for i in set(filter(None, ids)):
            try:
                object_ids.append(oid(i))
            except ValidationError:
                continue
        if not object_ids:
            return {}
        docs = self.db[collection].find({"_id": {"$in": object_ids}}, projection)
        return {str(d["_id"]): d for d in docs}

    # ----------------------
    # Update / delete
    # ----------------------
    def update(self, collection: str, id_str: Union[str, ObjectId], changes: Dict[str, Any], **operators) -> Optional[Dict[str, Any]]:
        """``$set`` the given fields (plus any extra operators such as ``push=...``) and return the fresh document."""
        update = {"$set": {**changes, "updated_at": now_utc()}}
        for op, value in operators.items():
            update[f"${op}"] = value
        return self.db[collection].find_one_and_update(
            {"_id": oid(id_str)}, update, return_document=ReturnDocument.AFTER
        )

    def update_where(self, collection: str, filter_dict: Dict[str, Any], update: Dict[str, Any]):
        update = {**update}
        update["$set"] = {**update.get("$set", {}), "updated_at": now_utc()}
        return self.db[collection].update_many(filter_dict, update)

    def delete(self, collection: str, id_str: Union[str, ObjectId]) -> bool:
        return self.db[collection].delete_one({"_id": oid(id_str)}).deleted_count > 0

    def upsert(
        self,
        collection: str,
        key: Dict[str, Any],
        set_fields: Dict[str, Any],
        set_on_insert: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
    ) -> Dict[str, Any]:
        """Atomic read-modify-write keyed by a compound filter; a unique index on the key makes it race free."""
        stamp = now_utc()
        update: Dict[str, Any] = {"$set": {**set_fields, "updated_at": stamp}}
        update["$setOnInsert"] = {**(set_on_insert or {}), "created_at": stamp}
        if inc:
            update["$inc"] = inc
        try:
            return self.db[collection].find_one_and_update(
                key, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # lost the insert race; the document exists now, so this is a plain update
            return self.db[collection].find_one_and_update(
                key, update, return_document=ReturnDocument.AFTER
            )

    @contextmanager
    def lock(self, *key):
        """Serialize read-modify-write sequences on one key within this process."""
        with self._locks_guard:
            key_lock = self._locks[key]
        with key_lock:
            yield

    # ----------------------
    # Indexes
    # ----------------------
    def ensure_indexes(self) -> None:
        self.db["user"].create_index("email", unique=True)
        self.db["course"].create_index([("tutor_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["assignment"].create_index([("course_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["submission"].create_index(
            [("assignment_id", ASCENDING), ("student_id", ASCENDING)], unique=True
        )
        self.db["chatroom"].create_index("participants.user_id")
        self.db["message"].create_index([("room_id", ASCENDING), ("created_at", ASCENDING)])
        self.db["chathistory"].create_index([("user_id", ASCENDING), ("updated_at", DESCENDING)])
        self.db["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])


store = DataStore(db) if db is not None else None


def get_store() -> DataStore:
    """FastAPI dependency; tests override it with a store over mongomock."""
    if store is None:
        raise HTTPException(status_code=503, detail="Database not configured. Please set DATABASE_URL and DATABASE_NAME.")
    return store
