"""
MongoDB access for the book review service.

The handle is created once from the environment; request handlers receive it
through the `get_db` dependency so tests can swap in another database.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING
from pymongo.database import Database

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bookreviews")

client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
db = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document with timestamps and return its id as a string."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    res = database[collection].insert_one(doc)
    return str(res.inserted_id)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("username", ASCENDING)], unique=True)
    # isbn is omitted from documents that have none, so sparse keeps it optional
    database["book"].create_index([("isbn", ASCENDING)], unique=True, sparse=True)
    database["book"].create_index([("created_at", ASCENDING)])
    database["review"].create_index([("user_id", ASCENDING), ("book_id", ASCENDING)], unique=True)
    database["review"].create_index([("book_id", ASCENDING)])
    logger.info("Indexes ensured on database %s", database.name)


def to_obj_id(id_str: str, detail: str = "Not found") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=404, detail=detail)


def sanitize(doc: Dict) -> Dict:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def normalize_id(id_str) -> Optional[str]:
    """Canonical (lowercase hex) form of an ObjectId string, or None."""
    try:
        return str(ObjectId(id_str))
    except (InvalidId, TypeError):
        return None
