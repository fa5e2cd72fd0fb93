"""
MongoDB access helpers.

Collections are named after the plural resource (skills, projects, users...).
Documents carry createdAt / updatedAt set here, never by callers.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

logger = logging.getLogger(__name__)

SortSpec = Sequence[Tuple[str, int]]


def connect(database_url: str, database_name: str) -> Database:
    client = MongoClient(database_url, serverSelectionTimeoutMS=5000, tz_aware=False)
    logger.info(f"Using MongoDB database '{database_name}'")
    return client[database_name]


def ensure_indexes(db: Database) -> None:
    db["users"].create_index([("email", ASCENDING)], unique=True)
    db["users"].create_index([("passwordResetToken", ASCENDING), ("passwordResetExpires", ASCENDING)])
    db["users"].create_index([("emailVerificationToken", ASCENDING)])
    db["projects"].create_index([("featured", ASCENDING)])


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so store them that way too
    # and BSON keeps milliseconds only
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Normalize _id to a string id."""
    if doc is None:
        return None
    out = dict(doc)
    out["id"] = str(out.pop("_id", ""))
    return out


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True, exclude_none=True)
    else:
        doc = dict(data)
    now = utcnow()
    doc["createdAt"] = now
    doc["updatedAt"] = now
    result = db[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[SortSpec] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(list(sort))
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
