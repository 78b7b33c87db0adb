"""
MongoDB access helpers.

A single client is created at import time from DATABASE_URL. Handlers get the
database through the `get_db` dependency so it can be swapped in tests.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from fastapi import HTTPException
from pydantic.alias_generators import to_camel
from pymongo import MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL:
    try:
        client = MongoClient(config.DATABASE_URL)
        db = client[config.DATABASE_NAME]
    except Exception:
        logger.exception("Could not create MongoDB client")
        client = None
        db = None


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def utcnow() -> datetime:
    # BSON dates come back naive, so keep everything naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return ObjectId(id_str)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


def camelize(value: Any) -> Any:
    """Rename snake_case keys to camelCase, recursively."""
    if isinstance(value, list):
        return [camelize(v) for v in value]
    if isinstance(value, dict):
        return {(to_camel(k) if isinstance(k, str) and "_" in k else k): camelize(v) for k, v in value.items()}
    return value


def serialize_doc(doc: Optional[dict]):
    if not doc:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    doc.pop("password", None)
    return _jsonable(doc)


def create_document(db: Database, collection_name: str, data: Any) -> str:
    """Insert a document (dict or pydantic model) and return its id as a string."""
    if hasattr(data, "model_dump"):
        data = data.model_dump()
    else:
        data = dict(data)
    now = utcnow()
    data.setdefault("created_at", now)
    data["updated_at"] = now
    result = db[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[list] = None,
    projection: Optional[dict] = None,
) -> list:
    cursor = db[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def page_params(page: Optional[int], limit: Optional[int], default_limit: int = 10):
    """Clamp page to >= 1; a missing or non-positive limit falls back to the default."""
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else default_limit
    return page, limit, (page - 1) * limit


def total_pages(count: int, limit: int) -> int:
    return math.ceil(count / limit) if limit else 0
