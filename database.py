"""
Database access

A single pymongo database handle shared by every router, plus the small
helpers the routers use to turn documents into JSON and ids into ObjectIds.
"""

import logging
import math
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo import MongoClient
from pymongo.collection import Collection

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

MAX_PAGE_SIZE = 100

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set, running without a database")


def require_db():
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def to_object_id(value: str, label: str = "id") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {label} id")
    return ObjectId(value)


def create_document(collection: Collection, data: Dict[str, Any]) -> Dict[str, Any]:
    now = utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    result = collection.insert_one(doc)
    return serialize_doc(collection.find_one({"_id": result.inserted_id}))


def pagination_meta(total: int, page: int, limit: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_items": total,
        "items_per_page": limit,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def paginate(collection: Collection, query: Dict[str, Any], sort, page: int, limit: int, transform=serialize_doc):
    """Run ``query`` against ``collection`` and return one page of results.

    ``sort`` is a pymongo sort specification (list of ``(field, direction)``).
    ``transform`` is applied to every document on the page.
    """
    limit = min(limit, MAX_PAGE_SIZE)
    total = collection.count_documents(query)
    cursor = collection.find(query)
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    return {"items": [transform(d) for d in cursor], "meta": pagination_meta(total, page, limit)}
