"""
MongoDB access helpers.

`db` is the process-wide database handle built from DATABASE_URL/DATABASE_NAME,
or None when no database is configured. Services receive a database handle
explicitly; the helpers below default to `db` when none is passed.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import DatabaseUnavailableError

logger = logging.getLogger(__name__)

# Reference fields stored as ObjectId, exposed as strings.
REF_FIELDS = {
    "owner_id",
    "user_id",
    "pet_id",
    "tag_id",
    "order_id",
    "qr_code_id",
    "assigned_tag_id",
    "product_id",
    "scan_id",
}


def _connect() -> Optional[Database]:
    if not settings.database_url:
        logger.warning("DATABASE_URL not set, running without a database")
        return None
    client = MongoClient(settings.database_url)
    return client[settings.database_name]


db = _connect()


def now() -> datetime:
    return datetime.now(timezone.utc)


def _resolve(database: Optional[Database]) -> Database:
    database = database if database is not None else db
    if database is None:
        raise DatabaseUnavailableError()
    return database


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id; None for anything that is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if not value:
        return None
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _encode_refs(value: Any) -> Any:
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k in REF_FIELDS and isinstance(v, str):
                out[k] = to_object_id(v) or v
            else:
                out[k] = _encode_refs(v)
        return out
    if isinstance(value, list):
        return [_encode_refs(v) for v in value]
    return value


def create_document(
    collection_name: str,
    data: Union[BaseModel, dict],
    database: Optional[Database] = None,
    _id: Optional[ObjectId] = None,
) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the id string."""
    database = _resolve(database)
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    doc = _encode_refs(doc)
    stamp = now()
    if doc.get("created_at") is None:
        doc["created_at"] = stamp
    doc["updated_at"] = stamp
    if _id is not None:
        doc["_id"] = _id
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
) -> List[dict]:
    database = _resolve(database)
    cursor = database[collection_name].find(filter_dict or {}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(doc: Any) -> Any:
    """Replace _id by id and stringify ObjectId values, recursively."""
    if doc is None:
        return None
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = serialize_doc(v)
    return out


def ensure_indexes(database: Optional[Database] = None) -> None:
    database = _resolve(database)
    database["user"].create_index("external_id", unique=True, sparse=True)
    database["user"].create_index("email")
    database["pet"].create_index([("owner_id", ASCENDING), ("is_active", ASCENDING)])
    database["tag"].create_index([("user_id", ASCENDING), ("status", ASCENDING)])
    database["tag"].create_index([("pet_id", ASCENDING), ("status", ASCENDING)])
    database["tag"].create_index("order_id")
    database["tag"].create_index("qr_code", sparse=True)
    database["qrcode"].create_index("tag_code", unique=True)
    database["qrcode"].create_index([("availability", ASCENDING), ("_id", ASCENDING)])
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["notification"].create_index([("user_id", ASCENDING), ("is_read", ASCENDING)])
    database["scanlog"].create_index([("tag_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Indexes ensured on %s", database.name)
