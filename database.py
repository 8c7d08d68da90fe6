"""
MongoDB access layer.

The module-level ``db`` is created from ``DATABASE_URL``/``DATABASE_NAME``
and is ``None`` when no database is configured. Routes receive it through
the ``get_db`` dependency so it can be swapped out in tests.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import AppError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise AppError("Database not configured", 500)
    return db


def to_object_id(value: Union[str, ObjectId]) -> ObjectId:
    """Parse an id, raising ``bson.errors.InvalidId`` on malformed input."""
    if isinstance(value, ObjectId):
        return value
    return ObjectId(value)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at; return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["category"].create_index("slug", unique=True)
    database["product"].create_index("slug", unique=True)
    database["product"].create_index("sku", unique=True)
    database["product"].create_index([("category", ASCENDING), ("is_active", ASCENDING)])
    database["product"].create_index([("featured", ASCENDING), ("is_active", ASCENDING)])
    database["product"].create_index([("created_at", DESCENDING)])
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index("customer.email")
    database["order"].create_index("customer.user")
    database["order"].create_index("status")
    database["order"].create_index([("created_at", DESCENDING)])
    logger.info("Indexes ensured on %s", database.name)


def serialize_doc(value: Any) -> Any:
    """Convert Mongo documents for JSON output: ``_id`` -> ``id``, ObjectIds -> str."""
    if isinstance(value, dict):
        d = {}
        for k, v in value.items():
            if k == "_id":
                d["id"] = str(v)
            else:
                d[k] = serialize_doc(v)
        return d
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    return value
