"""
MongoDB access for the shop API.

`db` is None when DATABASE_URL or DATABASE_NAME is not configured; the API
reports that through /test and answers 503 on data routes.
"""
import logging
import os
from datetime import datetime
from typing import Any, Dict, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import ValidationError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]

# collection -> fields carrying a unique index
UNIQUE_INDEXES = {
    "user": ["email"],
    "product": ["slug"],
    "cart": ["user_id"],
    "coupon": ["code"],
    "delivery_pricing": ["name"],
    "payment_method": ["name"],
    "payment": ["order_id"],
}


def ensure_indexes(database) -> None:
    for collection, fields in UNIQUE_INDEXES.items():
        for field in fields:
            database[collection].create_index([(field, ASCENDING)], unique=True)
    database["order"].create_index([("customer_id", ASCENDING), ("status", ASCENDING)])
    database["review"].create_index([("product_id", ASCENDING)])
    logger.info("Indexes ensured on %d collections", len(UNIQUE_INDEXES) + 2)


def to_object_id(value: str, label: str = "") -> ObjectId:
    """Parse a path/body id, raising ValidationError("Invalid <label> ID")."""
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        name = f"{label} " if label else ""
        raise ValidationError(f"Invalid {name}ID")
    return ObjectId(value)


def serialize(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: _id -> id, ObjectId -> str."""
    if isinstance(doc, list):
        return [serialize(d) for d in doc]
    if isinstance(doc, dict):
        out = {}
        for key, value in doc.items():
            if key == "_id":
                out["id"] = str(value)
            else:
                out[key] = serialize(value)
        return out
    if isinstance(doc, ObjectId):
        return str(doc)
    return doc


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None) -> str:
    """Insert a document with created_at/updated_at and return its id."""
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not configured")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)
