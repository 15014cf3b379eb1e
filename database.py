"""
MongoDB access for the StockFlow API.

Collections:
- user  -> credential store
- item  -> catalog store
- order -> order ledger

The database handle is created once by ``connect`` and passed to the app; no
module-level connection is kept here.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def connect(settings: Settings) -> Database:
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=5000, tz_aware=True)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["item"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    db["order"].create_index("order_number", unique=True)
    db["order"].create_index("customer")
    db["order"].create_index("items.item")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return the ObjectId for ``value``, or None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> str:
    now = utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    return str(db[collection_name].insert_one(doc).inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort=None,
) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    return list(cursor)


def doc_to_json(doc: dict) -> dict:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        key = "id" if k == "_id" else k
        if isinstance(v, ObjectId):
            out[key] = str(v)
        elif isinstance(v, datetime):
            out[key] = v.isoformat()
        elif isinstance(v, dict):
            out[key] = doc_to_json(v)
        elif isinstance(v, list):
            out[key] = [doc_to_json(x) if isinstance(x, dict) else (str(x) if isinstance(x, ObjectId) else x) for x in v]
        else:
            out[key] = v
    return out
