"""
Catalog access policy.

Admins read and mutate only the items they own; customers read every item that
is available and in stock, across all admins. Items owned by someone else are
reported as missing, never as forbidden.
"""

from typing import List

import structlog
from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.database import Database

from database import NEWEST_FIRST, create_document, doc_to_json, get_documents, parse_object_id, utcnow
from schemas import Item, ItemCreate, ItemUpdate
from security import hash_password

logger = structlog.get_logger(__name__)

VISIBLE_TO_CUSTOMERS = {"is_available": True, "quantity": {"$gt": 0}}

SAMPLE_ITEMS = [
    {"name": "Laptop", "description": "Gaming Laptop 16GB RAM", "category": "Electronics", "quantity": 15, "price": 999.99, "min_stock": 5},
    {"name": "Mouse", "description": "Wireless Optical Mouse", "category": "Electronics", "quantity": 45, "price": 25.50, "min_stock": 10},
    {"name": "Notebook", "description": "A4 Size 100 pages", "category": "Stationery", "quantity": 8, "price": 4.99, "min_stock": 15},
]


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Item not found")


def _owner_summary(owner: dict) -> dict:
    return {"id": str(owner["_id"]), "name": owner.get("name", ""), "email": owner.get("email")}


def attach_owners(db: Database, items: List[dict]) -> List[dict]:
    owner_ids = {parse_object_id(i.get("user")) for i in items}
    owners = {
        str(u["_id"]): _owner_summary(u)
        for u in db["user"].find({"_id": {"$in": [o for o in owner_ids if o]}})
    }
    out = []
    for item in items:
        data = doc_to_json(item)
        data["user"] = owners.get(item.get("user"), {"id": item.get("user"), "name": None, "email": None})
        out.append(data)
    return out


def list_items(db: Database, user: dict) -> List[dict]:
    if is_admin(user):
        items = get_documents(db, "item", {"user": str(user["_id"])}, sort=NEWEST_FIRST)
        return [doc_to_json(i) for i in items]
    items = get_documents(db, "item", VISIBLE_TO_CUSTOMERS, sort=NEWEST_FIRST)
    return attach_owners(db, items)


def get_item(db: Database, user: dict, item_id: str) -> dict:
    oid = parse_object_id(item_id)
    if oid is None:
        raise _not_found()
    if is_admin(user):
        item = db["item"].find_one({"_id": oid, "user": str(user["_id"])})
        if not item:
            raise _not_found()
        return doc_to_json(item)
    item = db["item"].find_one({"_id": oid, **VISIBLE_TO_CUSTOMERS})
    if not item:
        raise _not_found()
    return attach_owners(db, [item])[0]


def create_item(db: Database, admin: dict, payload: ItemCreate) -> dict:
    doc = Item(**payload.model_dump(), user=str(admin["_id"])).model_dump(exclude={"created_at", "updated_at"})
    item_id = create_document(db, "item", doc)
    logger.info("Item created", item_id=item_id, owner=doc["user"], quantity=doc["quantity"])
    return doc_to_json(db["item"].find_one({"_id": parse_object_id(item_id)}))


def update_item(db: Database, admin: dict, item_id: str, payload: ItemUpdate) -> dict:
    oid = parse_object_id(item_id)
    if oid is None:
        raise _not_found()
    update = {k: v for k, v in payload.model_dump().items() if v is not None}
    update["updated_at"] = utcnow()
    item = db["item"].find_one_and_update(
        {"_id": oid, "user": str(admin["_id"])},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not item:
        raise _not_found()
    logger.info("Item updated", item_id=item_id, fields=sorted(update))
    return doc_to_json(item)


def delete_item(db: Database, admin: dict, item_id: str) -> dict:
    oid = parse_object_id(item_id)
    if oid is None:
        raise _not_found()
    result = db["item"].delete_one({"_id": oid, "user": str(admin["_id"])})
    if result.deleted_count == 0:
        raise _not_found()
    logger.info("Item deleted", item_id=item_id)
    return {"message": "Item deleted successfully"}


def list_categories(db: Database, user: dict) -> List[str]:
    query = {"user": str(user["_id"])} if is_admin(user) else VISIBLE_TO_CUSTOMERS
    return sorted(db["item"].distinct("category", query))


def low_stock_items(db: Database, admin: dict) -> List[dict]:
    items = get_documents(db, "item", {"user": str(admin["_id"])})
    low = [i for i in items if i.get("quantity", 0) <= i.get("min_stock", 0)]
    low.sort(key=lambda i: i.get("quantity", 0))
    return [doc_to_json(i) for i in low]


def seed_sample_data(db: Database, admin_email: str, admin_password: str) -> None:
    """Insert the sample catalog under a seed admin when the catalog is empty."""
    if db["item"].count_documents({}) > 0:
        return
    admin = db["user"].find_one({"email": admin_email})
    if admin:
        admin_id = str(admin["_id"])
    else:
        pw_hash, salt = hash_password(admin_password)
        admin_id = create_document(db, "user", {
            "name": "Admin",
            "email": admin_email,
            "password_hash": pw_hash,
            "salt": salt,
            "role": "admin",
        })
    for sample in SAMPLE_ITEMS:
        create_document(db, "item", Item(**sample, user=admin_id).model_dump(exclude={"created_at", "updated_at"}))
    logger.info("Sample catalog inserted", items=len(SAMPLE_ITEMS), owner=admin_id)
