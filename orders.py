"""
Order placement and order ledger access.

Placing an order is all-or-nothing across the whole cart:

1. every line is checked against live stock before anything is written;
2. each line is then reserved with a single guarded update that only
   decrements when the item is available and holds enough quantity;
3. if a guarded update loses a race with another placement, or building
   or writing the order fails, every reservation already applied by this
   placement is released before the error is reported.

Unit prices are captured from the reserved item document, so later catalog
edits never change an existing order.
"""

import secrets
from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

import structlog
from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import is_admin
from database import NEWEST_FIRST, doc_to_json, get_documents, parse_object_id, utcnow
from schemas import MAX_QUANTITY, ORDER_STATUSES, Order, OrderCreate, OrderItem

logger = structlog.get_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 5
CENTS = Decimal("0.01")


class InsufficientStockError(Exception):
    """A cart line references an item that is missing, unavailable or short on stock."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item {item_id} is unavailable or has insufficient stock")


def generate_order_number(now=None) -> str:
    # 48 random bits per day prefix; the unique index catches the rest
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(6).upper()}"


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class Reservation:
    __slots__ = ("item_id", "quantity", "price", "sold_out")

    def __init__(self, item_id, quantity: int, price: float, sold_out: bool):
        self.item_id = item_id
        self.quantity = quantity
        self.price = price
        self.sold_out = sold_out


class OrderPlacement:
    """Turns a validated cart into a persisted order for one customer."""

    def __init__(self, db: Database, customer: dict):
        self.db = db
        self.customer = customer

    def validate(self, lines: List[Tuple[str, int]]) -> None:
        """Check every line against current stock without writing anything.

        Repeated items are checked against their cumulative requested quantity.
        """
        requested: Dict[str, int] = defaultdict(int)
        for item_id, quantity in lines:
            requested[item_id] += quantity
            if requested[item_id] > MAX_QUANTITY:
                raise InsufficientStockError(item_id)
            oid = parse_object_id(item_id)
            found = oid and self.db["item"].find_one(
                {"_id": oid, "is_available": True, "quantity": {"$gte": requested[item_id]}},
                {"_id": 1},
            )
            if not found:
                raise InsufficientStockError(item_id)

    def reserve_line(self, item_id: str, quantity: int) -> Reservation:
        oid = parse_object_id(item_id)
        item = None
        if oid is not None:
            item = self.db["item"].find_one_and_update(
                {"_id": oid, "is_available": True, "quantity": {"$gte": quantity}},
                {"$inc": {"quantity": -quantity}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        if item is None:
            raise InsufficientStockError(item_id)
        sold_out = False
        if item["quantity"] == 0:
            result = self.db["item"].update_one({"_id": oid, "quantity": 0}, {"$set": {"is_available": False}})
            sold_out = result.modified_count == 1
        return Reservation(oid, quantity, float(item["price"]), sold_out)

    def reserve(self, lines: List[Tuple[str, int]]) -> List[Reservation]:
        reservations: List[Reservation] = []
        try:
            for item_id, quantity in lines:
                reservations.append(self.reserve_line(item_id, quantity))
        except Exception:
            self.release(reservations)
            raise
        return reservations

    def release(self, reservations: List[Reservation]) -> None:
        for r in reversed(reservations):
            update = {"$inc": {"quantity": r.quantity}, "$set": {"updated_at": utcnow()}}
            if r.sold_out:
                update["$set"]["is_available"] = True
            self.db["item"].update_one({"_id": r.item_id}, update)
        if reservations:
            logger.warning("Released stock reservations", lines=len(reservations), customer=str(self.customer["_id"]))

    def _insert(self, order: Order) -> Tuple[str, str]:
        """Write the order and return its id and the order number actually stored."""
        doc = order.model_dump(exclude={"created_at", "updated_at"})
        now = utcnow()
        doc["created_at"] = doc["updated_at"] = now
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            try:
                doc.pop("_id", None)
                return str(self.db["order"].insert_one(doc).inserted_id), doc["order_number"]
            except DuplicateKeyError:
                if attempt == ORDER_NUMBER_ATTEMPTS - 1:
                    raise
                logger.warning("Order number collision, regenerating", order_number=doc["order_number"])
                doc["order_number"] = generate_order_number(now)

    def _build(self, reservations: List[Reservation], payload: OrderCreate) -> Order:
        total = sum((money(r.price) * r.quantity for r in reservations), Decimal("0"))
        return Order(
            order_number=generate_order_number(),
            customer=str(self.customer["_id"]),
            items=[OrderItem(item=str(r.item_id), quantity=r.quantity, price=r.price) for r in reservations],
            total_amount=float(total.quantize(CENTS)),
            status="pending",
            shipping_address=payload.shipping_address,
        )

    def place(self, payload: OrderCreate) -> dict:
        lines = [(line.item, line.quantity) for line in payload.items]
        customer_id = str(self.customer["_id"])
        try:
            self.validate(lines)
            reservations = self.reserve(lines)
        except InsufficientStockError as e:
            logger.info("Order rejected", customer=customer_id, item=e.item_id)
            raise HTTPException(status_code=400, detail=str(e))

        # nothing after a successful reserve may leave stock held without an order
        try:
            order = self._build(reservations, payload)
            order_id, order_number = self._insert(order)
        except Exception:
            logger.exception("Order write failed", customer=customer_id)
            self.release(reservations)
            raise
        logger.info(
            "Order placed",
            order_id=order_id,
            order_number=order_number,
            customer=customer_id,
            lines=len(reservations),
            total=order.total_amount,
        )
        return resolve_order(self.db, self.db["order"].find_one({"_id": parse_object_id(order_id)}))


# -------------------- Ledger views --------------------

def resolve_orders(db: Database, orders: List[dict]) -> List[dict]:
    """Attach item name/category and customer name/email for display."""
    item_ids = {parse_object_id(line["item"]) for o in orders for line in o.get("items", [])}
    customer_ids = {parse_object_id(o.get("customer")) for o in orders}
    items = {str(i["_id"]): i for i in db["item"].find({"_id": {"$in": [i for i in item_ids if i]}})}
    customers = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": [c for c in customer_ids if c]}})}

    out = []
    for order in orders:
        data = doc_to_json(order)
        for line in data["items"]:
            item = items.get(line["item"], {})
            line["item"] = {"id": line["item"], "name": item.get("name"), "category": item.get("category")}
        customer = customers.get(order.get("customer"), {})
        data["customer"] = {"id": order.get("customer"), "name": customer.get("name"), "email": customer.get("email")}
        out.append(data)
    return out


def resolve_order(db: Database, order: dict) -> dict:
    return resolve_orders(db, [order])[0]


def owned_item_ids(db: Database, admin: dict) -> List[str]:
    return [str(i["_id"]) for i in db["item"].find({"user": str(admin["_id"])}, {"_id": 1})]


def my_orders(db: Database, customer: dict) -> List[dict]:
    orders = get_documents(db, "order", {"customer": str(customer["_id"])}, sort=NEWEST_FIRST)
    return resolve_orders(db, orders)


def admin_orders(db: Database, admin: dict, status: Optional[str] = None) -> List[dict]:
    query = {"items.item": {"$in": owned_item_ids(db, admin)}}
    if status:
        query["status"] = status
    return resolve_orders(db, get_documents(db, "order", query, sort=NEWEST_FIRST))


def _visibility_filter(db: Database, user: dict) -> dict:
    if is_admin(user):
        return {"items.item": {"$in": owned_item_ids(db, user)}}
    return {"customer": str(user["_id"])}


def get_order(db: Database, user: dict, order_id: str) -> dict:
    oid = parse_object_id(order_id)
    order = db["order"].find_one({"_id": oid, **_visibility_filter(db, user)}) if oid else None
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return resolve_order(db, order)


def update_status(db: Database, admin: dict, order_id: str, status: str) -> dict:
    # Any status may follow any other; there is no transition table.
    if status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")
    oid = parse_object_id(order_id)
    order = None
    if oid is not None:
        order = db["order"].find_one_and_update(
            {"_id": oid, **_visibility_filter(db, admin)},
            {"$set": {"status": status, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info("Order status changed", order_id=order_id, status=status, admin=str(admin["_id"]))
    return resolve_order(db, order)
