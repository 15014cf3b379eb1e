"""Stock reservation behaviour of OrderPlacement, driven directly against the store."""

import re
from datetime import datetime, timezone
from decimal import InvalidOperation

import pytest
from bson import ObjectId
from fastapi import HTTPException

import orders
from conftest import SHIPPING_ADDRESS
from database import create_document, parse_object_id
from orders import InsufficientStockError, OrderPlacement, generate_order_number
from schemas import MAX_QUANTITY, OrderCreate


@pytest.fixture()
def seller_id():
    return str(ObjectId())


@pytest.fixture()
def shopper(db):
    user_id = create_document(db, "user", {"name": "Shopper", "email": "shopper@stockflow.io", "role": "customer"})
    return db["user"].find_one({"_id": parse_object_id(user_id)})


@pytest.fixture()
def stock(db, seller_id):
    def _stock(quantity, price=10.0, name="Widget", is_available=True):
        return create_document(db, "item", {
            "name": name,
            "description": "",
            "category": "Parts",
            "quantity": quantity,
            "price": price,
            "min_stock": 0,
            "user": seller_id,
            "is_available": is_available,
        })

    return _stock


def _quantity(db, item_id):
    return db["item"].find_one({"_id": parse_object_id(item_id)})["quantity"]


def _cart(*lines):
    return OrderCreate(
        items=[{"item": item_id, "quantity": qty} for item_id, qty in lines],
        shipping_address=SHIPPING_ADDRESS,
    )


class _RecordingLogger:
    def __init__(self):
        self.events = []

    def __getattr__(self, level):
        return lambda event, **kw: self.events.append((level, event, kw))


class TestConcurrentPlacement:
    def test_one_unit_two_buyers_exactly_one_wins(self, db, shopper, stock):
        item_id = stock(1)
        first = OrderPlacement(db, shopper)
        second = OrderPlacement(db, shopper)

        # both pass the read-only check before either reserves
        first.validate([(item_id, 1)])
        second.validate([(item_id, 1)])

        first.reserve([(item_id, 1)])
        with pytest.raises(InsufficientStockError) as exc_info:
            second.reserve([(item_id, 1)])

        assert exc_info.value.item_id == item_id
        assert _quantity(db, item_id) == 0
        assert db["item"].find_one({"_id": parse_object_id(item_id)})["is_available"] is False

    def test_lost_race_releases_earlier_lines(self, db, shopper, stock):
        plenty = stock(10, name="Bolt")
        contested = stock(1, name="Gear")
        placement = OrderPlacement(db, shopper)
        placement.validate([(plenty, 4), (contested, 1)])

        OrderPlacement(db, shopper).reserve([(contested, 1)])

        with pytest.raises(InsufficientStockError):
            placement.reserve([(plenty, 4), (contested, 1)])
        assert _quantity(db, plenty) == 10
        assert _quantity(db, contested) == 0

    def test_stock_never_goes_negative(self, db, shopper, stock):
        item_id = stock(3)
        placement = OrderPlacement(db, shopper)
        placement.reserve([(item_id, 2)])
        with pytest.raises(InsufficientStockError):
            placement.reserve([(item_id, 2)])
        assert _quantity(db, item_id) == 1


class TestPlace:
    def test_place_persists_pending_order(self, db, shopper, stock):
        item_id = stock(5, price=19.99)
        order = OrderPlacement(db, shopper).place(_cart((item_id, 2)))

        assert order["status"] == "pending"
        assert order["total_amount"] == 39.98
        stored = db["order"].find_one({"_id": parse_object_id(order["id"])})
        assert stored["customer"] == str(shopper["_id"])
        assert stored["items"] == [{"item": item_id, "quantity": 2, "price": 19.99}]
        assert _quantity(db, item_id) == 3

    def test_rejected_cart_writes_nothing(self, db, shopper, stock):
        good = stock(5)
        hidden = stock(5, is_available=False)
        with pytest.raises(HTTPException) as exc_info:
            OrderPlacement(db, shopper).place(_cart((good, 1), (hidden, 1)))
        assert exc_info.value.status_code == 400
        assert _quantity(db, good) == 5
        assert db["order"].count_documents({}) == 0

    def test_order_number_collision_is_retried(self, db, shopper, stock, monkeypatch):
        item_id = stock(5)
        numbers = iter(["ORD-20261016-AAAAAAAAAAAA", "ORD-20261016-AAAAAAAAAAAA", "ORD-20261016-BBBBBBBBBBBB"])
        monkeypatch.setattr(orders, "generate_order_number", lambda now=None: next(numbers))

        first = OrderPlacement(db, shopper).place(_cart((item_id, 1)))
        second = OrderPlacement(db, shopper).place(_cart((item_id, 1)))

        assert first["order_number"] == "ORD-20261016-AAAAAAAAAAAA"
        assert second["order_number"] == "ORD-20261016-BBBBBBBBBBBB"
        assert db["order"].count_documents({}) == 2
        assert _quantity(db, item_id) == 3

    def test_placed_log_reports_stored_number(self, db, shopper, stock, monkeypatch):
        item_id = stock(5)
        numbers = iter(["ORD-20261016-AAAAAAAAAAAA", "ORD-20261016-AAAAAAAAAAAA", "ORD-20261016-BBBBBBBBBBBB"])
        monkeypatch.setattr(orders, "generate_order_number", lambda now=None: next(numbers))
        OrderPlacement(db, shopper).place(_cart((item_id, 1)))

        recorder = _RecordingLogger()
        monkeypatch.setattr(orders, "logger", recorder)
        OrderPlacement(db, shopper).place(_cart((item_id, 1)))

        placed = [kw for level, event, kw in recorder.events if event == "Order placed"]
        assert [kw["order_number"] for kw in placed] == ["ORD-20261016-BBBBBBBBBBBB"]

    def test_failure_while_building_order_releases_stock(self, db, shopper, stock):
        # a price stored before non-finite values were rejected
        broken = stock(1, price=float("inf"), name="Broken")
        fine = stock(4, name="Fine")
        with pytest.raises(InvalidOperation):
            OrderPlacement(db, shopper).place(_cart((fine, 2), (broken, 1)))

        assert _quantity(db, fine) == 4
        assert _quantity(db, broken) == 1
        assert db["item"].find_one({"_id": parse_object_id(broken)})["is_available"] is True
        assert db["order"].count_documents({}) == 0

    def test_unexpected_error_after_reserve_releases_stock(self, db, shopper, stock, monkeypatch):
        item_id = stock(3)

        def explode(value):
            raise RuntimeError("rounding failed")

        monkeypatch.setattr(orders, "money", explode)
        with pytest.raises(RuntimeError):
            OrderPlacement(db, shopper).place(_cart((item_id, 3)))
        assert _quantity(db, item_id) == 3
        assert db["order"].count_documents({}) == 0

    def test_repeated_lines_beyond_int64_are_rejected(self, db, shopper, stock):
        item_id = stock(MAX_QUANTITY)
        with pytest.raises(HTTPException) as exc_info:
            OrderPlacement(db, shopper).place(_cart((item_id, MAX_QUANTITY), (item_id, 1)))
        assert exc_info.value.status_code == 400
        assert _quantity(db, item_id) == MAX_QUANTITY


class TestOrderNumber:
    def test_format(self):
        number = generate_order_number(datetime(2026, 10, 16, tzinfo=timezone.utc))
        assert re.fullmatch(r"ORD-20261016-[0-9A-F]{12}", number)

    def test_same_instant_numbers_differ(self):
        now = datetime(2026, 10, 16, tzinfo=timezone.utc)
        assert len({generate_order_number(now) for _ in range(1000)}) == 1000
