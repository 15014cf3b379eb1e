"""
Database Schemas for the StockFlow inventory and order API

Each stored Pydantic model maps to a MongoDB collection named after the
lowercased class name (User -> "user", Item -> "item", Order -> "order").
Request models validate and coerce incoming payloads before they reach the
catalog or order code; references between collections are stored as id strings.
"""

from datetime import datetime
from typing import List, Literal, Optional, get_args

from pydantic import BaseModel, EmailStr, Field, field_validator

Role = Literal["admin", "customer"]

OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]

ORDER_STATUSES = get_args(OrderStatus)

# largest count a BSON int64 can hold
MAX_QUANTITY = 2**63 - 1


def _not_blank(value: str, field: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{field} is required")
    return value


# ------------ Auth & User ------------
class UserCreate(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: Role = "customer"

    @field_validator("name")
    @classmethod
    def name_required(cls, v: str) -> str:
        return _not_blank(v, "Name")

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("password")
    @classmethod
    def password_length(cls, v: str) -> str:
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    salt: str
    role: Role = "customer"


# ------------ Items ------------
class ItemCreate(BaseModel):
    name: str
    description: str = ""
    category: str
    quantity: int = Field(..., ge=0, le=MAX_QUANTITY)
    price: float = Field(..., ge=0, allow_inf_nan=False)
    min_stock: int = Field(0, ge=0, le=MAX_QUANTITY)
    is_available: bool = True

    @field_validator("name", "category")
    @classmethod
    def required_text(cls, v: str, info) -> str:
        return _not_blank(v, info.field_name.capitalize())

    @field_validator("price")
    @classmethod
    def round_price(cls, v: float) -> float:
        return round(v, 2)


class ItemUpdate(ItemCreate):
    """Full replacement of name, category, quantity and price; the rest is optional."""

    description: Optional[str] = None
    min_stock: Optional[int] = Field(None, ge=0, le=MAX_QUANTITY)
    is_available: Optional[bool] = None


class Item(BaseModel):
    name: str
    description: str = ""
    category: str
    quantity: int = Field(..., ge=0, le=MAX_QUANTITY)
    price: float = Field(..., ge=0, allow_inf_nan=False)
    min_stock: int = Field(0, ge=0, le=MAX_QUANTITY)
    user: str = Field(..., description="Id of the owning admin")
    is_available: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ------------ Orders ------------
class CartLine(BaseModel):
    item: str = Field(..., description="Item id")
    quantity: int = Field(..., ge=1, le=MAX_QUANTITY)


class ShippingAddress(BaseModel):
    model_config = {"coerce_numbers_to_str": True}

    name: str
    address: str
    city: str
    state: str
    pincode: str
    phone: str

    @field_validator("*")
    @classmethod
    def required_text(cls, v: str, info) -> str:
        return _not_blank(v, f"Shipping {info.field_name}")


class OrderCreate(BaseModel):
    items: List[CartLine]
    shipping_address: ShippingAddress

    @field_validator("items")
    @classmethod
    def cart_not_empty(cls, v: List[CartLine]) -> List[CartLine]:
        if not v:
            raise ValueError("Cart is empty")
        return v


class OrderStatusUpdate(BaseModel):
    status: str


class OrderItem(BaseModel):
    item: str
    quantity: int = Field(..., ge=1, le=MAX_QUANTITY)
    price: float = Field(..., ge=0, allow_inf_nan=False, description="Unit price at order time")


class Order(BaseModel):
    order_number: str
    customer: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0, allow_inf_nan=False)
    status: OrderStatus = "pending"
    shipping_address: ShippingAddress
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
