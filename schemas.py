"""
Database Schemas for the Storefront

Each Pydantic model represents a collection (or an embedded document) in
MongoDB. Collection names are the plural snake_case of the class name
(e.g., Product -> "products", CartItem -> "cart_items").
"""
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from typing import Optional, List
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    """Round a monetary amount to cents, half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH = "cash"


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    email: EmailStr
    password_hash: str
    name: str = Field(..., min_length=1, max_length=100)
    role: Role = Role.USER
    address: Optional[str] = None


class Category(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    price: Decimal = Field(..., gt=0, le=Decimal("999999.99"), decimal_places=2)
    stock: int = Field(0, ge=0)
    discount: int = Field(0, ge=0, le=100, description="Percent off the list price")
    category_id: str
    images: List[str] = []


class CartItem(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)


class ShippingAddress(BaseModel):
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: str = Field(..., min_length=10, max_length=20)
    address: str = Field(..., min_length=10, max_length=200)
    city: str = Field(..., min_length=2, max_length=50)
    postal_code: str = Field("", max_length=20)


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., description="Unit price at order time, after discount")


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    items: List[OrderItem]
    total_amount: Decimal
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_intent_id: Optional[str] = None
