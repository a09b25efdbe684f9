from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import CouponType, OrderStatus, PaymentMethod, PaymentStatus


class APIModel(BaseModel):
    """Base for request/response bodies: camelCase on the wire, snake_case in Python.

    Money fields are ``Decimal`` and serialize as exact decimal strings.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# --- Request Models ---
class OrderItemIn(APIModel):
    """One cart line: which product and how many."""
    product_id: int
    quantity: int = Field(gt=0)


class OrderCreate(APIModel):
    """Checkout request body."""
    items: List[OrderItemIn]
    shipping_address: str = Field(min_length=1)
    payment_method: PaymentMethod
    coupon_code: Optional[str] = None

    @field_validator("payment_method", mode="before")
    @classmethod
    def _upper_payment_method(cls, value):
        return value.strip().upper() if isinstance(value, str) else value


class StatusUpdate(APIModel):
    """Admin request to move an order to another status."""
    status: str


class CouponValidateRequest(APIModel):
    code: Optional[str] = None
    order_total: Decimal = Field(ge=0)


# --- Response Models ---
class OrderLineOut(APIModel):
    product_id: int
    product_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class StatusHistoryOut(APIModel):
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    changed_by: Optional[int] = None
    note: Optional[str] = None
    created_at: datetime


class OrderSummary(APIModel):
    id: int
    customer_id: int
    customer_name: Optional[str] = None
    created_at: datetime
    status: OrderStatus
    payment_method: PaymentMethod
    payment_status: Optional[PaymentStatus] = None
    total: Decimal
    item_count: int


class OrderDetail(APIModel):
    id: int
    customer_id: int
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    created_at: datetime
    status: OrderStatus
    payment_method: PaymentMethod
    payment_status: Optional[PaymentStatus] = None
    shipping_address: str
    subtotal: Decimal
    shipping_fee: Decimal
    discount_total: Decimal
    total: Decimal
    items: List[OrderLineOut]
    status_history: List[StatusHistoryOut] = []


class CouponOut(APIModel):
    id: int
    code: str
    type: CouponType
    value: Decimal
    max_discount: Optional[Decimal] = None
    min_order: Decimal


class CouponValidateResponse(APIModel):
    valid: bool
    coupon: CouponOut
    discount_amount: Decimal
    final_total: Decimal


class MessageResponse(APIModel):
    message: str
