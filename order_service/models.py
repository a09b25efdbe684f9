import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import deferred, relationship

from .database import Base  # Import the Base class from our database setup

# Fixed-point money columns keep total == subtotal + shipping_fee - discount_total exact.
Money = Numeric(14, 2, asdecimal=True)


def utcnow():
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @classmethod
    def parse(cls, raw):
        """Case-insensitive lookup; COMPLETED is accepted as an alias of DELIVERED."""
        if isinstance(raw, cls):
            return raw
        value = str(raw or "").strip().upper()
        if value == "COMPLETED":
            value = "DELIVERED"
        return cls(value)


class PaymentMethod(str, enum.Enum):
    COD = "COD"
    BANK = "BANK"
    WALLET = "WALLET"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class ProductStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class UserRole(str, enum.Enum):
    USER = "USER"
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    DISABLED = "DISABLED"


class CouponType(str, enum.Enum):
    PERCENT = "PERCENT"
    FIXED = "FIXED"


def _enum(enum_cls):
    # Store the upper-case value, not the member name, and skip native DB enums.
    return Enum(enum_cls, native_enum=False, values_callable=lambda e: [m.value for m in e], length=20)


class StatusColumn(TypeDecorator):
    """Order status stored as upper-case text.

    Rows written by older storefront code may hold lower-case values such as
    ``"pending"``; they are read back through :meth:`OrderStatus.parse`.
    """

    impl = String(20)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return OrderStatus.parse(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return OrderStatus.parse(value)


# Catalog item whose stock column is the contended resource during checkout.
class Product(Base):
    __tablename__ = "product"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Money, nullable=False)
    original_price = Column(Money)  # Pre-discount list price, display only.
    stock = Column(Integer, nullable=False, default=0)
    status = Column(_enum(ProductStatus), nullable=False, default=ProductStatus.ACTIVE)
    category_id = Column(Integer)
    brand_id = Column(Integer)


class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255))
    email = Column(String(255), unique=True, nullable=False)
    password = Column(String(255), nullable=False)  # Stored as a hash, never plaintext.
    role = Column(_enum(UserRole), nullable=False, default=UserRole.USER)
    phone = Column(String(32))


# Buyer profile; created on the first order of a user account.
class Customer(Base):
    __tablename__ = "customer"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("user.id"), unique=True, index=True)
    name = Column(String(255))
    email = Column(String(255))
    phone = Column(String(32))
    address = Column(Text)

    orders = relationship("Order", back_populates="customer")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customer.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    status = Column(StatusColumn(), nullable=False, default=OrderStatus.PENDING)
    payment_method = Column(_enum(PaymentMethod), nullable=False)
    shipping_address = Column(Text, nullable=False)
    subtotal = Column(Money, nullable=False, default=0)
    shipping_fee = Column(Money, nullable=False, default=0)
    discount_total = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False, default=0)
    # Missing on older schemas; only loaded or inserted when detected.
    payment_status = deferred(Column(_enum(PaymentStatus)))

    customer = relationship("Customer", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")


# One product line of an order. unit_price is the price at checkout time.
class OrderItem(Base):
    __tablename__ = "order_item"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("product.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    line_total = Column(Money, nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class Coupon(Base):
    __tablename__ = "coupon"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, nullable=False)  # Always upper-cased.
    type = Column(_enum(CouponType), nullable=False)
    value = Column(Money, nullable=False)
    max_discount = Column(Money)
    min_order = Column(Money, nullable=False, default=0)
    usage_limit = Column(Integer)
    used_count = Column(Integer, nullable=False, default=0)
    start_at = Column(DateTime(timezone=True))
    end_at = Column(DateTime(timezone=True))
    status = Column(String(20), nullable=False, default="ACTIVE")


class CouponRedemption(Base):
    __tablename__ = "coupon_redemption"

    id = Column(Integer, primary_key=True, index=True)
    coupon_id = Column(Integer, ForeignKey("coupon.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    discount_amount = Column(Money, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# Append-only stock movements. quantity is signed: negative for sales, positive for restocks.
class InventoryLog(Base):
    __tablename__ = "inventory_log"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("product.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    reason = Column(String(32), nullable=False)
    ref_id = Column(Integer)
    note = Column(String(255))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    from_status = Column(StatusColumn())
    to_status = Column(StatusColumn(), nullable=False)
    changed_by = Column(Integer)
    note = Column(String(255))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
