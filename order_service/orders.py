"""Order transaction manager.

``create_order`` turns a cart into a priced, persisted order in a single
database transaction; ``set_status`` moves an order through its lifecycle and
puts stock back when an order is cancelled. Product rows (and the order row
in ``set_status``) are locked with ``SELECT ... FOR UPDATE`` so concurrent
checkouts for the same product serialize and cannot oversell.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

import structlog
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .audit import (
    REASON_ORDER,
    REASON_ORDER_CANCEL,
    record_status_change,
    record_stock_movement,
)
from .capabilities import SchemaCapabilities
from .coupons import ZERO, apply_coupon
from .errors import (
    BusinessRuleError,
    InfrastructureError,
    InsufficientStockError,
    NotFoundError,
    ProductNotFoundError,
    ValidationError,
)
from .models import (
    Customer,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    User,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class PricingPolicy:
    """Flat shipping fee, waived once the subtotal reaches the threshold."""

    free_shipping_threshold: Decimal = config.FREE_SHIPPING_THRESHOLD
    shipping_fee: Decimal = config.SHIPPING_FEE

    def shipping_for(self, subtotal: Decimal) -> Decimal:
        if subtotal >= self.free_shipping_threshold:
            return ZERO
        return Decimal(self.shipping_fee)


def merge_lines(lines: Iterable[CartLine]) -> "OrderedDict[int, int]":
    """Collapse repeated product ids into one line, keeping first-seen order."""
    merged: "OrderedDict[int, int]" = OrderedDict()
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
    return merged


def get_or_create_customer(db: Session, user_id: int) -> Customer:
    """Customer profile bound to ``user_id``, created from the user record on first use."""
    customer = db.execute(
        select(Customer).where(Customer.user_id == user_id)
    ).scalar_one_or_none()
    if customer is not None:
        return customer

    return _insert_customer(db, user_id)


def _insert_customer(db: Session, user_id: int) -> Customer:
    user = db.get(User, user_id)
    customer = Customer(
        user_id=user_id,
        name=user.name if user else None,
        email=user.email if user else None,
        phone=user.phone if user else None,
    )
    try:
        with db.begin_nested():
            db.add(customer)
            db.flush()
    except IntegrityError:
        # A concurrent first order for the same user created the profile.
        return db.execute(
            select(Customer).where(Customer.user_id == user_id)
        ).scalar_one()
    logger.info("customer_created", user_id=user_id, customer_id=customer.id)
    return customer


def _lock_products(db: Session, product_ids) -> dict[int, Product]:
    # Ascending id order keeps lock acquisition consistent across transactions.
    rows = db.execute(
        select(Product)
        .where(Product.id.in_(list(product_ids)))
        .order_by(Product.id)
        .with_for_update()
    ).scalars()
    return {product.id: product for product in rows}


def _insert_order(
    db: Session,
    customer_id: int,
    shipping_address: str,
    payment_method: PaymentMethod,
    capabilities: SchemaCapabilities,
) -> Order:
    """Insert a zero-priced PENDING order row and return it loaded in ``db``."""
    values = {
        "customer_id": customer_id,
        "status": OrderStatus.PENDING,
        "payment_method": payment_method,
        "shipping_address": shipping_address,
        "subtotal": ZERO,
        "shipping_fee": ZERO,
        "discount_total": ZERO,
        "total": ZERO,
    }
    # An ORM flush would name payment_status in the INSERT even when unset.
    if capabilities.payment_status:
        values["payment_status"] = PaymentStatus.PENDING
    result = db.execute(insert(Order.__table__).values(**values))
    return db.get(Order, result.inserted_primary_key[0])


def create_order(
    db: Session,
    user_id: int,
    lines: Iterable[CartLine],
    shipping_address: str,
    payment_method: PaymentMethod,
    coupon_code: Optional[str] = None,
    capabilities: Optional[SchemaCapabilities] = None,
    pricing: Optional[PricingPolicy] = None,
) -> int:
    """Place an order and return its id.

    Either the whole order is committed (line items, stock decrements, coupon
    redemption, audit rows) or nothing is. Raises :class:`ValidationError` for
    an empty cart, :class:`ProductNotFoundError` for an unknown product and
    :class:`InsufficientStockError` when a line asks for more than is in stock.
    """
    wanted = merge_lines(lines)
    if not wanted:
        raise ValidationError("order must contain at least one item")

    capabilities = capabilities or SchemaCapabilities()
    pricing = pricing or PricingPolicy()
    log = logger.bind(user_id=user_id)

    try:
        customer = get_or_create_customer(db, user_id)

        products = _lock_products(db, wanted.keys())
        subtotal = ZERO
        snapshot = []
        for product_id, quantity in wanted.items():
            product = products.get(product_id)
            if product is None:
                raise ProductNotFoundError("product not found")
            if quantity > product.stock:
                raise InsufficientStockError(product.name, product.stock, quantity)
            unit_price = Decimal(product.price)
            subtotal += unit_price * quantity
            snapshot.append((product, quantity, unit_price))

        shipping_fee = pricing.shipping_for(subtotal)

        # Coupon redemption and the audit rows reference the order id.
        order = _insert_order(
            db, customer.id, shipping_address, payment_method, capabilities
        )
        log = log.bind(order_id=order.id)

        discount = apply_coupon(
            db, coupon_code, user_id, subtotal, order.id, capabilities
        )
        discount = min(discount, subtotal)

        for product, quantity, unit_price in snapshot:
            db.add(
                OrderItem(
                    order_id=order.id,
                    product_id=product.id,
                    quantity=quantity,
                    unit_price=unit_price,
                    line_total=unit_price * quantity,
                )
            )
            product.stock -= quantity
        db.flush()

        if capabilities.inventory_log:
            for product, quantity, _ in snapshot:
                record_stock_movement(
                    db, product.id, -quantity, REASON_ORDER, order.id,
                    note=f"order #{order.id}",
                )

        order.subtotal = subtotal
        order.shipping_fee = shipping_fee
        order.discount_total = discount
        order.total = subtotal + shipping_fee - discount
        db.flush()

        if capabilities.status_history:
            record_status_change(
                db, order.id, None, OrderStatus.PENDING, user_id, note="order placed"
            )

        order_id = order.id
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError(f"create_order failed: {exc}") from exc
    except Exception:
        db.rollback()
        raise

    log.info(
        "order_created",
        subtotal=str(subtotal),
        shipping_fee=str(shipping_fee),
        discount=str(discount),
        total=str(subtotal + shipping_fee - discount),
    )
    return order_id


def set_status(
    db: Session,
    order_id: int,
    target: OrderStatus,
    actor_id: Optional[int] = None,
    note: Optional[str] = None,
    capabilities: Optional[SchemaCapabilities] = None,
) -> OrderStatus:
    """Move ``order_id`` to ``target`` and return the previous status.

    Entering CANCELLED from any other status returns every line's quantity
    to stock. Cancelling an already cancelled order leaves stock untouched,
    and a cancelled order cannot move to any other status
    (:class:`BusinessRuleError`).
    """
    capabilities = capabilities or SchemaCapabilities()
    try:
        target = OrderStatus.parse(target)
    except ValueError:
        raise ValidationError(f"invalid order status: {target}") from None
    log = logger.bind(order_id=order_id, actor_id=actor_id)

    try:
        order = db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("order not found")

        current = order.status
        if current == OrderStatus.CANCELLED and target != OrderStatus.CANCELLED:
            # Its stock has already been returned.
            raise BusinessRuleError("cancelled orders cannot be reopened")
        if current != OrderStatus.CANCELLED and target == OrderStatus.CANCELLED:
            items = db.execute(
                select(OrderItem)
                .where(OrderItem.order_id == order.id)
                .order_by(OrderItem.id)
            ).scalars().all()
            products = _lock_products(db, {item.product_id for item in items})
            for item in items:
                product = products.get(item.product_id)
                if product is None:
                    continue
                product.stock += item.quantity
            db.flush()
            if capabilities.inventory_log:
                for item in items:
                    if item.product_id in products:
                        record_stock_movement(
                            db, item.product_id, item.quantity, REASON_ORDER_CANCEL,
                            order.id, note=f"order #{order.id} cancelled",
                        )

        order.status = target
        db.flush()

        if capabilities.status_history:
            record_status_change(db, order.id, current, target, actor_id, note)

        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError(f"set_status failed: {exc}") from exc
    except Exception:
        db.rollback()
        raise

    log.info("order_status_changed", from_status=current.value, to_status=target.value)
    return current
