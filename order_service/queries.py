"""Read-side projections of orders.

Nothing here mutates state. Missing ids yield ``None`` or an empty list.
Which optional columns and tables are read is decided by the
:class:`SchemaCapabilities` detected at startup.
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload, undefer

from .capabilities import SchemaCapabilities
from .models import Customer, Order, OrderItem, OrderStatusHistory
from .schemas import OrderDetail, OrderLineOut, OrderSummary, StatusHistoryOut


def _order_options(capabilities: SchemaCapabilities, with_items: bool):
    options = [selectinload(Order.customer)]
    if with_items:
        options.append(selectinload(Order.items).selectinload(OrderItem.product))
    if capabilities.payment_status:
        options.append(undefer(Order.payment_status))
    return options


def _status_history(db: Session, order_id: int) -> List[StatusHistoryOut]:
    rows = db.execute(
        select(OrderStatusHistory)
        .where(OrderStatusHistory.order_id == order_id)
        .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
    ).scalars()
    return [StatusHistoryOut.model_validate(row) for row in rows]


def to_detail(
    db: Session, order: Order, capabilities: SchemaCapabilities
) -> OrderDetail:
    customer = order.customer
    return OrderDetail(
        id=order.id,
        customer_id=order.customer_id,
        customer_name=customer.name if customer else None,
        customer_email=customer.email if customer else None,
        created_at=order.created_at,
        status=order.status,
        payment_method=order.payment_method,
        payment_status=order.payment_status if capabilities.payment_status else None,
        shipping_address=order.shipping_address,
        subtotal=order.subtotal,
        shipping_fee=order.shipping_fee,
        discount_total=order.discount_total,
        total=order.total,
        items=[
            OrderLineOut(
                product_id=item.product_id,
                product_name=item.product.name if item.product else None,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.line_total,
            )
            for item in order.items
        ],
        status_history=(
            _status_history(db, order.id) if capabilities.status_history else []
        ),
    )


def get_order_by_id(
    db: Session, order_id: int, capabilities: SchemaCapabilities
) -> Optional[OrderDetail]:
    """Full order detail with line items, or ``None`` if there is no such order."""
    order = db.execute(
        select(Order)
        .where(Order.id == order_id)
        .options(*_order_options(capabilities, with_items=True))
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        return None
    return to_detail(db, order, capabilities)


def _summaries(db: Session, stmt, capabilities: SchemaCapabilities) -> List[OrderSummary]:
    item_counts = (
        select(OrderItem.order_id, func.count(OrderItem.id).label("item_count"))
        .group_by(OrderItem.order_id)
        .subquery()
    )
    rows = db.execute(
        stmt.add_columns(func.coalesce(item_counts.c.item_count, 0))
        .outerjoin(item_counts, item_counts.c.order_id == Order.id)
        .options(*_order_options(capabilities, with_items=False))
        .order_by(Order.created_at.desc(), Order.id.desc())
    ).all()
    return [
        OrderSummary(
            id=order.id,
            customer_id=order.customer_id,
            customer_name=order.customer.name if order.customer else None,
            created_at=order.created_at,
            status=order.status,
            payment_method=order.payment_method,
            payment_status=order.payment_status if capabilities.payment_status else None,
            total=order.total,
            item_count=item_count,
        )
        for order, item_count in rows
    ]


def list_orders(db: Session, capabilities: SchemaCapabilities) -> List[OrderSummary]:
    """Every order, newest first. Admin listing."""
    return _summaries(db, select(Order), capabilities)


def list_orders_by_user(
    db: Session, user_id: int, capabilities: SchemaCapabilities
) -> List[OrderSummary]:
    """Orders placed by the customer linked to ``user_id``, newest first."""
    stmt = select(Order).join(Customer, Customer.id == Order.customer_id).where(
        Customer.user_id == user_id
    )
    return _summaries(db, stmt, capabilities)


def order_owner_user_id(db: Session, order_id: int) -> Optional[int]:
    """User account that placed ``order_id``, used for read authorization."""
    return db.execute(
        select(Customer.user_id)
        .join(Order, Order.customer_id == Customer.id)
        .where(Order.id == order_id)
    ).scalar_one_or_none()
