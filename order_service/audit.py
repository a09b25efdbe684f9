"""Append-only audit trails: the inventory ledger and order status history.

Both trails are advisory. Each write runs inside its own SAVEPOINT of the
caller's transaction; if it fails, only the savepoint is rolled back, a
warning is logged and the order or stock change carries on.
"""

from __future__ import annotations

from contextlib import contextmanager

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import InventoryLog, OrderStatus, OrderStatusHistory

logger = structlog.get_logger(__name__)

REASON_ORDER = "order"
REASON_ORDER_CANCEL = "order_cancel"


@contextmanager
def best_effort(db: Session, trail: str, **context):
    """Run the enclosed writes in a savepoint, swallowing database errors."""
    try:
        with db.begin_nested():
            yield
    except SQLAlchemyError as exc:
        logger.warning("audit_write_failed", trail=trail, error=str(exc), **context)


def record_stock_movement(
    db: Session,
    product_id: int,
    delta: int,
    reason: str,
    ref_id: int | None = None,
    note: str | None = None,
) -> None:
    """Append one signed stock delta to the inventory ledger."""
    with best_effort(db, "inventory_log", product_id=product_id, ref_id=ref_id):
        db.add(
            InventoryLog(
                product_id=product_id,
                quantity=delta,
                reason=reason,
                ref_id=ref_id,
                note=note,
            )
        )
        db.flush()


def record_status_change(
    db: Session,
    order_id: int,
    from_status: OrderStatus | None,
    to_status: OrderStatus,
    changed_by: int | None = None,
    note: str | None = None,
) -> None:
    """Append one transition to the order's status history."""
    with best_effort(db, "order_status_history", order_id=order_id):
        db.add(
            OrderStatusHistory(
                order_id=order_id,
                from_status=from_status,
                to_status=to_status,
                changed_by=changed_by,
                note=note,
            )
        )
        db.flush()
