"""Detection of optional schema features.

Older deployments of the storefront database predate the status history
table and the ``orders.payment_status`` column. Rather than retrying queries
when they fail, the service probes the schema once at startup and picks the
matching code path.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy import inspect
from sqlalchemy.engine import Engine

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SchemaCapabilities:
    status_history: bool = True
    payment_status: bool = True
    inventory_log: bool = True
    coupon_redemption: bool = True

    @classmethod
    def detect(cls, engine: Engine) -> "SchemaCapabilities":
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        order_columns = (
            {c["name"] for c in inspector.get_columns("orders")}
            if "orders" in tables
            else set()
        )
        caps = cls(
            status_history="order_status_history" in tables,
            payment_status="payment_status" in order_columns,
            inventory_log="inventory_log" in tables,
            coupon_redemption="coupon_redemption" in tables,
        )
        logger.info("schema_capabilities_detected", **caps.as_dict())
        return caps

    def as_dict(self) -> dict[str, bool]:
        return {
            "status_history": self.status_history,
            "payment_status": self.payment_status,
            "inventory_log": self.inventory_log,
            "coupon_redemption": self.coupon_redemption,
        }
