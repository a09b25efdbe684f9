"""Exception hierarchy for the order service.

Every error carries a ``user_message`` that is safe to return to the client
and an HTTP ``status_code`` used by the API exception handlers. Technical
details passed as ``internal_details`` are logged via structlog and never
exposed in a response.
"""

from __future__ import annotations

import structlog

logger = structlog.get_logger(__name__)


class OrderServiceError(Exception):
    """Base exception for the order service.

    Args:
        user_message: Safe message to display to the client.
        internal_details: Optional technical details for server-side logs only.
    """

    status_code = 500

    def __init__(
        self,
        user_message: str,
        *,
        internal_details: str | None = None,
    ) -> None:
        super().__init__(user_message)
        self.user_message = user_message

        if internal_details:
            logger.error(
                "order_service_error",
                error_type=self.__class__.__name__,
                user_message=user_message,
                internal_details=internal_details,
            )


class ValidationError(OrderServiceError):
    """Malformed or empty request: empty cart, bad id, unknown status value."""

    status_code = 400


class NotFoundError(OrderServiceError):
    """Referenced order does not exist."""

    status_code = 404


class ProductNotFoundError(NotFoundError):
    """Referenced product does not exist at checkout time.

    Reported as a bad request since the cart itself is invalid.
    """

    status_code = 400


class BusinessRuleError(OrderServiceError):
    """Expected, recoverable condition such as insufficient stock."""

    status_code = 400


class InsufficientStockError(BusinessRuleError):
    def __init__(self, product_name: str, available: int, requested: int) -> None:
        super().__init__(f"insufficient stock for {product_name}")
        self.product_name = product_name
        self.available = available
        self.requested = requested


class CouponNotApplicableError(BusinessRuleError):
    """Raised by the coupon preview only; checkout degrades to no discount instead."""


class AuthenticationError(OrderServiceError):
    status_code = 401


class AuthorizationError(OrderServiceError):
    status_code = 403


class InfrastructureError(OrderServiceError):
    """Database connectivity or transaction failure.

    The client only ever sees the generic message; details go to the logs.
    """

    status_code = 500

    def __init__(self, internal_details: str | None = None) -> None:
        super().__init__("internal server error", internal_details=internal_details)
